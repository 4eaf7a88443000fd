from typing import Optional

from donor_integrity.config import settings
from donor_integrity.services.rate_provider import RateProvider, build_rate_provider


def get_rate_provider() -> Optional[RateProvider]:
    """Live rate provider, or None when no provider URL is configured."""
    return build_rate_provider(settings)
