from __future__ import annotations

from datetime import date
from typing import Iterable


class IntegrityCheckError(Exception):
    """Base class for failures raised by the integrity engine."""


class ConfigurationError(IntegrityCheckError):
    pass


class DatabaseUnavailableError(IntegrityCheckError):
    pass


class MissingTablesError(IntegrityCheckError):
    def __init__(self, missing: Iterable[str]):
        self.missing = sorted(set(missing))
        super().__init__(
            f"Required tables are missing: {', '.join(self.missing)}. "
            "Run database migrations first (alembic upgrade head)."
        )


class RateProviderError(IntegrityCheckError):
    """A single call to the external rate provider failed."""


class RateUnavailableError(IntegrityCheckError):
    def __init__(self, from_currency: str, to_currency: str, on_date: date):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.on_date = on_date
        super().__init__(
            f"Unable to find exchange rate for {from_currency} to {to_currency} on {on_date.isoformat()}"
        )
