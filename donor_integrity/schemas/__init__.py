from donor_integrity.schemas.exchange_rates import (
    ExchangeRateCreate,
    ExchangeRateRead,
    ExchangeRatesRead,
)
from donor_integrity.schemas.integrity import (
    CheckSummaryRead,
    FixResultRead,
    IntegrityFixRequest,
    IntegrityFixResponse,
    IntegrityIssueRead,
    IntegrityReportRead,
)

__all__ = [
    "ExchangeRateCreate",
    "ExchangeRateRead",
    "ExchangeRatesRead",
    "CheckSummaryRead",
    "FixResultRead",
    "IntegrityFixRequest",
    "IntegrityFixResponse",
    "IntegrityIssueRead",
    "IntegrityReportRead",
]
