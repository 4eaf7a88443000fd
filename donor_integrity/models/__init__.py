from donor_integrity.models.domain import (  # noqa: F401
    SUPPORTED_CURRENCIES,
    Contact,
    Currency,
    InstallmentSchedule,
    InstallmentStatus,
    Payment,
    PaymentAllocation,
    PaymentPlan,
    PaymentStatus,
    PlanStatus,
    Pledge,
)
from donor_integrity.models.exchange_rate import ExchangeRate  # noqa: F401
