from donor_integrity.services.exchange_rate_service import (
    ExchangeRateResolver,
    RateCache,
    upsert_exchange_rate,
)
from donor_integrity.services.integrity_fixer import (
    apply_fixes,
    apply_fixes_and_recompute,
    recompute_balances_after_payment_corrections,
)
from donor_integrity.services.integrity_report import run_integrity_check, save_report

__all__ = [
    "ExchangeRateResolver",
    "RateCache",
    "upsert_exchange_rate",
    "apply_fixes",
    "apply_fixes_and_recompute",
    "recompute_balances_after_payment_corrections",
    "run_integrity_check",
    "save_report",
]
