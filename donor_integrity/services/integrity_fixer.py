from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from donor_integrity import models
from donor_integrity.services.balance_auditors import collect_payment_stats
from donor_integrity.services.errors import RateUnavailableError
from donor_integrity.services.exchange_rate_service import ExchangeRateResolver, conversion_date, quantize_rate
from donor_integrity.services.integrity_issues import (
    FIX_VALUE_SEPARATOR,
    INSTALLMENT_SCHEDULE,
    PAYMENT,
    PAYMENT_ALLOCATION,
    PAYMENT_PLAN,
    PLEDGE,
    IntegrityIssue,
)
from donor_integrity.services.integrity_report import build_resolver
from donor_integrity.services.money import amounts_equal, conversion_severity, quantize_money, to_decimal

logger = logging.getLogger("donor_integrity.fixes")

USD = models.Currency.USD.value

# Columns the writer may touch, per record type. Anything else is refused.
FIXABLE_COLUMNS: dict[str, tuple[type, frozenset[str]]] = {
    PLEDGE: (models.Pledge, frozenset({"total_paid", "balance", "total_paid_usd"})),
    PAYMENT_PLAN: (
        models.PaymentPlan,
        frozenset(
            {
                "total_paid",
                "remaining_amount",
                "installment_amount",
                "total_planned_amount_usd",
                "installment_amount_usd",
                "remaining_amount_usd",
                "exchange_rate",
            }
        ),
    ),
    PAYMENT: (
        models.Payment,
        frozenset(
            {
                "amount_usd",
                "exchange_rate",
                "amount_in_pledge_currency",
                "pledge_currency_exchange_rate",
                "amount_in_plan_currency",
                "plan_currency_exchange_rate",
            }
        ),
    ),
    INSTALLMENT_SCHEDULE: (models.InstallmentSchedule, frozenset({"installment_amount_usd"})),
    PAYMENT_ALLOCATION: (
        models.PaymentAllocation,
        frozenset({"allocated_amount_usd", "allocated_amount_in_pledge_currency"}),
    ),
}

RATE_COLUMNS = frozenset({"exchange_rate", "pledge_currency_exchange_rate", "plan_currency_exchange_rate"})


@dataclass
class FixResult:
    fixed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    payment_conversions_fixed: int = 0

    def to_dict(self) -> dict:
        return {
            "fixed": self.fixed,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class RecomputeResult:
    pledges_checked: int
    pledges_updated: int
    plans_checked: int
    plans_updated: int


def fix_values(issue: IntegrityIssue) -> dict[str, Decimal]:
    """Map each affected field to its corrected value.

    Conversion fixes carry ``"amount|rate"`` for two fields; balance fixes a
    single value for a single field.
    """
    if issue.record_type not in FIXABLE_COLUMNS:
        raise ValueError(f"Unsupported record type: {issue.record_type}")
    _, allowed = FIXABLE_COLUMNS[issue.record_type]

    parts = str(issue.fix_value).split(FIX_VALUE_SEPARATOR)
    if len(parts) != len(issue.affected_fields):
        raise ValueError(
            f"Fix value {issue.fix_value!r} does not match fields {', '.join(issue.affected_fields)}"
        )

    values: dict[str, Decimal] = {}
    for column, raw in zip(issue.affected_fields, parts):
        if column not in allowed:
            raise ValueError(f"Field {column} is not fixable on {issue.record_type}")
        values[column] = quantize_rate(raw) if column in RATE_COLUMNS else quantize_money(raw)
    return values


def apply_fixes(db: Session, issues: Iterable[IntegrityIssue]) -> FixResult:
    """Apply targeted column updates, one commit per issue.

    A failing issue is rolled back and recorded; the batch continues.
    Issues without a fix value (e.g. allocation integrity) are skipped.
    """
    result = FixResult()
    for issue in issues:
        if not issue.is_fixable:
            result.skipped += 1
            logger.info("fix_skipped_not_fixable", extra={"issue_id": issue.id})
            continue

        try:
            values = fix_values(issue)
            model, _ = FIXABLE_COLUMNS[issue.record_type]
            updated = (
                db.query(model)
                .filter(model.id == issue.fix_record_id)
                .update(values, synchronize_session=False)
            )
            if not updated:
                raise LookupError(f"{issue.record_type} {issue.fix_record_id} not found")
            db.commit()
        except (SQLAlchemyError, ValueError, LookupError) as exc:
            db.rollback()
            result.failed += 1
            msg = f"Failed to fix {issue.record_type} {issue.fix_record_id}: {exc}"
            result.errors.append(msg)
            logger.warning("fix_failed", extra={"issue_id": issue.id, "error": str(exc)})
            continue

        result.fixed += 1
        if issue.record_type == PAYMENT:
            result.payment_conversions_fixed += 1
        logger.info(
            "fix_applied",
            extra={
                "issue_id": issue.id,
                "record_type": issue.record_type,
                "record_id": issue.fix_record_id,
                "fields": ",".join(values),
            },
        )

    return result


def _remaining_usd(resolver: ExchangeRateResolver, plan, remaining: Decimal) -> Optional[Decimal]:
    """USD value of the final remaining amount when the stored one is off, else None."""
    if not plan.currency:
        return None
    try:
        conversion = resolver.convert(remaining, plan.currency, USD, conversion_date(today=resolver.today()))
    except RateUnavailableError as exc:
        logger.warning("plan_remaining_usd_skipped", extra={"plan_id": plan.id, "error": str(exc)})
        return None
    if conversion_severity(conversion.converted_amount, plan.remaining_amount_usd) is None:
        return None
    return conversion.converted_amount


def recompute_balances_after_payment_corrections(
    db: Session, resolver: Optional[ExchangeRateResolver] = None
) -> RecomputeResult:
    """Rewrite pledge and plan totals from the (now corrected) payment conversions.

    Covers every pledge and plan with at least one completed, received,
    converted payment. Rows already within tolerance are left untouched.
    An active plan's ``remaining_amount_usd`` is re-derived from the final
    remaining amount, since an earlier fix may have used a pre-correction base.
    """
    if resolver is None:
        resolver = build_resolver(db)
    P = models.Payment
    pledge_stats = collect_payment_stats(db, P.pledge_id, P.amount_in_pledge_currency)
    plan_stats = collect_payment_stats(db, P.payment_plan_id, P.amount_in_plan_currency)

    pledge_ids = sorted(k for k, s in pledge_stats.items() if s.counted_count)
    plan_ids = sorted(k for k, s in plan_stats.items() if s.counted_count)
    logger.info("recompute_started", extra={"pledges": len(pledge_ids), "plans": len(plan_ids)})

    pledges_updated = 0
    if pledge_ids:
        rows = db.execute(
            select(models.Pledge.id, models.Pledge.original_amount, models.Pledge.total_paid, models.Pledge.balance)
            .where(models.Pledge.id.in_(pledge_ids))
        ).all()
        for pid, original, total_paid, balance in rows:
            actual = pledge_stats[int(pid)].counted_total
            expected_balance = quantize_money(to_decimal(original) - actual)
            if amounts_equal(total_paid, actual) and amounts_equal(balance, expected_balance):
                continue
            try:
                db.query(models.Pledge).filter(models.Pledge.id == pid).update(
                    {"total_paid": actual, "balance": expected_balance}, synchronize_session=False
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.warning("pledge_recompute_failed", extra={"pledge_id": pid, "error": str(exc)})
                continue
            pledges_updated += 1
            logger.info(
                "pledge_totals_recomputed",
                extra={"pledge_id": pid, "total_paid": str(actual), "balance": str(expected_balance)},
            )

    plans_updated = 0
    if plan_ids:
        PP = models.PaymentPlan
        rows = db.execute(
            select(
                PP.id,
                PP.currency,
                PP.is_active,
                PP.total_planned_amount,
                PP.total_paid,
                PP.remaining_amount,
                PP.remaining_amount_usd,
            ).where(PP.id.in_(plan_ids))
        ).all()
        for plan in rows:
            actual = plan_stats[int(plan.id)].counted_total
            expected_remaining = quantize_money(to_decimal(plan.total_planned_amount) - actual)
            values: dict[str, Decimal] = {}
            if not (
                amounts_equal(plan.total_paid, actual) and amounts_equal(plan.remaining_amount, expected_remaining)
            ):
                values.update(total_paid=actual, remaining_amount=expected_remaining)
            if plan.is_active:
                remaining_usd = _remaining_usd(resolver, plan, expected_remaining)
                if remaining_usd is not None:
                    values["remaining_amount_usd"] = remaining_usd
            if not values:
                continue
            try:
                db.query(PP).filter(PP.id == plan.id).update(values, synchronize_session=False)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.warning("plan_recompute_failed", extra={"plan_id": plan.id, "error": str(exc)})
                continue
            plans_updated += 1
            logger.info(
                "plan_totals_recomputed",
                extra={"plan_id": plan.id, "fields": ",".join(values), "remaining_amount": str(expected_remaining)},
            )

    return RecomputeResult(
        pledges_checked=len(pledge_ids),
        pledges_updated=pledges_updated,
        plans_checked=len(plan_ids),
        plans_updated=plans_updated,
    )


def apply_fixes_and_recompute(
    db: Session,
    issues: Iterable[IntegrityIssue],
    *,
    always_recompute: bool = False,
    resolver: Optional[ExchangeRateResolver] = None,
) -> tuple[FixResult, Optional[RecomputeResult]]:
    """Fix leaves first, then roots: conversions, then pledge and plan totals."""
    result = apply_fixes(db, issues)
    if not (always_recompute or result.payment_conversions_fixed):
        return result, None
    return result, recompute_balances_after_payment_corrections(db, resolver)
