from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from donor_integrity import models
from donor_integrity.services.audit_context import AuditContext, AwaitingConversion
from donor_integrity.services.integrity_issues import (
    CRITICAL,
    PAYMENT_PLAN,
    PAYMENT_PLAN_AMOUNTS,
    PLEDGE,
    PLEDGE_BALANCE,
    WARNING,
    IntegrityIssue,
    issue_id,
)
from donor_integrity.services.money import (
    INSTALLMENT_TOLERANCE,
    ZERO,
    amounts_equal,
    format_money,
    quantize_money,
    to_decimal,
)

logger = logging.getLogger("donor_integrity.audit")

COMPLETED = models.PaymentStatus.completed.value
NOT_YET_RECEIVED = (models.PaymentStatus.pending.value, models.PaymentStatus.expected.value)


@dataclass
class PaymentStats:
    counted_total: Decimal = ZERO
    counted_count: int = 0
    unconverted_total: Decimal = ZERO
    unconverted_count: int = 0
    pending_total: Decimal = ZERO
    pending_count: int = 0


def counted_payment_filter(converted_col):
    """Payments that count toward a balance: completed, received and converted."""
    return and_(
        models.Payment.payment_status == COMPLETED,
        models.Payment.received_date.is_not(None),
        converted_col.is_not(None),
    )


def collect_payment_stats(db: Session, group_col, converted_col) -> dict[int, PaymentStats]:
    """Grouped payment sums keyed by ``group_col`` (pledge_id or payment_plan_id)."""
    stats: dict[int, PaymentStats] = defaultdict(PaymentStats)
    P = models.Payment

    counted = db.execute(
        select(group_col, func.coalesce(func.sum(converted_col), 0), func.count(P.id))
        .where(group_col.is_not(None), counted_payment_filter(converted_col))
        .group_by(group_col)
    ).all()
    for key, total, count in counted:
        s = stats[int(key)]
        s.counted_total = quantize_money(total)
        s.counted_count = int(count or 0)

    unconverted = db.execute(
        select(group_col, func.coalesce(func.sum(P.amount), 0), func.count(P.id))
        .where(
            group_col.is_not(None),
            P.payment_status == COMPLETED,
            P.received_date.is_not(None),
            converted_col.is_(None),
        )
        .group_by(group_col)
    ).all()
    for key, total, count in unconverted:
        s = stats[int(key)]
        s.unconverted_total = quantize_money(total)
        s.unconverted_count = int(count or 0)

    pending = db.execute(
        select(group_col, func.coalesce(func.sum(converted_col), 0), func.count(P.id))
        .where(group_col.is_not(None), P.payment_status.in_(NOT_YET_RECEIVED))
        .group_by(group_col)
    ).all()
    for key, total, count in pending:
        s = stats[int(key)]
        s.pending_total = quantize_money(total)
        s.pending_count = int(count or 0)

    return stats


def _log_third_party_payments(ctx: AuditContext, pledge_names: dict[int, str]) -> None:
    P = models.Payment
    rows = ctx.db.execute(
        select(P.id, P.pledge_id, P.amount_in_pledge_currency, P.payer_contact_id)
        .where(
            P.pledge_id.in_(sorted(pledge_names)),
            P.is_third_party_payment.is_(True),
            counted_payment_filter(P.amount_in_pledge_currency),
        )
        .order_by(P.pledge_id, P.id)
    ).all()
    ctx.contacts.preload(r.payer_contact_id for r in rows)
    for payment_id, pledge_id, amount, payer_id in rows:
        logger.info(
            "third_party_payment_counted",
            extra={
                "payment_id": payment_id,
                "pledge_id": pledge_id,
                "payer": ctx.contacts.name(payer_id),
                "beneficiary": pledge_names.get(int(pledge_id)),
                "amount": format_money(amount),
            },
        )


def audit_pledge_balances(ctx: AuditContext) -> list[IntegrityIssue]:
    """Recompute total_paid and balance for every active pledge."""
    issues: list[IntegrityIssue] = []
    Pl = models.Pledge

    pledges = ctx.db.execute(
        select(Pl.id, Pl.contact_id, Pl.original_amount, Pl.total_paid, Pl.balance, Pl.currency)
        .where(Pl.is_active.is_(True))
        .order_by(Pl.id)
    ).all()
    logger.info("pledge_audit_started", extra={"active_pledges": len(pledges)})
    if not pledges:
        return issues

    ctx.contacts.preload(p.contact_id for p in pledges)
    stats = collect_payment_stats(
        ctx.db, models.Payment.pledge_id, models.Payment.amount_in_pledge_currency
    )
    _log_third_party_payments(ctx, {int(p.id): ctx.contacts.name(p.contact_id) for p in pledges})

    for p in pledges:
        try:
            contact_name = ctx.contacts.name(p.contact_id)
            s = stats.get(int(p.id), PaymentStats())
            actual_total_paid = s.counted_total
            expected_balance = quantize_money(to_decimal(p.original_amount) - actual_total_paid)
            recorded_total_paid = quantize_money(p.total_paid)
            recorded_balance = quantize_money(p.balance)

            logger.info(
                "pledge_checked",
                extra={
                    "pledge_id": p.id,
                    "contact": contact_name,
                    "currency": p.currency,
                    "original_amount": format_money(p.original_amount),
                    "recorded_total_paid": format_money(recorded_total_paid),
                    "actual_total_paid": format_money(actual_total_paid),
                    "converted_payments": s.counted_count,
                    "unconverted_payments": s.unconverted_count,
                    "pending_payments": s.pending_count,
                    "pending_total": format_money(s.pending_total),
                },
            )

            if s.unconverted_count:
                logger.warning(
                    "pledge_payments_missing_conversion",
                    extra={"pledge_id": p.id, "count": s.unconverted_count},
                )
                ctx.awaiting_conversion.append(
                    AwaitingConversion(
                        record_type=PLEDGE,
                        record_id=int(p.id),
                        contact_id=p.contact_id,
                        contact_name=contact_name,
                        currency=p.currency,
                        count=s.unconverted_count,
                        original_total=s.unconverted_total,
                    )
                )

            if not amounts_equal(actual_total_paid, recorded_total_paid):
                issues.append(
                    IntegrityIssue(
                        id=issue_id(PLEDGE_BALANCE, p.id, "total_paid"),
                        type=PLEDGE_BALANCE,
                        severity=CRITICAL,
                        contact_id=p.contact_id,
                        contact_name=contact_name,
                        record_id=int(p.id),
                        record_type=PLEDGE,
                        description=(
                            f"Multi-currency total paid mismatch. Recorded: {format_money(recorded_total_paid)} "
                            f"{p.currency}, Actual: {format_money(actual_total_paid)} {p.currency} "
                            f"({s.counted_count} converted payments, {s.unconverted_count} need conversion)"
                        ),
                        current_value=recorded_total_paid,
                        expected_value=actual_total_paid,
                        affected_fields=["total_paid"],
                        fix_value=format_money(actual_total_paid),
                        fix_record_id=int(p.id),
                    )
                )

            if not amounts_equal(recorded_balance, expected_balance):
                issues.append(
                    IntegrityIssue(
                        id=issue_id(PLEDGE_BALANCE, p.id, "balance"),
                        type=PLEDGE_BALANCE,
                        severity=CRITICAL,
                        contact_id=p.contact_id,
                        contact_name=contact_name,
                        record_id=int(p.id),
                        record_type=PLEDGE,
                        description=(
                            f"Multi-currency balance incorrect. Recorded: {format_money(recorded_balance)} "
                            f"{p.currency}, Expected: {format_money(expected_balance)} {p.currency}"
                        ),
                        current_value=recorded_balance,
                        expected_value=expected_balance,
                        affected_fields=["balance"],
                        fix_value=format_money(expected_balance),
                        fix_record_id=int(p.id),
                    )
                )
        except Exception:
            logger.exception("pledge_audit_failed", extra={"pledge_id": p.id})

    return issues


def audit_payment_plan_balances(ctx: AuditContext) -> list[IntegrityIssue]:
    """Recompute total_paid, remaining_amount and installment_amount for active plans."""
    issues: list[IntegrityIssue] = []
    PP = models.PaymentPlan
    Pl = models.Pledge

    plans = ctx.db.execute(
        select(
            PP.id,
            PP.total_planned_amount,
            PP.total_paid,
            PP.remaining_amount,
            PP.installment_amount,
            PP.number_of_installments,
            PP.currency,
            Pl.contact_id,
        )
        .outerjoin(Pl, Pl.id == PP.pledge_id)
        .where(PP.is_active.is_(True))
        .order_by(PP.id)
    ).all()
    logger.info("plan_audit_started", extra={"active_plans": len(plans)})
    if not plans:
        return issues

    ctx.contacts.preload(p.contact_id for p in plans)
    stats = collect_payment_stats(
        ctx.db, models.Payment.payment_plan_id, models.Payment.amount_in_plan_currency
    )

    for plan in plans:
        try:
            contact_name = ctx.contacts.name(plan.contact_id)
            s = stats.get(int(plan.id), PaymentStats())
            planned = to_decimal(plan.total_planned_amount) or ZERO
            actual_total_paid = s.counted_total
            expected_remaining = quantize_money(planned - actual_total_paid)
            ctx.plan_expected_remaining[int(plan.id)] = expected_remaining
            recorded_total_paid = quantize_money(plan.total_paid)
            recorded_remaining = quantize_money(plan.remaining_amount)

            installments = int(plan.number_of_installments or 0)
            exact_installment = planned / installments if installments > 0 else ZERO
            recorded_installment = quantize_money(plan.installment_amount)

            logger.info(
                "plan_checked",
                extra={
                    "plan_id": plan.id,
                    "contact": contact_name,
                    "currency": plan.currency,
                    "planned": format_money(planned),
                    "recorded_total_paid": format_money(recorded_total_paid),
                    "actual_total_paid": format_money(actual_total_paid),
                    "converted_payments": s.counted_count,
                    "unconverted_payments": s.unconverted_count,
                    "pending_payments": s.pending_count,
                    "pending_total": format_money(s.pending_total),
                },
            )

            if s.unconverted_count:
                logger.warning(
                    "plan_payments_missing_conversion",
                    extra={"plan_id": plan.id, "count": s.unconverted_count},
                )
                ctx.awaiting_conversion.append(
                    AwaitingConversion(
                        record_type=PAYMENT_PLAN,
                        record_id=int(plan.id),
                        contact_id=plan.contact_id,
                        contact_name=contact_name,
                        currency=plan.currency,
                        count=s.unconverted_count,
                        original_total=s.unconverted_total,
                    )
                )

            if not amounts_equal(actual_total_paid, recorded_total_paid):
                issues.append(
                    IntegrityIssue(
                        id=issue_id(PAYMENT_PLAN_AMOUNTS, plan.id, "total_paid"),
                        type=PAYMENT_PLAN_AMOUNTS,
                        severity=CRITICAL,
                        contact_id=plan.contact_id,
                        contact_name=contact_name,
                        record_id=int(plan.id),
                        record_type=PAYMENT_PLAN,
                        description=(
                            f"Multi-currency plan total paid mismatch. Recorded: "
                            f"{format_money(recorded_total_paid)} {plan.currency}, Actual: "
                            f"{format_money(actual_total_paid)} {plan.currency} "
                            f"({s.counted_count} converted payments, {s.unconverted_count} need conversion)"
                        ),
                        current_value=recorded_total_paid,
                        expected_value=actual_total_paid,
                        affected_fields=["total_paid"],
                        fix_value=format_money(actual_total_paid),
                        fix_record_id=int(plan.id),
                    )
                )

            if not amounts_equal(recorded_remaining, expected_remaining):
                issues.append(
                    IntegrityIssue(
                        id=issue_id(PAYMENT_PLAN_AMOUNTS, plan.id, "remaining"),
                        type=PAYMENT_PLAN_AMOUNTS,
                        severity=CRITICAL,
                        contact_id=plan.contact_id,
                        contact_name=contact_name,
                        record_id=int(plan.id),
                        record_type=PAYMENT_PLAN,
                        description=(
                            f"Multi-currency remaining amount incorrect. Recorded: "
                            f"{format_money(recorded_remaining)} {plan.currency}, Expected: "
                            f"{format_money(expected_remaining)} {plan.currency}"
                        ),
                        current_value=recorded_remaining,
                        expected_value=expected_remaining,
                        affected_fields=["remaining_amount"],
                        fix_value=format_money(expected_remaining),
                        fix_record_id=int(plan.id),
                    )
                )

            if abs(recorded_installment - exact_installment) > INSTALLMENT_TOLERANCE:
                expected_installment = quantize_money(exact_installment)
                issues.append(
                    IntegrityIssue(
                        id=issue_id(PAYMENT_PLAN_AMOUNTS, plan.id, "installment"),
                        type=PAYMENT_PLAN_AMOUNTS,
                        severity=WARNING,
                        contact_id=plan.contact_id,
                        contact_name=contact_name,
                        record_id=int(plan.id),
                        record_type=PAYMENT_PLAN,
                        description=(
                            f"Installment amount may be incorrect. Recorded: "
                            f"{format_money(recorded_installment)} {plan.currency}, Expected: "
                            f"{format_money(expected_installment)} {plan.currency}"
                        ),
                        current_value=recorded_installment,
                        expected_value=expected_installment,
                        affected_fields=["installment_amount"],
                        fix_value=format_money(expected_installment),
                        fix_record_id=int(plan.id),
                    )
                )
        except Exception:
            logger.exception("plan_audit_failed", extra={"plan_id": plan.id})

    return issues
