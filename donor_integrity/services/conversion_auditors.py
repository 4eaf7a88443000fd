from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from sqlalchemy import select

from donor_integrity import models
from donor_integrity.services.audit_context import AuditContext
from donor_integrity.services.errors import RateUnavailableError
from donor_integrity.services.exchange_rate_service import conversion_date
from donor_integrity.services.integrity_issues import (
    ALLOCATION_CONVERSION,
    INSTALLMENT_CONVERSION,
    INSTALLMENT_SCHEDULE,
    PAYMENT,
    PAYMENT_ALLOCATION,
    PAYMENT_CONVERSION,
    PAYMENT_PLAN,
    PAYMENT_PLAN_CONVERSION,
    THIRD_PARTY_CONVERSION,
    IntegrityIssue,
    conversion_fix_value,
    issue_id,
)
from donor_integrity.services.money import (
    conversion_severity,
    format_money,
    percent_error,
    quantize_money,
    to_decimal,
)

logger = logging.getLogger("donor_integrity.audit")

USD = models.Currency.USD.value


def check_conversion(
    ctx: AuditContext,
    *,
    issue_type: str,
    discriminator: str,
    label: str,
    record_type: str,
    record_id: int,
    contact_id: Optional[int],
    contact_name: str,
    amount: Any,
    from_currency: str,
    to_currency: str,
    on_date: date,
    recorded: Any,
    amount_field: str,
    rate_field: Optional[str] = None,
) -> Optional[IntegrityIssue]:
    """Compare one stored converted amount against a fresh conversion.

    Returns None when the stored value is within the noise floor, or when no
    rate can be resolved (the check is skipped and counted on the context).
    """
    if amount is None or not from_currency or not to_currency:
        return None

    try:
        conversion = ctx.resolver.convert(amount, from_currency, to_currency, on_date)
    except RateUnavailableError as exc:
        ctx.skipped_conversions += 1
        logger.warning(
            "conversion_check_skipped",
            extra={"record_type": record_type, "record_id": record_id, "check": discriminator, "error": str(exc)},
        )
        return None

    expected = conversion.converted_amount
    current = quantize_money(recorded)
    severity = conversion_severity(expected, current)
    if severity is None:
        return None

    error_pct = percent_error(expected, current)
    fields = [amount_field] + ([rate_field] if rate_field else [])
    return IntegrityIssue(
        id=issue_id(issue_type, record_id, discriminator),
        type=issue_type,
        severity=severity,
        contact_id=contact_id,
        contact_name=contact_name,
        record_id=int(record_id),
        record_type=record_type,
        description=(
            f"{label} conversion incorrect ({error_pct:.1f}% error). "
            f"{format_money(amount)} {from_currency} -> Recorded: {format_money(current)} {to_currency}, "
            f"Expected: {format_money(expected)} {to_currency} (rate {conversion.rate} on {conversion.on_date.isoformat()})"
        ),
        current_value=current,
        expected_value=expected,
        affected_fields=fields,
        fix_value=conversion_fix_value(expected, conversion.rate if rate_field else None),
        fix_record_id=int(record_id),
    )


def _pledge_index(ctx: AuditContext) -> dict[int, tuple[Optional[int], str]]:
    rows = ctx.db.execute(select(models.Pledge.id, models.Pledge.contact_id, models.Pledge.currency)).all()
    ctx.contacts.preload(r.contact_id for r in rows)
    return {int(r.id): (r.contact_id, r.currency) for r in rows}


def _plan_index(ctx: AuditContext) -> dict[int, tuple[Optional[int], str]]:
    rows = ctx.db.execute(
        select(models.PaymentPlan.id, models.PaymentPlan.pledge_id, models.PaymentPlan.currency)
    ).all()
    return {int(r.id): (r.pledge_id, r.currency) for r in rows}


def audit_payment_conversions(ctx: AuditContext) -> list[IntegrityIssue]:
    """USD, pledge-currency and plan-currency conversions of every payment.

    USD for third-party payments is left to ``audit_third_party_conversions``
    so it is attributed to the payer.
    """
    issues: list[IntegrityIssue] = []
    P = models.Payment
    payments = ctx.db.execute(
        select(
            P.id,
            P.amount,
            P.currency,
            P.amount_usd,
            P.amount_in_pledge_currency,
            P.amount_in_plan_currency,
            P.payment_date,
            P.received_date,
            P.pledge_id,
            P.payment_plan_id,
            P.is_third_party_payment,
        ).order_by(P.id)
    ).all()
    logger.info("payment_conversion_audit_started", extra={"payments": len(payments)})
    if not payments:
        return issues

    pledges = _pledge_index(ctx)
    plans = _plan_index(ctx)

    for pay in payments:
        try:
            contact_id, pledge_currency = pledges.get(pay.pledge_id, (None, None))
            plan_pledge_id, plan_currency = plans.get(pay.payment_plan_id, (None, None))
            # Plan-only payments belong to the plan's pledge contact.
            if contact_id is None and plan_pledge_id is not None:
                contact_id = pledges.get(plan_pledge_id, (None, None))[0]
            contact_name = ctx.contacts.name(contact_id)
            on_date = conversion_date(pay.received_date, pay.payment_date, today=ctx.today)

            common = dict(
                issue_type=PAYMENT_CONVERSION,
                record_type=PAYMENT,
                record_id=pay.id,
                contact_id=contact_id,
                contact_name=contact_name,
                amount=pay.amount,
                from_currency=pay.currency,
                on_date=on_date,
            )

            checks = []
            if not pay.is_third_party_payment:
                checks.append(
                    dict(
                        discriminator="usd",
                        label="USD",
                        to_currency=USD,
                        recorded=pay.amount_usd,
                        amount_field="amount_usd",
                        rate_field="exchange_rate",
                    )
                )
            if pledge_currency:
                checks.append(
                    dict(
                        discriminator="pledge",
                        label="Pledge currency",
                        to_currency=pledge_currency,
                        recorded=pay.amount_in_pledge_currency,
                        amount_field="amount_in_pledge_currency",
                        rate_field="pledge_currency_exchange_rate",
                    )
                )
            if plan_currency:
                checks.append(
                    dict(
                        discriminator="plan",
                        label="Plan currency",
                        to_currency=plan_currency,
                        recorded=pay.amount_in_plan_currency,
                        amount_field="amount_in_plan_currency",
                        rate_field="plan_currency_exchange_rate",
                    )
                )

            for check in checks:
                issue = check_conversion(ctx, **common, **check)
                if issue is not None:
                    issues.append(issue)
        except Exception:
            logger.exception("payment_conversion_audit_failed", extra={"payment_id": pay.id})

    return issues


def audit_payment_plan_conversions(ctx: AuditContext) -> list[IntegrityIssue]:
    """USD amounts stored on active payment plans, at the current rate.

    Plans carry no received or payment date, so the conversion date is today.
    """
    issues: list[IntegrityIssue] = []
    PP = models.PaymentPlan
    plans = ctx.db.execute(
        select(
            PP.id,
            PP.currency,
            PP.total_planned_amount,
            PP.total_planned_amount_usd,
            PP.installment_amount,
            PP.installment_amount_usd,
            PP.remaining_amount,
            PP.remaining_amount_usd,
            models.Pledge.contact_id,
        )
        .outerjoin(models.Pledge, models.Pledge.id == PP.pledge_id)
        .where(PP.is_active.is_(True))
        .order_by(PP.id)
    ).all()
    logger.info("plan_conversion_audit_started", extra={"plans": len(plans)})
    ctx.contacts.preload(p.contact_id for p in plans)

    for plan in plans:
        try:
            remaining = ctx.plan_expected_remaining.get(int(plan.id), to_decimal(plan.remaining_amount))
            common = dict(
                issue_type=PAYMENT_PLAN_CONVERSION,
                record_type=PAYMENT_PLAN,
                record_id=plan.id,
                contact_id=plan.contact_id,
                contact_name=ctx.contacts.name(plan.contact_id),
                from_currency=plan.currency,
                to_currency=USD,
                on_date=conversion_date(today=ctx.today),
            )
            checks = (
                dict(
                    discriminator="total_usd",
                    label="Planned total USD",
                    amount=plan.total_planned_amount,
                    recorded=plan.total_planned_amount_usd,
                    amount_field="total_planned_amount_usd",
                    rate_field="exchange_rate",
                ),
                dict(
                    discriminator="installment_usd",
                    label="Installment USD",
                    amount=plan.installment_amount,
                    recorded=plan.installment_amount_usd,
                    amount_field="installment_amount_usd",
                ),
                dict(
                    discriminator="remaining_usd",
                    label="Remaining USD",
                    amount=remaining,
                    recorded=plan.remaining_amount_usd,
                    amount_field="remaining_amount_usd",
                ),
            )
            for check in checks:
                issue = check_conversion(ctx, **common, **check)
                if issue is not None:
                    issues.append(issue)
        except Exception:
            logger.exception("plan_conversion_audit_failed", extra={"plan_id": plan.id})

    return issues


def audit_installment_conversions(ctx: AuditContext) -> list[IntegrityIssue]:
    """Installment USD amounts at the current rate; schedule dates are not conversion dates."""
    issues: list[IntegrityIssue] = []
    IS = models.InstallmentSchedule
    PP = models.PaymentPlan
    rows = ctx.db.execute(
        select(
            IS.id,
            IS.installment_amount,
            IS.installment_amount_usd,
            IS.currency,
            models.Pledge.contact_id,
        )
        .outerjoin(PP, PP.id == IS.payment_plan_id)
        .outerjoin(models.Pledge, models.Pledge.id == PP.pledge_id)
        .order_by(IS.id)
    ).all()
    logger.info("installment_conversion_audit_started", extra={"installments": len(rows)})
    ctx.contacts.preload(r.contact_id for r in rows)

    for row in rows:
        try:
            issue = check_conversion(
                ctx,
                issue_type=INSTALLMENT_CONVERSION,
                discriminator="usd",
                label="Installment USD",
                record_type=INSTALLMENT_SCHEDULE,
                record_id=row.id,
                contact_id=row.contact_id,
                contact_name=ctx.contacts.name(row.contact_id),
                amount=row.installment_amount,
                from_currency=row.currency,
                to_currency=USD,
                on_date=conversion_date(today=ctx.today),
                recorded=row.installment_amount_usd,
                amount_field="installment_amount_usd",
            )
            if issue is not None:
                issues.append(issue)
        except Exception:
            logger.exception("installment_conversion_audit_failed", extra={"installment_id": row.id})

    return issues


def audit_third_party_conversions(ctx: AuditContext) -> list[IntegrityIssue]:
    """USD conversions of third-party payments, attributed to the payer."""
    issues: list[IntegrityIssue] = []
    P = models.Payment
    rows = ctx.db.execute(
        select(
            P.id,
            P.amount,
            P.currency,
            P.amount_usd,
            P.payment_date,
            P.received_date,
            P.payer_contact_id,
            models.Pledge.contact_id.label("beneficiary_id"),
        )
        .outerjoin(models.Pledge, models.Pledge.id == P.pledge_id)
        .where(P.is_third_party_payment.is_(True))
        .order_by(P.id)
    ).all()
    logger.info("third_party_conversion_audit_started", extra={"payments": len(rows)})
    ctx.contacts.preload([r.payer_contact_id for r in rows] + [r.beneficiary_id for r in rows])

    for row in rows:
        try:
            payer_id = row.payer_contact_id if row.payer_contact_id is not None else row.beneficiary_id
            issue = check_conversion(
                ctx,
                issue_type=THIRD_PARTY_CONVERSION,
                discriminator="usd",
                label=f"Third-party USD (beneficiary {ctx.contacts.name(row.beneficiary_id)})",
                record_type=PAYMENT,
                record_id=row.id,
                contact_id=payer_id,
                contact_name=ctx.contacts.name(payer_id),
                amount=row.amount,
                from_currency=row.currency,
                to_currency=USD,
                on_date=conversion_date(row.received_date, row.payment_date, today=ctx.today),
                recorded=row.amount_usd,
                amount_field="amount_usd",
                rate_field="exchange_rate",
            )
            if issue is not None:
                issues.append(issue)
        except Exception:
            logger.exception("third_party_conversion_audit_failed", extra={"payment_id": row.id})

    return issues


def audit_allocation_conversions(ctx: AuditContext) -> list[IntegrityIssue]:
    """USD and pledge-currency conversions of payment allocations."""
    issues: list[IntegrityIssue] = []
    A = models.PaymentAllocation
    P = models.Payment
    rows = ctx.db.execute(
        select(
            A.id,
            A.allocated_amount,
            A.currency,
            A.allocated_amount_usd,
            A.allocated_amount_in_pledge_currency,
            P.payment_date,
            P.received_date,
            models.Pledge.contact_id,
            models.Pledge.currency.label("pledge_currency"),
        )
        .join(P, P.id == A.payment_id)
        .outerjoin(models.Pledge, models.Pledge.id == A.pledge_id)
        .order_by(A.id)
    ).all()
    logger.info("allocation_conversion_audit_started", extra={"allocations": len(rows)})
    ctx.contacts.preload(r.contact_id for r in rows)

    for row in rows:
        try:
            common = dict(
                issue_type=ALLOCATION_CONVERSION,
                record_type=PAYMENT_ALLOCATION,
                record_id=row.id,
                contact_id=row.contact_id,
                contact_name=ctx.contacts.name(row.contact_id),
                amount=row.allocated_amount,
                from_currency=row.currency,
                on_date=conversion_date(row.received_date, row.payment_date, today=ctx.today),
            )
            checks = [
                dict(
                    discriminator="usd",
                    label="Allocation USD",
                    to_currency=USD,
                    recorded=row.allocated_amount_usd,
                    amount_field="allocated_amount_usd",
                )
            ]
            if row.pledge_currency:
                checks.append(
                    dict(
                        discriminator="pledge",
                        label="Allocation pledge currency",
                        to_currency=row.pledge_currency,
                        recorded=row.allocated_amount_in_pledge_currency,
                        amount_field="allocated_amount_in_pledge_currency",
                    )
                )
            for check in checks:
                issue = check_conversion(ctx, **common, **check)
                if issue is not None:
                    issues.append(issue)
        except Exception:
            logger.exception("allocation_conversion_audit_failed", extra={"allocation_id": row.id})

    return issues

