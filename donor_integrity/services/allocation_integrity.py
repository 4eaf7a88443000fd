from __future__ import annotations

import logging

from sqlalchemy import and_, func, select

from donor_integrity import models
from donor_integrity.services.audit_context import AuditContext
from donor_integrity.services.integrity_issues import (
    ALLOCATION_INTEGRITY,
    CRITICAL,
    PAYMENT,
    IntegrityIssue,
    issue_id,
)
from donor_integrity.services.money import amounts_equal, format_money, quantize_money

logger = logging.getLogger("donor_integrity.audit")


def audit_allocation_integrity(ctx: AuditContext) -> list[IntegrityIssue]:
    """Third-party split payments whose same-currency allocations do not add up.

    Findings are critical but carry no fix value: which allocation is wrong
    cannot be decided automatically.
    """
    issues: list[IntegrityIssue] = []
    P = models.Payment
    A = models.PaymentAllocation

    rows = ctx.db.execute(
        select(
            P.id,
            P.amount,
            P.currency,
            P.payer_contact_id,
            func.coalesce(func.sum(A.allocated_amount), 0).label("allocated_total"),
            func.count(A.id).label("allocation_count"),
        )
        .join(A, and_(A.payment_id == P.id, A.currency == P.currency))
        .where(
            P.is_third_party_payment.is_(True),
            P.payment_status == models.PaymentStatus.completed.value,
        )
        .group_by(P.id, P.amount, P.currency, P.payer_contact_id)
        .order_by(P.id)
    ).all()
    logger.info("allocation_integrity_audit_started", extra={"payments": len(rows)})
    ctx.contacts.preload(r.payer_contact_id for r in rows)

    for row in rows:
        try:
            amount = quantize_money(row.amount)
            allocated = quantize_money(row.allocated_total)
            if amounts_equal(amount, allocated):
                continue
            payer_name = ctx.contacts.name(row.payer_contact_id)
            issues.append(
                IntegrityIssue(
                    id=issue_id(ALLOCATION_INTEGRITY, row.id),
                    type=ALLOCATION_INTEGRITY,
                    severity=CRITICAL,
                    contact_id=row.payer_contact_id,
                    contact_name=payer_name,
                    record_id=int(row.id),
                    record_type=PAYMENT,
                    description=(
                        f"Third-party payment allocations do not match payment amount. "
                        f"Payment: {format_money(amount)} {row.currency}, Allocated: "
                        f"{format_money(allocated)} {row.currency} across {row.allocation_count} allocations"
                    ),
                    current_value=allocated,
                    expected_value=amount,
                    affected_fields=["allocated_amount"],
                    fix_value=None,
                    fix_record_id=int(row.id),
                )
            )
        except Exception:
            logger.exception("allocation_integrity_audit_failed", extra={"payment_id": row.id})

    return issues
