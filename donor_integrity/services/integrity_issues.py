from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional

from donor_integrity.services.money import format_money

# Issue types
PLEDGE_BALANCE = "pledge_balance"
PAYMENT_PLAN_AMOUNTS = "payment_plan_amounts"
PAYMENT_CONVERSION = "payment_conversion"
PAYMENT_PLAN_CONVERSION = "payment_plan_conversion"
INSTALLMENT_CONVERSION = "installment_conversion"
THIRD_PARTY_CONVERSION = "third_party_conversion"
ALLOCATION_CONVERSION = "allocation_conversion"
ALLOCATION_INTEGRITY = "allocation_integrity"

CONVERSION_ISSUE_TYPES = frozenset(
    {
        PAYMENT_CONVERSION,
        PAYMENT_PLAN_CONVERSION,
        INSTALLMENT_CONVERSION,
        THIRD_PARTY_CONVERSION,
        ALLOCATION_CONVERSION,
    }
)

# Record types
PLEDGE = "pledge"
PAYMENT_PLAN = "payment_plan"
PAYMENT = "payment"
INSTALLMENT_SCHEDULE = "installment_schedule"
PAYMENT_ALLOCATION = "payment_allocation"

CRITICAL = "critical"
WARNING = "warning"

UNKNOWN_CONTACT = "Unknown Contact"

# Separates amount and rate inside a conversion fix value ("370.00|3.700000").
FIX_VALUE_SEPARATOR = "|"


def issue_id(issue_type: str, record_id: int, discriminator: Optional[str] = None) -> str:
    """Stable id for a finding: same record and check always yield the same id."""
    if discriminator:
        return f"{issue_type}_{discriminator}_{record_id}"
    return f"{issue_type}_{record_id}"


def conversion_fix_value(amount: Decimal, rate: Optional[Decimal] = None) -> str:
    if rate is None:
        return format_money(amount)
    return f"{format_money(amount)}{FIX_VALUE_SEPARATOR}{rate}"


@dataclass
class IntegrityIssue:
    id: str
    type: str
    severity: str
    contact_id: Optional[int]
    contact_name: str
    record_id: int
    record_type: str
    description: str
    current_value: Optional[Decimal]
    expected_value: Optional[Decimal]
    affected_fields: list[str] = field(default_factory=list)
    fix_value: Optional[str] = None
    fix_record_id: Optional[int] = None

    @property
    def is_critical(self) -> bool:
        return self.severity == CRITICAL

    @property
    def is_fixable(self) -> bool:
        return bool(self.fix_value) and self.fix_record_id is not None and bool(self.affected_fields)

    def to_dict(self) -> dict[str, Any]:
        def _num(v: Optional[Decimal]) -> Optional[str]:
            return None if v is None else format_money(v)

        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "contactId": self.contact_id,
            "contactName": self.contact_name,
            "recordId": self.record_id,
            "recordType": self.record_type,
            "description": self.description,
            "currentValue": _num(self.current_value),
            "expectedValue": _num(self.expected_value),
            "affectedFields": list(self.affected_fields),
            "fixValue": self.fix_value,
            "fixRecordId": self.fix_record_id,
        }


@dataclass(frozen=True)
class CheckSummary:
    total_issues: int
    critical_issues: int
    warning_issues: int
    affected_contacts: int
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalIssues": self.total_issues,
            "criticalIssues": self.critical_issues,
            "warningIssues": self.warning_issues,
            "affectedContacts": self.affected_contacts,
            "timestamp": self.timestamp,
        }


def summarize(issues: Iterable[IntegrityIssue], *, now: Optional[datetime] = None) -> CheckSummary:
    items = list(issues)
    ts = (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    return CheckSummary(
        total_issues=len(items),
        critical_issues=sum(1 for i in items if i.severity == CRITICAL),
        warning_issues=sum(1 for i in items if i.severity == WARNING),
        affected_contacts=len({i.contact_id for i in items if i.contact_id is not None}),
        timestamp=ts,
    )
