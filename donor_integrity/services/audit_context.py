from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from donor_integrity import models
from donor_integrity.services.exchange_rate_service import ExchangeRateResolver
from donor_integrity.services.integrity_issues import UNKNOWN_CONTACT


class ContactDirectory:
    """Contact display names, loaded in batches instead of one query per record."""

    def __init__(self, db: Session) -> None:
        self.db = db
        self._names: dict[int, str] = {}

    def preload(self, contact_ids: Iterable[Optional[int]]) -> None:
        wanted = {int(cid) for cid in contact_ids if cid is not None and int(cid) not in self._names}
        if not wanted:
            return
        rows = self.db.execute(
            select(models.Contact.id, models.Contact.first_name, models.Contact.last_name).where(
                models.Contact.id.in_(sorted(wanted))
            )
        ).all()
        for cid, first, last in rows:
            self._names[int(cid)] = f"{first or ''} {last or ''}".strip() or UNKNOWN_CONTACT
        for cid in wanted:
            self._names.setdefault(cid, UNKNOWN_CONTACT)

    def name(self, contact_id: Optional[int]) -> str:
        if contact_id is None:
            return UNKNOWN_CONTACT
        cid = int(contact_id)
        if cid not in self._names:
            self.preload([cid])
        return self._names[cid]


@dataclass
class AwaitingConversion:
    """Completed, received payments excluded from a total because they lack a converted amount."""

    record_type: str
    record_id: int
    contact_id: Optional[int]
    contact_name: str
    currency: str
    count: int
    original_total: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "recordType": self.record_type,
            "recordId": self.record_id,
            "contactId": self.contact_id,
            "contactName": self.contact_name,
            "currency": self.currency,
            "count": self.count,
            "originalTotal": str(self.original_total),
        }


@dataclass
class AuditContext:
    db: Session
    resolver: ExchangeRateResolver
    contacts: ContactDirectory
    awaiting_conversion: list[AwaitingConversion] = field(default_factory=list)
    # Recomputed plan remaining amounts, so USD checks use corrected bases.
    plan_expected_remaining: dict[int, Decimal] = field(default_factory=dict)
    skipped_conversions: int = 0

    @property
    def today(self) -> date:
        return self.resolver.today()

    @classmethod
    def for_session(cls, db: Session, resolver: ExchangeRateResolver) -> AuditContext:
        return cls(db=db, resolver=resolver, contacts=ContactDirectory(db))
