from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from donor_integrity.models import SUPPORTED_CURRENCIES


def _currency_code(value: str) -> str:
    code = str(value or "").strip().upper()
    if code not in SUPPORTED_CURRENCIES:
        raise ValueError(f"Unsupported currency: {value}. Supported: {', '.join(sorted(SUPPORTED_CURRENCIES))}")
    return code


class ExchangeRatesRead(BaseModel):
    currency: str
    date: dt.date
    rates: Dict[str, Decimal]


class ExchangeRateCreate(BaseModel):
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)
    rate: Decimal = Field(..., gt=0)
    date: dt.date

    @field_validator("from_currency", "to_currency")
    @classmethod
    def _known_currency(cls, v: str) -> str:
        return _currency_code(v)


class ExchangeRateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    base_currency: str
    target_currency: str
    rate: Decimal
    rate_date: dt.date
    source: str
    updated_at: Optional[dt.datetime] = None
