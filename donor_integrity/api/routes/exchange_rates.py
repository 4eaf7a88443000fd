from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from donor_integrity.api.deps import get_rate_provider
from donor_integrity.config import settings
from donor_integrity.database import get_db
from donor_integrity.schemas.exchange_rates import ExchangeRateCreate, ExchangeRateRead, ExchangeRatesRead
from donor_integrity.services.errors import RateProviderError, RateUnavailableError
from donor_integrity.services.exchange_rate_service import clamp_to_today, rates_for_base, upsert_exchange_rate

router = APIRouter(prefix="/exchange-rates", tags=["exchange-rates"])

_db_dep = Depends(get_db)
_provider_dep = Depends(get_rate_provider)


@router.get("", response_model=ExchangeRatesRead)
def get_exchange_rates(
    on_date: Optional[date] = Query(None, alias="date"),
    db: Session = _db_dep,
    provider=_provider_dep,
):
    """Rates for the base currency on a date; future dates are served as today."""
    day = clamp_to_today(on_date, date.today())
    base = settings.exchange_rate_base_currency
    try:
        rates = rates_for_base(db, base_currency=base, on_date=day, provider=provider)
    except RateUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RateProviderError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return {"currency": base, "date": day, "rates": rates}


@router.post("", response_model=ExchangeRateRead, status_code=status.HTTP_200_OK)
def upsert_manual_rate(payload: ExchangeRateCreate, db: Session = _db_dep):
    try:
        row = upsert_exchange_rate(
            db,
            base_currency=payload.from_currency,
            target_currency=payload.to_currency,
            rate=payload.rate,
            on_date=payload.date,
            source="manual",
        )
    except ValueError as exc:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    db.commit()
    db.refresh(row)
    return row
