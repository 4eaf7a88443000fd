from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from donor_integrity import models
from donor_integrity.services.errors import RateProviderError, RateUnavailableError
from donor_integrity.services.money import quantize_money, to_decimal
from donor_integrity.services.rate_provider import RateProvider, RateQuote

logger = logging.getLogger("donor_integrity.rates")

RATE_QUANT = Decimal("0.000001")
ONE = Decimal("1")
DEFAULT_STALENESS_WINDOW_DAYS = 30


def quantize_rate(value: Any) -> Decimal:
    return to_decimal(value).quantize(RATE_QUANT, rounding=ROUND_HALF_UP)


def clamp_to_today(value: Optional[date], today: date) -> date:
    """Rates are never requested for a date after ``today``."""
    if value is None or value > today:
        return today
    return value


def conversion_date(*candidates: Optional[date], today: date) -> date:
    """First non-null candidate (e.g. received_date, payment_date), clamped; else today."""
    for candidate in candidates:
        if candidate is not None:
            return clamp_to_today(candidate, today)
    return today


@dataclass(frozen=True)
class Conversion:
    converted_amount: Decimal
    rate: Decimal
    on_date: date


class RateCache:
    """Run-scoped memo of resolved rates and provider quotes.

    Created when a run starts and dropped with it; nothing is ever evicted.
    """

    def __init__(self) -> None:
        self._rates: dict[tuple[str, str, date], Decimal] = {}
        self._failed: set[tuple[str, str, date]] = set()
        self._quotes: dict[tuple[str, date], Optional[RateQuote]] = {}

    def get(self, key: tuple[str, str, date]) -> Optional[Decimal]:
        return self._rates.get(key)

    def put(self, key: tuple[str, str, date], rate: Decimal) -> None:
        self._rates[key] = rate
        self._failed.discard(key)

    def mark_failed(self, key: tuple[str, str, date]) -> None:
        self._failed.add(key)

    def has_failed(self, key: tuple[str, str, date]) -> bool:
        return key in self._failed

    def quote(self, key: tuple[str, date]) -> tuple[bool, Optional[RateQuote]]:
        if key in self._quotes:
            return True, self._quotes[key]
        return False, None

    def put_quote(self, key: tuple[str, date], quote: Optional[RateQuote]) -> None:
        self._quotes[key] = quote

    def __len__(self) -> int:
        return len(self._rates)


def upsert_exchange_rate(
    db: Session,
    *,
    base_currency: str,
    target_currency: str,
    rate: Any,
    on_date: date,
    source: str = "manual",
) -> models.ExchangeRate:
    """Insert or update the persisted rate for (base, target, date). Caller commits."""
    base = str(base_currency).strip().upper()
    target = str(target_currency).strip().upper()
    value = quantize_rate(rate)
    if value <= 0:
        raise ValueError("Exchange rate must be positive")
    if base == target:
        raise ValueError("Base and target currency must differ")

    def _existing() -> Optional[models.ExchangeRate]:
        return (
            db.query(models.ExchangeRate)
            .filter(models.ExchangeRate.base_currency == base)
            .filter(models.ExchangeRate.target_currency == target)
            .filter(models.ExchangeRate.rate_date == on_date)
            .first()
        )

    row = _existing()
    if row is not None:
        row.rate = value
        row.source = source
        db.flush()
        return row

    row = models.ExchangeRate(
        base_currency=base,
        target_currency=target,
        rate=value,
        rate_date=on_date,
        source=source,
    )
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        # Inserted concurrently; update the winner instead.
        row = _existing()
        if row is None:
            raise
        row.rate = value
        row.source = source
        db.flush()
    return row


class ExchangeRateResolver:
    """Resolve currency pair rates for a date.

    Order: identity, persisted exact date, persisted within the staleness
    window (closest date not after the requested one), persisted inverse
    pair, then the live provider with write-through into the persisted
    cache. Every failed tier falls through; when all fail the lookup raises
    RateUnavailableError. A non-identity pair never defaults to 1.
    """

    def __init__(
        self,
        db: Session,
        *,
        provider: Optional[RateProvider] = None,
        cache: Optional[RateCache] = None,
        today: Optional[Callable[[], date]] = None,
        staleness_window_days: int = DEFAULT_STALENESS_WINDOW_DAYS,
        provider_base_currency: str = "USD",
    ) -> None:
        self.db = db
        self.provider = provider
        self.cache = cache if cache is not None else RateCache()
        self._today = today or date.today
        self.staleness_window_days = int(staleness_window_days)
        self.provider_base_currency = str(provider_base_currency).upper()
        self.provider_calls = 0

    def today(self) -> date:
        return self._today()

    def resolve_rate(self, from_currency: str, to_currency: str, on_date: Optional[date] = None) -> Decimal:
        src = str(from_currency).strip().upper()
        dst = str(to_currency).strip().upper()
        if src == dst:
            return ONE

        day = clamp_to_today(on_date, self.today())
        key = (src, dst, day)

        cached = self.cache.get(key)
        if cached is not None:
            return cached
        if self.cache.has_failed(key):
            raise RateUnavailableError(src, dst, day)

        for tier in (self._from_store_exact, self._from_store_recent, self._from_store_inverse, self._from_provider):
            try:
                rate = tier(src, dst, day)
            except (SQLAlchemyError, RateProviderError) as exc:
                logger.warning(
                    "rate_source_failed",
                    extra={"tier": tier.__name__, "pair": f"{src}/{dst}", "date": day.isoformat(), "error": str(exc)},
                )
                rate = None
            if rate is not None:
                rate = quantize_rate(rate)
                self.cache.put(key, rate)
                return rate

        self.cache.mark_failed(key)
        raise RateUnavailableError(src, dst, day)

    def convert(
        self,
        amount: Any,
        from_currency: str,
        to_currency: str,
        on_date: Optional[date] = None,
    ) -> Conversion:
        day = clamp_to_today(on_date, self.today())
        if str(from_currency).strip().upper() == str(to_currency).strip().upper():
            return Conversion(converted_amount=quantize_money(amount), rate=ONE, on_date=day)
        rate = self.resolve_rate(from_currency, to_currency, day)
        converted = quantize_money(to_decimal(amount) * rate)
        return Conversion(converted_amount=converted, rate=rate, on_date=day)

    def _store_query(self, base: str, target: str):
        return (
            self.db.query(models.ExchangeRate)
            .filter(models.ExchangeRate.base_currency == base)
            .filter(models.ExchangeRate.target_currency == target)
        )

    def _from_store_exact(self, src: str, dst: str, day: date) -> Optional[Decimal]:
        row = self._store_query(src, dst).filter(models.ExchangeRate.rate_date == day).first()
        return to_decimal(row.rate) if row is not None and row.rate else None

    def _from_store_recent(self, src: str, dst: str, day: date) -> Optional[Decimal]:
        if self.staleness_window_days <= 0:
            return None
        earliest = day - timedelta(days=self.staleness_window_days)
        row = (
            self._store_query(src, dst)
            .filter(models.ExchangeRate.rate_date < day)
            .filter(models.ExchangeRate.rate_date >= earliest)
            .order_by(models.ExchangeRate.rate_date.desc())
            .first()
        )
        if row is None or not row.rate:
            return None
        logger.info(
            "rate_resolved_stale",
            extra={
                "pair": f"{src}/{dst}",
                "requested_date": day.isoformat(),
                "rate_date": row.rate_date.isoformat(),
                "age_days": (day - row.rate_date).days,
            },
        )
        return to_decimal(row.rate)

    def _from_store_inverse(self, src: str, dst: str, day: date) -> Optional[Decimal]:
        row = self._store_query(dst, src).filter(models.ExchangeRate.rate_date == day).first()
        if row is None or not row.rate:
            return None
        return ONE / to_decimal(row.rate)

    def _provider_quote(self, day: date) -> Optional[RateQuote]:
        key = (self.provider_base_currency, day)
        found, quote = self.cache.quote(key)
        if found:
            return quote
        self.provider_calls += 1
        try:
            quote = self.provider.fetch_rates(self.provider_base_currency, day)
        except RateProviderError:
            # Remembered so the run does not call the provider again for this date.
            self.cache.put_quote(key, None)
            raise
        self.cache.put_quote(key, quote)
        return quote

    def _from_provider(self, src: str, dst: str, day: date) -> Optional[Decimal]:
        if self.provider is None:
            return None
        quote = self._provider_quote(day)
        if quote is None:
            return None
        rate = quote.cross_rate(src, dst)
        if rate is None:
            return None
        rate = quantize_rate(rate)
        self._write_through(src, dst, rate, day)
        return rate

    def _write_through(self, src: str, dst: str, rate: Decimal, day: date) -> None:
        try:
            upsert_exchange_rate(
                self.db,
                base_currency=src,
                target_currency=dst,
                rate=rate,
                on_date=day,
                source="provider",
            )
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.warning(
                "rate_write_through_failed",
                extra={"pair": f"{src}/{dst}", "date": day.isoformat(), "error": str(exc)},
            )


def rates_for_base(
    db: Session,
    *,
    base_currency: str,
    on_date: date,
    provider: Optional[RateProvider] = None,
) -> dict[str, Decimal]:
    """All persisted rates for ``base_currency`` on a date, fetched and stored on a miss."""
    base = str(base_currency).strip().upper()
    rows = (
        db.query(models.ExchangeRate)
        .filter(models.ExchangeRate.base_currency == base)
        .filter(models.ExchangeRate.rate_date == on_date)
        .order_by(models.ExchangeRate.target_currency.asc())
        .all()
    )
    if rows:
        rates = {r.target_currency: to_decimal(r.rate) for r in rows}
        rates[base] = ONE
        return rates

    if provider is None:
        raise RateUnavailableError(base, "*", on_date)

    quote = provider.fetch_rates(base, on_date)
    rates: dict[str, Decimal] = {base: ONE}
    for ccy in sorted(quote.rates):
        if ccy == base or ccy not in models.SUPPORTED_CURRENCIES:
            continue
        rate = quote.cross_rate(base, ccy)
        if rate is None:
            continue
        rate = quantize_rate(rate)
        upsert_exchange_rate(
            db,
            base_currency=base,
            target_currency=ccy,
            rate=rate,
            on_date=on_date,
            source="provider",
        )
        rates[ccy] = rate
    db.commit()
    return rates
