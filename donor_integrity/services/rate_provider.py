from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from donor_integrity.services.errors import RateProviderError

logger = logging.getLogger("donor_integrity.rates")


@dataclass(frozen=True)
class RateQuote:
    """Rates quoted against ``base``: 1 base = rates[CCY] CCY."""

    base: str
    as_of: date
    rates: dict[str, Decimal] = field(default_factory=dict)

    def cross_rate(self, from_currency: str, to_currency: str) -> Optional[Decimal]:
        quoted = dict(self.rates)
        quoted.setdefault(self.base, Decimal("1"))
        from_rate = quoted.get(from_currency)
        to_rate = quoted.get(to_currency)
        if not from_rate or not to_rate:
            return None
        return to_rate / from_rate


class RateProvider(Protocol):
    def fetch_rates(self, base_currency: str, on_date: date) -> RateQuote: ...


def _parse_rate(raw: Any) -> Optional[Decimal]:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    return value if value > 0 else None


def parse_rate_payload(payload: dict[str, Any], base_currency: str, on_date: date) -> RateQuote:
    """Normalize the provider response shapes we accept into a RateQuote.

    Accepted: ``{"rates": {...}}``, ``{"conversion_rates": {...}}`` and the
    ``{"quotes": {"USDILS": ...}, "source": "USD"}`` shape, where quote keys
    are prefixed with the source currency.
    """
    if not isinstance(payload, dict):
        raise RateProviderError("Rate provider returned a non-object payload")

    if payload.get("success") is False or payload.get("result") == "error":
        err = payload.get("error") or payload.get("error-type") or "unknown error"
        raise RateProviderError(f"Rate provider error: {err}")

    base = str(payload.get("base") or payload.get("source") or payload.get("base_code") or base_currency)
    base = base.upper()

    rates: dict[str, Decimal] = {}
    raw_rates = payload.get("rates") or payload.get("conversion_rates")
    if isinstance(raw_rates, dict):
        for ccy, raw in raw_rates.items():
            value = _parse_rate(raw)
            if value is not None:
                rates[str(ccy).upper()] = value
    elif isinstance(payload.get("quotes"), dict):
        for key, raw in payload["quotes"].items():
            k = str(key).upper()
            if not k.startswith(base) or len(k) != len(base) + 3:
                continue
            value = _parse_rate(raw)
            if value is not None:
                rates[k[len(base) :]] = value

    if not rates:
        raise RateProviderError("Rate provider returned no rates")

    as_of = on_date
    raw_date = payload.get("date")
    if raw_date:
        try:
            as_of = date.fromisoformat(str(raw_date)[:10])
        except ValueError:
            as_of = on_date

    return RateQuote(base=base, as_of=as_of, rates=rates)


class HttpRateProvider:
    """HTTP client for the historical rates endpoint shared with the web UI."""

    def __init__(self, url: str, *, api_key: Optional[str] = None, timeout_seconds: float = 10.0):
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = float(timeout_seconds)

    def _build_url(self, base_currency: str, on_date: date) -> str:
        params = {"date": on_date.isoformat(), "source": base_currency, "base": base_currency}
        if self.api_key:
            params["access_key"] = self.api_key
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}{urlencode(params)}"

    def fetch_rates(self, base_currency: str, on_date: date) -> RateQuote:
        req = Request(
            self._build_url(base_currency, on_date),
            headers={
                "User-Agent": "Donor-Integrity/1.0 (rate lookup)",
                "Accept": "application/json",
            },
            method="GET",
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read().decode("utf-8", "ignore")
        except (URLError, TimeoutError, OSError) as exc:
            raise RateProviderError(f"Rate provider request failed: {exc}") from exc

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise RateProviderError("Rate provider returned invalid JSON") from exc

        quote = parse_rate_payload(payload, base_currency, on_date)
        logger.info(
            "rate_provider_fetched",
            extra={"base": quote.base, "date": quote.as_of.isoformat(), "count": len(quote.rates)},
        )
        return quote


def build_rate_provider(settings) -> Optional[HttpRateProvider]:
    url = str(getattr(settings, "exchange_rate_api_url", "") or "").strip()
    if not url:
        logger.warning("rate_provider_disabled")
        return None
    return HttpRateProvider(
        url,
        api_key=getattr(settings, "exchange_rate_api_key", None),
        timeout_seconds=float(getattr(settings, "exchange_rate_timeout_seconds", 10.0)),
    )
