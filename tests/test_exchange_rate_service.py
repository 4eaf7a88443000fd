from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import Query

from donor_integrity import models
from donor_integrity.services.errors import RateUnavailableError
from donor_integrity.services.exchange_rate_service import (
    RateCache,
    conversion_date,
    rates_for_base,
    upsert_exchange_rate,
)


def _rates(db, base, target):
    return (
        db.query(models.ExchangeRate)
        .filter(models.ExchangeRate.base_currency == base)
        .filter(models.ExchangeRate.target_currency == target)
        .all()
    )


def test_same_currency_is_identity_without_lookup(make_resolver, make_provider):
    provider = make_provider(fail=True)
    resolver = make_resolver(provider=provider)

    conv = resolver.convert("100", "EUR", "EUR", date(2024, 3, 1))

    assert conv.converted_amount == Decimal("100.00")
    assert conv.rate == Decimal("1")
    assert resolver.resolve_rate("ils", "ILS") == Decimal("1")
    assert provider.calls == []


def test_exact_persisted_rate(db_session, build, make_resolver):
    build.rate("USD", "ILS", "3.7", on_date=date(2024, 3, 1))
    db_session.commit()

    resolver = make_resolver()
    assert resolver.resolve_rate("USD", "ILS", date(2024, 3, 1)) == Decimal("3.700000")


def test_recent_rate_within_window_prefers_closest_earlier_date(db_session, build, make_resolver, today):
    build.rate("USD", "ILS", "3.5", on_date=today - timedelta(days=20))
    build.rate("USD", "ILS", "3.6", on_date=today - timedelta(days=5))
    db_session.commit()

    assert make_resolver().resolve_rate("USD", "ILS", today) == Decimal("3.600000")


def test_rate_older_than_window_is_not_used(db_session, build, make_resolver, today):
    build.rate("USD", "ILS", "3.5", on_date=today - timedelta(days=31))
    db_session.commit()

    with pytest.raises(RateUnavailableError):
        make_resolver().resolve_rate("USD", "ILS", today)


def test_inverse_pair_is_inverted(db_session, build, make_resolver):
    build.rate("ILS", "USD", "0.25", on_date=date(2024, 3, 1))
    db_session.commit()

    assert make_resolver().resolve_rate("USD", "ILS", date(2024, 3, 1)) == Decimal("4.000000")


def test_provider_cross_rate_is_written_through(db_session, make_resolver, make_provider):
    provider = make_provider({"ILS": "3.7", "EUR": "0.925"})
    resolver = make_resolver(provider=provider)

    rate = resolver.resolve_rate("EUR", "ILS", date(2024, 5, 1))

    assert rate == Decimal("4.000000")
    assert provider.calls == [("USD", date(2024, 5, 1))]
    stored = _rates(db_session, "EUR", "ILS")
    assert len(stored) == 1
    assert stored[0].source == "provider"
    assert stored[0].rate_date == date(2024, 5, 1)

    # A later run reads it back from the store.
    offline = make_provider(fail=True)
    assert make_resolver(provider=offline).resolve_rate("EUR", "ILS", date(2024, 5, 1)) == Decimal("4.000000")
    assert offline.calls == []


def test_provider_called_once_per_date(make_resolver, make_provider):
    provider = make_provider({"ILS": "3.7", "EUR": "0.925"})
    resolver = make_resolver(provider=provider)

    resolver.resolve_rate("USD", "ILS", date(2024, 5, 1))
    resolver.resolve_rate("USD", "EUR", date(2024, 5, 1))
    resolver.resolve_rate("USD", "ILS", date(2024, 5, 1))

    assert len(provider.calls) == 1
    assert resolver.provider_calls == 1


def test_future_date_is_clamped_to_today(make_resolver, make_provider, today):
    provider = make_provider({"ILS": "3.7"})
    resolver = make_resolver(provider=provider)

    conv = resolver.convert("100", "USD", "ILS", today + timedelta(days=10))

    assert conv.on_date == today
    assert conv.converted_amount == Decimal("370.00")
    assert provider.calls == [("USD", today)]


def test_unavailable_rate_raises_and_is_remembered(make_resolver, make_provider):
    provider = make_provider(fail=True)
    resolver = make_resolver(provider=provider)

    with pytest.raises(RateUnavailableError) as excinfo:
        resolver.resolve_rate("USD", "ILS", date(2024, 3, 1))
    assert "USD to ILS on 2024-03-01" in str(excinfo.value)

    with pytest.raises(RateUnavailableError):
        resolver.resolve_rate("USD", "ILS", date(2024, 3, 1))
    with pytest.raises(RateUnavailableError):
        resolver.resolve_rate("USD", "EUR", date(2024, 3, 1))
    assert len(provider.calls) == 1


def test_missing_rate_never_defaults_to_one(make_resolver):
    with pytest.raises(RateUnavailableError):
        make_resolver().convert("100", "GBP", "ILS", date(2024, 3, 1))


def test_convert_rounds_half_up_to_cents(db_session, build, make_resolver):
    build.rate("USD", "ILS", "3.333335", on_date=date(2024, 3, 1))
    db_session.commit()

    conv = make_resolver().convert("10", "USD", "ILS", date(2024, 3, 1))
    assert conv.converted_amount == Decimal("33.33")


def test_shared_cache_skips_store(db_session, build, make_resolver):
    cache = RateCache()
    build.rate("USD", "ILS", "3.7", on_date=date(2024, 3, 1))
    db_session.commit()

    make_resolver(cache=cache).resolve_rate("USD", "ILS", date(2024, 3, 1))
    assert len(cache) == 1
    assert cache.get(("USD", "ILS", date(2024, 3, 1))) == Decimal("3.700000")


def test_conversion_date_prefers_first_candidate(today):
    assert conversion_date(date(2024, 3, 2), date(2024, 3, 1), today=today) == date(2024, 3, 2)
    assert conversion_date(None, date(2024, 3, 1), today=today) == date(2024, 3, 1)
    assert conversion_date(None, None, today=today) == today
    assert conversion_date(today + timedelta(days=3), today=today) == today


def test_upsert_updates_existing_row(db_session):
    upsert_exchange_rate(db_session, base_currency="usd", target_currency="ils", rate="3.6", on_date=date(2024, 1, 15))
    upsert_exchange_rate(db_session, base_currency="USD", target_currency="ILS", rate="3.7", on_date=date(2024, 1, 15))
    db_session.commit()

    rows = _rates(db_session, "USD", "ILS")
    assert len(rows) == 1
    assert rows[0].rate == Decimal("3.7")
    assert rows[0].source == "manual"


def test_upsert_concurrent_insert_keeps_callers_pending_work(db_session, build, monkeypatch):
    build.rate("USD", "ILS", "3.6", on_date=date(2024, 1, 15))
    db_session.commit()
    db_session.add(models.Contact(first_name="Pending", last_name="Donor"))
    db_session.flush()

    # The first lookup misses the row, as if another writer inserted it meanwhile.
    real_first = Query.first
    lookups = []

    def first_after_race(self):
        lookups.append(self)
        return None if len(lookups) == 1 else real_first(self)

    monkeypatch.setattr(Query, "first", first_after_race)
    row = upsert_exchange_rate(
        db_session, base_currency="USD", target_currency="ILS", rate="3.7", on_date=date(2024, 1, 15)
    )
    monkeypatch.undo()
    db_session.commit()

    assert row.rate == Decimal("3.7")
    assert len(_rates(db_session, "USD", "ILS")) == 1
    assert db_session.query(models.Contact).filter(models.Contact.first_name == "Pending").count() == 1

def test_upsert_rejects_invalid_pairs(db_session, today):
    with pytest.raises(ValueError):
        upsert_exchange_rate(db_session, base_currency="USD", target_currency="USD", rate="1", on_date=today)
    with pytest.raises(ValueError):
        upsert_exchange_rate(db_session, base_currency="USD", target_currency="ILS", rate="0", on_date=today)


def test_rates_for_base_reads_store(db_session, build, today):
    build.rate("USD", "ILS", "3.7")
    build.rate("USD", "EUR", "0.925")
    db_session.commit()

    rates = rates_for_base(db_session, base_currency="usd", on_date=today)
    assert rates == {"USD": Decimal("1"), "ILS": Decimal("3.7"), "EUR": Decimal("0.925")}


def test_rates_for_base_fetches_supported_currencies(db_session, make_provider, today):
    provider = make_provider({"ILS": "3.7", "XYZ": "9"})

    rates = rates_for_base(db_session, base_currency="USD", on_date=today, provider=provider)

    assert rates == {"USD": Decimal("1"), "ILS": Decimal("3.700000")}
    assert len(_rates(db_session, "USD", "ILS")) == 1


def test_rates_for_base_without_rows_or_provider(db_session, today):
    with pytest.raises(RateUnavailableError):
        rates_for_base(db_session, base_currency="USD", on_date=today)
