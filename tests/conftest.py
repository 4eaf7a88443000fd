import os
import tempfile

# CRITICAL: Set environment variables BEFORE any package imports
# These must be set before donor_integrity.config.settings is loaded
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["EXCHANGE_RATE_API_URL"] = ""
os.environ["STORAGE_DIR"] = os.path.join(tempfile.gettempdir(), "donor_integrity_test_storage")

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from donor_integrity import models
from donor_integrity.api.deps import get_rate_provider
from donor_integrity.database import Base, get_db, engine as app_engine
from donor_integrity.main import app
from donor_integrity.services.errors import RateProviderError
from donor_integrity.services.exchange_rate_service import ExchangeRateResolver
from donor_integrity.services.rate_provider import RateQuote

TODAY = date(2024, 6, 30)

TEST_ENGINE = app_engine

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE, future=True)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[get_rate_provider] = lambda: None


class StubRateProvider:
    """In-memory provider: quotes ``rates`` against ``base`` for any date."""

    def __init__(self, rates=None, *, fail=False):
        self.rates = {k: Decimal(str(v)) for k, v in (rates or {}).items()}
        self.fail = fail
        self.calls = []

    def fetch_rates(self, base_currency, on_date):
        self.calls.append((base_currency, on_date))
        if self.fail:
            raise RateProviderError("stub provider unavailable")
        return RateQuote(base=base_currency, as_of=on_date, rates=dict(self.rates))


class Builders:
    """Row factories with sensible defaults; every call flushes and returns the row."""

    def __init__(self, db):
        self.db = db

    def _add(self, row):
        self.db.add(row)
        self.db.flush()
        return row

    def contact(self, first_name="Dana", last_name="Levi"):
        return self._add(models.Contact(first_name=first_name, last_name=last_name))

    def pledge(self, contact, *, original_amount="1000", currency="USD", total_paid="0", balance=None, **kw):
        if balance is None:
            balance = Decimal(original_amount) - Decimal(total_paid)
        return self._add(
            models.Pledge(
                contact_id=contact.id,
                original_amount=Decimal(original_amount),
                currency=currency,
                total_paid=Decimal(total_paid),
                balance=Decimal(str(balance)),
                pledge_date=kw.pop("pledge_date", date(2024, 1, 1)),
                **kw,
            )
        )

    def plan(
        self,
        pledge,
        *,
        total_planned_amount="1000",
        currency="USD",
        installment_amount=None,
        number_of_installments=12,
        total_paid="0",
        remaining_amount=None,
        start_date=date(2024, 1, 1),
        **kw,
    ):
        total = Decimal(total_planned_amount)
        if installment_amount is None:
            installment_amount = (total / number_of_installments).quantize(Decimal("0.01"))
        if remaining_amount is None:
            remaining_amount = total - Decimal(total_paid)
        return self._add(
            models.PaymentPlan(
                pledge_id=pledge.id,
                total_planned_amount=total,
                currency=currency,
                installment_amount=Decimal(str(installment_amount)),
                number_of_installments=number_of_installments,
                total_paid=Decimal(total_paid),
                remaining_amount=Decimal(str(remaining_amount)),
                start_date=start_date,
                **kw,
            )
        )

    def installment(self, plan, *, amount="100", currency="USD", installment_date=date(2024, 2, 1), amount_usd=None):
        return self._add(
            models.InstallmentSchedule(
                payment_plan_id=plan.id,
                installment_amount=Decimal(amount),
                installment_amount_usd=None if amount_usd is None else Decimal(amount_usd),
                currency=currency,
                installment_date=installment_date,
            )
        )

    def payment(
        self,
        *,
        amount="100",
        currency="USD",
        pledge=None,
        plan=None,
        status="completed",
        payment_date=date(2024, 3, 1),
        received_date=date(2024, 3, 1),
        **kw,
    ):
        def _dec(key):
            value = kw.pop(key, None)
            return None if value is None else Decimal(str(value))

        row = models.Payment(
            pledge_id=pledge.id if pledge is not None else None,
            payment_plan_id=plan.id if plan is not None else None,
            amount=Decimal(amount),
            currency=currency,
            amount_usd=_dec("amount_usd"),
            amount_in_pledge_currency=_dec("amount_in_pledge_currency"),
            amount_in_plan_currency=_dec("amount_in_plan_currency"),
            exchange_rate=_dec("exchange_rate"),
            pledge_currency_exchange_rate=_dec("pledge_currency_exchange_rate"),
            plan_currency_exchange_rate=_dec("plan_currency_exchange_rate"),
            payment_status=status,
            payment_date=payment_date,
            received_date=received_date,
            **kw,
        )
        return self._add(row)

    def allocation(self, payment, pledge, *, amount, currency, **kw):
        return self._add(
            models.PaymentAllocation(
                payment_id=payment.id,
                pledge_id=pledge.id,
                allocated_amount=Decimal(amount),
                currency=currency,
                **kw,
            )
        )

    def rate(self, base, target, rate, on_date=TODAY, source="manual"):
        return self._add(
            models.ExchangeRate(
                base_currency=base,
                target_currency=target,
                rate=Decimal(str(rate)),
                rate_date=on_date,
                source=source,
            )
        )


@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """Fresh schema for every test; restores dependency overrides afterwards."""
    original_overrides = dict(app.dependency_overrides)

    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)

    yield

    app.dependency_overrides.clear()
    app.dependency_overrides.update(original_overrides)
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def build(db_session):
    return Builders(db_session)


@pytest.fixture
def make_provider():
    return StubRateProvider


@pytest.fixture
def make_resolver(db_session):
    def _make(provider=None, today=TODAY, **kw):
        return ExchangeRateResolver(db_session, provider=provider, today=lambda: today, **kw)

    return _make


@pytest.fixture
def today():
    return TODAY


@pytest.fixture
def session_factory():
    return TestingSessionLocal
