from datetime import date
from decimal import Decimal

import pytest

from donor_integrity import models
from donor_integrity.config import settings
from donor_integrity.database import Base
from donor_integrity.scripts import integrity_checker


@pytest.fixture
def cli(monkeypatch, session_factory, tmp_path):
    monkeypatch.setattr(integrity_checker, "_session_factory", session_factory)
    monkeypatch.setattr(settings, "storage_dir", str(tmp_path))
    return integrity_checker.main


def _stale_pledge(db_session, build):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="1000", total_paid="1000", balance="50")
    build.payment(amount="1000", pledge=pledge, amount_usd="1000", amount_in_pledge_currency="1000")
    db_session.commit()
    return pledge


def test_help_prints_business_rules(cli, capsys):
    assert cli(["help"]) == 0
    out = capsys.readouterr().out
    assert "Business rules" in out
    assert "add-rate FROM TO RATE DATE" in out


def test_no_command_runs_check(cli, db_session, build, capsys):
    pledge = _stale_pledge(db_session, build)

    assert cli([]) == 0

    out = capsys.readouterr().out
    assert "Commands:" not in out
    assert "Fixed: 1, Failed: 0, Skipped: 0" in out
    db_session.expire_all()
    assert db_session.get(models.Pledge, pledge.id).balance == Decimal("0.00")


def test_add_rate_stores_manual_rate(cli, db_session, capsys):
    assert cli(["add-rate", "usd", "ils", "3.7", "2024-01-15"]) == 0
    assert "Stored rate" in capsys.readouterr().out

    row = db_session.query(models.ExchangeRate).one()
    assert (row.base_currency, row.target_currency) == ("USD", "ILS")
    assert row.rate == Decimal("3.7")
    assert row.rate_date == date(2024, 1, 15)
    assert row.source == "manual"


def test_add_rate_rejects_unknown_currency(cli, db_session, capsys):
    assert cli(["add-rate", "USD", "XYZ", "3.7", "2024-01-15"]) == 1
    assert "Unsupported currency: XYZ" in capsys.readouterr().out
    assert db_session.query(models.ExchangeRate).count() == 0


def test_add_rate_rejects_same_currency(cli, capsys):
    assert cli(["add-rate", "USD", "USD", "1", "2024-01-15"]) == 1
    assert "must differ" in capsys.readouterr().out


@pytest.mark.parametrize("argv", [["add-rate", "USD", "ILS", "-1", "2024-01-15"], ["add-rate", "USD", "ILS", "3.7", "15/01/2024"]])
def test_add_rate_rejects_bad_arguments(cli, argv):
    with pytest.raises(SystemExit) as excinfo:
        cli(argv)
    assert excinfo.value.code == 2


def test_check_no_fix_reports_only(cli, db_session, build, tmp_path, capsys):
    pledge = _stale_pledge(db_session, build)

    assert cli(["check", "--no-fix", "--report-name", "nightly.json"]) == 0

    out = capsys.readouterr().out
    assert "Total issues: 1" in out
    assert "1 critical issues left unfixed" in out
    assert (tmp_path / "reports" / "nightly.json").exists()
    db_session.expire_all()
    assert db_session.get(models.Pledge, pledge.id).balance == Decimal("50.00")


def test_check_fixes_critical_issues(cli, db_session, build, capsys):
    pledge = _stale_pledge(db_session, build)

    assert cli(["check"]) == 0

    assert "Fixed: 1, Failed: 0, Skipped: 0" in capsys.readouterr().out
    db_session.expire_all()
    assert db_session.get(models.Pledge, pledge.id).balance == Decimal("0.00")


def test_fix_conversions_applies_warnings_and_recomputes(cli, db_session, build, capsys):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="3700", currency="ILS", total_paid="350", balance="3350")
    payment = build.payment(amount="100", pledge=pledge, amount_usd="100", amount_in_pledge_currency="350")
    build.rate("USD", "ILS", "3.7", on_date=date(2024, 3, 1))
    db_session.commit()

    assert cli(["fix-conversions"]) == 0

    out = capsys.readouterr().out
    assert "Found 1 conversion issues." in out
    assert "Recomputed totals: 1 pledges" in out
    db_session.expire_all()
    assert db_session.get(models.Payment, payment.id).amount_in_pledge_currency == Decimal("370.00")
    assert db_session.get(models.Pledge, pledge.id).balance == Decimal("3330.00")


def test_check_reports_missing_tables(cli, db_session, capsys):
    Base.metadata.tables["exchange_rate"].drop(bind=db_session.get_bind())

    assert cli(["check"]) == 1
    out = capsys.readouterr().out
    assert "exchange_rate" in out
    assert "alembic upgrade head" in out
