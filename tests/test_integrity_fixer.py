from datetime import date
from decimal import Decimal

import pytest

from donor_integrity import models
from donor_integrity.services.integrity_fixer import (
    apply_fixes,
    apply_fixes_and_recompute,
    fix_values,
    recompute_balances_after_payment_corrections,
)
from donor_integrity.services.integrity_issues import IntegrityIssue
from donor_integrity.services.integrity_report import run_integrity_check


def _issue(record_type, record_id, fields, fix_value, **kw):
    defaults = dict(
        id=f"manual_{record_type}_{record_id}",
        type="pledge_balance",
        severity="critical",
        contact_id=None,
        contact_name="Unknown Contact",
        record_id=record_id,
        record_type=record_type,
        description="",
        current_value=None,
        expected_value=None,
        affected_fields=fields,
        fix_value=fix_value,
        fix_record_id=record_id,
    )
    defaults.update(kw)
    return IntegrityIssue(**defaults)


def _seed_mixed_currency_book(build):
    """One of every critical finding the fixer can repair."""
    dana = build.contact()
    ils_pledge = build.pledge(dana, original_amount="3700", currency="ILS", total_paid="0", balance="3700")
    build.payment(amount="100", currency="USD", pledge=ils_pledge, amount_usd="100", amount_in_pledge_currency=None)
    build.rate("USD", "ILS", "3.7", on_date=date(2024, 3, 1))

    plan = build.plan(
        ils_pledge,
        total_planned_amount="3700",
        currency="ILS",
        number_of_installments=10,
        start_date=date(2024, 1, 1),
    )
    build.installment(plan, amount="370", currency="ILS", installment_date=date(2024, 2, 1))
    # Plans and installments convert at the current rate.
    build.rate("ILS", "USD", "0.27")

    noa = build.contact("Noa", "Cohen")
    usd_pledge = build.pledge(noa, original_amount="1000", total_paid="1000", balance="50")
    build.payment(amount="1000", pledge=usd_pledge, amount_usd="1000", amount_in_pledge_currency="1000")
    return ils_pledge, usd_pledge, plan


def test_fix_then_recheck_finds_nothing(db_session, build, make_resolver):
    ils_pledge, usd_pledge, plan = _seed_mixed_currency_book(build)
    db_session.commit()

    first = run_integrity_check(db_session, resolver=make_resolver())
    assert len(first.critical_issues) == 6
    assert first.warning_issues == []

    fix_result, recompute = apply_fixes_and_recompute(db_session, first.critical_issues)
    assert fix_result.fixed == 6
    assert fix_result.failed == 0
    assert fix_result.payment_conversions_fixed == 1
    assert recompute is not None
    assert recompute.pledges_updated == 1

    second = run_integrity_check(db_session, resolver=make_resolver())
    assert second.issues == []

    pledge = db_session.get(models.Pledge, ils_pledge.id)
    assert pledge.total_paid == Decimal("370.00")
    assert pledge.balance == Decimal("3330.00")
    assert db_session.get(models.Pledge, usd_pledge.id).balance == Decimal("0.00")
    fixed_plan = db_session.get(models.PaymentPlan, plan.id)
    assert fixed_plan.total_planned_amount_usd == Decimal("999.00")
    assert fixed_plan.exchange_rate == Decimal("0.27")


def test_conversion_fix_writes_amount_and_rate(db_session, build, make_resolver):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="3700", currency="ILS")
    payment = build.payment(amount="100", pledge=pledge, amount_usd="100", amount_in_pledge_currency="150")
    build.rate("USD", "ILS", "3.7", on_date=date(2024, 3, 1))
    db_session.commit()

    issues = run_integrity_check(db_session, resolver=make_resolver()).critical_issues
    conversion = [i for i in issues if i.type == "payment_conversion"]
    result = apply_fixes(db_session, conversion)

    assert result.fixed == 1
    row = db_session.get(models.Payment, payment.id)
    assert row.amount_in_pledge_currency == Decimal("370.00")
    assert row.pledge_currency_exchange_rate == Decimal("3.7")


def test_failed_fix_does_not_stop_batch(db_session, build):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="1000", total_paid="0", balance="50")
    db_session.commit()

    result = apply_fixes(
        db_session,
        [
            _issue("pledge", 9999, ["balance"], "0.00"),
            _issue("pledge", pledge.id, ["original_amount"], "1.00"),
            _issue("pledge", pledge.id, ["balance"], "1000.00"),
        ],
    )

    assert result.fixed == 1
    assert result.failed == 2
    assert len(result.errors) == 2
    assert "9999" in result.errors[0]
    assert db_session.get(models.Pledge, pledge.id).balance == Decimal("1000.00")


def test_unfixable_issues_are_skipped(db_session):
    result = apply_fixes(
        db_session,
        [_issue("payment", 1, ["allocated_amount"], None, type="allocation_integrity")],
    )
    assert result.skipped == 1
    assert result.fixed == 0
    assert result.to_dict() == {"fixed": 0, "failed": 0, "skipped": 1, "errors": []}


def test_fix_values_pairs_fields_with_parts():
    issue = _issue("payment", 1, ["amount_usd", "exchange_rate"], "110.00|1.1")
    assert fix_values(issue) == {"amount_usd": Decimal("110.00"), "exchange_rate": Decimal("1.100000")}

    with pytest.raises(ValueError):
        fix_values(_issue("payment", 1, ["amount_usd", "exchange_rate"], "110.00"))
    with pytest.raises(ValueError):
        fix_values(_issue("contact", 1, ["first_name"], "x"))


def test_recompute_rewrites_stale_totals(db_session, build):
    contact = build.contact()
    stale = build.pledge(contact, original_amount="1000", total_paid="0", balance="1000")
    fresh = build.pledge(contact, original_amount="1000", total_paid="100", balance="900")
    plan = build.plan(stale, total_planned_amount="1000", number_of_installments=4)
    build.payment(amount="250", pledge=stale, plan=plan, amount_in_pledge_currency="250", amount_in_plan_currency="250")
    build.payment(amount="100", pledge=fresh, amount_in_pledge_currency="100")
    db_session.commit()

    result = recompute_balances_after_payment_corrections(db_session)

    assert result.pledges_checked == 2
    assert result.pledges_updated == 1
    assert result.plans_updated == 1
    assert db_session.get(models.Pledge, stale.id).balance == Decimal("750.00")
    updated_plan = db_session.get(models.PaymentPlan, plan.id)
    assert updated_plan.total_paid == Decimal("250.00")
    assert updated_plan.remaining_amount == Decimal("750.00")
    assert updated_plan.remaining_amount_usd == Decimal("750.00")


def test_recompute_only_when_payments_fixed(db_session, build):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="1000", total_paid="0", balance="50")
    db_session.commit()

    _, recompute = apply_fixes_and_recompute(db_session, [_issue("pledge", pledge.id, ["balance"], "1000.00")])
    assert recompute is None

    _, recompute = apply_fixes_and_recompute(db_session, [], always_recompute=True)
    assert recompute is not None
    assert recompute.pledges_checked == 0


def test_plan_payment_fix_keeps_remaining_usd_consistent(db_session, build, make_resolver):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="3700", currency="ILS", total_paid="1110", balance="2590")
    plan = build.plan(
        pledge,
        total_planned_amount="3700",
        currency="ILS",
        number_of_installments=10,
        total_paid="1110",
        total_planned_amount_usd=Decimal("999.00"),
        installment_amount_usd=Decimal("99.90"),
        remaining_amount_usd=Decimal("699.30"),
    )
    build.payment(
        amount="300",
        pledge=pledge,
        plan=plan,
        amount_usd="300",
        amount_in_pledge_currency="1110",
        amount_in_plan_currency="0",
    )
    build.rate("USD", "ILS", "3.7", on_date=date(2024, 3, 1))
    build.rate("ILS", "USD", "0.27")
    db_session.commit()

    resolver = make_resolver()
    first = run_integrity_check(db_session, resolver=resolver)
    by_id = {i.id: i for i in first.critical_issues}
    # Before the payment is corrected the plan looks unpaid.
    assert by_id[f"payment_plan_conversion_remaining_usd_{plan.id}"].fix_value == "999.00"

    fix_result, recompute = apply_fixes_and_recompute(db_session, first.critical_issues, resolver=resolver)
    assert fix_result.failed == 0
    assert recompute.plans_updated == 1

    second = run_integrity_check(db_session, resolver=make_resolver())
    assert second.issues == []

    db_session.expire_all()
    fixed_plan = db_session.get(models.PaymentPlan, plan.id)
    assert fixed_plan.total_paid == Decimal("1110.00")
    assert fixed_plan.remaining_amount == Decimal("2590.00")
    assert fixed_plan.remaining_amount_usd == Decimal("699.30")


def test_recompute_skips_remaining_usd_without_rate(db_session, build):
    contact = build.contact()
    pledge = build.pledge(contact, original_amount="3700", currency="ILS", total_paid="370", balance="3330")
    plan = build.plan(
        pledge,
        total_planned_amount="3700",
        currency="ILS",
        number_of_installments=10,
        remaining_amount_usd=Decimal("1"),
    )
    build.payment(
        amount="370",
        currency="ILS",
        pledge=pledge,
        plan=plan,
        amount_in_pledge_currency="370",
        amount_in_plan_currency="370",
    )
    db_session.commit()

    result = recompute_balances_after_payment_corrections(db_session)

    assert result.plans_updated == 1
    db_session.expire_all()
    updated_plan = db_session.get(models.PaymentPlan, plan.id)
    assert updated_plan.total_paid == Decimal("370.00")
    assert updated_plan.remaining_amount_usd == Decimal("1.00")
