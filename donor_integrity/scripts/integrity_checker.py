from __future__ import annotations

import argparse
import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional, Sequence

from pydantic import ValidationError

logger = logging.getLogger("donor_integrity.cli")

HELP_TEXT = """\
Multi-currency financial integrity checker

Commands:
  check [--no-fix] [--report-name NAME]
      Audit pledges, payment plans, payments, installments and allocations,
      save a JSON report and auto-fix critical issues. Runs when no command
      is given.
  fix-conversions
      Audit, apply every conversion fix (critical and warning), then
      recompute pledge and plan totals.
  add-rate FROM TO RATE DATE
      Store a manual exchange rate, e.g. add-rate USD ILS 3.7 2024-01-15.
  help
      Show this message.

Business rules:
  - Only completed payments with a received date count toward balances.
  - Balances are summed from amounts converted to the pledge or plan currency.
  - Same-currency conversions use rate 1 with no lookup.
  - Rates are never requested for future dates; today's rate is used instead.
  - Conversion error above 10% (or a missing conversion) is critical,
    1% to 10% is a warning, 1% or less is ignored.
  - Balance mismatches above 0.01 are critical.
  - Critical issues are fixed automatically; warnings need review.
"""

MIGRATION_HINT = "Hint: run database migrations first (alembic upgrade head)."


def _parse_iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError("Invalid date, expected YYYY-MM-DD") from exc


def _parse_rate(value: str) -> Decimal:
    try:
        rate = Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError("Invalid rate, expected a positive number") from exc
    if not rate.is_finite() or rate <= 0:
        raise argparse.ArgumentTypeError("Invalid rate, expected a positive number")
    return rate


def _session_factory():
    from donor_integrity.database import SessionLocal

    return SessionLocal()


def _print_lines(lines: Sequence[str]) -> None:
    for line in lines:
        print(line)


def cmd_check(args: argparse.Namespace) -> int:
    from donor_integrity.services.integrity_fixer import apply_fixes_and_recompute
    from donor_integrity.services.integrity_report import (
        build_resolver,
        render_awaiting_conversion,
        render_issues,
        render_summary,
        run_integrity_check,
        save_report,
    )

    db = _session_factory()
    try:
        resolver = build_resolver(db)
        result = run_integrity_check(db, resolver=resolver)
        _print_lines(render_summary(result.summary))
        _print_lines(render_issues(result.issues))
        _print_lines(render_awaiting_conversion(result.informational))
        if result.skipped_conversions:
            print(f"\nSkipped {result.skipped_conversions} conversion checks (no exchange rate available).")

        artifact = save_report(result, filename=args.report_name)
        print(f"\nReport saved: {artifact['path']}")

        critical = result.critical_issues
        if args.no_fix:
            print(f"\n{len(critical)} critical issues left unfixed (--no-fix).")
        elif critical:
            print(f"\nApplying fixes for {len(critical)} critical issues...")
            fix_result, recompute = apply_fixes_and_recompute(db, critical, resolver=resolver)
            print(f"Fixed: {fix_result.fixed}, Failed: {fix_result.failed}, Skipped: {fix_result.skipped}")
            for err in fix_result.errors:
                print(f"  {err}")
            if recompute is not None:
                print(
                    f"Recomputed totals: {recompute.pledges_updated} pledges, "
                    f"{recompute.plans_updated} payment plans updated."
                )
        else:
            print("\nNo critical issues to fix.")

        if result.warning_issues:
            print(f"\n{len(result.warning_issues)} warning issues require manual review.")
    finally:
        db.close()
    return 0


def cmd_fix_conversions(args: argparse.Namespace) -> int:
    from donor_integrity.services.integrity_fixer import apply_fixes_and_recompute
    from donor_integrity.services.integrity_issues import CONVERSION_ISSUE_TYPES
    from donor_integrity.services.integrity_report import build_resolver, run_integrity_check

    db = _session_factory()
    try:
        resolver = build_resolver(db)
        result = run_integrity_check(db, resolver=resolver, issue_types=CONVERSION_ISSUE_TYPES)
        print(f"Found {len(result.issues)} conversion issues.")
        fix_result, recompute = apply_fixes_and_recompute(
            db, result.issues, always_recompute=True, resolver=resolver
        )
        print(f"Fixed: {fix_result.fixed}, Failed: {fix_result.failed}, Skipped: {fix_result.skipped}")
        for err in fix_result.errors:
            print(f"  {err}")
        if recompute is not None:
            print(
                f"Recomputed totals: {recompute.pledges_updated} pledges, "
                f"{recompute.plans_updated} payment plans updated."
            )
    finally:
        db.close()
    return 0


def cmd_add_rate(args: argparse.Namespace) -> int:
    from donor_integrity.models import SUPPORTED_CURRENCIES
    from donor_integrity.services.exchange_rate_service import upsert_exchange_rate

    from_currency = args.from_currency.strip().upper()
    to_currency = args.to_currency.strip().upper()
    unknown = [c for c in (from_currency, to_currency) if c not in SUPPORTED_CURRENCIES]
    if unknown:
        print(f"Unsupported currency: {', '.join(unknown)}. Supported: {', '.join(sorted(SUPPORTED_CURRENCIES))}")
        return 1

    db = _session_factory()
    try:
        try:
            row = upsert_exchange_rate(
                db,
                base_currency=from_currency,
                target_currency=to_currency,
                rate=args.rate,
                on_date=args.date,
                source="manual",
            )
        except ValueError as exc:
            db.rollback()
            print(str(exc))
            return 1
        db.commit()
        print(f"Stored rate: 1 {row.base_currency} = {row.rate} {row.target_currency} on {args.date.isoformat()}")
    finally:
        db.close()
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="donor-integrity",
        description="Multi-currency financial integrity checker",
    )
    sub = parser.add_subparsers(dest="command")

    check = sub.add_parser("check", help="Run the full audit, save a report and fix critical issues")
    check.add_argument("--no-fix", action="store_true", help="Report only, do not apply fixes")
    check.add_argument("--report-name", default=None, help="Report filename (default: dated name)")
    check.set_defaults(handler=cmd_check)

    fix = sub.add_parser("fix-conversions", help="Apply all conversion fixes and recompute totals")
    fix.set_defaults(handler=cmd_fix_conversions)

    add = sub.add_parser("add-rate", help="Store a manual exchange rate")
    add.add_argument("from_currency", metavar="FROM")
    add.add_argument("to_currency", metavar="TO")
    add.add_argument("rate", type=_parse_rate, metavar="RATE")
    add.add_argument("date", type=_parse_iso_date, metavar="DATE")
    add.set_defaults(handler=cmd_add_rate)

    sub.add_parser("help", help="Show business rules and commands")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        args = parser.parse_args(["check"])

    handler = getattr(args, "handler", None)
    if handler is None:
        print(HELP_TEXT)
        return 0

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    try:
        from donor_integrity.config import settings  # noqa: F401
    except ValidationError as exc:
        print("Configuration error: DATABASE_URL (and other settings) must be set in the environment or .env.")
        print(str(exc))
        return 1

    from donor_integrity.services.errors import IntegrityCheckError

    try:
        return handler(args)
    except IntegrityCheckError as exc:
        print(f"Error: {exc}")
        return 1
    except Exception as exc:
        logger.exception("integrity_checker_failed")
        print(f"Error: {exc}")
        message = str(exc).lower()
        if "does not exist" in message or "no such table" in message:
            print(MIGRATION_HINT)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
