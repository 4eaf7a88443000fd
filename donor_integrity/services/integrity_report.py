from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from donor_integrity.config import settings
from donor_integrity.services.allocation_integrity import audit_allocation_integrity
from donor_integrity.services.audit_context import AuditContext, AwaitingConversion
from donor_integrity.services.balance_auditors import audit_payment_plan_balances, audit_pledge_balances
from donor_integrity.services.conversion_auditors import (
    audit_allocation_conversions,
    audit_installment_conversions,
    audit_payment_conversions,
    audit_payment_plan_conversions,
    audit_third_party_conversions,
)
from donor_integrity.services.exchange_rate_service import ExchangeRateResolver
from donor_integrity.services.integrity_issues import CheckSummary, IntegrityIssue, summarize
from donor_integrity.services.preflight import run_preflight
from donor_integrity.services.rate_provider import RateProvider, build_rate_provider
from donor_integrity.services.report_storage import default_report_filename, write_report_artifact

logger = logging.getLogger("donor_integrity.audit")

# Balance auditors run first: plan conversions read the recomputed remaining amounts.
AUDIT_STEPS: tuple[tuple[str, Callable[[AuditContext], list[IntegrityIssue]]], ...] = (
    ("pledge_balances", audit_pledge_balances),
    ("plan_balances", audit_payment_plan_balances),
    ("payment_conversions", audit_payment_conversions),
    ("plan_conversions", audit_payment_plan_conversions),
    ("installment_conversions", audit_installment_conversions),
    ("third_party_conversions", audit_third_party_conversions),
    ("allocation_conversions", audit_allocation_conversions),
    ("allocation_integrity", audit_allocation_integrity),
)


@dataclass
class IntegrityCheckResult:
    summary: CheckSummary
    issues: list[IntegrityIssue]
    informational: list[AwaitingConversion] = field(default_factory=list)
    generated_at: str = ""
    skipped_conversions: int = 0
    provider_calls: int = 0
    run_date: Optional[date] = None

    @property
    def critical_issues(self) -> list[IntegrityIssue]:
        return [i for i in self.issues if i.is_critical]

    @property
    def warning_issues(self) -> list[IntegrityIssue]:
        return [i for i in self.issues if not i.is_critical]

    def to_report(self) -> dict[str, Any]:
        return {
            "summary": self.summary.to_dict(),
            "issues": [i.to_dict() for i in self.issues],
            "informational": {
                "paymentsAwaitingConversion": [a.to_dict() for a in self.informational],
                "skippedConversionChecks": self.skipped_conversions,
            },
            "generatedAt": self.generated_at,
        }


def build_resolver(
    db: Session,
    *,
    provider: Optional[RateProvider] = None,
    today: Optional[Callable[[], date]] = None,
) -> ExchangeRateResolver:
    """Resolver for one run, wired to the configured provider unless one is given."""
    return ExchangeRateResolver(
        db,
        provider=provider if provider is not None else build_rate_provider(settings),
        today=today,
        staleness_window_days=settings.rate_staleness_window_days,
        provider_base_currency=settings.exchange_rate_base_currency,
    )


def run_integrity_check(
    db: Session,
    *,
    resolver: Optional[ExchangeRateResolver] = None,
    issue_types: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> IntegrityCheckResult:
    """Run every auditor in order and aggregate the findings.

    Read-only apart from write-through of newly fetched rates. Raises
    DatabaseUnavailableError or MissingTablesError before any auditor runs.
    ``issue_types`` narrows the returned issues; all auditors still run.
    """
    run_preflight(db)

    resolver = resolver or build_resolver(db)
    ctx = AuditContext.for_session(db, resolver)

    issues: list[IntegrityIssue] = []
    for name, auditor in AUDIT_STEPS:
        found = auditor(ctx)
        logger.info("audit_step_completed", extra={"step": name, "issues": len(found)})
        issues.extend(found)

    if issue_types is not None:
        wanted = set(issue_types)
        issues = [i for i in issues if i.type in wanted]

    stamp = now or datetime.now(timezone.utc)
    summary = summarize(issues, now=stamp)
    logger.info(
        "integrity_check_completed",
        extra={
            "total": summary.total_issues,
            "critical": summary.critical_issues,
            "warning": summary.warning_issues,
            "affected_contacts": summary.affected_contacts,
            "skipped_conversions": ctx.skipped_conversions,
            "provider_calls": resolver.provider_calls,
        },
    )
    return IntegrityCheckResult(
        summary=summary,
        issues=issues,
        informational=list(ctx.awaiting_conversion),
        generated_at=stamp.isoformat(timespec="seconds"),
        skipped_conversions=ctx.skipped_conversions,
        provider_calls=resolver.provider_calls,
        run_date=ctx.today,
    )


def save_report(result: IntegrityCheckResult, *, filename: Optional[str] = None) -> dict[str, Any]:
    artifact = write_report_artifact(
        result.to_report(),
        filename=filename or default_report_filename(result.run_date),
    )
    logger.info("integrity_report_saved", extra={"path": artifact["path"]})
    return artifact


def render_summary(summary: CheckSummary) -> list[str]:
    return [
        "MULTI-CURRENCY INTEGRITY CHECK SUMMARY",
        "=" * 41,
        f"Scan date: {summary.timestamp}",
        f"Total issues: {summary.total_issues}",
        f"Critical: {summary.critical_issues} (auto-fix)",
        f"Warning: {summary.warning_issues} (review needed)",
        f"Affected contacts: {summary.affected_contacts}",
    ]


def render_issues(issues: list[IntegrityIssue], *, max_contacts: int = 10, per_contact: int = 3) -> list[str]:
    """Group issues by contact, most affected first."""
    if not issues:
        return []

    grouped: "OrderedDict[Optional[int], list[IntegrityIssue]]" = OrderedDict()
    for issue in issues:
        grouped.setdefault(issue.contact_id, []).append(issue)

    ranked = sorted(grouped.items(), key=lambda kv: len(kv[1]), reverse=True)[:max_contacts]
    lines = ["", "FOUND MULTI-CURRENCY ISSUES", "=" * 27]
    for contact_id, contact_issues in ranked:
        lines.append("")
        lines.append(f"{contact_issues[0].contact_name} (ID: {contact_id}) - {len(contact_issues)} issues")
        for n, issue in enumerate(contact_issues[:per_contact], start=1):
            lines.append(f"  {n}. [{issue.severity.upper()}] {issue.description}")
        if len(contact_issues) > per_contact:
            lines.append(f"  ... and {len(contact_issues) - per_contact} more")
    return lines


def render_awaiting_conversion(items: list[AwaitingConversion]) -> list[str]:
    if not items:
        return []
    lines = ["", "PAYMENTS AWAITING CONVERSION"]
    for item in items:
        lines.append(
            f"  {item.record_type} {item.record_id} ({item.contact_name}): "
            f"{item.count} payments, {item.original_total} in original currency"
        )
    return lines
