from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from donor_integrity.api.deps import get_rate_provider
from donor_integrity.database import get_db
from donor_integrity.schemas.integrity import IntegrityFixRequest, IntegrityFixResponse, IntegrityReportRead
from donor_integrity.services.errors import DatabaseUnavailableError, MissingTablesError
from donor_integrity.services.integrity_fixer import apply_fixes_and_recompute
from donor_integrity.services.integrity_issues import CONVERSION_ISSUE_TYPES
from donor_integrity.services.integrity_report import build_resolver, run_integrity_check, save_report

router = APIRouter(prefix="/integrity", tags=["integrity"])

logger = logging.getLogger("donor_integrity.api")

_db_dep = Depends(get_db)
_provider_dep = Depends(get_rate_provider)


def _run(db: Session, resolver, issue_types=None):
    try:
        return run_integrity_check(db, resolver=resolver, issue_types=issue_types)
    except (DatabaseUnavailableError, MissingTablesError) as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/report", response_model=IntegrityReportRead)
def integrity_report(db: Session = _db_dep, provider=_provider_dep):
    """Read-only audit run."""
    return _run(db, build_resolver(db, provider=provider)).to_report()


@router.post("/fix", response_model=IntegrityFixResponse)
def integrity_fix(payload: IntegrityFixRequest, db: Session = _db_dep, provider=_provider_dep):
    conversions_only = payload.scope == "conversions"
    resolver = build_resolver(db, provider=provider)
    result = _run(db, resolver, issue_types=CONVERSION_ISSUE_TYPES if conversions_only else None)

    report_path = None
    if payload.save_report:
        report_path = save_report(result)["path"]

    to_fix = result.issues if conversions_only else result.critical_issues
    fix_result, recompute = apply_fixes_and_recompute(
        db, to_fix, always_recompute=conversions_only, resolver=resolver
    )
    logger.info(
        "integrity_fix_completed",
        extra={"scope": payload.scope, "fixed": fix_result.fixed, "failed": fix_result.failed},
    )
    return {
        "scope": payload.scope,
        "summary": result.summary.to_dict(),
        "result": fix_result.to_dict(),
        "pledges_recomputed": recompute.pledges_updated if recompute else 0,
        "plans_recomputed": recompute.plans_updated if recompute else 0,
        "report_path": report_path,
    }
