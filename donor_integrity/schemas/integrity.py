from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class IntegrityIssueRead(BaseModel):
    id: str
    type: str
    severity: Literal["critical", "warning"]
    contactId: Optional[int] = None
    contactName: str
    recordId: int
    recordType: str
    description: str
    currentValue: Optional[str] = None
    expectedValue: Optional[str] = None
    affectedFields: List[str] = Field(default_factory=list)
    fixValue: Optional[str] = None
    fixRecordId: Optional[int] = None


class CheckSummaryRead(BaseModel):
    totalIssues: int
    criticalIssues: int
    warningIssues: int
    affectedContacts: int
    timestamp: str


class IntegrityReportRead(BaseModel):
    summary: CheckSummaryRead
    issues: List[IntegrityIssueRead]
    informational: Dict[str, Any]
    generatedAt: str


class IntegrityFixRequest(BaseModel):
    # "critical": every critical issue; "conversions": every conversion issue.
    scope: Literal["critical", "conversions"] = "critical"
    save_report: bool = False


class FixResultRead(BaseModel):
    fixed: int
    failed: int
    skipped: int
    errors: List[str] = Field(default_factory=list)


class IntegrityFixResponse(BaseModel):
    scope: str
    summary: CheckSummaryRead
    result: FixResultRead
    pledges_recomputed: int = 0
    plans_recomputed: int = 0
    report_path: Optional[str] = None
