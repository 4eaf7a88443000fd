from __future__ import annotations

import hashlib
import json
from datetime import date
from pathlib import Path
from typing import Any, Optional

from donor_integrity.config import settings

REPORT_PREFIX = "multi-currency-integrity-report"


def storage_root() -> Path:
    """Return the absolute storage root for this instance."""

    root = Path(settings.storage_dir)
    if root.is_absolute():
        return root

    # donor_integrity/services/... -> project root
    project_root = Path(__file__).resolve().parents[2]
    return (project_root / root).resolve()


def default_report_filename(on_date: Optional[date] = None) -> str:
    day = on_date or date.today()
    return f"{REPORT_PREFIX}-{day.isoformat()}.json"


def write_report_artifact(report: dict[str, Any], *, filename: Optional[str] = None) -> dict[str, Any]:
    """Write a report as JSON atomically under ``<storage>/reports``.

    Returns the artifact descriptor (path, size and checksum).
    """
    target_dir = (storage_root() / "reports").resolve()
    target_dir.mkdir(parents=True, exist_ok=True)

    target_path = (target_dir / (filename or default_report_filename())).resolve()
    if not target_path.is_relative_to(target_dir):
        raise ValueError("Invalid report path")

    content = json.dumps(report, indent=2, ensure_ascii=False).encode("utf-8")
    tmp_path = target_path.with_suffix(target_path.suffix + ".tmp")
    tmp_path.write_bytes(content)
    tmp_path.replace(target_path)

    return {
        "filename": target_path.name,
        "path": target_path.as_posix(),
        "size_bytes": len(content),
        "checksum_sha256": hashlib.sha256(content).hexdigest(),
    }
