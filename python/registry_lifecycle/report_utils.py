"""
Utility functions for retention run reports.

This module provides functions to:
- Save reports as JSON with timestamped filenames
- Render the per-repository summary table
"""
import json
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from tabulate import tabulate

from registry_lifecycle.logging_utils import get_logger

logger = get_logger(__name__)

SUMMARY_HEADERS = ["Repository", "Digests", "In-use tags", "Protected", "To delete", "Deleted", "Failed", "Status"]


# ============================================================================
# Timestamp Utilities
# ============================================================================

def get_timestamp_suffix() -> str:
    """
    Generate a timestamp suffix for report filenames.

    Returns:
        String in format: YYYY-MM-DD-HH-MM-SS
    """
    return datetime.now().strftime("%Y-%m-%d-%H-%M-%S")


def add_timestamp_to_path(path: str, timestamp: Optional[str] = None) -> str:
    """
    Add a timestamp to a file path before the extension.

    Args:
        path: Original file path (e.g., 'reports/retention-report.json')
        timestamp: Optional timestamp string (defaults to current time)

    Returns:
        Path with timestamp inserted (e.g., 'reports/retention-report-2026-01-15-14-30-00.json')
    """
    if timestamp is None:
        timestamp = get_timestamp_suffix()

    p = Path(path)
    return str(p.parent / f"{p.stem}-{timestamp}{p.suffix}")


# ============================================================================
# Report Saving Functions
# ============================================================================

def to_jsonable(data: Any) -> Any:
    """Recursively convert values json.dump cannot handle.

    - datetime/date: ISO format strings
    - set/frozenset: sorted lists
    - Enum: its value
    """
    if isinstance(data, (datetime, date)):
        return data.isoformat()
    if isinstance(data, Enum):
        return data.value
    if isinstance(data, (set, frozenset)):
        try:
            return [to_jsonable(item) for item in sorted(data)]
        except TypeError:
            return [to_jsonable(item) for item in data]
    if isinstance(data, dict):
        return {k: to_jsonable(v) for k, v in data.items()}
    if isinstance(data, (list, tuple)):
        return [to_jsonable(item) for item in data]
    return data


def save_json(path: str, data: Any, timestamp: bool = False) -> str:
    """
    Write JSON data to a file with indentation.

    Args:
        path: Path to save the JSON file
        data: Data to save
        timestamp: If True, add timestamp to filename (default: False)

    Returns:
        Path to the saved file
    """
    p = Path(path)
    if timestamp:
        p = Path(add_timestamp_to_path(str(p)))

    p.parent.mkdir(parents=True, exist_ok=True)

    with open(p, "w") as f:
        json.dump(to_jsonable(data), f, indent=2)
    logger.info(f"Saved JSON to {p}")
    return str(p)


# ============================================================================
# Summary Formatting
# ============================================================================

def summary_rows(repository_reports: Iterable[Any]) -> List[List[Any]]:
    """One table row per repository report, sorted by repository name."""
    rows = []
    for report in sorted(repository_reports, key=lambda r: r.name):
        rows.append([
            report.name,
            report.total,
            len(report.used_tags),
            report.protected,
            report.evicted,
            report.deleted,
            report.failed,
            "error" if report.error else ("dry-run" if report.dry_run else "ok"),
        ])
    return rows


def format_summary_table(repository_reports: Iterable[Any]) -> str:
    """Render the run summary as a grid table."""
    return tabulate(summary_rows(repository_reports), headers=SUMMARY_HEADERS, tablefmt="grid")


def summarize_totals(repository_reports: Iterable[Any]) -> Dict[str, int]:
    totals = {"repositories": 0, "digests": 0, "protected": 0, "evicted": 0, "deleted": 0, "failed": 0, "errors": 0}
    for report in repository_reports:
        totals["repositories"] += 1
        totals["digests"] += report.total
        totals["protected"] += report.protected
        totals["evicted"] += report.evicted
        totals["deleted"] += report.deleted
        totals["failed"] += report.failed
        totals["errors"] += 1 if report.error else 0
    return totals
