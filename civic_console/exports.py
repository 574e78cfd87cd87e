"""CSV export of a filtered report collection."""

import csv
import io
from datetime import datetime
from typing import Iterable, List, Optional

from civic_console.analytics import resolution_hours, round_half_up
from civic_console.schemas import Report
from civic_console.timestamps import format_local

CSV_HEADERS = [
    "ID",
    "Issue Type",
    "Issue Label",
    "Description",
    "Status",
    "Classification",
    "Assigned Department",
    "Assigned To",
    "Reporter UID",
    "Has Image",
    "Has Audio",
    "Latitude",
    "Longitude",
    "Created At",
    "Updated At",
    "Resolution Time (Hours)",
]


def _resolution_cell(report: Report) -> str:
    if report.status != "resolved":
        return ""
    hours = resolution_hours(report)
    return "" if hours is None else str(int(round_half_up(hours)))


def report_row(report: Report) -> List[str]:
    location = report.location
    return [
        report.id,
        report.issueType,
        report.issueLabel,
        report.description,
        report.status,
        report.classification or "",
        report.assignedDept or "",
        report.assignedTo or "",
        report.uid,
        "Yes" if report.imageUrl else "No",
        "Yes" if report.audioUrl else "No",
        "" if location is None else str(location.latitude),
        "" if location is None else str(location.longitude),
        format_local(report.createdAt),
        format_local(report.updatedAt),
        _resolution_cell(report),
    ]


def reports_to_csv(reports: Iterable[Report]) -> str:
    """
    Render reports as CSV with the fixed export header.

    Fields containing commas, quotes or newlines are wrapped in double
    quotes with embedded quotes doubled.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for report in reports:
        writer.writerow(report_row(report))
    return buffer.getvalue()


def export_filename(prefix: str = "reports-export", when: Optional[datetime] = None) -> str:
    return f"{prefix}-{(when or datetime.now()).strftime('%Y-%m-%d')}.csv"
