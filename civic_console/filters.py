"""Filter predicates shared by the reports table, map, analytics and supervisor views."""

import logging
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, TypeVar

from civic_console.schemas import FilterConfig, Report
from civic_console.timestamps import local_midnight, local_time, now_utc, to_instant

logger = logging.getLogger(__name__)

ALL = "all"

F = TypeVar("F", bound=FilterConfig)


def _unset(value: Optional[str]) -> bool:
    return value is None or value == "" or value == ALL


def date_range_start(date_range: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Lower bound for a date-range filter, or None when the axis is unset.

    today/month/quarter/year start at local calendar boundaries; week is a
    rolling 7x24h window ending now.
    """
    if _unset(date_range):
        return None
    now = local_time(now or now_utc())
    today = now.date()

    if date_range == "today":
        return local_midnight(today)
    if date_range == "week":
        return now - timedelta(days=7)
    if date_range == "month":
        return local_midnight(today.replace(day=1))
    if date_range == "quarter":
        return local_midnight(today.replace(month=(today.month - 1) // 3 * 3 + 1, day=1))
    if date_range == "year":
        return local_midnight(today.replace(month=1, day=1))
    return None


def matches_date_range(report: Report, start: Optional[datetime]) -> bool:
    if start is None:
        return True
    created = to_instant(report.createdAt)
    if created is None:
        # unparsable creation time never matches a date filter
        return False
    return created >= start


def matches_search(report: Report, term: str) -> bool:
    if not term:
        return True
    haystacks = (report.description, report.issueLabel, report.customIssue)
    return any(term in (text or "").lower() for text in haystacks)


def matches(report: Report, config: FilterConfig, start: Optional[datetime] = None) -> bool:
    """AND of every configured axis for a single report."""
    if config.require_location and report.location is None:
        return False
    if not _unset(config.issueType) and report.issueType != config.issueType:
        return False
    if not _unset(config.status) and report.status != config.status:
        return False
    if not _unset(config.department) and report.effective_department != config.department:
        return False
    if not matches_search(report, (config.search or "").lower().strip()):
        return False
    return matches_date_range(report, start)


def filter_reports(reports: Iterable[Report], config: FilterConfig,
                   now: Optional[datetime] = None) -> List[Report]:
    """Subset of reports satisfying every axis of config, in input order."""
    start = date_range_start(config.dateRange, now)
    return [r for r in reports if matches(r, config, start)]


# ---------- URL presets ----------

def apply_preset(config: F, preset: Optional[str]) -> F:
    """Apply a named preset from the ?filter= query parameter."""
    if preset == "unresolved":
        return config.model_copy(update={"status": "submitted"})
    if preset == "today":
        return config.model_copy(update={"dateRange": "today"})
    if preset == ALL:
        return type(config)()
    if preset:
        logger.debug("Ignoring unknown filter preset %r", preset)
    return config
