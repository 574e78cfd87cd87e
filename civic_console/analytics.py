"""
Aggregations over a filtered report collection.

Every function accepts an empty collection and returns zero or empty
results. Reports with unparsable timestamps are skipped, never raised on.
"""

import math
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from civic_console import settings
from civic_console.schemas import (
    REPORT_STATUSES,
    AnalyticsSnapshot,
    DailyPoint,
    DashboardStats,
    LocationCluster,
    Report,
    StatusHistoryEntry,
    SupervisorStats,
)
from civic_console.timestamps import MS_PER_HOUR, local_day, local_midnight, local_time, now_utc, to_instant, to_millis


def round_half_up(value: float, digits: int = 0) -> float:
    """Round like the dashboard always has: halves go up, not to even."""
    scale = 10 ** digits
    return math.floor(value * scale + 0.5) / scale


def first_resolved_entry(report: Report) -> Optional[StatusHistoryEntry]:
    for entry in report.statusHistory:
        if entry.kind == "status" and entry.status == "resolved":
            return entry
    return None


def resolution_hours(report: Report) -> Optional[float]:
    """
    Hours from creation to the first resolution, or None when there is no
    resolution entry, a timestamp is unparsable, or the resolution precedes
    creation.
    """
    entry = first_resolved_entry(report)
    if entry is None:
        return None
    created = to_millis(report.createdAt)
    resolved = to_millis(entry.changedAt)
    if created is None or resolved is None or resolved < created:
        return None
    return (resolved - created) / MS_PER_HOUR


def resolution_rate(reports: Sequence[Report]) -> int:
    if not reports:
        return 0
    resolved = sum(1 for r in reports if r.status == "resolved")
    return int(round_half_up(resolved / len(reports) * 100))


def average_resolution_hours(reports: Iterable[Report], digits: int = 0) -> float:
    hours = [h for h in (resolution_hours(r) for r in reports if r.status == "resolved") if h is not None]
    if not hours:
        return 0
    avg = round_half_up(sum(hours) / len(hours), digits)
    return int(avg) if digits == 0 else avg


# ---------- Daily series ----------

def trailing_days(days: int, now: Optional[datetime] = None) -> List[date]:
    """The last `days` local calendar days, oldest first, ending today."""
    today = local_day(now or now_utc())
    return [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def _label(day: date) -> str:
    return day.strftime("%b %d")


def submission_series(reports: Iterable[Report], days: int = settings.TREND_DAYS,
                      now: Optional[datetime] = None) -> List[DailyPoint]:
    window = trailing_days(days, now)
    counts: Dict[date, int] = {day: 0 for day in window}
    for report in reports:
        created = to_instant(report.createdAt)
        if created is None:
            continue
        day = local_day(created)
        if day in counts:
            counts[day] += 1
    return [DailyPoint(day=day, label=_label(day), count=counts[day]) for day in window]


def resolution_time_series(reports: Iterable[Report], days: int = settings.TREND_DAYS,
                           now: Optional[datetime] = None) -> List[DailyPoint]:
    window = trailing_days(days, now)
    resolved_on: Dict[date, List[Report]] = {day: [] for day in window}
    for report in reports:
        entry = first_resolved_entry(report)
        resolved_at = to_instant(entry.changedAt) if entry is not None else None
        if resolved_at is None:
            continue
        day = local_day(resolved_at)
        if day in resolved_on:
            resolved_on[day].append(report)

    points = []
    for day in window:
        members = resolved_on[day]
        hours = [h for h in (resolution_hours(r) for r in members) if h is not None]
        avg = round_half_up(sum(hours) / len(hours), 1) if hours else 0.0
        points.append(DailyPoint(day=day, label=_label(day), count=len(members), avgResolutionHours=avg))
    return points


# ---------- Distributions ----------

def status_distribution(reports: Iterable[Report]) -> Dict[str, int]:
    counts = Counter(r.status for r in reports)
    return {status: counts[status] for status in REPORT_STATUSES if counts[status] > 0}


def issue_type_distribution(reports: Iterable[Report]) -> Dict[str, int]:
    return dict(Counter(r.issueType or "other" for r in reports))


def location_clusters(reports: Iterable[Report], limit: int = settings.TOP_LOCATIONS_LIMIT) -> List[LocationCluster]:
    """
    Group reports by coordinates rounded to 3 decimals (about 111m) and
    return the `limit` busiest groups, largest first. Equal-sized groups keep
    the order in which they were first seen.
    """
    groups: Dict[tuple, List[Report]] = {}
    for report in reports:
        if report.location is None:
            continue
        key = (round_half_up(report.location.latitude, 3), round_half_up(report.location.longitude, 3))
        groups.setdefault(key, []).append(report)

    ranked = sorted(groups.items(), key=lambda item: len(item[1]), reverse=True)[:limit]
    clusters = []
    for (lat, lng), members in ranked:
        top_type = Counter(m.issueType or "other" for m in members).most_common(1)[0][0]
        clusters.append(LocationCluster(
            lat=lat,
            lng=lng,
            count=len(members),
            topIssueType=top_type,
            reportIds=[m.id for m in members],
        ))
    return clusters


# ---------- KPI cards ----------

def dashboard_stats(reports: Sequence[Report], now: Optional[datetime] = None) -> DashboardStats:
    now = local_time(now or now_utc())
    week_ago = now - timedelta(days=7)
    midnight = local_midnight(now.date())
    created = [to_instant(r.createdAt) for r in reports]

    return DashboardStats(
        total=len(reports),
        open=sum(1 for r in reports if r.status != "resolved"),
        last7Days=sum(1 for c in created if c is not None and c >= week_ago),
        today=sum(1 for c in created if c is not None and c >= midnight),
        avgResolutionHours=average_resolution_hours(reports),
    )


def supervisor_stats(reports: Sequence[Report], now: Optional[datetime] = None,
                     overdue_hours: int = settings.OVERDUE_HOURS) -> SupervisorStats:
    now = local_time(now or now_utc())
    overdue_before = now - timedelta(hours=overdue_hours)
    midnight = local_midnight(now.date())

    overdue = today = 0
    for report in reports:
        created = to_instant(report.createdAt)
        if created is None:
            continue
        if report.status != "resolved" and created < overdue_before:
            overdue += 1
        if created >= midnight:
            today += 1

    return SupervisorStats(
        total=len(reports),
        open=sum(1 for r in reports if r.status != "resolved"),
        overdue=overdue,
        today=today,
        acknowledged=sum(1 for r in reports if r.status == "acknowledged"),
        inProgress=sum(1 for r in reports if r.status == "in_progress"),
    )


def analytics_snapshot(reports: Sequence[Report], days: int = settings.TREND_DAYS,
                       limit: int = settings.TOP_LOCATIONS_LIMIT,
                       now: Optional[datetime] = None) -> AnalyticsSnapshot:
    total = len(reports)
    located = sum(1 for r in reports if r.location is not None)
    return AnalyticsSnapshot(
        totalReports=total,
        resolvedReports=sum(1 for r in reports if r.status == "resolved"),
        resolutionRate=resolution_rate(reports),
        avgResolutionHours=average_resolution_hours(reports),
        reportsWithLocation=located,
        locationShare=int(round_half_up(located / total * 100)) if total else 0,
        statusDistribution=status_distribution(reports),
        issueTypeDistribution=issue_type_distribution(reports),
        topLocations=location_clusters(reports, limit),
        submissions=submission_series(reports, days, now),
        resolutionTimes=resolution_time_series(reports, days, now),
    )
