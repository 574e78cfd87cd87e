"""
Live report views.

A ReportView holds one subscription to the store and the last snapshot it
delivered. Filtered sets and analytics are recomputed from that snapshot on
demand and memoized per snapshot, so a burst of live updates costs one
recomputation per read rather than one per update.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from civic_console import settings
from civic_console.analytics import analytics_snapshot
from civic_console.database import ReportQuery, ReportStore, Subscription
from civic_console.exceptions import SubscriptionError
from civic_console.filters import filter_reports
from civic_console.schemas import AnalyticsSnapshot, FilterConfig, Report, parse_reports
from civic_console.timestamps import now_utc

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[List[Report]], None]


class ReportView:
    def __init__(self, store: ReportStore, query: ReportQuery):
        self.store = store
        self.query = query
        self.error: Optional[str] = None
        self.loading = True
        self._reports: Tuple[Report, ...] = ()
        self._version = 0
        self._generation = 0
        self._subscription: Optional[Subscription] = None
        self._memo: Dict[Any, Any] = {}
        self._listeners: List[ChangeCallback] = []
        self._lock = threading.RLock()

    # ---------- Subscription ----------

    def start(self) -> "ReportView":
        with self._lock:
            if self._subscription is not None:
                return self
            generation = self._generation
        subscription = self.store.subscribe(
            self.query,
            lambda docs: self._on_snapshot(generation, docs),
            lambda err: self._on_error(generation, err),
        )
        with self._lock:
            if generation != self._generation:
                # closed or rescoped while subscribing
                subscription.close()
            else:
                self._subscription = subscription
        return self

    def close(self) -> None:
        with self._lock:
            self._generation += 1
            subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close()

    def rescope(self, query: ReportQuery) -> None:
        """Switch to a new store query, dropping the old subscription first."""
        if query == self.query and self._subscription is not None:
            return
        self.close()
        with self._lock:
            self.query = query
            self.loading = True
            self.error = None
        self.start()

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Call back with the current reports after every snapshot and every channel error."""
        with self._lock:
            self._listeners.append(callback)
        return lambda: self._remove_listener(callback)

    def _remove_listener(self, callback: ChangeCallback) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _on_snapshot(self, generation: int, docs: List[Dict[str, Any]]) -> None:
        reports = tuple(parse_reports(docs))
        with self._lock:
            if generation != self._generation:
                return
            self._reports = reports
            self._version += 1
            self._memo.clear()
            self.loading = False
            self.error = None
            listeners = list(self._listeners)
        for callback in listeners:
            callback(list(reports))

    def _on_error(self, generation: int, err: SubscriptionError) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self.error = err.message
            self.loading = False
            reports = self._reports
            listeners = list(self._listeners)
        logger.error("Report subscription error: %s", err)
        # listeners see the last delivered snapshot alongside the new error
        for callback in listeners:
            callback(list(reports))

    # ---------- Derived data ----------

    @property
    def reports(self) -> List[Report]:
        """Last delivered snapshot; kept when the live channel fails."""
        with self._lock:
            return list(self._reports)

    def _memoized(self, key: Tuple, compute: Callable[[Tuple[Report, ...]], Any]) -> Any:
        with self._lock:
            key = (self._version,) + key
            if key in self._memo:
                return self._memo[key]
            reports = self._reports
        value = compute(reports)
        with self._lock:
            if key[0] == self._version:
                self._memo[key] = value
        return value

    @staticmethod
    def _minute(now: Optional[datetime]) -> datetime:
        return (now or now_utc()).replace(second=0, microsecond=0)

    def filtered(self, config: FilterConfig, now: Optional[datetime] = None) -> List[Report]:
        minute = self._minute(now)
        return list(self._memoized(
            ("filtered", config, minute),
            lambda reports: tuple(filter_reports(reports, config, now or minute)),
        ))

    def analytics(self, config: FilterConfig, days: int = settings.TREND_DAYS,
                  limit: int = settings.TOP_LOCATIONS_LIMIT, now: Optional[datetime] = None) -> AnalyticsSnapshot:
        minute = self._minute(now)
        return self._memoized(
            ("analytics", config, days, limit, minute),
            lambda reports: analytics_snapshot(filter_reports(reports, config, now or minute), days, limit, now),
        )

    # ---------- One-off lookups ----------

    def lookup_profile(self, uid: str, collection: str = settings.USERS_COLLECTION) -> Optional[Dict[str, Any]]:
        """
        Fetch a profile document (e.g. the reporter's display name).

        Returns None when the view was closed or rescoped while the lookup
        was in flight.
        """
        with self._lock:
            generation = self._generation
        profile = self.store.get_document(collection, uid)
        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding stale profile lookup for %s", uid)
                return None
        return profile
