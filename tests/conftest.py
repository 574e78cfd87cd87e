"""
Pytest configuration and fixtures for the console tests.

Provides report document factories, principals and an API client wired to
an in-memory store.
"""
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from civic_console.database import MemoryReportStore
from civic_console.exceptions import SubscriptionError
from civic_console.schemas import Principal, Report

T0 = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)

_ids = count(1)


# =============================================================================
# Factory Helpers
# =============================================================================

def make_doc(**overrides) -> dict:
    """Report document as the citizen client writes it."""
    doc = {
        "id": f"r{next(_ids)}",
        "uid": "citizen-1",
        "description": "Water leaking from main pipe",
        "issueType": "water",
        "issueLabel": "Water leak",
        "status": "submitted",
        "statusHistory": [],
        "createdAt": T0,
        "updatedAt": T0,
    }
    doc.update(overrides)
    return doc


def make_report(**overrides) -> Report:
    return Report.model_validate(make_doc(**overrides))


def resolved_doc(created, resolved_at, **overrides) -> dict:
    history = [
        {"kind": "status", "status": "acknowledged", "changedBy": "admin-1", "changedAt": created},
        {"kind": "status", "status": "resolved", "changedBy": "admin-1", "changedAt": resolved_at},
    ]
    return make_doc(status="resolved", createdAt=created, statusHistory=history, **overrides)


def resolved_report(created, resolved_at, **overrides) -> Report:
    return Report.model_validate(resolved_doc(created, resolved_at, **overrides))


def hours(n: float) -> timedelta:
    return timedelta(hours=n)


class FlakyStore(MemoryReportStore):
    """Memory store whose live channel can be failed on demand."""

    def __init__(self):
        super().__init__()
        self.error_callbacks = []

    def subscribe(self, query, on_snapshot, on_error=None):
        self.error_callbacks.append(on_error)
        return super().subscribe(query, on_snapshot, on_error)

    def fail(self, message="channel dropped"):
        for callback in self.error_callbacks:
            callback(SubscriptionError(message))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def store() -> MemoryReportStore:
    return MemoryReportStore()


@pytest.fixture
def admin() -> Principal:
    return Principal(uid="admin-1", email="admin@example.com", role="admin", name="Ada")


@pytest.fixture
def supervisor() -> Principal:
    return Principal(uid="sup-1", email="roads@example.com", role="supervisor", dept="roads", name="Sam")


@pytest.fixture
def no_role() -> Principal:
    return Principal(uid="user-1", email="nobody@example.com", role=None)


@pytest.fixture
def seed(store):
    """Insert report documents and return their ids."""
    def _seed(*docs):
        return [store.create_document("reports", doc) for doc in docs]
    return _seed
