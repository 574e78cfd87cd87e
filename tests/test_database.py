"""Tests for the in-memory store and query pushdown."""
from civic_console.database import ReportQuery, Subscription

from conftest import T0, hours, make_doc


class TestReportQuery:
    def test_empty_query_matches_everything(self):
        assert ReportQuery().matches({"assignedDept": "water"})
        assert ReportQuery().to_mongo() == {}

    def test_terms_are_ored(self):
        query = ReportQuery(any_of=(("assignedDept", "roads"), ("assignedTo", "sup-1")))
        assert query.matches({"assignedDept": "roads"})
        assert query.matches({"assignedDept": "water", "assignedTo": "sup-1"})
        assert not query.matches({"assignedDept": "water"})
        assert query.to_mongo() == {"$or": [{"assignedDept": "roads"}, {"assignedTo": "sup-1"}]}

    def test_single_term_mongo_filter(self):
        assert ReportQuery(any_of=(("assignedDept", "roads"),)).to_mongo() == {"assignedDept": "roads"}


class TestMemoryStore:
    def test_create_stamps_report_timestamps(self, store):
        report_id = store.create_document("reports", {"description": "x"})
        doc = store.get_document("reports", report_id)
        assert doc["id"] == report_id
        assert doc["createdAt"] is not None
        assert doc["updatedAt"] is not None

    def test_other_collections_not_stamped(self, store):
        user_id = store.create_document("users", {"email": "a@example.com"})
        assert "createdAt" not in store.get_document("users", user_id)

    def test_find_reports_newest_first_with_limit(self, store, seed):
        seed(
            make_doc(id="old", createdAt=T0),
            make_doc(id="new", createdAt=T0 + hours(2)),
            make_doc(id="mid", createdAt=T0 + hours(1)),
            make_doc(id="undated", createdAt="??"),
        )
        assert [d["id"] for d in store.find_reports(ReportQuery())] == ["new", "mid", "old", "undated"]
        assert [d["id"] for d in store.find_reports(ReportQuery(limit=2))] == ["new", "mid"]

    def test_get_documents_filters_by_equality(self, store):
        store.set_document("users", "a", {"email": "a@example.com"})
        store.set_document("users", "b", {"email": "b@example.com"})
        assert [d["id"] for d in store.get_documents("users", {"email": "b@example.com"})] == ["b"]

    def test_returned_documents_are_copies(self, store, seed):
        report_id, = seed(make_doc())
        store.get_document("reports", report_id)["statusHistory"].append({"bogus": True})
        assert store.get_document("reports", report_id)["statusHistory"] == []

    def test_atomic_update_sets_and_appends(self, store, seed):
        report_id, = seed(make_doc())
        entry = {"kind": "status", "status": "resolved", "changedBy": "a", "changedAt": T0}
        assert store.atomic_update(report_id, {"status": "resolved"}, entry) is True
        doc = store.get_document("reports", report_id)
        assert doc["status"] == "resolved"
        assert doc["statusHistory"] == [entry]

    def test_atomic_update_unknown_report(self, store):
        assert store.atomic_update("missing", {"status": "resolved"}) is False

    def test_subscribe_delivers_now_and_after_writes(self, store, seed):
        snapshots = []
        subscription = store.subscribe(ReportQuery(any_of=(("assignedDept", "roads"),)), snapshots.append)
        assert snapshots == [[]]

        report_id, = seed(make_doc(assignedDept="roads"))
        store.atomic_update(report_id, {"status": "acknowledged"})
        assert len(snapshots) == 3
        assert snapshots[-1][0]["status"] == "acknowledged"

        subscription.close()
        seed(make_doc(assignedDept="roads"))
        assert len(snapshots) == 3
        assert not subscription.active

    def test_describe(self, store, seed):
        seed(make_doc())
        assert store.describe() == {"store": "memory", "database": "connected", "collections": ["reports"]}


def test_subscription_close_is_idempotent():
    closed = []
    subscription = Subscription(on_close=lambda: closed.append(1))
    subscription.close()
    subscription.close()
    assert closed == [1]
