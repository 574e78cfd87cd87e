"""End-to-end tests for the HTTP and WebSocket surface."""
import csv
import io

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from civic_console.main import app, get_report_store
from civic_console.roles import create_token
from civic_console.schemas import Identity

from conftest import T0, FlakyStore, hours, make_doc, resolved_doc


def bearer(uid, email):
    return {"Authorization": f"Bearer {create_token(Identity(uid=uid, email=email))}"}


@pytest.fixture
def client(store):
    app.dependency_overrides[get_report_store] = lambda: store
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(store):
    store.set_document("admins", "admin-1", {"role": "admin", "name": "Ada"})
    return bearer("admin-1", "admin@example.com")


@pytest.fixture
def supervisor_headers(store):
    store.set_document("supervisors", "sup-1", {"dept": "roads", "name": "Sam", "email": "roads@example.com"})
    return bearer("sup-1", "roads@example.com")


@pytest.fixture
def citizen_headers():
    return bearer("citizen-1", "citizen@example.com")


class TestAuth:
    def test_register_login_and_me(self, client):
        res = client.post("/auth/register", json={"name": "Ann", "email": "ann@example.com", "password": "pw"})
        assert res.status_code == 200
        assert res.json()["user"]["role"] is None

        res = client.post("/auth/login", json={"email": "ann@example.com", "password": "pw"})
        assert res.status_code == 200
        token = res.json()["token"]

        me = client.get("/me", headers={"Authorization": f"Bearer {token}"}).json()
        assert (me["email"], me["state"]) == ("ann@example.com", "no_role")

    def test_bad_credentials(self, client):
        res = client.post("/auth/login", json={"email": "nobody@example.com", "password": "pw"})
        assert res.status_code == 401
        assert res.json()["detail"]["code"] == "CC_AUTHENTICATION_FAILED"

    @pytest.mark.parametrize("headers,code", [
        ({}, "CC_NOT_AUTHENTICATED"),
        ({"Authorization": "Bearer junk"}, "CC_AUTHENTICATION_FAILED"),
        ({"Authorization": "Basic abc"}, "CC_AUTHENTICATION_FAILED"),
    ])
    def test_missing_and_invalid_tokens_share_one_body_shape(self, client, headers, code):
        res = client.get("/me", headers=headers)
        assert res.status_code == 401
        assert res.json()["detail"]["code"] == code
        assert res.json()["detail"]["message"]

    def test_me_reports_role(self, client, admin_headers):
        assert client.get("/me", headers=admin_headers).json()["state"] == "admin"


class TestIngestion:
    def test_create_report_is_auto_assigned(self, client, store, citizen_headers):
        res = client.post("/reports", headers=citizen_headers,
                          json={"description": "Pothole on 5th", "issueType": "road", "issueLabel": "Pothole"})
        assert res.status_code == 200
        report_id = res.json()["id"]

        doc = store.get_document("reports", report_id)
        assert doc["uid"] == "citizen-1"
        assert doc["status"] == "submitted"
        assert doc["assignedDept"] == "roads"

    def test_malformed_client_timestamp(self, client, citizen_headers):
        res = client.post("/reports", headers=citizen_headers,
                          json={"description": "x", "createdAt": "yesterday-ish"})
        assert res.status_code == 422
        assert res.json()["detail"]["code"] == "CC_MALFORMED_TIMESTAMP"


class TestAdminViews:
    def test_non_admin_forbidden(self, client, citizen_headers, supervisor_headers):
        assert client.get("/admin/reports", headers=citizen_headers).status_code == 403
        assert client.get("/admin/reports", headers=supervisor_headers).status_code == 403

    def test_list_with_filters_and_preset(self, client, seed, admin_headers):
        seed(
            make_doc(id="a", description="Broken pipe"),
            make_doc(id="b", status="acknowledged"),
            resolved_doc(T0, T0 + hours(2), id="c", issueType="road"),
        )
        body = client.get("/admin/reports", headers=admin_headers).json()
        assert (body["total"], body["count"]) == (3, 3)

        body = client.get("/admin/reports", headers=admin_headers, params={"filter": "unresolved"}).json()
        assert [r["id"] for r in body["reports"]] == ["a"]

        body = client.get("/admin/reports", headers=admin_headers, params={"search": "BROKEN", "issueType": ""}).json()
        assert [r["id"] for r in body["reports"]] == ["a"]

        res = client.get("/admin/reports", headers=admin_headers, params={"status": "closed"})
        assert res.status_code == 422

    def test_report_detail_includes_reporter_name(self, client, store, seed, admin_headers):
        store.set_document("users", "citizen-1", {"name": "Citizen Kane", "email": "c@example.com"})
        seed(make_doc(id="a"))
        body = client.get("/admin/reports/a", headers=admin_headers).json()
        assert body["report"]["id"] == "a"
        assert body["reporterName"] == "Citizen Kane"
        assert client.get("/admin/reports/zzz", headers=admin_headers).status_code == 404

    def test_csv_export(self, client, seed, admin_headers):
        seed(make_doc(id="a", description='Say "hi", please'), resolved_doc(T0, T0 + hours(4), id="b"))
        res = client.get("/admin/reports/export", headers=admin_headers)
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/csv")
        assert "attachment; filename=\"reports-export-" in res.headers["content-disposition"]
        rows = list(csv.reader(io.StringIO(res.text)))
        assert len(rows) == 3
        by_id = {row[0]: row for row in rows[1:]}
        assert by_id["a"][3] == 'Say "hi", please'
        assert by_id["b"][-1] == "4"

    def test_map_only_located_reports(self, client, seed, admin_headers):
        seed(
            make_doc(id="a", location={"latitude": 28.61391, "longitude": 77.20901}),
            make_doc(id="b", location={"latitude": 28.61394, "longitude": 77.20899}),
            make_doc(id="c"),
        )
        body = client.get("/admin/map", headers=admin_headers).json()
        assert body["count"] == 2
        assert body["clusters"][0]["count"] == 2

    def test_analytics(self, client, store, seed, admin_headers):
        seed(
            make_doc(id="open"),
            resolved_doc(T0, T0 + hours(5), id="five"),
            resolved_doc(T0, T0 + hours(3), id="three"),
        )
        body = client.get("/admin/analytics", headers=admin_headers, params={"days": 7}).json()
        assert body["resolutionRate"] == 67
        assert body["avgResolutionHours"] == 4
        assert len(body["submissions"]) == 7
        assert body["statusDistribution"] == {"submitted": 1, "resolved": 2}
        # computed from a one-off read, no live subscription left behind
        assert store._listeners == {}

    def test_stats(self, client, seed, admin_headers):
        seed(make_doc(), resolved_doc(T0, T0 + hours(1)))
        body = client.get("/admin/stats", headers=admin_headers).json()
        assert (body["total"], body["open"]) == (2, 1)


class TestAdminMutations:
    def test_status_update_appends_history(self, client, store, seed, admin_headers):
        report_id, = seed(make_doc())
        res = client.patch(f"/admin/reports/{report_id}/status", headers=admin_headers,
                           json={"status": "acknowledged", "note": "seen"})
        assert res.status_code == 200
        doc = store.get_document("reports", report_id)
        assert doc["status"] == "acknowledged"
        assert doc["statusHistory"][-1]["changedBy"] == "admin-1"

    def test_invalid_status_rejected(self, client, seed, admin_headers):
        report_id, = seed(make_doc())
        res = client.patch(f"/admin/reports/{report_id}/status", headers=admin_headers, json={"status": "closed"})
        assert res.status_code == 422

    def test_status_update_missing_report(self, client, admin_headers):
        res = client.patch("/admin/reports/nope/status", headers=admin_headers, json={"status": "resolved"})
        assert res.status_code == 404

    def test_assignment(self, client, store, seed, admin_headers):
        report_id, = seed(make_doc())
        res = client.patch(f"/admin/reports/{report_id}/assignment", headers=admin_headers,
                           json={"assignedDept": "roads", "assignedTo": "sup-1"})
        assert res.status_code == 200
        doc = store.get_document("reports", report_id)
        assert (doc["assignedDept"], doc["assignedTo"]) == ("roads", "sup-1")

        empty = client.patch(f"/admin/reports/{report_id}/assignment", headers=admin_headers, json={})
        assert empty.status_code == 400

    def test_classification(self, client, store, seed, admin_headers):
        report_id, = seed(make_doc())
        res = client.patch(f"/admin/reports/{report_id}/classification", headers=admin_headers,
                           json={"classification": "Pipe burst"})
        assert res.status_code == 200
        assert store.get_document("reports", report_id)["classification"] == "Pipe burst"


class TestSupervisor:
    def test_sees_only_scoped_reports(self, client, seed, supervisor_headers):
        seed(
            make_doc(id="dept", assignedDept="roads"),
            make_doc(id="mine", assignedDept="water", assignedTo="sup-1"),
            make_doc(id="other", assignedDept="water"),
        )
        body = client.get("/supervisor/reports", headers=supervisor_headers).json()
        assert sorted(r["id"] for r in body["reports"]) == ["dept", "mine"]

        stats = client.get("/supervisor/stats", headers=supervisor_headers).json()
        assert stats["total"] == 2

    def test_update_in_and_out_of_scope(self, client, store, seed, supervisor_headers):
        seed(make_doc(id="dept", assignedDept="roads"), make_doc(id="other", assignedDept="water"))
        ok = client.patch("/supervisor/reports/dept/status", headers=supervisor_headers,
                          json={"status": "in_progress"})
        assert ok.status_code == 200
        denied = client.patch("/supervisor/reports/other/status", headers=supervisor_headers,
                              json={"status": "resolved"})
        assert denied.status_code == 403
        assert denied.json()["detail"]["code"] == "CC_OUT_OF_SCOPE"
        assert store.get_document("reports", "other")["status"] == "submitted"

    def test_add_note(self, client, store, seed, supervisor_headers):
        seed(make_doc(id="dept", assignedDept="roads"))
        res = client.post("/supervisor/reports/dept/notes", headers=supervisor_headers,
                          json={"note": "Crew on site"})
        assert res.status_code == 200
        assert store.get_document("reports", "dept")["statusHistory"][-1]["kind"] == "note"

    def test_admin_cannot_use_supervisor_routes(self, client, admin_headers):
        assert client.get("/supervisor/reports", headers=admin_headers).status_code == 403


class TestLiveFeed:
    def test_admin_receives_snapshot_and_updates(self, client, store, seed, admin_headers):
        seed(make_doc(id="a"))
        token = admin_headers["Authorization"].split(" ", 1)[1]
        with client.websocket_connect(f"/ws/reports?token={token}") as ws:
            first = ws.receive_json()
            assert first["count"] == 1
            store.create_document("reports", make_doc(id="b"))
            second = ws.receive_json()
            assert second["count"] == 2

    def test_channel_error_is_pushed_with_last_data(self):
        store = FlakyStore()
        store.set_document("admins", "admin-1", {"role": "admin"})
        store.create_document("reports", make_doc(id="a"))
        token = create_token(Identity(uid="admin-1", email="admin@example.com"))
        app.dependency_overrides[get_report_store] = lambda: store
        try:
            with TestClient(app) as client:
                with client.websocket_connect(f"/ws/reports?token={token}") as ws:
                    assert ws.receive_json()["error"] is None
                    store.fail("Live updates unavailable")
                    frame = ws.receive_json()
                    assert frame["error"] == "Live updates unavailable"
                    assert [r["id"] for r in frame["reports"]] == ["a"]
        finally:
            app.dependency_overrides.clear()

    def test_no_role_is_refused(self, client, citizen_headers):
        token = citizen_headers["Authorization"].split(" ", 1)[1]
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/reports?token={token}") as ws:
                ws.receive_json()


def test_health(client):
    body = client.get("/health").json()
    assert body["backend"] == "running"
    assert body["store"] == "memory"
    assert body["database"] == "connected"
