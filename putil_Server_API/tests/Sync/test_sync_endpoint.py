# test_sync_endpoint.py
# Description: HTTP tests for POST /api/v1/sync/{entity_type} and GET /api/v1/sync/log.
#
# Imports
#
# 3rd-party Libraries
import pytest
from fastapi.testclient import TestClient
#
# Local Imports
from putil_Server_API.app.api.v1.API_Deps.DB_Deps import get_records_db, get_sync_coordinator
from putil_Server_API.app.core.AuthNZ.User_DB_Handling import User, get_request_user
from putil_Server_API.app.core.config import settings
from putil_Server_API.app.core.Sync.coordinator import SyncCoordinator
from putil_Server_API.app.core.Sync.exceptions import TransactionFailure
from putil_Server_API.app.main import app as fastapi_app
#
########################################################################################################################

TEST_USER = User(id=41, username="sync_tester")


@pytest.fixture
def client(records_db):
    coordinator = SyncCoordinator(records_db)
    fastapi_app.dependency_overrides[get_request_user] = lambda: TEST_USER
    fastapi_app.dependency_overrides[get_records_db] = lambda: records_db
    fastapi_app.dependency_overrides[get_sync_coordinator] = lambda: coordinator
    # No context manager: the lifespan (and its background scanner) stays off for these tests.
    yield TestClient(fastapi_app)
    fastapi_app.dependency_overrides.clear()


def _sync(client, entity_type, mutations, watermark=None, device="device-a"):
    return client.post(f"/api/v1/sync/{entity_type}", json={"watermark": watermark, "mutations": mutations},
                       headers={"X-Device-ID": device})


class TestSyncEndpoint:

    def test_create_then_pull_from_second_device(self, client):
        response = _sync(client, "tasks", [{"clientKey": "k1", "believedRevision": 0,
                                            "payload": {"title": "Buy milk"}}])
        assert response.status_code == 200, response.text
        body = response.json()
        assert set(body) == {"accepted", "rejected", "serverChanges", "watermark"}
        assert body["accepted"][0]["clientKey"] == "k1"
        assert body["accepted"][0]["revision"] == 1
        assert body["serverChanges"] == []

        pulled = _sync(client, "tasks", [], device="device-b").json()
        assert [e["clientKey"] for e in pulled["serverChanges"]] == ["k1"]
        assert pulled["serverChanges"][0]["payload"]["title"] == "Buy milk"

    def test_stale_update_comes_back_as_rejection(self, client):
        created = _sync(client, "tasks", [{"clientKey": "k1", "payload": {"title": "v1"}}]).json()["accepted"][0]
        _sync(client, "tasks", [{"clientKey": "k1", "id": created["id"], "believedRevision": 1,
                                 "payload": {"title": "v2"}}])
        body = _sync(client, "tasks", [{"clientKey": "k1", "id": created["id"], "believedRevision": 1,
                                        "payload": {"title": "late"}}], device="device-b").json()
        assert body["accepted"] == []
        assert body["rejected"][0]["reason"] == "stale"
        assert body["rejected"][0]["serverState"]["revision"] == 2
        assert body["rejected"][0]["serverState"]["payload"]["title"] == "v2"

    def test_unknown_entity_type_is_404(self, client):
        assert _sync(client, "notes", []).status_code == 404

    def test_malformed_watermark_is_400(self, client):
        assert _sync(client, "tasks", [], watermark="not-a-time").status_code == 400

    def test_negative_believed_revision_is_422(self, client):
        response = _sync(client, "tasks", [{"clientKey": "k1", "believedRevision": -1, "payload": {}}])
        assert response.status_code == 422

    def test_missing_client_key_is_422(self, client):
        assert _sync(client, "tasks", [{"believedRevision": 0, "payload": {}}]).status_code == 422

    def test_oversized_integer_is_a_per_mutation_rejection(self, client):
        response = _sync(client, "tasks", [
            {"clientKey": "huge", "payload": {"title": "x", "position": 2 ** 70}},
            {"clientKey": "ok", "payload": {"title": "y"}},
        ])
        assert response.status_code == 200, response.text
        body = response.json()
        assert [(r["clientKey"], r["reason"]) for r in body["rejected"]] == [("huge", "invalid_payload")]
        assert [e["clientKey"] for e in body["accepted"]] == ["ok"]

    def test_too_many_mutations_is_413(self, client, monkeypatch):
        monkeypatch.setitem(settings, "SYNC_MAX_MUTATIONS", 2)
        mutations = [{"clientKey": f"k{i}", "payload": {"title": "x"}} for i in range(3)]
        assert _sync(client, "tasks", mutations).status_code == 413

    def test_storage_failure_is_retryable_503(self, client):
        class FailingCoordinator:
            def reconcile(self, *args, **kwargs):
                raise TransactionFailure("database is locked")

        fastapi_app.dependency_overrides[get_sync_coordinator] = lambda: FailingCoordinator()
        response = _sync(client, "tasks", [{"clientKey": "k1", "payload": {"title": "x"}}])
        assert response.status_code == 503
        assert response.json()["retryable"] is True

    def test_sync_log_lists_recent_entries(self, client):
        _sync(client, "tasks", [{"clientKey": "k1", "payload": {"title": "x"}}], device="phone")
        _sync(client, "events", [{"clientKey": "e1", "payload": {"title": "party"}}], device="phone")

        response = client.get("/api/v1/sync/log")
        assert response.status_code == 200
        entries = response.json()
        assert [e["table_name"] for e in entries] == ["events", "tasks"]
        assert entries[0]["client_device_id"] == "phone"

        only_tasks = client.get("/api/v1/sync/log", params={"entity_type": "tasks", "limit": 5}).json()
        assert [e["client_key"] for e in only_tasks] == ["k1"]
        assert client.get("/api/v1/sync/log", params={"entity_type": "notes"}).status_code == 404


@pytest.mark.skipif(not settings["SINGLE_USER_MODE"], reason="API-key auth applies in single-user mode only")
class TestSyncAuth:

    def test_missing_api_key_is_401(self, records_db):
        fastapi_app.dependency_overrides[get_sync_coordinator] = lambda: SyncCoordinator(records_db)
        try:
            response = TestClient(fastapi_app).post("/api/v1/sync/tasks", json={"mutations": []})
        finally:
            fastapi_app.dependency_overrides.clear()
        assert response.status_code == 401

    def test_valid_api_key_scopes_to_single_user(self, records_db):
        fastapi_app.dependency_overrides[get_sync_coordinator] = lambda: SyncCoordinator(records_db)
        try:
            response = TestClient(fastapi_app).post(
                "/api/v1/sync/tasks",
                json={"mutations": [{"clientKey": "solo", "payload": {"title": "x"}}]},
                headers={"X-API-KEY": settings["SINGLE_USER_API_KEY"]},
            )
        finally:
            fastapi_app.dependency_overrides.clear()
        assert response.status_code == 200
        record_id = response.json()["accepted"][0]["id"]
        row = records_db.get_record(records_db.get_connection(), "tasks", settings["SINGLE_USER_FIXED_ID"], record_id)
        assert row is not None

#
# End of test_sync_endpoint.py
########################################################################################################################
