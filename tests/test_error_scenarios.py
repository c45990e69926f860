"""Tests for error handling and edge cases.

Tests include:
- Invalid input validation
- Foreign and missing sessions
- Terminal session mutations
- Storage failures surfacing as "try again"
- Analysis backend unavailable
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from ssbprep.errors import PersistenceError
from ssbprep.services.analysis import get_analyzer


def start(client, test_type="ppdt"):
    response = client.post("/api/tests/start", json={"test_type": test_type})
    assert response.status_code == 201
    return response.json()


def finish_ppdt(client):
    state = start(client, "ppdt")
    session_id = state["session_id"]
    client.post(
        f"/api/tests/sessions/{session_id}/responses",
        json={"prompt_id": state["current_prompt"]["prompt_id"], "text": "A short story"}
    )
    client.post(f"/api/tests/sessions/{session_id}/advance")
    return session_id


class TestInputValidation:
    """Tests for request validation."""

    def test_unknown_test_type(self, test_client):
        response = test_client.post("/api/tests/start", json={"test_type": "gto"})
        assert response.status_code == 422

    def test_missing_test_type(self, test_client):
        response = test_client.post("/api/tests/start", json={})
        assert response.status_code == 422

    def test_blank_response_text(self, test_client):
        state = start(test_client)
        response = test_client.post(
            f"/api/tests/sessions/{state['session_id']}/responses",
            json={"prompt_id": state["current_prompt"]["prompt_id"], "text": "   "}
        )
        assert response.status_code == 422

    def test_negative_elapsed_time(self, test_client):
        state = start(test_client)
        response = test_client.post(
            f"/api/tests/sessions/{state['session_id']}/responses",
            json={"prompt_id": state["current_prompt"]["prompt_id"], "text": "Story", "elapsed_ms": -1}
        )
        assert response.status_code == 422

    def test_prompt_outside_session(self, test_client):
        state = start(test_client)
        response = test_client.post(
            f"/api/tests/sessions/{state['session_id']}/responses",
            json={"prompt_id": "999999", "text": "Story"}
        )
        assert response.status_code == 400

    def test_negative_time_up_index(self, test_client):
        state = start(test_client)
        response = test_client.post(
            f"/api/tests/sessions/{state['session_id']}/time-up", json={"prompt_index": -1}
        )
        assert response.status_code == 422


class TestSessionAccess:
    """Tests for ownership and terminal state."""

    def test_missing_session(self, test_client):
        test_client.get("/api/bootstrap")
        response = test_client.get("/api/tests/sessions/9999/state")
        assert response.status_code == 404

    def test_other_browser_cannot_see_session(self, test_client):
        state = start(test_client)

        other = TestClient(test_client.app)
        response = other.get(f"/api/tests/sessions/{state['session_id']}/state")
        assert response.status_code == 404

    def test_results_before_completion(self, test_client):
        state = start(test_client, "wat")
        response = test_client.get(f"/api/tests/sessions/{state['session_id']}/results")
        assert response.status_code == 409

    def test_completed_session_rejects_mutations(self, test_client):
        session_id = finish_ppdt(test_client)

        assert test_client.post(f"/api/tests/sessions/{session_id}/advance").status_code == 409
        response = test_client.post(
            f"/api/tests/sessions/{session_id}/responses",
            json={"prompt_id": "1", "text": "Too late"}
        )
        assert response.status_code == 409
        response = test_client.put(f"/api/tests/sessions/{session_id}/draft", json={"text": "late"})
        assert response.status_code == 409

    def test_analysis_of_in_progress_session(self, test_client):
        state = start(test_client, "wat")
        response = test_client.post(f"/api/tests/sessions/{state['session_id']}/analysis")
        assert response.status_code == 409


class TestStorageFailures:
    """Tests for datastore failures."""

    def test_write_failure_is_503(self, test_client, monkeypatch):
        state = start(test_client)

        def failing_submit(*args, **kwargs):
            raise PersistenceError("Could not complete response submission")

        monkeypatch.setattr("ssbprep.routers.sessions.submit_response", failing_submit)
        response = test_client.post(
            f"/api/tests/sessions/{state['session_id']}/responses",
            json={"prompt_id": state["current_prompt"]["prompt_id"], "text": "Story"}
        )
        assert response.status_code == 503
        assert response.json()["detail"] == "Could not complete response submission"

    def test_ledger_failure_blocks_start(self, test_client, monkeypatch):
        def failing_limits(db, identity):
            raise PersistenceError()

        monkeypatch.setattr("ssbprep.services.ledger.get_limits", failing_limits)
        response = test_client.post("/api/tests/start", json={"test_type": "wat"})
        assert response.status_code == 402

    def test_failed_charge_can_be_retried(self, test_client, fake_analyzer, monkeypatch):
        from ssbprep.services import ledger

        def failing_decrement(self, bucket):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        state = start(test_client)
        session_id = state["session_id"]
        test_client.post(
            f"/api/tests/sessions/{session_id}/responses",
            json={"prompt_id": state["current_prompt"]["prompt_id"], "text": "Story"}
        )
        monkeypatch.setattr(ledger.GuestLedgerStore, "decrement", failing_decrement)
        response = test_client.post(f"/api/tests/sessions/{session_id}/advance")
        monkeypatch.undo()

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["analysis_status"] == "charge_failed"
        assert fake_analyzer.requests == []
        assert test_client.get("/api/tests/limits").json()["limits"]["ppdt"] == 1

        response = test_client.post(f"/api/tests/sessions/{session_id}/analysis")
        assert response.status_code == 200
        assert response.json()["analysis_status"] == "completed"
        assert test_client.get("/api/tests/limits").json()["limits"]["ppdt"] == 0

    def test_registered_charge_failure_keeps_attempts(self, test_client, fake_analyzer, monkeypatch):
        from ssbprep.services import ledger

        def failing_take(self, bucket):
            raise OperationalError("UPDATE usage_ledger", {}, Exception("database is locked"))

        test_client.post("/api/user/register", json={"display_name": "Test Cadet"})
        state = start(test_client)
        session_id = state["session_id"]
        test_client.post(
            f"/api/tests/sessions/{session_id}/responses",
            json={"prompt_id": state["current_prompt"]["prompt_id"], "text": "Story"}
        )
        monkeypatch.setattr(ledger.DatabaseLedgerStore, "_take", failing_take)
        response = test_client.post(f"/api/tests/sessions/{session_id}/advance")
        monkeypatch.undo()

        assert response.json()["analysis_status"] == "charge_failed"
        results = test_client.get(f"/api/tests/sessions/{session_id}/results").json()
        assert results["limit_charged"] is False
        assert test_client.get("/api/tests/limits").json()["limits"]["ppdt"] == 2

        response = test_client.post(f"/api/tests/sessions/{session_id}/analysis")
        assert response.status_code == 200
        assert response.json()["analysis_status"] == "completed"
        assert test_client.get("/api/tests/limits").json()["limits"]["ppdt"] == 1

    def test_retried_charge_without_attempts_is_402(self, test_client, fake_analyzer, monkeypatch):
        from ssbprep.services import ledger

        def failing_decrement(self, bucket):
            raise OperationalError("UPDATE", {}, Exception("database is locked"))

        first = start(test_client)
        second = start(test_client)
        test_client.post(
            f"/api/tests/sessions/{first['session_id']}/responses",
            json={"prompt_id": first["current_prompt"]["prompt_id"], "text": "Story"}
        )
        monkeypatch.setattr(ledger.GuestLedgerStore, "decrement", failing_decrement)
        test_client.post(f"/api/tests/sessions/{first['session_id']}/advance")
        monkeypatch.undo()

        test_client.post(
            f"/api/tests/sessions/{second['session_id']}/responses",
            json={"prompt_id": second["current_prompt"]["prompt_id"], "text": "Another story"}
        )
        test_client.post(f"/api/tests/sessions/{second['session_id']}/advance")
        results = test_client.get(f"/api/tests/sessions/{second['session_id']}/results").json()
        assert results["analysis_status"] == "completed"

        response = test_client.post(f"/api/tests/sessions/{first['session_id']}/analysis")
        assert response.status_code == 402

        results = test_client.get(f"/api/tests/sessions/{first['session_id']}/results").json()
        assert results["analysis_status"] == "limit_exceeded"


class TestAnalysisUnavailable:
    """Tests for a missing analysis backend."""

    def test_completion_without_analyzer(self, test_client):
        test_client.app.dependency_overrides[get_analyzer] = lambda: None

        session_id = finish_ppdt(test_client)
        results = test_client.get(f"/api/tests/sessions/{session_id}/results").json()
        assert results["analysis_status"] == "not_requested"
        assert results["limit_charged"] is True

        response = test_client.post(f"/api/tests/sessions/{session_id}/analysis")
        assert response.status_code == 502

        results = test_client.get(f"/api/tests/sessions/{session_id}/results").json()
        assert results["analysis_status"] == "failed"
