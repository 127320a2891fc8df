"""API tests for NPHIES communication routes.
Routes run against a real CommunicationService over mocked store and gateway.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from src.api.deps import get_communication_service
from src.api.main import app
from src.core.enums import (
    CommunicationStatus,
    CommunicationType,
    PayloadContentType,
    ResponseCode,
    SubjectType,
)
from src.gateways.nphies_gateway import TransportError
from src.services.nphies.communication_service import CommunicationService
from src.services.nphies.poll_scheduler import PollSchedulerRegistry
from src.services.nphies.records import (
    CommunicationRecord,
    CommunicationRequestRecord,
    PayloadRecord,
    SubjectRef,
)
from tests.fixtures.nphies_bundles import operation_outcome, response_bundle

client = TestClient(app)

BASE = "/api/claims/CLM-1001"


@pytest.fixture(autouse=True)
def service(mock_store, mock_gateway, composer, nphies_settings):
    """Install a CommunicationService for the duration of a test."""
    nphies_settings.AUTO_POLL_AFTER_ACKNOWLEDGMENT = False
    registry = PollSchedulerRegistry(mock_store, mock_gateway, composer=composer, settings=nphies_settings)
    service = CommunicationService(
        mock_store, mock_gateway, registry, composer=composer, settings=nphies_settings
    )
    app.dependency_overrides[get_communication_service] = lambda: service
    yield service
    app.dependency_overrides.clear()


def _text_body(text: str = "Please review attached labs") -> dict:
    return {"payloads": [{"content_string": text}]}


@pytest.mark.api
class TestSubmissionRoutes:
    def test_put_submission(self, mock_store):
        mock_store.upsert_subject.side_effect = lambda record: record

        response = client.put(
            f"{BASE}/nphies-submission",
            json={
                "provider_nphies_id": "PR-FHIR",
                "insurer_nphies_id": "INS-FHIR",
                "request_identifier": "req_161061",
            },
        )

        assert response.status_code == 200
        payload = response.json()
        assert payload["subject_type"] == "claim"
        assert payload["subject_id"] == "CLM-1001"
        assert payload["final_response_status"] is None

    def test_prior_authorization_kind(self, mock_store):
        mock_store.upsert_subject.side_effect = lambda record: record

        response = client.put(
            "/api/prior-authorizations/PA-1/nphies-submission",
            json={"provider_nphies_id": "PR-FHIR", "insurer_nphies_id": "INS-FHIR"},
        )

        assert response.status_code == 200
        assert response.json()["subject_type"] == "prior_authorization"

    def test_unknown_kind(self):
        response = client.get("/api/invoices/1/nphies-submission")
        assert response.status_code == 404

    def test_missing_submission(self, mock_store):
        mock_store.get_subject.return_value = None

        response = client.get(f"{BASE}/nphies-submission")

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"


@pytest.mark.api
class TestCommunicationRoutes:
    def test_send_unsolicited(self, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(code="ok")

        response = client.post(f"{BASE}/communications", json=_text_body())

        assert response.status_code == 201
        payload = response.json()
        assert payload["response_code"] == "ok"
        assert payload["communication"]["communication_type"] == "unsolicited"
        assert payload["communication"]["payloads"][0]["content_string"] == "Please review attached labs"
        assert payload["request_bundle"]["type"] == "message"

    def test_empty_payloads(self, mock_gateway):
        response = client.post(f"{BASE}/communications", json={"payloads": []})

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "validation"
        mock_gateway.process_message.assert_not_awaited()

    def test_fatal_error(self, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(
            operation_outcome("BV-00001", "Rejected"), code="fatal-error"
        )

        response = client.post(f"{BASE}/communications", json=_text_body())

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["kind"] == "exchange"
        assert error["details"]["issues"][0]["code"] == "BV-00001"

    def test_transient_error(self, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(code="transient-error")

        response = client.post(f"{BASE}/communications", json=_text_body())

        assert response.status_code == 503
        assert response.json()["error"]["details"]["retryable"] is True

    def test_transport_error(self, mock_gateway):
        mock_gateway.process_message.side_effect = TransportError(
            "NPHIES returned HTTP 500", status_code=500, body="oops"
        )

        response = client.post(f"{BASE}/communications", json=_text_body())

        assert response.status_code == 502
        error = response.json()["error"]
        assert error["kind"] == "transport"
        assert error["details"]["status_code"] == 500

    def test_answered_request_conflict(self, mock_store, mock_gateway):
        mock_store.get_communication_request.return_value = CommunicationRequestRecord(
            request_id="REQ-123",
            subject_type=SubjectType.CLAIM,
            subject_id="CLM-1001",
            responded_at=datetime.now(UTC),
        )

        response = client.post(
            f"{BASE}/communications",
            json={
                "communication_type": "solicited",
                "based_on_request_id": "REQ-123",
                **_text_body(),
            },
        )

        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "conflict"

    def test_preview(self, mock_gateway):
        response = client.post(f"{BASE}/communications/preview", json=_text_body())

        assert response.status_code == 200
        payload = response.json()
        assert payload["bundle"]["resourceType"] == "Bundle"
        assert payload["focus_id"]
        mock_gateway.process_message.assert_not_awaited()

    def test_list(self, mock_store):
        mock_store.list_communications.return_value = [
            CommunicationRecord(
                communication_id="COMM-1",
                subject_type=SubjectType.CLAIM,
                subject_id="CLM-1001",
                communication_type=CommunicationType.UNSOLICITED,
                payloads=[PayloadRecord(sequence=1, content_type=PayloadContentType.STRING, content_string="a")],
                status=CommunicationStatus.COMPLETED,
                acknowledgment_received=True,
                acknowledgment_status=ResponseCode.OK,
            )
        ]

        response = client.get(f"{BASE}/communications")

        assert response.status_code == 200
        assert response.json()[0]["acknowledgment_status"] == "ok"
        mock_store.list_communications.assert_awaited_once_with(SubjectRef(SubjectType.CLAIM, "CLM-1001"))

    def test_get_communication(self, mock_store):
        mock_store.get_communication.return_value = CommunicationRecord(
            communication_id="COMM-1",
            subject_type=SubjectType.CLAIM,
            subject_id="CLM-1001",
            communication_type=CommunicationType.UNSOLICITED,
            status=CommunicationStatus.COMPLETED,
        )

        response = client.get(f"{BASE}/communications/COMM-1")

        assert response.status_code == 200
        assert response.json()["communication_id"] == "COMM-1"

    def test_get_communication_of_other_subject(self, mock_store):
        mock_store.get_communication.return_value = CommunicationRecord(
            communication_id="COMM-1",
            subject_type=SubjectType.CLAIM,
            subject_id="CLM-OTHER",
            communication_type=CommunicationType.UNSOLICITED,
        )

        response = client.get(f"{BASE}/communications/COMM-1")

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    def test_poll_all_acknowledgments(self, mock_store, mock_gateway):
        pending = CommunicationRecord(
            communication_id="COMM-1",
            subject_type=SubjectType.CLAIM,
            subject_id="CLM-1001",
            communication_type=CommunicationType.UNSOLICITED,
            status=CommunicationStatus.COMPLETED,
            acknowledgment_status=ResponseCode.QUEUED,
        )
        mock_store.find_awaiting_acknowledgment.return_value = [pending]
        mock_store.get_communication.return_value = pending
        mock_gateway.process_message.return_value = response_bundle(code="queued")

        response = client.post(f"{BASE}/communications/poll-all-acknowledgments")

        assert response.status_code == 200
        payload = response.json()
        assert payload["polled"] is True
        assert payload["total"] == 1
        assert payload["still_queued"] == 1
        assert payload["poll_result"]["outcome"] == "queued"
        mock_gateway.process_message.assert_awaited_once()

    def test_poll_all_acknowledgments_nothing_pending(self, mock_store, mock_gateway):
        mock_store.find_awaiting_acknowledgment.return_value = []

        response = client.post(f"{BASE}/communications/poll-all-acknowledgments")

        assert response.status_code == 200
        assert response.json()["polled"] is False
        mock_gateway.process_message.assert_not_awaited()

    def test_pending_requests(self, mock_store):
        mock_store.list_communication_requests.return_value = []

        response = client.get(f"{BASE}/communication-requests", params={"pending_only": "true"})

        assert response.status_code == 200
        assert response.json() == []
        assert mock_store.list_communication_requests.await_args.kwargs["pending_only"] is True


@pytest.mark.api
class TestPollRoutes:
    def test_poll(self, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(code="queued")

        response = client.post(f"{BASE}/poll")

        assert response.status_code == 200
        payload = response.json()
        assert payload["outcome"] == "queued"
        assert payload["state"] == "idle"
        assert payload["subject"] == {"subject_type": "claim", "subject_id": "CLM-1001"}

    def test_poll_transport_error_is_reported_in_body(self, mock_gateway):
        mock_gateway.process_message.side_effect = TransportError("unreachable")

        response = client.post(f"{BASE}/poll")

        assert response.status_code == 200
        payload = response.json()
        assert payload["outcome"] == "transport_error"
        assert payload["state"] == "error"
        assert payload["error"]["kind"] == "transport"
        assert payload["retryable"] is True

    def test_poll_preview(self):
        response = client.get(f"{BASE}/poll/preview")

        assert response.status_code == 200
        task = response.json()["bundle"]["entry"][1]["resource"]
        assert task["code"]["coding"][0]["code"] == "poll"

    def test_state_and_cancel(self):
        state = client.get(f"{BASE}/poll/state")
        assert state.status_code == 200
        assert state.json()["state"] == "idle"
        assert "poll" in state.json()["valid_events"]

        cancelled = client.delete(f"{BASE}/poll/scheduled")
        assert cancelled.status_code == 200
        assert cancelled.json()["auto_poll_pending"] is False


@pytest.mark.api
class TestStatusCheckRoutes:
    def test_status_check(self, mock_gateway):
        mock_gateway.process_message.return_value = response_bundle(code="ok")

        response = client.post(f"{BASE}/status-check")

        assert response.status_code == 200
        assert response.json()["response_code"] == "ok"

    def test_status_check_preview(self, mock_gateway):
        response = client.get(f"{BASE}/status-check/preview")

        assert response.status_code == 200
        assert response.json()["bundle"]["entry"][1]["resource"]["resourceType"] == "Task"
        mock_gateway.process_message.assert_not_awaited()


@pytest.mark.api
class TestHealthRoutes:
    def test_health(self):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_detailed_health(self, monkeypatch):
        async def db_ok() -> bool:
            return True

        monkeypatch.setattr("src.api.routes.health.check_db_connection", db_ok)

        response = client.get("/health/detailed")

        assert response.status_code == 200
        assert response.json()["checks"]["database"] == "healthy"
        assert "poll_schedulers" in response.json()
