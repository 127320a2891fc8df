"""
Unit tests for the NPHIES response interpreter.
"""

import pytest

from src.core.enums import FinalResponseStatus, ResponseCode
from src.services.nphies.response_interpreter import (
    ClaimResponseInfo,
    ResponseInterpreter,
    classify_final_status,
)
from tests.fixtures.nphies_bundles import (
    claim_response,
    communication_ack_task,
    communication_request,
    nested_message,
    operation_outcome,
    response_bundle,
)


@pytest.fixture
def interpreter():
    return ResponseInterpreter()


@pytest.mark.unit
class TestResponseCodes:
    """MessageHeader response handling"""

    def test_queued_with_no_resources(self, interpreter):
        result = interpreter.interpret(response_bundle(code="queued"))

        assert result.response_code == ResponseCode.QUEUED
        assert result.is_queued
        assert not result.is_error
        assert result.communication_requests == []
        assert result.claim_responses == []
        assert result.acknowledgments == []
        assert result.errors == []

    def test_queued_messages_tag(self, interpreter):
        result = interpreter.interpret(response_bundle(code="ok", queued_messages=True))
        assert result.response_code == ResponseCode.OK
        assert result.is_queued

    def test_missing_header(self, interpreter):
        result = interpreter.interpret({"resourceType": "Bundle", "entry": []})
        assert result.response_code is None
        assert result.is_error
        assert result.errors[0].code == "missing-message-header"

    def test_none_bundle(self, interpreter):
        assert interpreter.interpret(None).is_error

    def test_unknown_code(self, interpreter):
        result = interpreter.interpret(response_bundle(code="maybe"))
        assert result.response_code is None
        assert result.errors[0].code == "invalid-response-code"

    def test_fatal_error_collects_issues(self, interpreter):
        result = interpreter.interpret(
            response_bundle(operation_outcome("GE-00013", "Invalid bundle"), code="fatal-error")
        )
        assert result.response_code == ResponseCode.FATAL_ERROR
        assert result.is_error
        assert len(result.errors) == 1
        issue = result.errors[0]
        assert issue.code == "GE-00013"
        assert issue.message == "Invalid bundle"
        assert issue.expression == "Bundle.entry[1]"

    def test_error_without_outcome_gets_generic_issue(self, interpreter):
        result = interpreter.interpret(response_bundle(code="transient-error"))
        assert result.errors[0].code == "transient-error"


@pytest.mark.unit
class TestOkResponses:
    """Resources in ok responses"""

    def test_communication_request(self, interpreter):
        result = interpreter.interpret(response_bundle(communication_request("CR-1")))

        assert len(result.communication_requests) == 1
        request = result.communication_requests[0]
        assert request.request_id == "CR-1"
        assert request.payload_content_type == "string"
        assert request.payload_content_string == "Please send the lab report"
        assert request.about_type == "Claim"
        assert request.category == "instruction"
        assert request.sender_identifier == "INS-FHIR"

    def test_nested_poll_messages(self, interpreter):
        bundle = response_bundle(
            nested_message(communication_request("CR-1"), header_id="m1"),
            nested_message(claim_response("CRS-1"), header_id="m2"),
        )
        result = interpreter.interpret(bundle)

        assert [r.request_id for r in result.communication_requests] == ["CR-1"]
        assert [c.id for c in result.claim_responses] == ["CRS-1"]

    def test_acknowledgment_task(self, interpreter):
        result = interpreter.interpret(
            response_bundle(nested_message(communication_ack_task("COMM-1"), code="ok"))
        )
        assert len(result.acknowledgments) == 1
        ack = result.acknowledgments[0]
        assert ack.communication_id == "COMM-1"
        assert ack.status == ResponseCode.OK
        assert ack.resource_type == "Task"

    def test_acknowledgment_status_from_nested_header(self, interpreter):
        result = interpreter.interpret(
            response_bundle(nested_message(communication_ack_task("COMM-1"), code="fatal-error"))
        )
        assert result.acknowledgments[0].status == ResponseCode.FATAL_ERROR

    def test_communication_in_response_to(self, interpreter):
        reply = {
            "resourceType": "Communication",
            "id": "PAYER-COMM",
            "inResponseTo": [{"reference": "Communication/COMM-7"}],
        }
        result = interpreter.interpret(response_bundle(reply))
        assert result.acknowledgments[0].communication_id == "COMM-7"

    def test_unrelated_task_ignored(self, interpreter):
        task = {"resourceType": "Task", "id": "T", "focus": {"reference": "Claim/1"}}
        assert interpreter.interpret(response_bundle(task)).acknowledgments == []

    def test_communication_request_without_id_skipped(self, interpreter):
        request = communication_request()
        del request["id"]
        assert interpreter.interpret(response_bundle(request)).communication_requests == []


@pytest.mark.unit
class TestClassifyFinalStatus:
    """Final adjudication status"""

    @pytest.mark.parametrize(
        "info, expected",
        [
            (ClaimResponseInfo(status="approved"), FinalResponseStatus.APPROVED),
            (ClaimResponseInfo(disposition="Request rejected by payer"), FinalResponseStatus.DENIED),
            (ClaimResponseInfo(outcome="complete", disposition="Claim approved"), FinalResponseStatus.APPROVED),
            (ClaimResponseInfo(outcome="partial"), FinalResponseStatus.PARTIAL),
            (ClaimResponseInfo(outcome="complete"), FinalResponseStatus.APPROVED),
            (ClaimResponseInfo(outcome="error"), None),
            (ClaimResponseInfo(outcome="queued", disposition="Pending review"), None),
        ],
    )
    def test_classification(self, info, expected):
        assert classify_final_status(info) == expected
