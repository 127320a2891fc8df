"""
NPHIES Response Interpreter.

Pure mapping from a response Bundle to an InterpretedResponse:
- MessageHeader response code (ok / queued / transient-error / fatal-error)
- CommunicationRequests from the insurer
- ClaimResponses (final adjudication)
- Acknowledgments of Communications we sent
- OperationOutcome issues

Poll responses wrap each delivered message in its own nested Bundle; those
are scanned as well.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from src.core.enums import FinalResponseStatus, PayloadContentType, ResponseCode
from src.services.nphies import fhir
from src.services.nphies.errors import ExchangeIssue
from src.services.nphies.records import CommunicationRequestRecord, SubjectRef

logger = logging.getLogger(__name__)


@dataclass
class ReceivedCommunicationRequest:
    """CommunicationRequest as found in a response Bundle."""

    request_id: str
    status: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    about_reference: Optional[str] = None
    about_type: Optional[str] = None
    payload_content_type: Optional[str] = None
    payload_content_string: Optional[str] = None
    sender_identifier: Optional[str] = None
    recipient_identifier: Optional[str] = None
    authored_on: Optional[str] = None
    resource: dict[str, Any] = field(default_factory=dict)

    def to_record(self, subject: SubjectRef) -> CommunicationRequestRecord:
        return CommunicationRequestRecord(
            request_id=self.request_id,
            subject_type=subject.subject_type,
            subject_id=subject.subject_id,
            status=self.status,
            category=self.category,
            priority=self.priority,
            about_reference=self.about_reference,
            about_type=self.about_type,
            payload_content_type=self.payload_content_type,
            payload_content_string=self.payload_content_string,
            sender_identifier=self.sender_identifier,
            recipient_identifier=self.recipient_identifier,
            authored_on=self.authored_on,
            request_bundle=self.resource,
        )


@dataclass
class ClaimResponseInfo:
    """Adjudication fields of a ClaimResponse."""

    id: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    disposition: Optional[str] = None
    pre_auth_ref: Optional[str] = None
    resource: dict[str, Any] = field(default_factory=dict)


@dataclass
class Acknowledgment:
    """Exchange confirmation for one of our Communications."""

    communication_id: str
    status: ResponseCode
    resource_type: str
    resource: dict[str, Any] = field(default_factory=dict)


@dataclass
class InterpretedResponse:
    """Classified content of a response Bundle."""

    response_code: Optional[ResponseCode]
    communication_requests: list[ReceivedCommunicationRequest] = field(default_factory=list)
    claim_responses: list[ClaimResponseInfo] = field(default_factory=list)
    acknowledgments: list[Acknowledgment] = field(default_factory=list)
    errors: list[ExchangeIssue] = field(default_factory=list)
    queued_messages: bool = False
    message_header_id: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.response_code is None or self.response_code.is_error

    @property
    def is_queued(self) -> bool:
        return self.response_code == ResponseCode.QUEUED or self.queued_messages


# =============================================================================
# Final status classification
# =============================================================================


_APPROVED_MARKERS = ("approved", "accept")
_DENIED_MARKERS = ("denied", "reject")


def _classify_text(text: Optional[str]) -> Optional[FinalResponseStatus]:
    lowered = (text or "").lower()
    if any(marker in lowered for marker in _APPROVED_MARKERS):
        return FinalResponseStatus.APPROVED
    if any(marker in lowered for marker in _DENIED_MARKERS):
        return FinalResponseStatus.DENIED
    return None


def classify_final_status(claim_response: ClaimResponseInfo) -> Optional[FinalResponseStatus]:
    """
    Final adjudication status of a ClaimResponse, or None when not final.

    Order: explicit status, disposition text, outcome text, then outcome
    partial -> partial and complete -> approved.
    """
    status = (claim_response.status or "").lower()
    for final in FinalResponseStatus:
        if status == final.value:
            return final

    for text in (claim_response.disposition, claim_response.outcome):
        classified = _classify_text(text)
        if classified:
            return classified

    outcome = (claim_response.outcome or "").lower()
    if outcome == "partial":
        return FinalResponseStatus.PARTIAL
    if outcome == "complete":
        return FinalResponseStatus.APPROVED
    return None


# =============================================================================
# Interpreter
# =============================================================================


class ResponseInterpreter:
    """Maps NPHIES response Bundles to InterpretedResponse."""

    def interpret(self, bundle: Optional[dict[str, Any]]) -> InterpretedResponse:
        header = fhir.find_message_header(bundle)
        if header is None:
            return InterpretedResponse(
                response_code=None,
                errors=[
                    ExchangeIssue(
                        code="missing-message-header",
                        message="Response bundle has no MessageHeader",
                    )
                ],
            )

        header_id = header.get("id")
        queued_messages = self._has_queued_tag(header)
        raw_code = (header.get("response") or {}).get("code")

        try:
            response_code = ResponseCode(raw_code)
        except ValueError:
            return InterpretedResponse(
                response_code=None,
                errors=[
                    ExchangeIssue(
                        code="invalid-response-code",
                        message=f"Unrecognised MessageHeader response code: {raw_code!r}",
                        expression="MessageHeader.response.code",
                    )
                ],
                queued_messages=queued_messages,
                message_header_id=header_id,
            )

        result = InterpretedResponse(
            response_code=response_code,
            queued_messages=queued_messages,
            message_header_id=header_id,
        )

        if response_code == ResponseCode.QUEUED:
            return result

        if response_code.is_error:
            result.errors = self._collect_issues(bundle)
            if not result.errors:
                result.errors.append(
                    ExchangeIssue(code=response_code.value, message="NPHIES rejected the message")
                )
            return result

        self._collect_ok(bundle or {}, result)
        logger.debug(
            f"Interpreted response {header_id}: "
            f"{len(result.communication_requests)} request(s), "
            f"{len(result.claim_responses)} claim response(s), "
            f"{len(result.acknowledgments)} acknowledgment(s)"
        )
        return result

    # -------------------------------------------------------------------------

    @staticmethod
    def _has_queued_tag(header: dict[str, Any]) -> bool:
        for tag in (header.get("meta") or {}).get("tag") or []:
            if tag.get("code") == fhir.QUEUED_MESSAGES_TAG:
                return True
        return False

    def _walk(
        self, bundle: dict[str, Any], ack_status: ResponseCode
    ) -> Iterator[tuple[dict[str, Any], ResponseCode]]:
        """Resources of a Bundle and its nested message Bundles."""
        for resource in fhir.iter_resources(bundle):
            if resource.get("resourceType") == "Bundle":
                nested_header = fhir.find_message_header(resource)
                nested_code = ((nested_header or {}).get("response") or {}).get("code")
                try:
                    nested_status = ResponseCode(nested_code) if nested_code else ResponseCode.OK
                except ValueError:
                    nested_status = ResponseCode.OK
                yield from self._walk(resource, nested_status)
            else:
                yield resource, ack_status

    def _collect_ok(self, bundle: dict[str, Any], result: InterpretedResponse) -> None:
        for resource, ack_status in self._walk(bundle, ResponseCode.OK):
            resource_type = resource.get("resourceType")

            if resource_type == "CommunicationRequest":
                parsed = self._parse_communication_request(resource)
                if parsed:
                    result.communication_requests.append(parsed)

            elif resource_type == "ClaimResponse":
                result.claim_responses.append(self._parse_claim_response(resource))

            elif resource_type in ("Task", "Communication"):
                ack = self._parse_acknowledgment(resource, ack_status)
                if ack:
                    result.acknowledgments.append(ack)

    @staticmethod
    def _parse_communication_request(
        resource: dict[str, Any]
    ) -> Optional[ReceivedCommunicationRequest]:
        request_id = resource.get("id")
        if not request_id:
            logger.warning("Skipping CommunicationRequest without id")
            return None

        parsed = ReceivedCommunicationRequest(
            request_id=request_id,
            status=resource.get("status"),
            category=fhir.first_coding_code((resource.get("category") or [None])[0]),
            priority=resource.get("priority"),
            authored_on=resource.get("authoredOn"),
            resource=resource,
        )

        about = resource.get("about") or []
        if about:
            parsed.about_reference = about[0].get("reference")
            parsed.about_type = about[0].get("type") or fhir.reference_type(parsed.about_reference)

        sender = resource.get("sender") or {}
        parsed.sender_identifier = (sender.get("identifier") or {}).get("value")
        recipients = resource.get("recipient") or []
        if recipients:
            parsed.recipient_identifier = (recipients[0].get("identifier") or {}).get("value")

        payloads = resource.get("payload") or []
        if payloads:
            payload = payloads[0]
            if payload.get("contentString"):
                parsed.payload_content_type = PayloadContentType.STRING.value
                parsed.payload_content_string = payload["contentString"]
            elif payload.get("contentAttachment"):
                parsed.payload_content_type = PayloadContentType.ATTACHMENT.value
                parsed.payload_content_string = payload["contentAttachment"].get("title")

        return parsed

    @staticmethod
    def _parse_claim_response(resource: dict[str, Any]) -> ClaimResponseInfo:
        return ClaimResponseInfo(
            id=resource.get("id"),
            status=resource.get("status"),
            outcome=resource.get("outcome"),
            disposition=resource.get("disposition"),
            pre_auth_ref=resource.get("preAuthRef"),
            resource=resource,
        )

    @staticmethod
    def _parse_acknowledgment(
        resource: dict[str, Any], ack_status: ResponseCode
    ) -> Optional[Acknowledgment]:
        resource_type = resource["resourceType"]

        if resource_type == "Task":
            focus = resource.get("focus") or {}
            reference = focus.get("reference")
            if fhir.reference_type(reference) != "Communication" and focus.get("type") != "Communication":
                return None
        else:
            in_response_to = resource.get("inResponseTo") or []
            if not in_response_to:
                return None
            reference = in_response_to[0].get("reference")

        communication_id = fhir.reference_id(reference)
        if not communication_id:
            return None
        return Acknowledgment(
            communication_id=communication_id,
            status=ack_status,
            resource_type=resource_type,
            resource=resource,
        )

    @staticmethod
    def _collect_issues(bundle: Optional[dict[str, Any]]) -> list[ExchangeIssue]:
        issues: list[ExchangeIssue] = []
        for resource in fhir.iter_resources(bundle):
            if resource.get("resourceType") != "OperationOutcome":
                continue
            for issue in resource.get("issue") or []:
                details = issue.get("details") or {}
                expressions = issue.get("expression") or []
                issues.append(
                    ExchangeIssue(
                        code=fhir.first_coding_code(details) or issue.get("code"),
                        message=(
                            details.get("text")
                            or issue.get("diagnostics")
                            or ((details.get("coding") or [{}])[0].get("display"))
                        ),
                        expression=expressions[0] if expressions else None,
                    )
                )
        return issues
