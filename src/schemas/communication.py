"""
Pydantic Schemas for the NPHIES Communication API.
Source: NPHIES Implementation Guide - Communication, Poll, Status Check
Verified: 2026-10-16
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from src.core.enums import (
    CommunicationCategory,
    CommunicationPriority,
    CommunicationStatus,
    CommunicationType,
    ErrorKind,
    FinalResponseStatus,
    NphiesEndpoint,
    PayloadContentType,
    PollOutcome,
    PollState,
    ResponseCode,
    SubjectType,
)
from src.services.nphies.poll_scheduler import PollEvent
from src.services.nphies.records import (
    AttachmentDraft,
    CommunicationDraft,
    PayloadDraft,
    SubjectRecord,
    SubjectRef,
)


class AttributeModel(BaseModel):
    """Response schema read from service records."""

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Errors
# =============================================================================


class ErrorDetail(AttributeModel):
    """Normalized error."""

    kind: ErrorKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Body of every workflow error response."""

    error: ErrorDetail


class ExchangeIssueResponse(AttributeModel):
    """OperationOutcome issue reported by NPHIES."""

    code: Optional[str] = None
    message: Optional[str] = None
    expression: Optional[str] = None


# =============================================================================
# Submission tracking
# =============================================================================


class SubjectRefResponse(AttributeModel):
    subject_type: SubjectType
    subject_id: str


class SubmissionUpsert(BaseModel):
    """Register or update what is needed to message about a submission."""

    provider_nphies_id: str = Field(..., min_length=1, max_length=50, description="Provider license id")
    insurer_nphies_id: str = Field(..., min_length=1, max_length=50, description="Payer license id")
    request_identifier: Optional[str] = Field(
        None, max_length=100, description="Business identifier of the submitted Claim"
    )
    patient_reference: Optional[str] = Field(
        None, max_length=200, description="FHIR Patient reference, e.g. Patient/123"
    )

    def to_record(self, subject: SubjectRef) -> SubjectRecord:
        return SubjectRecord(
            subject_type=subject.subject_type,
            subject_id=subject.subject_id,
            provider_nphies_id=self.provider_nphies_id,
            insurer_nphies_id=self.insurer_nphies_id,
            request_identifier=self.request_identifier,
            patient_reference=self.patient_reference,
        )


class SubmissionResponse(AttributeModel):
    """Submission tracking record."""

    subject_type: SubjectType
    subject_id: str
    provider_nphies_id: str
    insurer_nphies_id: str
    request_identifier: Optional[str] = None
    patient_reference: Optional[str] = None
    final_response_status: Optional[FinalResponseStatus] = None
    outcome: Optional[str] = None
    disposition: Optional[str] = None
    pre_auth_ref: Optional[str] = None
    responded_at: Optional[datetime] = None


# =============================================================================
# Communications
# =============================================================================


class AttachmentIn(BaseModel):
    content_type: str = Field(default="application/octet-stream", max_length=100)
    title: Optional[str] = Field(None, max_length=255)
    data: Optional[str] = Field(None, description="Base64 content, sent as supplied")
    url: Optional[str] = None
    size: Optional[int] = Field(None, ge=0)
    hash: Optional[str] = None


class PayloadIn(BaseModel):
    """One payload; exactly one of content_string or attachment."""

    content_string: Optional[str] = None
    attachment: Optional[AttachmentIn] = None
    claim_item_sequences: list[int] = Field(default_factory=list)

    def to_draft(self) -> PayloadDraft:
        return PayloadDraft(
            content_string=self.content_string,
            attachment=AttachmentDraft(**self.attachment.model_dump()) if self.attachment else None,
            claim_item_sequences=list(self.claim_item_sequences),
        )


class CommunicationCreate(BaseModel):
    """Communication to compose (and optionally send)."""

    communication_type: CommunicationType = CommunicationType.UNSOLICITED
    based_on_request_id: Optional[str] = Field(
        None, description="CommunicationRequest answered (solicited only)"
    )
    category: CommunicationCategory = CommunicationCategory.ALERT
    priority: CommunicationPriority = CommunicationPriority.ROUTINE
    about_reference: Optional[str] = None
    about_type: str = "Claim"
    payloads: list[PayloadIn] = Field(default_factory=list)
    endpoint: Optional[NphiesEndpoint] = Field(None, description="test or production")

    def to_draft(self) -> CommunicationDraft:
        return CommunicationDraft(
            payloads=[payload.to_draft() for payload in self.payloads],
            communication_type=self.communication_type,
            based_on_request_id=self.based_on_request_id,
            category=self.category,
            priority=self.priority,
            about_reference=self.about_reference,
            about_type=self.about_type,
        )


class PayloadResponse(AttributeModel):
    sequence: int
    content_type: PayloadContentType
    content_string: Optional[str] = None
    attachment_content_type: Optional[str] = None
    attachment_title: Optional[str] = None
    attachment_size: Optional[int] = None
    claim_item_sequences: list[int] = Field(default_factory=list)


class CommunicationResponse(AttributeModel):
    """Sent Communication. Raw bundles are omitted from listings."""

    communication_id: str
    nphies_communication_id: Optional[str] = None
    subject_type: SubjectType
    subject_id: str
    communication_type: CommunicationType
    based_on_request_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    about_reference: Optional[str] = None
    status: CommunicationStatus
    sent_at: Optional[datetime] = None
    acknowledgment_received: bool = False
    acknowledgment_status: Optional[ResponseCode] = None
    acknowledgment_at: Optional[datetime] = None
    payloads: list[PayloadResponse] = Field(default_factory=list)


class CommunicationRequestResponse(AttributeModel):
    """CommunicationRequest received from the insurer."""

    request_id: str
    subject_type: SubjectType
    subject_id: str
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
    received_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    response_communication_id: Optional[str] = None
    reserved_communication_id: Optional[str] = None


class BundlePreviewResponse(AttributeModel):
    """Composed Bundle that would be sent."""

    bundle: dict[str, Any]
    message_header_id: str
    focus_id: str


class CommunicationSendResponse(AttributeModel):
    communication: CommunicationResponse
    response_code: Optional[ResponseCode] = None
    acknowledgment_status: Optional[ResponseCode] = None
    queued: bool = False
    request_bundle: dict[str, Any]
    response_bundle: dict[str, Any]


class StatusCheckResponse(AttributeModel):
    response_code: Optional[ResponseCode] = None
    queued: bool = False
    request_bundle: dict[str, Any]
    response_bundle: dict[str, Any]
    issues: list[ExchangeIssueResponse] = Field(default_factory=list)


# =============================================================================
# Poll
# =============================================================================


class ClaimResponseSummary(AttributeModel):
    id: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    disposition: Optional[str] = None
    pre_auth_ref: Optional[str] = None


class PollCycleResponse(AttributeModel):
    """Result of one poll cycle."""

    subject: SubjectRefResponse
    outcome: PollOutcome
    state: PollState
    response_code: Optional[ResponseCode] = None
    communication_requests: list[CommunicationRequestResponse] = Field(default_factory=list)
    acknowledgments: list[CommunicationResponse] = Field(default_factory=list)
    claim_responses: list[ClaimResponseSummary] = Field(default_factory=list)
    final_response_status: Optional[FinalResponseStatus] = None
    errors: list[ExchangeIssueResponse] = Field(default_factory=list)
    error: Optional[ErrorDetail] = None
    retryable: bool = False
    auto_poll_scheduled: bool = False
    request_bundle: Optional[dict[str, Any]] = None
    response_bundle: Optional[dict[str, Any]] = None


class PollStateResponse(AttributeModel):
    """Scheduler snapshot."""

    subject: SubjectRefResponse
    state: PollState
    auto_poll_pending: bool = False
    auto_poll_due_at: Optional[datetime] = None
    last_outcome: Optional[PollOutcome] = None
    last_polled_at: Optional[datetime] = None
    final_response_status: Optional[FinalResponseStatus] = None
    last_error: Optional[ErrorDetail] = None
    valid_events: list[PollEvent] = Field(default_factory=list)

class AcknowledgmentRefreshResponse(AttributeModel):
    communication: CommunicationResponse
    acknowledged: bool
    polled: bool
    poll_result: Optional[PollCycleResponse] = None


class BulkAcknowledgmentRefreshResponse(AttributeModel):
    """Result of refreshing every pending acknowledgment of a subject."""

    subject: SubjectRefResponse
    polled: bool
    total: int = 0
    acknowledged: int = 0
    still_queued: int = 0
    communications: list[CommunicationResponse] = Field(default_factory=list)
    poll_result: Optional[PollCycleResponse] = None
