"""
Domain records for the communication workflow.

Plain dataclasses passed between the composer, interpreter, scheduler and
correlation store. ORM rows are converted to and from these at the store
boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from src.core.enums import (
    CommunicationCategory,
    CommunicationPriority,
    CommunicationStatus,
    CommunicationType,
    FinalResponseStatus,
    PayloadContentType,
    ResponseCode,
    SubjectType,
)


@dataclass(frozen=True)
class SubjectRef:
    """Identifies the Claim or Prior Authorization a thread is about."""

    subject_type: SubjectType
    subject_id: str

    def __str__(self) -> str:
        return f"{self.subject_type.value}:{self.subject_id}"


@dataclass
class SubjectRecord:
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
    last_response_bundle: Optional[dict[str, Any]] = None
    responded_at: Optional[datetime] = None

    @property
    def ref(self) -> SubjectRef:
        return SubjectRef(self.subject_type, self.subject_id)


@dataclass
class CommunicationRequestRecord:
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
    request_bundle: Optional[dict[str, Any]] = None

    @property
    def is_responded(self) -> bool:
        return self.responded_at is not None

    def belongs_to(self, subject: SubjectRef) -> bool:
        return (
            self.subject_type == subject.subject_type
            and self.subject_id == subject.subject_id
        )


@dataclass
class AttachmentDraft:
    """Attachment content of a payload. `data` is base64 and copied verbatim."""

    content_type: str = "application/octet-stream"
    title: Optional[str] = None
    data: Optional[str] = None
    url: Optional[str] = None
    size: Optional[int] = None
    hash: Optional[str] = None


@dataclass
class PayloadDraft:
    """One payload: exactly one of text or attachment."""

    content_string: Optional[str] = None
    attachment: Optional[AttachmentDraft] = None
    claim_item_sequences: list[int] = field(default_factory=list)

    @property
    def content_type(self) -> PayloadContentType:
        if self.attachment is not None:
            return PayloadContentType.ATTACHMENT
        return PayloadContentType.STRING


@dataclass
class CommunicationDraft:
    """What a user asks to send."""

    payloads: list[PayloadDraft]
    communication_type: CommunicationType = CommunicationType.UNSOLICITED
    based_on_request_id: Optional[str] = None
    category: CommunicationCategory = CommunicationCategory.ALERT
    priority: CommunicationPriority = CommunicationPriority.ROUTINE
    about_reference: Optional[str] = None
    about_type: str = "Claim"


@dataclass
class PayloadRecord:
    """Stored payload of a sent Communication."""

    sequence: int
    content_type: PayloadContentType
    content_string: Optional[str] = None
    attachment_content_type: Optional[str] = None
    attachment_title: Optional[str] = None
    attachment_size: Optional[int] = None
    attachment_data: Optional[str] = None
    claim_item_sequences: list[int] = field(default_factory=list)

    @classmethod
    def from_draft(cls, sequence: int, draft: PayloadDraft) -> "PayloadRecord":
        attachment = draft.attachment
        return cls(
            sequence=sequence,
            content_type=draft.content_type,
            content_string=draft.content_string if attachment is None else None,
            attachment_content_type=attachment.content_type if attachment else None,
            attachment_title=attachment.title if attachment else None,
            attachment_size=attachment.size if attachment else None,
            attachment_data=attachment.data if attachment else None,
            claim_item_sequences=list(draft.claim_item_sequences),
        )


@dataclass
class CommunicationRecord:
    """Communication we sent."""

    communication_id: str
    subject_type: SubjectType
    subject_id: str
    communication_type: CommunicationType
    payloads: list[PayloadRecord] = field(default_factory=list)
    based_on_request_id: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    about_reference: Optional[str] = None
    status: CommunicationStatus = CommunicationStatus.DRAFT
    sent_at: Optional[datetime] = None
    nphies_communication_id: Optional[str] = None
    acknowledgment_received: bool = False
    acknowledgment_status: Optional[ResponseCode] = None
    acknowledgment_at: Optional[datetime] = None
    request_bundle: Optional[dict[str, Any]] = None
    response_bundle: Optional[dict[str, Any]] = None
    acknowledgment_bundle: Optional[dict[str, Any]] = None

    @property
    def ref(self) -> SubjectRef:
        return SubjectRef(self.subject_type, self.subject_id)

    @property
    def has_final_acknowledgment(self) -> bool:
        """Acknowledged with anything other than queued."""
        return (
            self.acknowledgment_received
            and self.acknowledgment_status is not None
            and self.acknowledgment_status != ResponseCode.QUEUED
        )
