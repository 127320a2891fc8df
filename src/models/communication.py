"""
NPHIES Communication Models.

Tables backing the correlation store:
- nphies_submissions: tracking record for a Claim / Prior Authorization
- nphies_communication_requests: CommunicationRequests received from insurers
- nphies_communications: Communications we sent
- nphies_communication_payloads: ordered payloads of a sent Communication

Source: NPHIES Implementation Guide - Communication
Verified: 2026-10-16
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.core.enums import (
    CommunicationStatus,
    CommunicationType,
    FinalResponseStatus,
    PayloadContentType,
    ResponseCode,
    SubjectType,
)
from src.models.base import Base, JSONType, TimeStampedModel, UUIDModel


class NphiesSubmission(Base, UUIDModel, TimeStampedModel):
    """
    Submission tracking record.

    Holds only what the communication workflow needs to address messages
    about a submitted Claim or Prior Authorization, plus its final
    adjudication once a ClaimResponse has been polled.
    """

    __tablename__ = "nphies_submissions"

    subject_type: Mapped[SubjectType] = mapped_column(
        Enum(SubjectType),
        nullable=False,
        comment="claim or prior_authorization",
    )
    subject_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        comment="Local record id used in API paths",
    )
    request_identifier: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        index=True,
        comment="Business identifier of the original Claim bundle",
    )
    provider_nphies_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Provider license id (sender)",
    )
    insurer_nphies_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Payer license id (recipient)",
    )
    patient_reference: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        comment="FHIR reference to the Patient, e.g. Patient/123",
    )

    # Final adjudication
    final_response_status: Mapped[Optional[FinalResponseStatus]] = mapped_column(
        Enum(FinalResponseStatus),
        nullable=True,
    )
    outcome: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    disposition: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    pre_auth_ref: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_response_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )
    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        UniqueConstraint("subject_type", "subject_id", name="uq_nphies_submission_subject"),
    )

    def __repr__(self) -> str:
        return f"<NphiesSubmission {self.subject_type.value}:{self.subject_id}>"


class NphiesCommunicationRequest(Base, UUIDModel, TimeStampedModel):
    """CommunicationRequest received from an insurer via poll."""

    __tablename__ = "nphies_communication_requests"

    request_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        comment="NPHIES CommunicationRequest id",
    )
    subject_type: Mapped[SubjectType] = mapped_column(Enum(SubjectType), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)

    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    about_reference: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    about_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payload_content_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payload_content_string: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sender_identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    recipient_identifier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    authored_on: Mapped[Optional[str]] = mapped_column(
        String(40),
        nullable=True,
        comment="FHIR dateTime as received",
    )

    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once a solicited Communication answers this request",
    )
    response_communication_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    reserved_communication_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Communication currently being sent in answer to this request",
    )
    request_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_nphies_comm_requests_subject", "subject_type", "subject_id"),
    )


class NphiesCommunication(Base, UUIDModel, TimeStampedModel):
    """Communication sent by the provider, solicited or unsolicited."""

    __tablename__ = "nphies_communications"

    communication_id: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        nullable=False,
        comment="FHIR Communication.id we sent",
    )
    nphies_communication_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Id assigned by the exchange, when returned",
    )
    subject_type: Mapped[SubjectType] = mapped_column(Enum(SubjectType), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)

    communication_type: Mapped[CommunicationType] = mapped_column(
        Enum(CommunicationType),
        nullable=False,
    )
    based_on_request_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Answered CommunicationRequest (solicited only)",
    )
    category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    priority: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    about_reference: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    status: Mapped[CommunicationStatus] = mapped_column(
        Enum(CommunicationStatus),
        default=CommunicationStatus.DRAFT,
        nullable=False,
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    acknowledgment_received: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    acknowledgment_status: Mapped[Optional[ResponseCode]] = mapped_column(
        Enum(ResponseCode),
        nullable=True,
    )
    acknowledgment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    request_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    response_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    acknowledgment_bundle: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONType,
        nullable=True,
    )

    payloads: Mapped[list["NphiesCommunicationPayload"]] = relationship(
        "NphiesCommunicationPayload",
        back_populates="communication",
        cascade="all, delete-orphan",
        order_by="NphiesCommunicationPayload.sequence",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_nphies_communications_subject", "subject_type", "subject_id"),
    )


class NphiesCommunicationPayload(Base, UUIDModel):
    """One ordered payload entry of a sent Communication."""

    __tablename__ = "nphies_communication_payloads"

    communication_pk: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("nphies_communications.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="1-based position in Communication.payload",
    )
    content_type: Mapped[PayloadContentType] = mapped_column(
        Enum(PayloadContentType),
        nullable=False,
    )
    content_string: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attachment_content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    attachment_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attachment_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    attachment_data: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Base64 exactly as supplied",
    )
    claim_item_sequences: Mapped[list[int]] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
    )

    communication: Mapped["NphiesCommunication"] = relationship(
        "NphiesCommunication",
        back_populates="payloads",
    )

    __table_args__ = (
        UniqueConstraint("communication_pk", "sequence", name="uq_nphies_payload_sequence"),
    )
