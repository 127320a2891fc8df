"""
Correlation Store.

Persists what the workflow needs to correlate messages:
- submission tracking records (subjects)
- CommunicationRequests received via poll
- Communications we sent and their acknowledgments

Upserts are idempotent by NPHIES id. The SQLAlchemy implementation opens
one session per operation, so it can be used from the deferred poll after
the originating HTTP request has finished.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.enums import CommunicationStatus, FinalResponseStatus, ResponseCode
from src.models.communication import (
    NphiesCommunication,
    NphiesCommunicationPayload,
    NphiesCommunicationRequest,
    NphiesSubmission,
)
from src.services.nphies.errors import (
    CommunicationRequestNotFoundError,
    RequestAlreadyRespondedError,
)
from src.services.nphies.records import (
    CommunicationRecord,
    CommunicationRequestRecord,
    PayloadRecord,
    SubjectRecord,
    SubjectRef,
)
from src.services.nphies.response_interpreter import ClaimResponseInfo

logger = logging.getLogger(__name__)


class CorrelationStore(Protocol):
    """Persistence the workflow depends on."""

    async def get_subject(self, subject: SubjectRef) -> Optional[SubjectRecord]: ...

    async def upsert_subject(self, record: SubjectRecord) -> SubjectRecord: ...

    async def find_unresponded_requests(
        self, subject: SubjectRef
    ) -> list[CommunicationRequestRecord]: ...

    async def get_communication_request(
        self, request_id: str
    ) -> Optional[CommunicationRequestRecord]: ...

    async def list_communication_requests(
        self, subject: SubjectRef, pending_only: bool = False
    ) -> list[CommunicationRequestRecord]: ...

    async def upsert_communication_request(
        self, record: CommunicationRequestRecord
    ) -> CommunicationRequestRecord: ...

    async def record_sent_communication(
        self, record: CommunicationRecord
    ) -> CommunicationRecord: ...

    async def get_communication(self, communication_id: str) -> Optional[CommunicationRecord]: ...

    async def list_communications(self, subject: SubjectRef) -> list[CommunicationRecord]: ...

    async def find_awaiting_acknowledgment(
        self, subject: SubjectRef
    ) -> list[CommunicationRecord]: ...

    async def mark_acknowledged(
        self,
        communication_id: str,
        status: ResponseCode,
        bundle: Optional[dict[str, Any]] = None,
    ) -> Optional[CommunicationRecord]: ...

    async def reserve_request(
        self, request_id: str, communication_id: str
    ) -> CommunicationRequestRecord: ...

    async def release_request(self, request_id: str, communication_id: str) -> None: ...

    async def mark_responded(
        self, request_id: str, communication_id: Optional[str] = None
    ) -> CommunicationRequestRecord: ...

    async def record_final_response(
        self,
        subject: SubjectRef,
        final_status: Optional[FinalResponseStatus],
        claim_response: ClaimResponseInfo,
        bundle: Optional[dict[str, Any]] = None,
    ) -> Optional[SubjectRecord]: ...


# =============================================================================
# Row <-> record conversion
# =============================================================================


_SUBJECT_FIELDS = (
    "request_identifier",
    "provider_nphies_id",
    "insurer_nphies_id",
    "patient_reference",
)

_REQUEST_CONTENT_FIELDS = (
    "status",
    "category",
    "priority",
    "about_reference",
    "about_type",
    "payload_content_type",
    "payload_content_string",
    "sender_identifier",
    "recipient_identifier",
    "authored_on",
    "request_bundle",
)


def _subject_record(row: NphiesSubmission) -> SubjectRecord:
    return SubjectRecord(
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        provider_nphies_id=row.provider_nphies_id,
        insurer_nphies_id=row.insurer_nphies_id,
        request_identifier=row.request_identifier,
        patient_reference=row.patient_reference,
        final_response_status=row.final_response_status,
        outcome=row.outcome,
        disposition=row.disposition,
        pre_auth_ref=row.pre_auth_ref,
        last_response_bundle=row.last_response_bundle,
        responded_at=row.responded_at,
    )


def _request_record(row: NphiesCommunicationRequest) -> CommunicationRequestRecord:
    return CommunicationRequestRecord(
        request_id=row.request_id,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        received_at=row.received_at,
        responded_at=row.responded_at,
        response_communication_id=row.response_communication_id,
        reserved_communication_id=row.reserved_communication_id,
        **{name: getattr(row, name) for name in _REQUEST_CONTENT_FIELDS},
    )


def _communication_record(row: NphiesCommunication) -> CommunicationRecord:
    return CommunicationRecord(
        communication_id=row.communication_id,
        subject_type=row.subject_type,
        subject_id=row.subject_id,
        communication_type=row.communication_type,
        payloads=[
            PayloadRecord(
                sequence=p.sequence,
                content_type=p.content_type,
                content_string=p.content_string,
                attachment_content_type=p.attachment_content_type,
                attachment_title=p.attachment_title,
                attachment_size=p.attachment_size,
                attachment_data=p.attachment_data,
                claim_item_sequences=list(p.claim_item_sequences or []),
            )
            for p in row.payloads
        ],
        based_on_request_id=row.based_on_request_id,
        category=row.category,
        priority=row.priority,
        about_reference=row.about_reference,
        status=row.status,
        sent_at=row.sent_at,
        nphies_communication_id=row.nphies_communication_id,
        acknowledgment_received=row.acknowledgment_received,
        acknowledgment_status=row.acknowledgment_status,
        acknowledgment_at=row.acknowledgment_at,
        request_bundle=row.request_bundle,
        response_bundle=row.response_bundle,
        acknowledgment_bundle=row.acknowledgment_bundle,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _already_responded(row: NphiesCommunicationRequest) -> RequestAlreadyRespondedError:
    if row.responded_at is not None:
        message = f"CommunicationRequest {row.request_id} was already answered"
    else:
        message = f"CommunicationRequest {row.request_id} is being answered by another Communication"
    return RequestAlreadyRespondedError(
        message,
        details={
            "request_id": row.request_id,
            "response_communication_id": row.response_communication_id,
            "reserved_communication_id": row.reserved_communication_id,
        },
    )


# =============================================================================
# SQLAlchemy implementation
# =============================================================================


class SqlAlchemyCorrelationStore:
    """CorrelationStore over the nphies_* tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # -------------------------------------------------------------------------
    # Subjects
    # -------------------------------------------------------------------------

    @staticmethod
    async def _subject_row(
        session: AsyncSession, subject: SubjectRef
    ) -> Optional[NphiesSubmission]:
        result = await session.execute(
            select(NphiesSubmission).where(
                NphiesSubmission.subject_type == subject.subject_type,
                NphiesSubmission.subject_id == subject.subject_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_subject(self, subject: SubjectRef) -> Optional[SubjectRecord]:
        async with self._session_factory() as session:
            row = await self._subject_row(session, subject)
            return _subject_record(row) if row else None

    async def upsert_subject(self, record: SubjectRecord) -> SubjectRecord:
        """Create or update tracking fields. Final adjudication is left untouched."""
        async with self._session_factory() as session:
            row = await self._subject_row(session, record.ref)
            if row is None:
                row = NphiesSubmission(
                    subject_type=record.subject_type,
                    subject_id=record.subject_id,
                )
                session.add(row)
            for name in _SUBJECT_FIELDS:
                setattr(row, name, getattr(record, name))
            await session.commit()
            await session.refresh(row)
            logger.info(f"Submission tracking record saved for {record.ref}")
            return _subject_record(row)

    async def record_final_response(
        self,
        subject: SubjectRef,
        final_status: Optional[FinalResponseStatus],
        claim_response: ClaimResponseInfo,
        bundle: Optional[dict[str, Any]] = None,
    ) -> Optional[SubjectRecord]:
        async with self._session_factory() as session:
            row = await self._subject_row(session, subject)
            if row is None:
                logger.warning(f"Final response for unknown subject {subject}")
                return None
            row.final_response_status = final_status
            row.outcome = claim_response.outcome
            row.disposition = claim_response.disposition
            if claim_response.pre_auth_ref:
                row.pre_auth_ref = claim_response.pre_auth_ref
            row.last_response_bundle = bundle or claim_response.resource
            row.responded_at = _utcnow()
            await session.commit()
            await session.refresh(row)
            return _subject_record(row)

    # -------------------------------------------------------------------------
    # CommunicationRequests
    # -------------------------------------------------------------------------

    @staticmethod
    async def _request_row(
        session: AsyncSession, request_id: str
    ) -> Optional[NphiesCommunicationRequest]:
        result = await session.execute(
            select(NphiesCommunicationRequest).where(
                NphiesCommunicationRequest.request_id == request_id
            )
        )
        return result.scalar_one_or_none()

    async def get_communication_request(
        self, request_id: str
    ) -> Optional[CommunicationRequestRecord]:
        async with self._session_factory() as session:
            row = await self._request_row(session, request_id)
            return _request_record(row) if row else None

    async def list_communication_requests(
        self, subject: SubjectRef, pending_only: bool = False
    ) -> list[CommunicationRequestRecord]:
        query = select(NphiesCommunicationRequest).where(
            NphiesCommunicationRequest.subject_type == subject.subject_type,
            NphiesCommunicationRequest.subject_id == subject.subject_id,
        )
        if pending_only:
            query = query.where(NphiesCommunicationRequest.responded_at.is_(None))
        query = query.order_by(NphiesCommunicationRequest.received_at)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_request_record(row) for row in result.scalars().all()]

    async def find_unresponded_requests(
        self, subject: SubjectRef
    ) -> list[CommunicationRequestRecord]:
        return await self.list_communication_requests(subject, pending_only=True)

    async def upsert_communication_request(
        self, record: CommunicationRequestRecord
    ) -> CommunicationRequestRecord:
        """
        Insert or replace by request_id.

        Redelivery replaces the content but keeps the response state, so an
        answered request stays answered.
        """
        async with self._session_factory() as session:
            row = await self._request_row(session, record.request_id)
            created = row is None
            if row is None:
                row = NphiesCommunicationRequest(
                    request_id=record.request_id,
                    subject_type=record.subject_type,
                    subject_id=record.subject_id,
                )
                session.add(row)
            for name in _REQUEST_CONTENT_FIELDS:
                setattr(row, name, getattr(record, name))
            if created:
                row.received_at = record.received_at or _utcnow()
            await session.commit()
            await session.refresh(row)

        logger.info(
            f"CommunicationRequest {record.request_id} "
            f"{'stored' if created else 'updated'} for "
            f"{record.subject_type.value}:{record.subject_id}"
        )
        return _request_record(row)

    async def mark_responded(
        self, request_id: str, communication_id: Optional[str] = None
    ) -> CommunicationRequestRecord:
        """
        Mark a CommunicationRequest as answered.

        Raises:
            CommunicationRequestNotFoundError: Unknown request id
            RequestAlreadyRespondedError: The request was already answered
        """
        async with self._session_factory() as session:
            row = await self._request_row(session, request_id)
            if row is None:
                raise CommunicationRequestNotFoundError(
                    f"CommunicationRequest {request_id} not found",
                    details={"request_id": request_id},
                )
            reserved_by = row.reserved_communication_id
            if row.responded_at is not None or (
                reserved_by is not None and reserved_by != communication_id
            ):
                raise _already_responded(row)
            row.responded_at = _utcnow()
            row.response_communication_id = communication_id
            row.reserved_communication_id = None
            await session.commit()
            await session.refresh(row)
            return _request_record(row)

    async def reserve_request(
        self, request_id: str, communication_id: str
    ) -> CommunicationRequestRecord:
        """
        Claim an unanswered request for a Communication about to be sent.

        The claim is a single conditional UPDATE, so only one sender wins.

        Raises:
            CommunicationRequestNotFoundError: Unknown request id
            RequestAlreadyRespondedError: Answered or claimed by another Communication
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(NphiesCommunicationRequest)
                .where(
                    NphiesCommunicationRequest.request_id == request_id,
                    NphiesCommunicationRequest.responded_at.is_(None),
                    NphiesCommunicationRequest.reserved_communication_id.is_(None),
                )
                .values(reserved_communication_id=communication_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            claimed = result.rowcount == 1

            row = await self._request_row(session, request_id)
            if row is None:
                raise CommunicationRequestNotFoundError(
                    f"CommunicationRequest {request_id} not found",
                    details={"request_id": request_id},
                )
            if not claimed:
                raise _already_responded(row)
            logger.info(f"CommunicationRequest {request_id} reserved for {communication_id}")
            return _request_record(row)

    async def release_request(self, request_id: str, communication_id: str) -> None:
        """Drop a claim taken by reserve_request. Claims of other Communications are kept."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(NphiesCommunicationRequest)
                .where(
                    NphiesCommunicationRequest.request_id == request_id,
                    NphiesCommunicationRequest.reserved_communication_id == communication_id,
                )
                .values(reserved_communication_id=None)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount:
            logger.info(f"CommunicationRequest {request_id} released by {communication_id}")

    # -------------------------------------------------------------------------
    # Communications
    # -------------------------------------------------------------------------

    @staticmethod
    async def _communication_row(
        session: AsyncSession, communication_id: str
    ) -> Optional[NphiesCommunication]:
        result = await session.execute(
            select(NphiesCommunication).where(
                NphiesCommunication.communication_id == communication_id
            )
        )
        return result.scalar_one_or_none()

    async def record_sent_communication(self, record: CommunicationRecord) -> CommunicationRecord:
        async with self._session_factory() as session:
            row = NphiesCommunication(
                communication_id=record.communication_id,
                nphies_communication_id=record.nphies_communication_id,
                subject_type=record.subject_type,
                subject_id=record.subject_id,
                communication_type=record.communication_type,
                based_on_request_id=record.based_on_request_id,
                category=record.category,
                priority=record.priority,
                about_reference=record.about_reference,
                status=record.status,
                sent_at=record.sent_at,
                acknowledgment_received=record.acknowledgment_received,
                acknowledgment_status=record.acknowledgment_status,
                acknowledgment_at=record.acknowledgment_at,
                request_bundle=record.request_bundle,
                response_bundle=record.response_bundle,
                acknowledgment_bundle=record.acknowledgment_bundle,
                payloads=[
                    NphiesCommunicationPayload(
                        sequence=p.sequence,
                        content_type=p.content_type,
                        content_string=p.content_string,
                        attachment_content_type=p.attachment_content_type,
                        attachment_title=p.attachment_title,
                        attachment_size=p.attachment_size,
                        attachment_data=p.attachment_data,
                        claim_item_sequences=list(p.claim_item_sequences),
                    )
                    for p in record.payloads
                ],
            )
            session.add(row)
            await session.commit()

            row = await self._communication_row(session, record.communication_id)
            logger.info(
                f"Recorded {record.communication_type.value} communication "
                f"{record.communication_id} ({record.status.value})"
            )
            return _communication_record(row)

    async def get_communication(self, communication_id: str) -> Optional[CommunicationRecord]:
        async with self._session_factory() as session:
            row = await self._communication_row(session, communication_id)
            return _communication_record(row) if row else None

    async def list_communications(self, subject: SubjectRef) -> list[CommunicationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(NphiesCommunication)
                .where(
                    NphiesCommunication.subject_type == subject.subject_type,
                    NphiesCommunication.subject_id == subject.subject_id,
                )
                .order_by(NphiesCommunication.sent_at, NphiesCommunication.created_at)
            )
            return [_communication_record(row) for row in result.scalars().all()]

    async def find_awaiting_acknowledgment(self, subject: SubjectRef) -> list[CommunicationRecord]:
        """Sent Communications without a final acknowledgment."""
        communications = await self.list_communications(subject)
        return [
            c
            for c in communications
            if c.status == CommunicationStatus.COMPLETED and not c.has_final_acknowledgment
        ]

    async def mark_acknowledged(
        self,
        communication_id: str,
        status: ResponseCode,
        bundle: Optional[dict[str, Any]] = None,
    ) -> Optional[CommunicationRecord]:
        """Record an acknowledgment. Unknown ids are logged and ignored."""
        async with self._session_factory() as session:
            row = await self._communication_row(session, communication_id)
            if row is None:
                logger.warning(f"Acknowledgment for unknown Communication: {communication_id}")
                return None
            row.acknowledgment_received = status != ResponseCode.QUEUED
            row.acknowledgment_status = status
            row.acknowledgment_at = _utcnow()
            row.acknowledgment_bundle = bundle
            await session.commit()

            row = await self._communication_row(session, communication_id)
            logger.info(f"Communication {communication_id} acknowledged: {status.value}")
            return _communication_record(row)
