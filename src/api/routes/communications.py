"""
NPHIES Communication API Endpoints.

Provides, per Claim or Prior Authorization:
- Submission tracking record
- Communications (list, fetch, preview, send, acknowledgment refresh)
- CommunicationRequests received from the insurer
- Status-check and poll, including the auto-poll state

Workflow errors are rendered by the handlers in src.utils.errors.

Source: NPHIES Implementation Guide - Communication, Poll, Status Check
Verified: 2026-10-16
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from src.api.deps import get_communication_service, get_subject_ref
from src.core.enums import NphiesEndpoint
from src.schemas.communication import (
    AcknowledgmentRefreshResponse,
    BulkAcknowledgmentRefreshResponse,
    BundlePreviewResponse,
    CommunicationCreate,
    CommunicationRequestResponse,
    CommunicationResponse,
    CommunicationSendResponse,
    ErrorResponse,
    PollCycleResponse,
    PollStateResponse,
    StatusCheckResponse,
    SubmissionResponse,
    SubmissionUpsert,
)
from src.services.nphies.communication_service import CommunicationService
from src.services.nphies.records import SubjectRef
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/api/{kind}/{subject_id}",
    tags=["nphies-communications"],
    responses={
        404: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)


# =============================================================================
# Submission tracking
# =============================================================================


@router.put("/nphies-submission", response_model=SubmissionResponse)
async def upsert_submission(
    body: SubmissionUpsert,
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> SubmissionResponse:
    """Register or update the submission tracking record."""
    record = await service.register_submission(body.to_record(subject))
    return SubmissionResponse.model_validate(record)


@router.get("/nphies-submission", response_model=SubmissionResponse)
async def get_submission(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> SubmissionResponse:
    record = await service.get_submission(subject)
    return SubmissionResponse.model_validate(record)


# =============================================================================
# Communications
# =============================================================================


@router.get("/communications", response_model=list[CommunicationResponse])
async def list_communications(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> list[CommunicationResponse]:
    """List Communications sent for the subject, oldest first."""
    communications = await service.list_communications(subject)
    return [CommunicationResponse.model_validate(c) for c in communications]


@router.post(
    "/communications",
    response_model=CommunicationSendResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_communication(
    body: CommunicationCreate,
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> CommunicationSendResponse:
    """
    Compose and send a Communication.

    Solicited Communications must reference an unanswered CommunicationRequest
    of the same subject.
    """
    result = await service.send_communication(subject, body.to_draft(), body.endpoint)
    return CommunicationSendResponse.model_validate(result)


@router.post("/communications/preview", response_model=BundlePreviewResponse)
async def preview_communication(
    body: CommunicationCreate,
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> BundlePreviewResponse:
    """Compose the Communication Bundle without sending it."""
    composed = await service.preview_communication(subject, body.to_draft())
    return BundlePreviewResponse.model_validate(composed)


@router.post(
    "/communications/{communication_id}/acknowledgment",
    response_model=AcknowledgmentRefreshResponse,
)
async def refresh_acknowledgment(
    communication_id: str,
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> AcknowledgmentRefreshResponse:
    """Return the stored acknowledgment, polling when it is not final yet."""
    result = await service.refresh_acknowledgment(subject, communication_id)
    return AcknowledgmentRefreshResponse.model_validate(result)


@router.post(
    "/communications/poll-all-acknowledgments",
    response_model=BulkAcknowledgmentRefreshResponse,
    responses={409: {"model": ErrorResponse}},
)
async def refresh_all_acknowledgments(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> BulkAcknowledgmentRefreshResponse:
    """Poll once for every Communication still awaiting its acknowledgment."""
    result = await service.refresh_all_acknowledgments(subject)
    return BulkAcknowledgmentRefreshResponse.model_validate(result)


@router.get("/communications/{communication_id}", response_model=CommunicationResponse)
async def get_communication(
    communication_id: str,
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> CommunicationResponse:
    communication = await service.get_communication(subject, communication_id)
    return CommunicationResponse.model_validate(communication)


@router.get("/communication-requests", response_model=list[CommunicationRequestResponse])
async def list_communication_requests(
    pending_only: bool = Query(False, description="Only requests not answered yet"),
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> list[CommunicationRequestResponse]:
    requests = await service.list_communication_requests(subject, pending_only=pending_only)
    return [CommunicationRequestResponse.model_validate(r) for r in requests]


# =============================================================================
# Status check
# =============================================================================


@router.post("/status-check", response_model=StatusCheckResponse)
async def send_status_check(
    endpoint: Optional[NphiesEndpoint] = Query(None, description="test or production"),
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> StatusCheckResponse:
    result = await service.send_status_check(subject, endpoint)
    return StatusCheckResponse.model_validate(result)


@router.get("/status-check/preview", response_model=BundlePreviewResponse)
async def preview_status_check(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> BundlePreviewResponse:
    composed = await service.preview_status_check(subject)
    return BundlePreviewResponse.model_validate(composed)


# =============================================================================
# Poll
# =============================================================================


@router.post("/poll", response_model=PollCycleResponse, responses={409: {"model": ErrorResponse}})
async def poll(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> PollCycleResponse:
    """
    Run one poll cycle.

    Transport and exchange failures are reported in the body with
    `outcome` transport_error / exchange_error rather than as HTTP errors.
    """
    result = await service.poll(subject)
    logger.info(f"Poll for {subject}: {result.outcome.value} -> {result.state.value}")
    return PollCycleResponse.model_validate(result)


@router.get("/poll/preview", response_model=BundlePreviewResponse)
async def preview_poll(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> BundlePreviewResponse:
    composed = await service.preview_poll(subject)
    return BundlePreviewResponse.model_validate(composed)


@router.get("/poll/state", response_model=PollStateResponse)
async def poll_state(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> PollStateResponse:
    return PollStateResponse.model_validate(service.poll_state(subject))


@router.delete("/poll/scheduled", response_model=PollStateResponse)
async def cancel_scheduled_poll(
    subject: SubjectRef = Depends(get_subject_ref),
    service: CommunicationService = Depends(get_communication_service),
) -> PollStateResponse:
    """Cancel the pending auto-poll and return the scheduler to idle."""
    return PollStateResponse.model_validate(service.cancel_auto_poll(subject))
