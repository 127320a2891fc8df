"""
Pydantic Schemas for the NPHIES Communication Workflow.

This module exports all request/response schemas for the API.
"""

from src.schemas.communication import (
    AcknowledgmentRefreshResponse,
    BulkAcknowledgmentRefreshResponse,
    BundlePreviewResponse,
    CommunicationCreate,
    CommunicationRequestResponse,
    CommunicationResponse,
    CommunicationSendResponse,
    ErrorDetail,
    ErrorResponse,
    PollCycleResponse,
    PollStateResponse,
    StatusCheckResponse,
    SubmissionResponse,
    SubmissionUpsert,
)

__all__ = [
    "AcknowledgmentRefreshResponse",
    "BulkAcknowledgmentRefreshResponse",
    "BundlePreviewResponse",
    "CommunicationCreate",
    "CommunicationRequestResponse",
    "CommunicationResponse",
    "CommunicationSendResponse",
    "ErrorDetail",
    "ErrorResponse",
    "PollCycleResponse",
    "PollStateResponse",
    "StatusCheckResponse",
    "SubmissionResponse",
    "SubmissionUpsert",
]
