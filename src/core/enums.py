"""
Core Enumerations for the NPHIES Communication Workflow.
Source: NPHIES Implementation Guide - Communication, Poll and Status Check
Verified: 2026-10-16
"""

from enum import Enum


# =============================================================================
# Subject Enums
# =============================================================================


class SubjectType(str, Enum):
    """Kind of submission a message thread is about."""

    CLAIM = "claim"
    PRIOR_AUTHORIZATION = "prior_authorization"

    @property
    def route_segment(self) -> str:
        """URL segment used by the REST API."""
        return {
            SubjectType.CLAIM: "claims",
            SubjectType.PRIOR_AUTHORIZATION: "prior-authorizations",
        }[self]

    @classmethod
    def from_route_segment(cls, segment: str) -> "SubjectType":
        """Resolve a URL segment (claims / prior-authorizations)."""
        for subject_type in cls:
            if subject_type.route_segment == segment:
                return subject_type
        raise ValueError(f"Unknown subject segment: {segment}")


class NphiesEndpoint(str, Enum):
    """Exchange environments a bundle can be posted to."""

    TEST = "test"
    PRODUCTION = "production"


class ProviderStatus(str, Enum):
    """Health status of an exchange endpoint."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# =============================================================================
# Message Enums
# =============================================================================


class OperationKind(str, Enum):
    """Outbound message kinds and their MessageHeader event codes."""

    STATUS_CHECK = "status-check"
    POLL_REQUEST = "poll-request"
    COMMUNICATION = "communication"


class ResponseCode(str, Enum):
    """MessageHeader.response.code values."""

    OK = "ok"
    QUEUED = "queued"
    TRANSIENT_ERROR = "transient-error"
    FATAL_ERROR = "fatal-error"

    @property
    def is_error(self) -> bool:
        return self in (ResponseCode.TRANSIENT_ERROR, ResponseCode.FATAL_ERROR)


class PollMessageType(str, Enum):
    """Message types requested in a poll-request Task."""

    CLAIM_RESPONSE = "claim-response"
    PRIORAUTH_RESPONSE = "priorauth-response"
    COMMUNICATION_REQUEST = "communication-request"
    COMMUNICATION = "communication"


# =============================================================================
# Communication Enums
# =============================================================================


class CommunicationType(str, Enum):
    """Unsolicited (provider initiated) or solicited (reply to a request)."""

    UNSOLICITED = "unsolicited"
    SOLICITED = "solicited"


class CommunicationStatus(str, Enum):
    """Local lifecycle of an outbound Communication."""

    DRAFT = "draft"
    COMPLETED = "completed"


class CommunicationCategory(str, Enum):
    """NPHIES communication-category codes."""

    ALERT = "alert"
    NOTIFICATION = "notification"
    REMINDER = "reminder"
    INSTRUCTION = "instruction"


class CommunicationPriority(str, Enum):
    """FHIR request priority codes."""

    ROUTINE = "routine"
    URGENT = "urgent"
    ASAP = "asap"
    STAT = "stat"


class PayloadContentType(str, Enum):
    """A payload carries exactly one of these."""

    STRING = "string"
    ATTACHMENT = "attachment"


# =============================================================================
# Adjudication / Poll Enums
# =============================================================================


class FinalResponseStatus(str, Enum):
    """Final adjudication status derived from a ClaimResponse."""

    APPROVED = "approved"
    DENIED = "denied"
    PARTIAL = "partial"


class PollState(str, Enum):
    """Poll scheduler states."""

    IDLE = "idle"
    POLLING = "polling"
    ACKNOWLEDGED_WAITING_FINAL = "acknowledged_waiting_final"
    DONE = "done"
    ERROR = "error"


class PollOutcome(str, Enum):
    """How a single poll cycle ended."""

    QUEUED = "queued"
    NOTHING_FINAL = "nothing_final"
    ACKNOWLEDGED = "acknowledged"
    FINAL_RESPONSE = "final_response"
    EXCHANGE_ERROR = "exchange_error"
    TRANSPORT_ERROR = "transport_error"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    """Normalized error kinds surfaced to API clients."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSPORT = "transport"
    EXCHANGE = "exchange"
    INTERNAL = "internal"
