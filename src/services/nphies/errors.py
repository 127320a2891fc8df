"""
NPHIES Workflow Errors.

Taxonomy:
- ValidationError: bad local input, nothing is sent
- TransportError: HTTP/network failure (src.gateways.nphies_gateway)
- ExchangeError: the response Bundle reports fatal-error / transient-error
- PollInProgressError: a poll was requested while one is in flight

A `queued` response is not an error; it is reported as a poll outcome.
"""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from src.core.enums import ErrorKind, ResponseCode
from src.gateways.base import GatewayError
from src.gateways.nphies_gateway import TransportError


@dataclass
class ExchangeIssue:
    """One OperationOutcome issue reported by the exchange."""

    code: Optional[str] = None
    message: Optional[str] = None
    expression: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class NphiesError(Exception):
    """Base exception for the communication workflow."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(NphiesError):
    """Malformed local input. Fails fast; nothing is sent."""

    kind = ErrorKind.VALIDATION


class SubjectNotFoundError(ValidationError):
    """No submission tracking record for the subject."""

    kind = ErrorKind.NOT_FOUND


class CommunicationRequestNotFoundError(ValidationError):
    """Solicited draft points at an unknown CommunicationRequest."""

    kind = ErrorKind.NOT_FOUND


class CommunicationNotFoundError(ValidationError):
    """No sent Communication with that id."""

    kind = ErrorKind.NOT_FOUND


class RequestAlreadyRespondedError(ValidationError):
    """A CommunicationRequest can be answered at most once."""

    kind = ErrorKind.CONFLICT


class PollInProgressError(NphiesError):
    """A poll for the subject is already in flight."""

    kind = ErrorKind.CONFLICT


class ExchangeError(NphiesError):
    """The exchange answered with fatal-error or transient-error."""

    kind = ErrorKind.EXCHANGE

    def __init__(
        self,
        response_code: Optional[ResponseCode],
        issues: Optional[list[ExchangeIssue]] = None,
        message: Optional[str] = None,
    ):
        self.response_code = response_code
        self.issues = issues or []
        self.retryable = response_code == ResponseCode.TRANSIENT_ERROR
        code = response_code.value if response_code else "unknown"
        super().__init__(
            message or _issues_message(self.issues) or f"NPHIES responded with {code}",
            details={
                "response_code": response_code.value if response_code else None,
                "retryable": self.retryable,
                "issues": [issue.to_dict() for issue in self.issues],
            },
        )


def _issues_message(issues: list[ExchangeIssue]) -> str:
    parts = []
    for issue in issues:
        if issue.code and issue.message:
            parts.append(f"{issue.code}: {issue.message}")
        elif issue.message or issue.code:
            parts.append(issue.message or issue.code or "")
    return "; ".join(parts)


# =============================================================================
# Normalization
# =============================================================================


HTTP_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 422,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.TRANSPORT: 502,
    ErrorKind.EXCHANGE: 502,
    ErrorKind.INTERNAL: 500,
}


@dataclass
class NormalizedError:
    """Tagged error value surfaced to API clients."""

    kind: ErrorKind
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        if self.kind == ErrorKind.EXCHANGE and self.details.get("retryable"):
            return 503
        return HTTP_STATUS_BY_KIND[self.kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


def _most_specific_message(
    message: Optional[str],
    details: Optional[dict[str, Any]],
    body: Any = None,
) -> str:
    """Exception message, then its details, then the raw JSON body."""
    if message:
        return message
    if details:
        return json.dumps(details, default=str)
    if body is not None:
        return body if isinstance(body, str) else json.dumps(body, default=str)
    return "Unknown error"


def normalize_error(exc: BaseException) -> NormalizedError:
    """
    Map any workflow exception to a NormalizedError.

    This is the only place exception shapes are inspected.
    """
    if isinstance(exc, NphiesError):
        return NormalizedError(
            kind=exc.kind,
            message=_most_specific_message(exc.message, exc.details),
            details=dict(exc.details),
        )

    if isinstance(exc, TransportError):
        details: dict[str, Any] = {"status_code": exc.status_code, "retryable": True}
        if exc.body is not None:
            details["body"] = exc.body
        return NormalizedError(
            kind=ErrorKind.TRANSPORT,
            message=_most_specific_message(exc.message, None, exc.body),
            details=details,
        )

    if isinstance(exc, GatewayError):
        return NormalizedError(
            kind=ErrorKind.TRANSPORT,
            message=_most_specific_message(exc.message, None),
            details={"provider": exc.provider, "retryable": True},
        )

    return NormalizedError(
        kind=ErrorKind.INTERNAL,
        message=_most_specific_message(str(exc), None) if str(exc) else type(exc).__name__,
        details={"type": type(exc).__name__},
    )
