"""
NPHIES Communication Workflow.

Components (leaves first):
- NphiesGateway (src.gateways): transport to `$process-message`
- ResponseInterpreter: response Bundle -> InterpretedResponse
- CorrelationStore: persisted requests, communications, acknowledgments
- PollScheduler: per-subject poll state machine with deferred re-poll
- BundleComposer: status-check, poll-request and communication Bundles
- CommunicationService: use cases behind the REST API
"""

from src.services.nphies.bundle_composer import (
    BundleComposer,
    ComposedBundle,
    default_poll_message_types,
)
from src.services.nphies.communication_service import (
    AcknowledgmentRefreshResult,
    BulkAcknowledgmentRefreshResult,
    CommunicationSendResult,
    CommunicationService,
    StatusCheckResult,
)
from src.services.nphies.correlation_store import (
    CorrelationStore,
    SqlAlchemyCorrelationStore,
)
from src.services.nphies.errors import (
    CommunicationNotFoundError,
    CommunicationRequestNotFoundError,
    ExchangeError,
    ExchangeIssue,
    NormalizedError,
    NphiesError,
    PollInProgressError,
    RequestAlreadyRespondedError,
    SubjectNotFoundError,
    ValidationError,
    normalize_error,
)
from src.services.nphies.poll_scheduler import (
    PollCycleResult,
    PollEvent,
    PollScheduler,
    PollSchedulerRegistry,
    PollStatus,
    VALID_TRANSITIONS,
)
from src.services.nphies.records import (
    AttachmentDraft,
    CommunicationDraft,
    CommunicationRecord,
    CommunicationRequestRecord,
    PayloadDraft,
    PayloadRecord,
    SubjectRecord,
    SubjectRef,
)
from src.services.nphies.response_interpreter import (
    Acknowledgment,
    ClaimResponseInfo,
    InterpretedResponse,
    ReceivedCommunicationRequest,
    ResponseInterpreter,
    classify_final_status,
)

__all__ = [
    # Composer
    "BundleComposer",
    "ComposedBundle",
    "default_poll_message_types",
    # Service
    "CommunicationService",
    "CommunicationSendResult",
    "StatusCheckResult",
    "AcknowledgmentRefreshResult",
    "BulkAcknowledgmentRefreshResult",
    # Store
    "CorrelationStore",
    "SqlAlchemyCorrelationStore",
    # Errors
    "NphiesError",
    "ValidationError",
    "SubjectNotFoundError",
    "CommunicationRequestNotFoundError",
    "CommunicationNotFoundError",
    "RequestAlreadyRespondedError",
    "ExchangeError",
    "ExchangeIssue",
    "PollInProgressError",
    "NormalizedError",
    "normalize_error",
    # Scheduler
    "PollScheduler",
    "PollSchedulerRegistry",
    "PollCycleResult",
    "PollStatus",
    "PollEvent",
    "VALID_TRANSITIONS",
    # Records
    "SubjectRef",
    "SubjectRecord",
    "CommunicationDraft",
    "PayloadDraft",
    "AttachmentDraft",
    "PayloadRecord",
    "CommunicationRecord",
    "CommunicationRequestRecord",
    # Interpreter
    "ResponseInterpreter",
    "InterpretedResponse",
    "ReceivedCommunicationRequest",
    "ClaimResponseInfo",
    "Acknowledgment",
    "classify_final_status",
]
