"""
NPHIES Bundle Composer.

Builds outbound FHIR message Bundles:
- status-check (Task code `status`)
- poll-request (Task profile `poll-request`, code `poll`)
- communication (solicited or unsolicited Communication)

Composition is pure: no I/O. The id factory and clock are injectable so
output is deterministic under test.

Source: NPHIES Implementation Guide - Communication, Poll, Status Check
Verified: 2026-10-16
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from uuid import uuid4

from src.core.config import NphiesSettings, get_nphies_settings
from src.core.enums import (
    CommunicationType,
    OperationKind,
    PollMessageType,
    SubjectType,
)
from src.services.nphies import fhir
from src.services.nphies.errors import ValidationError
from src.services.nphies.records import (
    CommunicationDraft,
    PayloadDraft,
    PayloadRecord,
    SubjectRecord,
)

logger = logging.getLogger(__name__)


DEFAULT_FINAL_MESSAGE_TYPE: dict[SubjectType, PollMessageType] = {
    SubjectType.CLAIM: PollMessageType.CLAIM_RESPONSE,
    SubjectType.PRIOR_AUTHORIZATION: PollMessageType.PRIORAUTH_RESPONSE,
}

IDENTIFIER_PATH: dict[SubjectType, str] = {
    SubjectType.CLAIM: "claim",
    SubjectType.PRIOR_AUTHORIZATION: "authorization",
}


def default_poll_message_types(subject_type: SubjectType) -> list[PollMessageType]:
    """Final response type for the subject, plus communication traffic."""
    return [
        DEFAULT_FINAL_MESSAGE_TYPE[subject_type],
        PollMessageType.COMMUNICATION_REQUEST,
        PollMessageType.COMMUNICATION,
    ]


@dataclass
class ComposedBundle:
    """A built message Bundle and the ids callers need to track it."""

    bundle: dict[str, Any]
    message_header_id: str
    focus_id: str
    payloads: Optional[list[PayloadRecord]] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class BundleComposer:
    """Constructs NPHIES message Bundles for a subject."""

    def __init__(
        self,
        settings: Optional[NphiesSettings] = None,
        id_factory: Callable[[], str] = _new_id,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._settings = settings or get_nphies_settings()
        self._new_id = id_factory
        self._now = clock

    # =========================================================================
    # Shared pieces
    # =========================================================================

    @property
    def _domain(self) -> str:
        return self._settings.PROVIDER_DOMAIN

    def _full_url(self, resource_type: str, resource_id: str) -> str:
        return f"http://{self._domain}/{resource_type}/{resource_id}"

    def claim_identifier(self, subject: SubjectRecord) -> dict[str, str]:
        """Business identifier of the original Claim."""
        return {
            "system": f"http://{self._domain}/identifiers/{IDENTIFIER_PATH[subject.subject_type]}",
            "value": subject.request_identifier or "",
        }

    def about_reference(self, subject: SubjectRecord) -> str:
        """Default Communication.about reference for a subject."""
        return self._full_url("Claim", subject.request_identifier or subject.subject_id)

    @staticmethod
    def _require_parties(subject: SubjectRecord) -> None:
        if not subject.provider_nphies_id:
            raise ValidationError(
                f"Subject {subject.ref} has no provider NPHIES id",
                details={"field": "provider_nphies_id"},
            )
        if not subject.insurer_nphies_id:
            raise ValidationError(
                f"Subject {subject.ref} has no insurer NPHIES id",
                details={"field": "insurer_nphies_id"},
            )

    def _message_header(
        self,
        event: OperationKind,
        subject: SubjectRecord,
        focus_full_url: str,
        to_exchange: bool = False,
    ) -> tuple[str, dict[str, Any]]:
        header_id = self._new_id()

        if to_exchange:
            destination = {
                "endpoint": fhir.NPHIES_ENDPOINT,
                "receiver": fhir.organization(fhir.NPHIES_LICENSE, "nphies"),
            }
        else:
            destination = {
                "endpoint": f"{fhir.PAYER_LICENSE}/{subject.insurer_nphies_id}",
                "receiver": fhir.organization(fhir.PAYER_LICENSE, subject.insurer_nphies_id),
            }

        header = {
            "resourceType": "MessageHeader",
            "id": header_id,
            "meta": fhir.profile("message-header"),
            "eventCoding": {
                "system": fhir.MESSAGE_EVENTS_SYSTEM,
                "code": event.value,
            },
            "destination": [destination],
            "sender": fhir.organization(fhir.PROVIDER_LICENSE, subject.provider_nphies_id),
            "source": {"endpoint": self._settings.PROVIDER_ENDPOINT},
            "focus": [{"reference": focus_full_url}],
        }
        return header_id, {"fullUrl": f"urn:uuid:{header_id}", "resource": header}

    def _bundle(self, entries: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "resourceType": "Bundle",
            "id": self._new_id(),
            "meta": fhir.profile("bundle"),
            "type": "message",
            "timestamp": fhir.fhir_datetime(self._now()),
            "entry": entries,
        }

    # =========================================================================
    # status-check
    # =========================================================================

    def build_status_check(self, subject: SubjectRecord) -> ComposedBundle:
        """
        Build a status-check message for a submitted Claim.

        Raises:
            ValidationError: When the subject has no request identifier or parties
        """
        self._require_parties(subject)
        if not subject.request_identifier:
            raise ValidationError(
                f"Subject {subject.ref} has no request identifier to check",
                details={"field": "request_identifier"},
            )

        task_id = self._new_id()
        task_url = self._full_url("Task", task_id)
        task = {
            "resourceType": "Task",
            "id": task_id,
            "meta": fhir.profile("status-check"),
            "identifier": [
                {"system": f"http://{self._domain}/identifiers/statuscheck", "value": task_id}
            ],
            "status": "requested",
            "intent": "order",
            "priority": "routine",
            "code": {"coding": [{"system": fhir.TASK_CODE_SYSTEM, "code": "status"}]},
            "focus": {"type": "Claim", "identifier": self.claim_identifier(subject)},
            "authoredOn": fhir.fhir_datetime(self._now()),
            "requester": fhir.organization(fhir.PROVIDER_LICENSE, subject.provider_nphies_id),
            "owner": fhir.organization(fhir.PAYER_LICENSE, subject.insurer_nphies_id),
        }

        header_id, header_entry = self._message_header(
            OperationKind.STATUS_CHECK, subject, task_url
        )
        bundle = self._bundle([header_entry, {"fullUrl": task_url, "resource": task}])
        return ComposedBundle(bundle=bundle, message_header_id=header_id, focus_id=task_id)

    # =========================================================================
    # poll-request
    # =========================================================================

    def build_poll_request(
        self,
        subject: SubjectRecord,
        message_types: Optional[list[PollMessageType]] = None,
        count: Optional[int] = None,
    ) -> ComposedBundle:
        """
        Build a poll-request message.

        Args:
            subject: Tracking record; its request identifier becomes the Task focus
            message_types: Types to poll for; defaults depend on the subject type
            count: Max messages; defaults to NPHIES_POLL_MESSAGE_COUNT
        """
        if not subject.provider_nphies_id:
            raise ValidationError(
                f"Subject {subject.ref} has no provider NPHIES id",
                details={"field": "provider_nphies_id"},
            )

        types = message_types or default_poll_message_types(subject.subject_type)
        limit = count if count is not None else self._settings.POLL_MESSAGE_COUNT
        if limit < 1:
            raise ValidationError("Poll count must be at least 1", details={"count": limit})

        inputs: list[dict[str, Any]] = [
            {
                "type": {"coding": [{"system": fhir.TASK_INPUT_TYPE_SYSTEM, "code": "message-type"}]},
                "valueCode": message_type.value,
            }
            for message_type in types
        ]
        inputs.append(
            {
                "type": {"coding": [{"system": fhir.TASK_INPUT_TYPE_SYSTEM, "code": "count"}]},
                "valuePositiveInt": limit,
            }
        )

        task_id = self._new_id()
        task_url = self._full_url("Task", task_id)
        task: dict[str, Any] = {
            "resourceType": "Task",
            "id": task_id,
            "meta": fhir.profile("poll-request"),
            "identifier": [
                {"system": f"http://{self._domain}/identifiers/pollrequest", "value": task_id}
            ],
            "status": "requested",
            "intent": "order",
            "priority": "routine",
            "code": {"coding": [{"system": fhir.TASK_CODE_SYSTEM, "code": "poll"}]},
            "authoredOn": fhir.fhir_datetime(self._now()),
            "requester": fhir.organization(fhir.PROVIDER_LICENSE, subject.provider_nphies_id),
            "owner": fhir.organization(fhir.NPHIES_LICENSE, "nphies"),
            "input": inputs,
        }
        if subject.request_identifier:
            task["focus"] = {"type": "Claim", "identifier": self.claim_identifier(subject)}

        header_id, header_entry = self._message_header(
            OperationKind.POLL_REQUEST, subject, task_url, to_exchange=True
        )
        bundle = self._bundle([header_entry, {"fullUrl": task_url, "resource": task}])
        return ComposedBundle(bundle=bundle, message_header_id=header_id, focus_id=task_id)

    # =========================================================================
    # communication
    # =========================================================================

    @staticmethod
    def validate_draft(draft: CommunicationDraft) -> None:
        """
        Reject drafts that must never be sent.

        Raises:
            ValidationError: Empty payloads, solicited without a request,
                or a payload without exactly one content
        """
        if not draft.payloads:
            raise ValidationError("A communication needs at least one payload")

        if draft.communication_type == CommunicationType.SOLICITED and not draft.based_on_request_id:
            raise ValidationError(
                "A solicited communication must reference the CommunicationRequest it answers",
                details={"field": "based_on_request_id"},
            )

        for index, payload in enumerate(draft.payloads, start=1):
            has_text = bool(payload.content_string)
            has_attachment = payload.attachment is not None
            if has_text == has_attachment:
                raise ValidationError(
                    f"Payload {index} must carry exactly one of text or attachment",
                    details={"payload": index},
                )
            if has_attachment and not (payload.attachment.data or payload.attachment.url):
                raise ValidationError(
                    f"Payload {index} attachment has neither data nor url",
                    details={"payload": index},
                )

    @staticmethod
    def _payload(index: int, payload: PayloadDraft) -> dict[str, Any]:
        extensions: list[dict[str, Any]] = [
            {"url": fhir.PAYLOAD_SEQUENCE_EXTENSION, "valuePositiveInt": index + 1}
        ]
        extensions.extend(
            {"url": fhir.CLAIM_ITEM_SEQUENCE_EXTENSION, "valuePositiveInt": sequence}
            for sequence in payload.claim_item_sequences
        )
        fhir_payload: dict[str, Any] = {"extension": extensions}

        if payload.attachment is None:
            fhir_payload["contentString"] = payload.content_string
            return fhir_payload

        attachment = payload.attachment
        content: dict[str, Any] = {
            "contentType": attachment.content_type,
            "title": attachment.title or f"Attachment {index + 1}",
        }
        if attachment.data:
            content["data"] = attachment.data
        if attachment.url:
            content["url"] = attachment.url
        if attachment.size is not None:
            content["size"] = attachment.size
        if attachment.hash:
            content["hash"] = attachment.hash
        fhir_payload["contentAttachment"] = content
        return fhir_payload

    def build_communication(
        self, subject: SubjectRecord, draft: CommunicationDraft
    ) -> ComposedBundle:
        """
        Build a Communication message.

        Unsolicited drafts have no basedOn; solicited drafts reference the
        CommunicationRequest they answer. Payload order is preserved.
        """
        self.validate_draft(draft)
        self._require_parties(subject)

        communication_id = self._new_id()
        communication_url = self._full_url("Communication", communication_id)
        now = fhir.fhir_datetime(self._now())

        communication: dict[str, Any] = {
            "resourceType": "Communication",
            "id": communication_id,
            "meta": fhir.profile("communication"),
            "identifier": [
                {"system": f"http://{self._domain}/identifiers/communication", "value": communication_id}
            ],
            "status": "completed",
            "category": [
                {"coding": [{"system": fhir.COMMUNICATION_CATEGORY_SYSTEM, "code": draft.category.value}]}
            ],
            "priority": draft.priority.value,
            "about": [
                {
                    "reference": draft.about_reference or self.about_reference(subject),
                    "type": draft.about_type,
                }
            ],
            "sent": now,
            "sender": fhir.organization(fhir.PROVIDER_LICENSE, subject.provider_nphies_id),
            "recipient": [fhir.organization(fhir.PAYER_LICENSE, subject.insurer_nphies_id)],
            "payload": [self._payload(i, payload) for i, payload in enumerate(draft.payloads)],
        }
        if subject.patient_reference:
            communication["subject"] = {"reference": subject.patient_reference, "type": "Patient"}
        if draft.communication_type == CommunicationType.SOLICITED:
            communication["basedOn"] = [
                {
                    "reference": f"CommunicationRequest/{draft.based_on_request_id}",
                    "type": "CommunicationRequest",
                }
            ]

        header_id, header_entry = self._message_header(
            OperationKind.COMMUNICATION, subject, communication_url
        )
        bundle = self._bundle(
            [header_entry, {"fullUrl": communication_url, "resource": communication}]
        )
        payloads = [
            PayloadRecord.from_draft(i + 1, payload) for i, payload in enumerate(draft.payloads)
        ]
        logger.debug(
            f"Composed {draft.communication_type.value} communication {communication_id} "
            f"for {subject.ref} with {len(payloads)} payload(s)"
        )
        return ComposedBundle(
            bundle=bundle,
            message_header_id=header_id,
            focus_id=communication_id,
            payloads=payloads,
        )
