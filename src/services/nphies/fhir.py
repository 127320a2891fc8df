"""
NPHIES FHIR constants and small helpers shared by the composer and interpreter.

Source: NPHIES Implementation Guide (KSA nphies-fs profiles)
Verified: 2026-10-16
"""

from datetime import datetime
from typing import Any, Iterator, Optional

NPHIES_FS = "http://nphies.sa/fhir/ksa/nphies-fs/StructureDefinition"
NPHIES_TERMINOLOGY = "http://nphies.sa/terminology/CodeSystem"

# Code systems
MESSAGE_EVENTS_SYSTEM = f"{NPHIES_TERMINOLOGY}/ksa-message-events"
TASK_CODE_SYSTEM = f"{NPHIES_TERMINOLOGY}/task-code"
TASK_INPUT_TYPE_SYSTEM = f"{NPHIES_TERMINOLOGY}/task-input-type"
COMMUNICATION_CATEGORY_SYSTEM = f"{NPHIES_TERMINOLOGY}/communication-category"
META_TAGS_SYSTEM = f"{NPHIES_TERMINOLOGY}/meta-tags"

# Identifier systems
PROVIDER_LICENSE = "http://nphies.sa/license/provider-license"
PAYER_LICENSE = "http://nphies.sa/license/payer-license"
NPHIES_LICENSE = "http://nphies.sa/license/nphies-license"
NPHIES_ENDPOINT = "http://nphies.sa"

# Extensions
PAYLOAD_SEQUENCE_EXTENSION = f"{NPHIES_FS}/extension-payloadSequence"
CLAIM_ITEM_SEQUENCE_EXTENSION = f"{NPHIES_FS}/extension-claimItemSequence"

QUEUED_MESSAGES_TAG = "queued-messages"


def profile(name: str, version: str = "1.0.0") -> dict[str, list[str]]:
    """meta block declaring an nphies-fs profile."""
    return {"profile": [f"{NPHIES_FS}/{name}|{version}"]}


def fhir_datetime(value: datetime) -> str:
    """FHIR dateTime with millisecond precision and offset."""
    return value.isoformat(timespec="milliseconds")


def organization(system: str, value: str) -> dict[str, Any]:
    """Logical Organization reference by license identifier."""
    return {
        "type": "Organization",
        "identifier": {"system": system, "value": value},
    }


def reference_id(reference: Optional[str]) -> Optional[str]:
    """Trailing id of a FHIR reference: 'Communication/123' -> '123'."""
    if not reference:
        return None
    tail = reference.rstrip("/").split("/")[-1]
    if tail.startswith("urn:uuid:"):
        tail = tail[len("urn:uuid:"):]
    return tail or None


def reference_type(reference: Optional[str]) -> Optional[str]:
    """Resource type of a FHIR reference: 'http://x/Claim/1' -> 'Claim'."""
    if not reference:
        return None
    parts = reference.rstrip("/").split("/")
    return parts[-2] if len(parts) > 1 else None


def iter_resources(bundle: Optional[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    """Resources of a Bundle's top-level entries."""
    for entry in (bundle or {}).get("entry") or []:
        resource = entry.get("resource") if isinstance(entry, dict) else None
        if isinstance(resource, dict):
            yield resource


def find_message_header(bundle: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    """First top-level MessageHeader of a Bundle."""
    for resource in iter_resources(bundle):
        if resource.get("resourceType") == "MessageHeader":
            return resource
    return None


def first_coding_code(concept: Optional[dict[str, Any]]) -> Optional[str]:
    """code of the first coding in a CodeableConcept."""
    codings = (concept or {}).get("coding") or []
    return codings[0].get("code") if codings else None
