"""
SQLAlchemy Models for the NPHIES Communication Workflow.

This module exports all database models for the application.
"""

from src.models.base import Base, JSONType, TimeStampedModel, UUIDModel
from src.models.communication import (
    NphiesCommunication,
    NphiesCommunicationPayload,
    NphiesCommunicationRequest,
    NphiesSubmission,
)

__all__ = [
    # Base
    "Base",
    "JSONType",
    "TimeStampedModel",
    "UUIDModel",
    # Communication workflow
    "NphiesSubmission",
    "NphiesCommunicationRequest",
    "NphiesCommunication",
    "NphiesCommunicationPayload",
]
