"""
FastAPI Dependencies
Dependency injection for the communication service and subject resolution
Source: https://fastapi.tiangolo.com/tutorial/dependencies/
Verified: 2026-10-16
"""

from fastapi import Path, Request

from src.core.enums import SubjectType
from src.services.nphies.communication_service import CommunicationService
from src.services.nphies.records import SubjectRef
from src.utils.errors import NotFoundError


def get_communication_service(request: Request) -> CommunicationService:
    """
    Get the CommunicationService built during application startup.

    Evidence: Application state shared across requests
    Source: https://www.starlette.io/applications/#storing-state-on-the-app-instance
    Verified: 2026-10-16
    """
    return request.app.state.communication_service


def get_subject_ref(
    kind: str = Path(..., description="claims or prior-authorizations"),
    subject_id: str = Path(..., min_length=1, max_length=100),
) -> SubjectRef:
    """
    Resolve `/api/{kind}/{subject_id}` to a SubjectRef.

    Raises:
        NotFoundError: If kind is not a known subject segment
    """
    try:
        subject_type = SubjectType.from_route_segment(kind)
    except ValueError as err:
        raise NotFoundError(f"Unknown resource kind: {kind}") from err
    return SubjectRef(subject_type, subject_id)
