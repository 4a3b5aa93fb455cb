"""
NoteDigest Backend — FastAPI Dependencies
===========================================

What:  Dependency providers for route handlers.
Why:   Services live on app.state (built per app by create_app), so tests
       get isolated stores simply by creating a new app.
"""

from typing import Optional

from fastapi import Header, Request

from app.exceptions import ValidationError
from app.services.batch_service import BatchSummarizationService
from app.services.summarization_service import SummarizationService


def get_summarization_service(request: Request) -> SummarizationService:
    return request.app.state.summarization_service


def get_batch_service(request: Request) -> BatchSummarizationService:
    return request.app.state.batch_service


def get_current_user_id(
    x_user_id: Optional[str] = Header(
        default=None,
        alias="X-User-ID",
        description="Caller identity, set by the authentication layer in front of this service",
    ),
) -> str:
    """
    Caller identity from the X-User-ID header.

    Credentials are verified upstream of this service; here the value is
    only required to be present, since quota is accounted per user.
    """
    if x_user_id is None or not x_user_id.strip():
        raise ValidationError(
            message="Missing caller identity (X-User-ID header).",
            field="X-User-ID",
        )
    return x_user_id.strip()
