"""API layer for bulk end device import.

Contains:
- FastAPI router with endpoints
- Pydantic schemas for request/response validation
"""

from .router import router
from .schemas import (
    FailureGroupDTO,
    FormatDTO,
    FormatsResponse,
    ImportFailureDTO,
    ImportRequest,
    ImportResponse,
)

__all__ = [
    "router",
    "FormatDTO",
    "FormatsResponse",
    "ImportRequest",
    "ImportFailureDTO",
    "FailureGroupDTO",
    "ImportResponse",
]
