"""Pydantic schemas for API request/response validation."""

from typing import Optional

from pydantic import BaseModel, Field

from ..adapters.json_decoder import FORMAT_ID as DEFAULT_FORMAT_ID


class FormatDTO(BaseModel):
    """A supported import file format."""

    id: str
    name: str
    description: str = ""
    file_extensions: list[str] = Field(default_factory=list)


class FormatsResponse(BaseModel):
    """Response listing the supported formats."""

    formats: list[FormatDTO] = Field(default_factory=list)


class ImportRequest(BaseModel):
    """Form fields sent along with the uploaded file."""

    application_id: str
    format_id: str = DEFAULT_FORMAT_ID

    # Fallback values for records that do not set them
    frequency_plan_id: Optional[str] = None
    lorawan_version: Optional[str] = None
    lorawan_phy_version: Optional[str] = None

    # Stack options
    set_claim_authentication_code: bool = False
    derive_device_ids: bool = False


class ImportFailureDTO(BaseModel):
    """A record that was not registered."""

    index: int
    identifier: str
    reason: str
    kind: str  # validation, conflict, submission


class FailureGroupDTO(BaseModel):
    """Failures sharing one reason."""

    reason: str
    kind: str
    identifiers: list[str] = Field(default_factory=list)


class ImportResponse(BaseModel):
    """Final result of an import run."""

    state: str  # finished, aborted
    total: int = 0
    processed_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    percent: float = 0.0
    result_class: str = "all_succeeded"
    message: str = ""
    details: str = ""
    failures: list[ImportFailureDTO] = Field(default_factory=list)
    failures_by_reason: list[FailureGroupDTO] = Field(default_factory=list)
