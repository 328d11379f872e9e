"""Domain layer for bulk end device import.

Contains:
- Entities: Records, outcomes, progress and summaries
- Ports: Interface definitions for infrastructure adapters
"""

from .entities import (
    FALLBACK_FIELDS,
    Conflict,
    Failed,
    FailureKind,
    FallbackConfig,
    ImportFailure,
    ImportSummary,
    Invalid,
    ProgressSnapshot,
    RawDeviceRecord,
    RecordOutcome,
    Registered,
    ResolvedDeviceRecord,
    ResultClass,
    RunState,
    SubmissionOutcome,
    Valid,
    ValidationOutcome,
)
from .ports import IFormatDecoder, IRegistrationBackend

__all__ = [
    # Entities
    "FALLBACK_FIELDS",
    "RawDeviceRecord",
    "FallbackConfig",
    "ResolvedDeviceRecord",
    "Valid",
    "Invalid",
    "ValidationOutcome",
    "Registered",
    "Conflict",
    "Failed",
    "SubmissionOutcome",
    "RecordOutcome",
    "FailureKind",
    "ImportFailure",
    "ImportSummary",
    "ProgressSnapshot",
    "RunState",
    "ResultClass",
    # Ports
    "IFormatDecoder",
    "IRegistrationBackend",
]
