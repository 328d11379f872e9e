"""Use cases for bulk end device import.

Each stage of the import pipeline is a small unit with one job; the
ImportDevicesUseCase wires them into a run.
"""

from .import_devices import (
    DEFAULT_CONCURRENCY,
    MAX_CONCURRENCY,
    ImportDevicesUseCase,
    ImportRun,
)
from .progress import ProgressAggregator, ProgressListener
from .resolve_defaults import resolve
from .submit_registrations import RegistrationSubmitter, SubmitOptions
from .validate_records import (
    KNOWN_MAC_VERSIONS,
    KNOWN_PHY_VERSIONS,
    RecordValidator,
    ValidationPolicy,
    derive_device_id,
)

__all__ = [
    "ImportDevicesUseCase",
    "ImportRun",
    "DEFAULT_CONCURRENCY",
    "MAX_CONCURRENCY",
    "ProgressAggregator",
    "ProgressListener",
    "resolve",
    "RegistrationSubmitter",
    "SubmitOptions",
    "RecordValidator",
    "ValidationPolicy",
    "derive_device_id",
    "KNOWN_MAC_VERSIONS",
    "KNOWN_PHY_VERSIONS",
]
