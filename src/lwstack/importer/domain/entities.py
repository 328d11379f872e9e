"""Domain entities for bulk end device import.

These are pure domain objects with no infrastructure dependencies.
They represent the records flowing through the import pipeline and the
progress and results reported back to the caller.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

# Fields a caller may supply batch-wide for records that lack them
FALLBACK_FIELDS = ("frequency_plan_id", "lorawan_version", "lorawan_phy_version")


class FailureKind(str, Enum):
    """Why a single record did not end up registered."""

    VALIDATION = "validation"  # Rejected before submission
    CONFLICT = "conflict"  # Device ID or EUI already registered
    SUBMISSION = "submission"  # Any other backend or transport failure


class RunState(str, Enum):
    """Lifecycle of an import run."""

    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    ABORTED = "aborted"


class ResultClass(str, Enum):
    """Overall outcome of a run, derived from its summary."""

    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_SUCCESS = "partial_success"
    ALL_FAILED = "all_failed"


def record_identifier(index: int, end_device: dict) -> str:
    """Best human-readable name for a record.

    The device ID if present, else the DevEUI, else the 1-based position
    in the file.
    """
    ids = end_device.get("ids") if isinstance(end_device, dict) else None
    if isinstance(ids, dict):
        if ids.get("device_id"):
            return str(ids["device_id"])
        if ids.get("dev_eui"):
            return str(ids["dev_eui"])
    return f"end device #{index + 1}"


# ============================================
# Records
# ============================================


@dataclass(frozen=True)
class RawDeviceRecord:
    """One device entry as decoded from the import file.

    Attributes:
        index: 0-based position in the file
        end_device: Nested end device fields
        field_mask: Dotted paths of the fields the record explicitly sets
    """

    index: int
    end_device: dict
    field_mask: tuple[str, ...]

    @property
    def identifier(self) -> str:
        return record_identifier(self.index, self.end_device)


@dataclass(frozen=True)
class FallbackConfig:
    """Batch-level values applied to records that do not specify them."""

    frequency_plan_id: Optional[str] = None
    lorawan_version: Optional[str] = None
    lorawan_phy_version: Optional[str] = None

    def values(self) -> dict[str, str]:
        """Return only the fallback fields that carry a non-empty value."""
        result = {}
        for name in FALLBACK_FIELDS:
            value = getattr(self, name)
            if value:
                result[name] = value
        return result

    def to_dict(self) -> dict:
        return {name: getattr(self, name) for name in FALLBACK_FIELDS}


@dataclass(frozen=True)
class ResolvedDeviceRecord:
    """A record after fallback resolution.

    ``field_mask`` is the effective mask: the original mask plus
    ``injected_paths``.
    """

    index: int
    end_device: dict
    field_mask: tuple[str, ...]
    injected_paths: tuple[str, ...] = ()

    @property
    def identifier(self) -> str:
        return record_identifier(self.index, self.end_device)

    @property
    def device_id(self) -> Optional[str]:
        ids = self.end_device.get("ids")
        if not isinstance(ids, dict):
            return None
        return ids.get("device_id") or None


# ============================================
# Outcomes
# ============================================


@dataclass(frozen=True)
class Valid:
    """The record passed validation and may be submitted."""

    record: ResolvedDeviceRecord

    @property
    def index(self) -> int:
        return self.record.index


@dataclass(frozen=True)
class Invalid:
    """The record was rejected before submission."""

    index: int
    identifier: str
    reason: str


ValidationOutcome = Union[Valid, Invalid]


@dataclass(frozen=True)
class Registered:
    """The backend accepted the device."""

    index: int
    device_id: str


@dataclass(frozen=True)
class Conflict:
    """The device ID or one of the EUIs is already registered."""

    index: int
    device_id: str
    reason: str


@dataclass(frozen=True)
class Failed:
    """The backend rejected the device or could not be reached."""

    index: int
    device_id: str
    reason: str


SubmissionOutcome = Union[Registered, Conflict, Failed]

# Anything the aggregator accepts: a submission result or a validation rejection
RecordOutcome = Union[Registered, Conflict, Failed, Invalid]


# ============================================
# Progress and Results
# ============================================


@dataclass
class ImportFailure:
    """A record that did not get registered, with the reason shown to the user."""

    index: int
    identifier: str
    reason: str
    kind: FailureKind

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "identifier": self.identifier,
            "reason": self.reason,
            "kind": self.kind.value,
        }


def format_percent(processed_count: int, total: int) -> float:
    """Percentage of processed records, two decimals. An empty run is complete."""
    if total <= 0:
        return 100.0
    return round(processed_count / total * 100, 2)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Progress after a record was processed."""

    processed_count: int
    total: int
    percent: float

    def describe(self) -> str:
        """Human-readable progress, e.g. ``"2 of 3 (66.67% finished)"``."""
        return f"{self.processed_count} of {self.total} ({self.percent:g}% finished)"

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "total": self.total,
            "percent": self.percent,
        }


@dataclass
class ImportSummary:
    """Running and final result of an import run.

    Invariant: ``processed_count == success_count + len(failures)``.
    """

    total: int
    processed_count: int = 0
    success_count: int = 0
    failures: list[ImportFailure] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def percent(self) -> float:
        return format_percent(self.processed_count, self.total)

    @property
    def result_class(self) -> ResultClass:
        if not self.failures:
            return ResultClass.ALL_SUCCEEDED
        if self.success_count == 0:
            return ResultClass.ALL_FAILED
        return ResultClass.PARTIAL_SUCCESS

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            processed_count=self.processed_count,
            total=self.total,
            percent=self.percent,
        )

    def failures_by_reason(self) -> list[dict]:
        """Group failures by reason, in the order each reason first appears.

        Returns:
            List of {"reason", "kind", "identifiers"} dicts
        """
        groups: dict[str, dict] = {}
        for failure in self.failures:
            group = groups.setdefault(
                failure.reason,
                {"reason": failure.reason, "kind": failure.kind.value, "identifiers": []},
            )
            group["identifiers"].append(failure.identifier)
        return list(groups.values())

    @property
    def headline(self) -> str:
        result = self.result_class
        if result == ResultClass.ALL_SUCCEEDED:
            return "All end devices imported successfully"
        if result == ResultClass.PARTIAL_SUCCESS:
            return "Not all devices imported successfully"
        return "No end devices could be imported"

    def message(self) -> str:
        """Full user-facing result text: headline, counts and failure list."""
        lines = [self.headline]
        if self.result_class == ResultClass.ALL_SUCCEEDED:
            return lines[0]

        if self.result_class == ResultClass.PARTIAL_SUCCESS:
            lines.append(
                f"Successfully converted {self.success_count} of {self.total} end devices"
            )
        lines.append("The registration of the following end devices failed:")
        for group in self.failures_by_reason():
            lines.append(f"  {group['reason']}: {', '.join(group['identifiers'])}")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed_count": self.processed_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "percent": self.percent,
            "result_class": self.result_class.value,
            "message": self.headline,
            "failures": [f.to_dict() for f in self.failures],
            "failures_by_reason": self.failures_by_reason(),
        }
