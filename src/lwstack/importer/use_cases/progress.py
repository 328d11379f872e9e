"""Progress aggregation for an import run.

The aggregator is the only writer of a run's ImportSummary. It takes one
outcome per processed record, keeps the counters, and emits a progress
snapshot to every listener after each record:

    processed_count == success_count + len(failures)   (always)
    processed_count grows by exactly 1 per snapshot

Listeners are plain callables; the REST layer forwards snapshots as
Server-Sent Events and the CLI prints them.
"""

import logging
from typing import Callable, Iterable, Optional

from ..domain.entities import (
    Conflict,
    Failed,
    FailureKind,
    ImportFailure,
    ImportSummary,
    Invalid,
    ProgressSnapshot,
    RecordOutcome,
    Registered,
)

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressSnapshot], None]


class ProgressAggregator:
    """Running counters and snapshots for one run."""

    def __init__(self, total: int, listeners: Optional[Iterable[ProgressListener]] = None):
        self.summary = ImportSummary(total=total)
        self._listeners: list[ProgressListener] = list(listeners or [])
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def start(self) -> ProgressSnapshot:
        """Emit the initial ``0 of N`` snapshot."""
        snapshot = self.summary.snapshot()
        self._emit(snapshot)
        return snapshot

    def on_outcome(self, outcome: RecordOutcome) -> ProgressSnapshot:
        """Record one processed record and emit a snapshot.

        Raises:
            RuntimeError: If called after finalize, or for more records than
                the run holds
            TypeError: If ``outcome`` is not a record outcome
        """
        if self._finalized:
            raise RuntimeError("Cannot apply an outcome to a finalized import summary")
        if self.summary.processed_count >= self.summary.total:
            raise RuntimeError(
                f"Received more outcomes than records ({self.summary.total})"
            )

        if isinstance(outcome, Registered):
            self.summary.success_count += 1
        elif isinstance(outcome, Conflict):
            self._fail(outcome.index, outcome.device_id, outcome.reason, FailureKind.CONFLICT)
        elif isinstance(outcome, Failed):
            self._fail(outcome.index, outcome.device_id, outcome.reason, FailureKind.SUBMISSION)
        elif isinstance(outcome, Invalid):
            self._fail(outcome.index, outcome.identifier, outcome.reason, FailureKind.VALIDATION)
        else:
            raise TypeError(f"Unsupported outcome: {outcome!r}")

        self.summary.processed_count += 1
        snapshot = self.summary.snapshot()
        self._emit(snapshot)
        return snapshot

    def finalize(self) -> ImportSummary:
        """Freeze the summary; failures are ordered by record index."""
        if not self._finalized:
            self.summary.failures.sort(key=lambda f: f.index)
            self._finalized = True
        return self.summary

    def _fail(self, index: int, identifier: str, reason: str, kind: FailureKind) -> None:
        self.summary.failures.append(
            ImportFailure(index=index, identifier=identifier, reason=reason, kind=kind)
        )

    def _emit(self, snapshot: ProgressSnapshot) -> None:
        for listener in self._listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener failed")
