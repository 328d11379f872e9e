"""Import Devices use case.

Wires the pipeline stages into one run per uploaded file:

    file -> decode -> resolve defaults -> validate -> submit -> aggregate

Run lifecycle:

    pending --decode ok--> running --all processed--> finished
    pending --FormatError--> aborted          (nothing processed, no summary)
    running --cancel()--> aborted             (partial summary kept)
    running --worker crash--> aborted         (workers stopped, error re-raised)

Concurrency model:
    The whole file is decoded before anything is submitted, so the total is
    known for the first snapshot. A fixed pool of workers pulls records from
    an in-order work queue; each worker pushes its outcome onto a single
    outcome queue that one aggregator task drains. Counter updates therefore
    never interleave, while up to ``concurrency`` registrations are in flight.

Key Design Decisions:
- A bad record never stops the batch; only a FormatError escapes run()
- No retry; re-running a file reports existing devices as conflicts
- Cancelling lets in-flight registrations finish and be recorded
- Concurrency defaults to 1 and is capped at 10
"""

import asyncio
import logging
from typing import Iterable, Optional

from ...api.exceptions import FormatError
from ..adapters.decoders import DecoderRegistry, get_registry
from ..domain.entities import (
    FallbackConfig,
    ImportSummary,
    Invalid,
    RawDeviceRecord,
    RecordOutcome,
    RunState,
)
from ..domain.ports import IRegistrationBackend
from .progress import ProgressAggregator, ProgressListener
from .resolve_defaults import resolve
from .submit_registrations import DEFAULT_SUBMIT_TIMEOUT, RegistrationSubmitter, SubmitOptions
from .validate_records import RecordValidator, ValidationPolicy

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 1
MAX_CONCURRENCY = 10

_DONE = object()


def clamp_concurrency(concurrency: int) -> int:
    """Keep the worker count within 1..MAX_CONCURRENCY."""
    if concurrency > MAX_CONCURRENCY:
        logger.warning(f"Concurrency {concurrency} capped at {MAX_CONCURRENCY}")
        return MAX_CONCURRENCY
    return max(1, concurrency)


class ImportRun:
    """One import of one file. A run can be run once."""

    def __init__(
        self,
        decoders: DecoderRegistry,
        validator: RecordValidator,
        submitter: RegistrationSubmitter,
        concurrency: int = DEFAULT_CONCURRENCY,
        listeners: Optional[Iterable[ProgressListener]] = None,
    ):
        self.decoders = decoders
        self.validator = validator
        self.submitter = submitter
        self.concurrency = clamp_concurrency(concurrency)
        self._listeners: list[ProgressListener] = list(listeners or [])

        self.state = RunState.PENDING
        self.summary: Optional[ImportSummary] = None
        self._cancelled = asyncio.Event()

    def add_listener(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop dequeuing records. In-flight registrations still complete."""
        if not self._cancelled.is_set():
            logger.info("Import run cancellation requested")
            self._cancelled.set()

    async def run(
        self,
        file_bytes: bytes,
        format_id: str,
        fallback: Optional[FallbackConfig] = None,
    ) -> ImportSummary:
        """Decode the file and import every record in it.

        Args:
            file_bytes: Uploaded file content
            format_id: Format to decode the file as
            fallback: Batch-level fallback values

        Returns:
            ImportSummary (partial if the run was cancelled)

        Raises:
            FormatError: If the file does not decode; nothing was submitted
            RuntimeError: If this run was already started
        """
        if self.state != RunState.PENDING:
            raise RuntimeError(f"Import run already {self.state.value}; create a new run")

        try:
            records = list(self.decoders.decode(file_bytes, format_id))
        except FormatError as e:
            self.state = RunState.ABORTED
            logger.error(f"Import aborted, file does not decode as {format_id}: {e}")
            raise

        self.state = RunState.RUNNING
        logger.info(
            f"Starting import of {len(records)} end devices "
            f"(format={format_id}, concurrency={self.concurrency})"
        )

        aggregator = ProgressAggregator(total=len(records), listeners=self._listeners)
        self.summary = aggregator.summary
        aggregator.start()

        work_queue: asyncio.Queue[RawDeviceRecord] = asyncio.Queue()
        for record in records:
            work_queue.put_nowait(record)
        outcome_queue: asyncio.Queue = asyncio.Queue()

        consumer = asyncio.create_task(self._aggregate(outcome_queue, aggregator))
        workers = [
            asyncio.create_task(self._worker(work_queue, outcome_queue, fallback))
            for _ in range(min(self.concurrency, len(records)) or 1)
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            # No worker may outlive the run
            self.cancel()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            outcome_queue.put_nowait(_DONE)
            await consumer
            summary = aggregator.finalize()
            self.state = RunState.ABORTED if self.cancelled else RunState.FINISHED

        if self.state == RunState.ABORTED:
            logger.warning(
                f"Import halted after {summary.processed_count} of {summary.total} end devices"
            )
        else:
            logger.info(
                f"Import finished: {summary.success_count} of {summary.total} end devices "
                f"imported, {summary.failure_count} failed"
            )
        return summary

    async def _worker(
        self,
        work_queue: asyncio.Queue,
        outcome_queue: asyncio.Queue,
        fallback: Optional[FallbackConfig],
    ) -> None:
        while not self.cancelled:
            try:
                record = work_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            outcome = await self._process(record, fallback)
            outcome_queue.put_nowait(outcome)

    async def _process(
        self,
        record: RawDeviceRecord,
        fallback: Optional[FallbackConfig],
    ) -> RecordOutcome:
        try:
            outcome = self.validator.validate(resolve(record, fallback))
        except Exception as e:
            logger.exception(f"Unexpected error checking end device {record.identifier}")
            return Invalid(
                index=record.index,
                identifier=record.identifier,
                reason=str(e) or e.__class__.__name__,
            )
        if isinstance(outcome, Invalid):
            logger.warning(f"End device {outcome.identifier} rejected: {outcome.reason}")
            return outcome
        return await self.submitter.submit(outcome)

    async def _aggregate(self, outcome_queue: asyncio.Queue, aggregator: ProgressAggregator) -> None:
        while True:
            outcome = await outcome_queue.get()
            if outcome is _DONE:
                return
            aggregator.on_outcome(outcome)


class ImportDevicesUseCase:
    """Import end devices from a file into an application.

    Holds the collaborators shared by every run and builds one ImportRun
    per invocation.
    """

    def __init__(
        self,
        backend: IRegistrationBackend,
        decoders: Optional[DecoderRegistry] = None,
        policy: Optional[ValidationPolicy] = None,
        submit_options: Optional[SubmitOptions] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT,
    ):
        """Initialize the use case.

        Args:
            backend: Registration backend
            decoders: Format registry (defaults to the built-in formats)
            policy: Validation policy
            submit_options: Stack enrichment applied before submission
            concurrency: Registrations in flight per run (1..10)
            submit_timeout: Per-registration timeout in seconds
        """
        self.backend = backend
        self.decoders = decoders or get_registry()
        self.policy = policy or ValidationPolicy()
        self.submit_options = submit_options or SubmitOptions()
        self.concurrency = concurrency
        self.submit_timeout = submit_timeout

    def create_run(
        self,
        application_id: str,
        listeners: Optional[Iterable[ProgressListener]] = None,
    ) -> ImportRun:
        """Build a fresh run for ``application_id``."""
        submitter = RegistrationSubmitter(
            backend=self.backend,
            application_id=application_id,
            options=self.submit_options,
            timeout=self.submit_timeout,
        )
        return ImportRun(
            decoders=self.decoders,
            validator=RecordValidator(self.policy),
            submitter=submitter,
            concurrency=self.concurrency,
            listeners=listeners,
        )

    async def execute(
        self,
        file_bytes: bytes,
        format_id: str,
        application_id: str,
        fallback: Optional[FallbackConfig] = None,
        listeners: Optional[Iterable[ProgressListener]] = None,
    ) -> ImportSummary:
        """Run a complete import in one call.

        Raises:
            FormatError: If the file does not decode
        """
        run = self.create_run(application_id, listeners=listeners)
        return await run.run(file_bytes, format_id, fallback)
