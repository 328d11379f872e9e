"""FastAPI router for bulk end device import endpoints."""

import asyncio
import contextlib
import json
import logging
from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse

from ...api.error_sanitizer import sanitize_error_message
from ...api.exceptions import FormatError
from ..adapters import DecoderRegistry
from ..adapters.json_decoder import FORMAT_ID as DEFAULT_FORMAT_ID
from ..domain.entities import FallbackConfig, ImportSummary, ProgressSnapshot, RunState
from ..domain.ports import IRegistrationBackend
from ..use_cases import ImportDevicesUseCase, SubmitOptions, ValidationPolicy
from .dependencies import (
    ImportSettings,
    get_decoder_registry,
    get_import_settings,
    get_registration_backend,
    get_submit_options,
    get_validation_policy,
    verify_api_key,
)
from .schemas import (
    FailureGroupDTO,
    FormatDTO,
    FormatsResponse,
    ImportFailureDTO,
    ImportRequest,
    ImportResponse,
)

logger = logging.getLogger(__name__)

# File upload limits
MAX_UPLOAD_SIZE_MB = 10
MAX_UPLOAD_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024  # 10 MB

# Application IDs follow the same rules as device IDs
APPLICATION_ID_PATTERN = r"^[a-z0-9](?:-?[a-z0-9]){1,35}$"

router = APIRouter(prefix="/api/import", tags=["Device Import"])


def import_request_form(
    application_id: str = Form(..., pattern=APPLICATION_ID_PATTERN),
    format_id: str = Form(DEFAULT_FORMAT_ID),
    frequency_plan_id: Optional[str] = Form(None),
    lorawan_version: Optional[str] = Form(None),
    lorawan_phy_version: Optional[str] = Form(None),
    set_claim_authentication_code: bool = Form(False),
    derive_device_ids: bool = Form(False),
) -> ImportRequest:
    """Collect the multipart form fields sent with the file."""
    return ImportRequest(
        application_id=application_id,
        format_id=format_id,
        frequency_plan_id=frequency_plan_id or None,
        lorawan_version=lorawan_version or None,
        lorawan_phy_version=lorawan_phy_version or None,
        set_claim_authentication_code=set_claim_authentication_code,
        derive_device_ids=derive_device_ids,
    )


async def _read_upload(file: UploadFile) -> bytes:
    """Read an uploaded file, enforcing name and size limits."""
    if not file.filename:
        raise HTTPException(status_code=400, detail=sanitize_error_message("Filename is required"))

    # Check content-length header if available (early rejection)
    if file.size and file.size > MAX_UPLOAD_SIZE_BYTES:
        raise HTTPException(
            status_code=413,
            detail=sanitize_error_message(f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB} MB"),
        )

    content = await file.read()
    if len(content) == 0:
        raise HTTPException(status_code=400, detail=sanitize_error_message("File is empty"))

    if len(content) > MAX_UPLOAD_SIZE_BYTES:
        raise HTTPException(
            status_code=413,
            detail=sanitize_error_message(f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB} MB"),
        )
    return content


def _format_error_detail(e: FormatError) -> str:
    detail = e.message
    if e.line is not None and f"line {e.line}" not in detail:
        location = f"line {e.line}"
        if e.column is not None:
            location += f", column {e.column}"
        detail = f"{detail} ({location})"
    return sanitize_error_message(detail)


def _build_use_case(
    form: ImportRequest,
    backend: IRegistrationBackend,
    decoders: DecoderRegistry,
    policy: ValidationPolicy,
    submit_options: SubmitOptions,
    settings: ImportSettings,
) -> ImportDevicesUseCase:
    return ImportDevicesUseCase(
        backend=backend,
        decoders=decoders,
        policy=replace(policy, derive_device_id_from_eui=form.derive_device_ids),
        submit_options=replace(
            submit_options,
            set_claim_authentication_code=form.set_claim_authentication_code,
        ),
        concurrency=settings.concurrency,
        submit_timeout=settings.submit_timeout,
    )


def _fallback(form: ImportRequest) -> FallbackConfig:
    return FallbackConfig(
        frequency_plan_id=form.frequency_plan_id,
        lorawan_version=form.lorawan_version,
        lorawan_phy_version=form.lorawan_phy_version,
    )


def _to_response(summary: ImportSummary, state: RunState) -> ImportResponse:
    """Convert a summary to the response DTO. Failure reasons are sanitized."""
    summary = ImportSummary(
        total=summary.total,
        processed_count=summary.processed_count,
        success_count=summary.success_count,
        failures=[replace(f, reason=sanitize_error_message(f.reason)) for f in summary.failures],
    )
    failures = [
        ImportFailureDTO(
            index=f.index,
            identifier=f.identifier,
            reason=f.reason,
            kind=f.kind.value,
        )
        for f in summary.failures
    ]
    groups = [FailureGroupDTO(**g) for g in summary.failures_by_reason()]
    return ImportResponse(
        state=state.value,
        total=summary.total,
        processed_count=summary.processed_count,
        success_count=summary.success_count,
        failure_count=summary.failure_count,
        percent=summary.percent,
        result_class=summary.result_class.value,
        message=summary.headline,
        details=summary.message(),
        failures=failures,
        failures_by_reason=groups,
    )


@router.get("/formats", response_model=FormatsResponse)
async def get_formats(
    decoders: DecoderRegistry = Depends(get_decoder_registry),
    _auth: bool = Depends(verify_api_key),
):
    """List the file formats end devices can be imported from."""
    return FormatsResponse(formats=[FormatDTO(**f) for f in decoders.list_formats()])


@router.post("/devices", response_model=ImportResponse)
async def import_devices(
    file: UploadFile = File(...),
    form: ImportRequest = Depends(import_request_form),
    backend: IRegistrationBackend = Depends(get_registration_backend),
    decoders: DecoderRegistry = Depends(get_decoder_registry),
    policy: ValidationPolicy = Depends(get_validation_policy),
    submit_options: SubmitOptions = Depends(get_submit_options),
    settings: ImportSettings = Depends(get_import_settings),
    _auth: bool = Depends(verify_api_key),
):
    """Import end devices from an uploaded file into an application.

    Form fields:
    - application_id (required)
    - format_id: one of GET /api/import/formats (default the-things-stack)
    - frequency_plan_id, lorawan_version, lorawan_phy_version: fallbacks for
      records that do not set them
    - set_claim_authentication_code: generate a claim code per device
    - derive_device_ids: use ``eui-<dev_eui>`` when a record has no device ID

    A file that does not decode is rejected with 400 before anything is
    registered. Individual bad records are reported in ``failures``.

    Max file size: 10 MB
    """
    content = await _read_upload(file)

    use_case = _build_use_case(form, backend, decoders, policy, submit_options, settings)
    run = use_case.create_run(form.application_id)

    logger.info(f"Import request: {file.filename} ({len(content)} bytes) into {form.application_id}")
    try:
        summary = await run.run(content, form.format_id, _fallback(form))
    except FormatError as e:
        raise HTTPException(status_code=400, detail=_format_error_detail(e))

    return _to_response(summary, run.state)


@router.post("/devices/stream")
async def import_devices_stream(
    request: Request,
    file: UploadFile = File(...),
    form: ImportRequest = Depends(import_request_form),
    backend: IRegistrationBackend = Depends(get_registration_backend),
    decoders: DecoderRegistry = Depends(get_decoder_registry),
    policy: ValidationPolicy = Depends(get_validation_policy),
    submit_options: SubmitOptions = Depends(get_submit_options),
    settings: ImportSettings = Depends(get_import_settings),
    _auth: bool = Depends(verify_api_key),
):
    """Import end devices with real-time progress via Server-Sent Events.

    Events:
    - start: {type, application_id, format_id}
    - progress: {type, processed_count, total, percent, message}
    - complete: final import result (same shape as POST /devices)
    - error: {type, error}, e.g. the file does not decode

    Closing the connection cancels the run: no further records are
    submitted, registrations already in flight complete.
    """
    content = await _read_upload(file)

    use_case = _build_use_case(form, backend, decoders, policy, submit_options, settings)

    # Create queue for event communication between producer and consumer
    queue: asyncio.Queue[str] = asyncio.Queue()
    stop_event = asyncio.Event()

    def publish(evt: dict):
        """Publish an SSE event to the queue."""
        event_type = evt.get("type", "message")
        data = json.dumps(evt)
        queue.put_nowait(f"event: {event_type}\ndata: {data}\n\n")

    def on_progress(snapshot: ProgressSnapshot):
        publish({"type": "progress", **snapshot.to_dict(), "message": snapshot.describe()})

    import_run = use_case.create_run(form.application_id, listeners=[on_progress])

    async def run_import():
        """Run the import and publish progress events."""
        try:
            logger.info(f"=== IMPORT-STREAM REQUEST: {file.filename} into {form.application_id} ===")
            publish({
                "type": "start",
                "application_id": form.application_id,
                "format_id": form.format_id,
            })

            summary = await import_run.run(content, form.format_id, _fallback(form))

            response = _to_response(summary, import_run.state)
            publish({"type": "complete", **response.model_dump()})

        except FormatError as e:
            publish({"type": "error", "error": _format_error_detail(e)})
        except Exception as e:
            logger.exception("Error in import-stream")
            publish({
                "type": "error",
                "error": sanitize_error_message(str(e)),
            })
        finally:
            stop_event.set()

    async def event_generator():
        """Generate SSE events from the queue."""
        task = asyncio.create_task(run_import())

        try:
            # Drain whatever was published before the run stopped
            while not stop_event.is_set() or not queue.empty():
                # Check if client disconnected
                if await request.is_disconnected():
                    logger.info("Client disconnected from SSE stream, cancelling import")
                    import_run.cancel()
                    break

                try:
                    # Wait for next event with timeout (for keep-alive)
                    chunk = await asyncio.wait_for(queue.get(), timeout=10.0)
                    yield chunk
                except asyncio.TimeoutError:
                    # Send keep-alive comment
                    yield ": keep-alive\n\n"

        except asyncio.CancelledError:
            import_run.cancel()
        finally:
            # In-flight registrations finish and are recorded
            if not task.done():
                import_run.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",  # Disable Nginx buffering
    }

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers=headers,
    )
