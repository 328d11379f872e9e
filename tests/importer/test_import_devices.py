"""Tests for the Import Devices use case.

Runs the whole pipeline (decode, resolve, validate, submit, aggregate)
against an in-memory registry.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from src.lwstack.api.exceptions import FormatError, ServerError
from src.lwstack.importer.adapters import get_registry
from src.lwstack.importer.domain.entities import (
    FallbackConfig,
    FailureKind,
    ResultClass,
    RunState,
)
from src.lwstack.importer.use_cases import (
    MAX_CONCURRENCY,
    ImportDevicesUseCase,
    ImportRun,
    RecordValidator,
    RegistrationSubmitter,
    SubmitOptions,
    ValidationPolicy,
)
from tests.importer.factories import InMemoryRegistry, device, entry, export

FORMAT_ID = "the-things-stack"


def use_case(registry, **kwargs) -> ImportDevicesUseCase:
    return ImportDevicesUseCase(backend=registry, **kwargs)


class TestScenarios:
    """End-to-end import scenarios."""

    @pytest.mark.asyncio
    async def test_all_good_records(self, registry, three_devices):
        summary = await use_case(registry).execute(three_devices, FORMAT_ID, "app1")

        assert summary.success_count == 3
        assert summary.failures == []
        assert summary.result_class == ResultClass.ALL_SUCCEEDED
        assert set(registry.devices) == {("app1", "sensor-1"), ("app1", "sensor-2"), ("app1", "sensor-3")}

    @pytest.mark.asyncio
    async def test_reimport_reports_conflicts(self, registry, three_devices):
        await use_case(registry).execute(three_devices, FORMAT_ID, "app1")

        second = export(
            entry(device("sensor-1", "70B3D57ED0000009")),  # ID taken
            entry(device("sensor-4", "70B3D57ED0000002")),  # EUIs taken
            entry(device("sensor-5", "70B3D57ED0000005")),
        )
        summary = await use_case(registry).execute(second, FORMAT_ID, "app1")

        assert summary.success_count == 1
        assert [f.kind for f in summary.failures] == [FailureKind.CONFLICT, FailureKind.CONFLICT]
        assert summary.failures[0].identifier == "sensor-1"
        assert summary.failures[0].reason == "ID already taken"
        assert summary.failures[1].identifier == "sensor-4"
        assert "already registered as `sensor-2`" in summary.failures[1].reason
        assert summary.result_class == ResultClass.PARTIAL_SUCCESS

    @pytest.mark.asyncio
    async def test_same_file_twice(self, registry, three_devices):
        await use_case(registry).execute(three_devices, FORMAT_ID, "app1")
        summary = await use_case(registry).execute(three_devices, FORMAT_ID, "app1")

        assert summary.success_count == 0
        assert all(f.kind == FailureKind.CONFLICT for f in summary.failures)
        assert summary.result_class == ResultClass.ALL_FAILED

    @pytest.mark.asyncio
    async def test_missing_frequency_plan_without_fallback(self, registry):
        data = export(
            entry(device("sensor-1", "70B3D57ED0000001")),
            entry(device("sensor-2", "70B3D57ED0000002"), omit=("frequency_plan_id", "lorawan_version")),
            entry(device("sensor-3", "70B3D57ED0000003"), omit=("frequency_plan_id", "lorawan_version")),
        )

        summary = await use_case(registry).execute(data, FORMAT_ID, "app1")

        assert summary.success_count == 1
        assert [f.reason for f in summary.failures] == ["frequency plan `` not found"] * 2
        assert [f.kind for f in summary.failures] == [FailureKind.VALIDATION] * 2
        assert len(registry.calls) == 1
        assert summary.message().endswith("  frequency plan `` not found: sensor-2, sensor-3")

    @pytest.mark.asyncio
    async def test_missing_frequency_plan_with_fallback(self, registry):
        data = export(
            entry(device("sensor-1", "70B3D57ED0000001")),
            entry(device("sensor-2", "70B3D57ED0000002"), omit=("frequency_plan_id", "lorawan_version")),
            entry(device("sensor-3", "70B3D57ED0000003"), omit=("frequency_plan_id", "lorawan_version")),
        )
        fallback = FallbackConfig(frequency_plan_id="EU_863_870_TTN", lorawan_version="MAC_V1_0_2")

        summary = await use_case(registry).execute(data, FORMAT_ID, "app1", fallback=fallback)

        assert summary.success_count == 3
        assert registry.devices[("app1", "sensor-2")]["lorawan_version"] == "MAC_V1_0_2"
        assert registry.devices[("app1", "sensor-1")]["lorawan_version"] == "MAC_V1_0_3"
        _, _, mask = registry.calls[1]
        assert "frequency_plan_id" in mask

    @pytest.mark.asyncio
    async def test_malformed_file(self, registry):
        snapshots = []
        run = use_case(registry).create_run("app1", listeners=[snapshots.append])

        with pytest.raises(FormatError):
            await run.run(b'{"devices": []}', FORMAT_ID)

        assert run.state == RunState.ABORTED
        assert run.summary is None
        assert snapshots == []
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_unknown_format(self, registry, three_devices):
        with pytest.raises(FormatError, match="Unknown format"):
            await use_case(registry).execute(three_devices, "xml", "app1")
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_bad_record_late_in_file_aborts_before_submitting(self, registry):
        data = b'{"end_devices": [{"ids": {"device_id": "dev1"}}, 42]}'
        with pytest.raises(FormatError, match="Entry 2"):
            await use_case(registry).execute(data, FORMAT_ID, "app1")
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_empty_file(self, registry):
        snapshots = []
        summary = await use_case(registry).execute(
            export(), FORMAT_ID, "app1", listeners=[snapshots.append]
        )

        assert summary.total == 0
        assert summary.result_class == ResultClass.ALL_SUCCEEDED
        assert [s.describe() for s in snapshots] == ["0 of 0 (100% finished)"]

    @pytest.mark.asyncio
    async def test_csv_with_derived_ids(self, registry):
        data = (
            b"dev_eui;join_eui;frequency_plan_id;app_key\n"
            b"70B3D57ED0000001;0000000000000000;EU_863_870_TTN;0123456789ABCDEF0123456789ABCDEF\n"
            b"70B3D57ED0000002;0000000000000000;EU_863_870_TTN;0123456789ABCDEF0123456789ABCDEF\n"
        )
        fallback = FallbackConfig(lorawan_version="MAC_V1_0_3", lorawan_phy_version="PHY_V1_0_3_REV_A")

        summary = await use_case(
            registry, policy=ValidationPolicy(derive_device_id_from_eui=True)
        ).execute(data, "the-things-stack-csv", "app1", fallback=fallback)

        assert summary.success_count == 2
        assert ("app1", "eui-70b3d57ed0000001") in registry.devices


class TestProperties:
    """Invariants that hold for every run."""

    @pytest.mark.asyncio
    async def test_snapshots_count_up_by_one(self, three_devices):
        registry = InMemoryRegistry(fail_ids={"sensor-2": ServerError("boom")})
        snapshots = []

        await use_case(registry).execute(three_devices, FORMAT_ID, "app1", listeners=[snapshots.append])

        assert [s.processed_count for s in snapshots] == [0, 1, 2, 3]
        assert [s.describe() for s in snapshots][-1] == "3 of 3 (100% finished)"

    @pytest.mark.asyncio
    async def test_counts_consistent_at_every_snapshot(self):
        data = export(
            entry(device("sensor-1", "70B3D57ED0000001")),
            entry(device("Bad_ID", "70B3D57ED0000002")),
            entry(device("sensor-3", "70B3D57ED0000003")),
            entry(device("sensor-4", "70B3D57ED0000004")),
        )
        registry = InMemoryRegistry(fail_ids={"sensor-3": ServerError("boom")})
        run = use_case(registry, concurrency=3).create_run("app1")
        checks = []

        def check(snapshot):
            summary = run.summary
            checks.append(summary.processed_count == summary.success_count + len(summary.failures))

        run.add_listener(check)
        summary = await run.run(data, FORMAT_ID)

        assert all(checks) and len(checks) == 5
        assert summary.processed_count == summary.total == 4

    @pytest.mark.asyncio
    async def test_failing_record_does_not_affect_others(self, three_devices):
        clean = await use_case(InMemoryRegistry()).execute(three_devices, FORMAT_ID, "app1")
        failing = await use_case(
            InMemoryRegistry(fail_ids={"sensor-2": ServerError("boom")})
        ).execute(three_devices, FORMAT_ID, "app1")

        assert clean.success_count == 3
        assert failing.success_count == 2
        assert [(f.identifier, f.reason) for f in failing.failures] == [("sensor-2", "boom")]

    @pytest.mark.asyncio
    async def test_non_object_ids_fail_only_that_record(self, registry):
        data = export(
            entry(device("sensor-1", "70B3D57ED0000001")),
            {"end_device": {"ids": ["x"]}, "field_mask": {"paths": ["ids"]}},
            entry(device("sensor-3", "70B3D57ED0000003")),
        )
        run = use_case(registry, policy=ValidationPolicy(derive_device_id_from_eui=True)).create_run("app1")

        summary = await run.run(data, FORMAT_ID)

        assert run.state == RunState.FINISHED
        assert summary.processed_count == summary.total == 3
        assert summary.success_count == 2
        assert [(f.index, f.identifier, f.reason) for f in summary.failures] == [
            (1, "end device #2", "device ID is required")
        ]

    @pytest.mark.asyncio
    async def test_unexpected_error_checking_a_record_is_contained(self, registry, three_devices):
        class BrokenValidator(RecordValidator):
            def validate(self, record):
                if record.index == 1:
                    raise KeyError("ids")
                return super().validate(record)

        run = ImportRun(
            decoders=get_registry(),
            validator=BrokenValidator(),
            submitter=RegistrationSubmitter(registry, "app1"),
        )

        summary = await run.run(three_devices, FORMAT_ID)

        assert run.state == RunState.FINISHED
        assert summary.success_count == 2
        assert summary.failures[0].identifier == "sensor-2"
        assert summary.failures[0].kind == FailureKind.VALIDATION

    @pytest.mark.asyncio
    async def test_failures_ordered_by_file_position(self):
        data = export(*[entry(device(f"sensor-{i}", f"70B3D57ED000000{i}")) for i in range(1, 7)])
        registry = InMemoryRegistry(
            fail_ids={f"sensor-{i}": ServerError(f"boom {i}") for i in (2, 4, 6)},
            delay=0.001,
        )

        summary = await use_case(registry, concurrency=4).execute(data, FORMAT_ID, "app1")

        assert [f.index for f in summary.failures] == [1, 3, 5]


class TestExecution:
    """Concurrency, cancellation and run lifecycle."""

    @pytest.mark.asyncio
    async def test_sequential_by_default(self, three_devices):
        registry = InMemoryRegistry(delay=0.001)
        await use_case(registry).execute(three_devices, FORMAT_ID, "app1")
        assert registry.max_in_flight == 1
        assert [c[1]["ids"]["device_id"] for c in registry.calls] == ["sensor-1", "sensor-2", "sensor-3"]

    @pytest.mark.asyncio
    async def test_bounded_concurrency(self):
        data = export(*[entry(device(f"sensor-{i}", f"70B3D57ED000000{i}")) for i in range(1, 9)])
        registry = InMemoryRegistry(delay=0.01)

        summary = await use_case(registry, concurrency=3).execute(data, FORMAT_ID, "app1")

        assert summary.success_count == 8
        assert 1 < registry.max_in_flight <= 3

    def test_concurrency_is_clamped(self, registry):
        assert use_case(registry, concurrency=50).create_run("app1").concurrency == MAX_CONCURRENCY
        assert use_case(registry, concurrency=0).create_run("app1").concurrency == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_dequeuing(self):
        data = export(*[entry(device(f"sensor-{i}", f"70B3D57ED000000{i}")) for i in range(1, 6)])
        holder = {}

        def cancel_on_second(device_id):
            if device_id == "sensor-2":
                holder["run"].cancel()

        registry = InMemoryRegistry(on_register=cancel_on_second)
        run = use_case(registry).create_run("app1")
        holder["run"] = run

        summary = await run.run(data, FORMAT_ID)

        assert run.state == RunState.ABORTED
        assert run.cancelled
        # The registration in flight when cancel() was called still completes
        assert summary.processed_count == 2
        assert summary.success_count == 2
        assert summary.total == 5
        assert len(registry.calls) == 2

    @pytest.mark.asyncio
    async def test_crashing_worker_aborts_run(self, three_devices):
        submitter = MagicMock(spec=RegistrationSubmitter)
        submitter.submit = AsyncMock(side_effect=RuntimeError("submitter bug"))
        run = ImportRun(
            decoders=get_registry(),
            validator=RecordValidator(),
            submitter=submitter,
            concurrency=2,
        )

        with pytest.raises(RuntimeError, match="submitter bug"):
            await run.run(three_devices, FORMAT_ID)

        assert run.state == RunState.ABORTED
        assert run.summary.processed_count == 0
        assert submitter.submit.await_count <= 2

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, registry, three_devices):
        run = use_case(registry).create_run("app1")
        run.cancel()

        summary = await run.run(three_devices, FORMAT_ID)

        assert run.state == RunState.ABORTED
        assert summary.processed_count == 0
        assert registry.calls == []

    @pytest.mark.asyncio
    async def test_run_only_once(self, registry, three_devices):
        run = use_case(registry).create_run("app1")
        await run.run(three_devices, FORMAT_ID)

        assert run.state == RunState.FINISHED
        with pytest.raises(RuntimeError, match="already finished"):
            await run.run(three_devices, FORMAT_ID)

    @pytest.mark.asyncio
    async def test_claim_codes_added(self, registry, three_devices):
        options = SubmitOptions(set_claim_authentication_code=True)
        await use_case(registry, submit_options=options).execute(three_devices, FORMAT_ID, "app1")

        codes = {d["claim_authentication_code"]["value"] for d in registry.devices.values()}
        assert len(codes) == 3

    @pytest.mark.asyncio
    async def test_submit_timeout(self, three_devices):
        registry = InMemoryRegistry(delay=1)

        summary = await use_case(registry, submit_timeout=0.01).execute(three_devices, FORMAT_ID, "app1")

        assert summary.success_count == 0
        assert {f.reason for f in summary.failures} == {"registration timed out after 0.01s"}
