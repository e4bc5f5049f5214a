"""Tests for sdprep.storage.format - the format orchestration state machine.

Covers:
- Request validation against a fresh snapshot and guard
- Confirmation, including the retype requirement for CAUTION devices
- The full command sequence and event stream
- Step failures, unmount failures and the pre-wipe target re-check
- Node wait timeout
- Cancellation semantics (ABORTED only after the child exits)
- Single-job rule and acknowledgement
"""

import dataclasses

import pytest

from sdprep.domain.models import GIB, JobState, RiskPolicy, SafetyClass, Transport
from sdprep.storage import format as format_module
from sdprep.storage.exceptions import (
    CapacityError,
    ConfirmationMismatchError,
    DeviceNotFoundError,
    DeviceValidationError,
    GuardError,
    InventoryError,
    JobActiveError,
    UnmountFailedError,
)


async def run_to_end(orchestrator, typed_path=None):
    orchestrator.proceed(typed_path)
    return await orchestrator.wait()


class TestCommandBuilders:
    """Argument vectors for each destructive step."""

    @pytest.mark.asyncio
    async def test_commands_for_sd_card(self, make_orchestrator):
        orchestrator = make_orchestrator()
        job = await orchestrator.request_format("mmcblk1", "pico data")

        assert format_module.wipe_command(job.target) == ["wipefs", "-a", "/dev/mmcblk1"]
        assert format_module.partition_table_command(job.target) == [
            "parted", "-s", "/dev/mmcblk1", "mklabel", "msdos",
        ]
        assert format_module.partition_commands(job) == [
            ["parted", "-s", "/dev/mmcblk1", "mkpart", "primary", "fat32", "1MiB", "3782MiB"],
            ["parted", "-s", "/dev/mmcblk1", "mkpart", "primary", "3782MiB", "100%"],
        ]
        assert format_module.mkfs_command(job) == [
            "mkfs.fat", "-F32", "-v", "-I", "-n", "PICO DATA", "/dev/mmcblk1p1",
        ]


class TestRequestFormat:
    """IDLE -> CONFIRMING."""

    @pytest.mark.asyncio
    async def test_safe_device_enters_confirming(self, make_orchestrator):
        orchestrator = make_orchestrator()
        events = []
        orchestrator.subscribe(events.append)

        job = await orchestrator.request_format("/dev/mmcblk1", "my sd card!!")

        assert orchestrator.state is JobState.CONFIRMING
        assert job.safety_class is SafetyClass.SAFE
        assert job.volume_label == "MY SD CARD"
        assert job.plan.partition1_end_mib == 3782
        assert job.job_id.startswith("format-")
        assert events[-1].state is JobState.CONFIRMING

    @pytest.mark.asyncio
    async def test_default_label(self, make_orchestrator):
        orchestrator = make_orchestrator(default_label="PICO_DATA")

        job = await orchestrator.request_format("mmcblk1")

        assert job.volume_label == "PICO_DATA"

    @pytest.mark.asyncio
    async def test_root_device_rejected(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(DeviceValidationError):
            await orchestrator.request_format("sda")

        assert orchestrator.state is JobState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_device(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(DeviceNotFoundError):
            await orchestrator.request_format("sdq")

    @pytest.mark.asyncio
    async def test_guard_failure_rejects(self, make_orchestrator):
        orchestrator = make_orchestrator(root=GuardError("findmnt failed"))

        with pytest.raises(GuardError):
            await orchestrator.request_format("mmcblk1")

        assert orchestrator.state is JobState.IDLE

    @pytest.mark.asyncio
    async def test_inventory_failure_rejects(self, make_orchestrator):
        orchestrator = make_orchestrator()

        def broken():
            raise InventoryError("lsblk exited with 1")

        orchestrator._read_inventory = broken
        with pytest.raises(InventoryError):
            await orchestrator.request_format("mmcblk1")

        assert orchestrator.state is JobState.IDLE

    @pytest.mark.asyncio
    async def test_too_small_device_stays_idle(self, make_orchestrator, disk_factory):
        tiny = disk_factory(name="sdb", size_bytes=96 * 1024 * 1024)
        orchestrator = make_orchestrator(snapshot=[tiny])

        with pytest.raises(CapacityError):
            await orchestrator.request_format("sdb")

        assert orchestrator.state is JobState.IDLE
        assert orchestrator.runner.commands == []
        assert orchestrator.unmount_calls == []

    @pytest.mark.asyncio
    async def test_second_request_rejected_without_side_effects(self, make_orchestrator):
        orchestrator = make_orchestrator()
        first = await orchestrator.request_format("mmcblk1", "first")

        with pytest.raises(JobActiveError):
            await orchestrator.request_format("sdc", "second")

        assert orchestrator.job is first
        assert orchestrator.state is JobState.CONFIRMING
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_terminal_job_is_acknowledged_by_new_request(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        first = await run_to_end(orchestrator)

        second = await orchestrator.request_format("mmcblk1")

        assert second is not first
        assert orchestrator.state is JobState.CONFIRMING


class TestConfirmation:
    """CONFIRMING -> IDLE / UNMOUNTING."""

    @pytest.mark.asyncio
    async def test_decline_returns_to_idle(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")

        assert orchestrator.decline() is True
        assert orchestrator.state is JobState.IDLE
        assert orchestrator.decline() is False

    @pytest.mark.asyncio
    async def test_caution_requires_exact_retype(self, make_orchestrator):
        orchestrator = make_orchestrator()
        job = await orchestrator.request_format("sdc")
        assert job.safety_class is SafetyClass.CAUTION

        with pytest.raises(ConfirmationMismatchError):
            orchestrator.proceed("/dev/sdb")
        assert orchestrator.state is JobState.CONFIRMING

        job = await run_to_end(orchestrator, "/dev/sdc")
        assert job.state is JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_caution_retype_can_be_disabled(self, make_orchestrator):
        orchestrator = make_orchestrator(policy=RiskPolicy(require_retype_for_caution=False))
        await orchestrator.request_format("sdc")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_proceed_without_request(self, make_orchestrator):
        with pytest.raises(DeviceValidationError):
            make_orchestrator().proceed()


class TestPipeline:
    """UNMOUNTING through SUCCEEDED."""

    @pytest.mark.asyncio
    async def test_happy_path_command_sequence(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1", "data")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.SUCCEEDED
        assert orchestrator.runner.names() == [
            "wipefs",
            "parted",
            "parted",
            "parted",
            "partprobe",
            "udevadm",
            "mkfs.fat",
            "sync",
        ]
        assert orchestrator.unmount_calls == [("/dev/mmcblk1", 3, 0.25)]
        assert "Formatted /dev/mmcblk1" in job.status_message
        assert job.destructive_started is True

    @pytest.mark.asyncio
    async def test_states_are_published_in_order(self, make_orchestrator):
        orchestrator = make_orchestrator()
        events = []
        orchestrator.subscribe(events.append)
        await orchestrator.request_format("mmcblk1")

        await run_to_end(orchestrator)

        states = [e.state for e in events if e.kind == "state"]
        assert states == [
            JobState.CONFIRMING,
            JobState.UNMOUNTING,
            JobState.WIPING,
            JobState.PARTITIONING_TABLE,
            JobState.CREATING_PARTITIONS,
            JobState.WAITING_FOR_DEVICE_NODES,
            JobState.FORMATTING_FILESYSTEM,
            JobState.SUCCEEDED,
        ]
        working = [e.working for e in events if e.kind == "state"]
        assert working[0] is False and working[-1] is False
        assert all(working[1:-1])

    @pytest.mark.asyncio
    async def test_log_lines_are_streamed(self, make_orchestrator):
        orchestrator = make_orchestrator()
        lines = []
        orchestrator.subscribe(lambda e: e.kind == "log" and lines.append(e.line))
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert "wipefs: ok" in lines
        assert lines == job.log_lines

    @pytest.mark.asyncio
    async def test_step_failure(self, make_orchestrator, runner_factory):
        runner = runner_factory(returncodes={"mkfs.fat": 1})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert job.failure.step == "format filesystem"
        assert job.failure.returncode == 1
        assert job.failure.command[0] == "mkfs.fat"
        assert job.failure.output == ["mkfs.fat: ok"]
        assert runner.names()[-1] == "mkfs.fat"

    @pytest.mark.asyncio
    async def test_wipe_failure_stops_pipeline(self, make_orchestrator, runner_factory):
        runner = runner_factory(returncodes={"wipefs": 2})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert runner.names() == ["wipefs"]

    @pytest.mark.asyncio
    async def test_best_effort_steps_do_not_fail(self, make_orchestrator, runner_factory):
        runner = runner_factory(returncodes={"partprobe": 1, "udevadm": 1, "sync": 1})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unmount_failure(self, make_orchestrator):
        def unmounter(path, attempts, delay):
            raise UnmountFailedError(path, ["/media/pi/CARD"])

        orchestrator = make_orchestrator(unmounter=unmounter)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert "remains mounted" in job.status_message
        assert orchestrator.runner.commands == []
        assert job.destructive_started is False

    @pytest.mark.asyncio
    async def test_guard_rechecked_before_wipe(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        # Root moved onto the target between confirmation and wipe
        orchestrator._resolve_root = lambda: "/dev/mmcblk1"

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_guard_failure_before_wipe(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")

        def broken():
            raise GuardError("findmnt exited with 1")

        orchestrator._resolve_root = broken
        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_swapped_disk_is_not_wiped(self, make_orchestrator, disk_factory, root_disk):
        reader = disk_factory(name="sdb", size_bytes=4 * GIB, model="Card Reader")
        orchestrator = make_orchestrator(snapshot=[root_disk, reader])
        await orchestrator.request_format("sdb")
        # A different disk now answers to the same node name
        backup = disk_factory(
            name="sdb",
            size_bytes=3 * 1024 * GIB,
            removable=False,
            transport=Transport.ATA,
            model="Backup HDD",
        )
        orchestrator._read_inventory = lambda: [root_disk, backup]

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert "changed since confirmation" in job.status_message
        assert orchestrator.runner.commands == []
        assert job.destructive_started is False

    @pytest.mark.asyncio
    async def test_same_size_different_model_is_not_wiped(self, make_orchestrator, disk_factory):
        orchestrator = make_orchestrator(snapshot=[disk_factory(name="sdb", model="Card Reader")])
        await orchestrator.request_format("sdb")
        orchestrator._read_inventory = lambda: [disk_factory(name="sdb", model="Flash Drive")]

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_vanished_target_is_not_wiped(self, make_orchestrator, root_disk):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        orchestrator._read_inventory = lambda: [root_disk]

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert "disappeared" in job.status_message
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_target_reclassified_before_wipe(self, make_orchestrator, sd_card, root_disk):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        locked = dataclasses.replace(sd_card, read_only=True)
        orchestrator._read_inventory = lambda: [root_disk, locked]

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert "read-only" in job.status_message
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_inventory_failure_before_wipe(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")

        def broken():
            raise InventoryError("lsblk exited with 1")

        orchestrator._read_inventory = broken
        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert orchestrator.runner.commands == []

    @pytest.mark.asyncio
    async def test_target_is_reread_after_unmount(self, make_orchestrator):
        reads = []
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        original = orchestrator._read_inventory

        def reader():
            reads.append(list(orchestrator.unmount_calls))
            return original()

        orchestrator._read_inventory = reader
        job = await run_to_end(orchestrator)

        assert job.state is JobState.SUCCEEDED
        assert reads == [[("/dev/mmcblk1", 3, 0.25)]]

    @pytest.mark.asyncio
    async def test_node_wait_timeout(self, make_orchestrator):
        polled = []

        def node_exists(path):
            polled.append(path)
            return path.endswith("p1")

        orchestrator = make_orchestrator(node_exists=node_exists, node_wait_attempts=5)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.FAILED
        assert "partition nodes not detected" in job.status_message
        assert "mkfs.fat" not in orchestrator.runner.names()
        assert polled.count("/dev/mmcblk1p2") == 5

    @pytest.mark.asyncio
    async def test_nodes_appearing_late(self, make_orchestrator):
        checks = {"count": 0}

        def node_exists(path):
            checks["count"] += 1
            return checks["count"] > 6

        orchestrator = make_orchestrator(node_exists=node_exists)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.SUCCEEDED


class TestCancellation:
    """Cancellation from any non-terminal state."""

    @pytest.mark.asyncio
    async def test_cancel_during_wipe_waits_for_child_exit(self, make_orchestrator, runner_factory):
        runner = runner_factory(block_on={"wipefs"})
        orchestrator = make_orchestrator(runner=runner)
        states = []
        orchestrator.subscribe(lambda e: e.kind == "state" and states.append(e.state))
        await orchestrator.request_format("mmcblk1")
        orchestrator.proceed()
        await runner.wait_until_blocked()

        assert orchestrator.state is JobState.WIPING
        assert orchestrator.cancel() is True
        # Still WIPING until the child has actually gone away
        assert orchestrator.state is JobState.WIPING
        assert runner.exited is False

        job = await orchestrator.wait()

        assert runner.exited is True
        assert runner.terminate_calls == 1
        assert job.state is JobState.ABORTED
        assert states[-2:] == [JobState.WIPING, JobState.ABORTED]
        assert "inconsistent state" in job.status_message
        assert runner.names() == ["wipefs"]

    @pytest.mark.asyncio
    async def test_cancel_while_confirming(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")

        assert orchestrator.cancel() is True

        assert orchestrator.state is JobState.ABORTED
        assert "before any change" in orchestrator.job.status_message

    @pytest.mark.asyncio
    async def test_cancel_during_unmount_never_wipes(self, make_orchestrator):
        holder = {}

        def unmounter(path, attempts, delay):
            holder["orchestrator"].job.cancel_requested = True

        orchestrator = make_orchestrator(unmounter=unmounter)
        holder["orchestrator"] = orchestrator
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.ABORTED
        assert orchestrator.runner.commands == []
        assert job.destructive_started is False

    @pytest.mark.asyncio
    async def test_cancel_during_node_wait(self, make_orchestrator):
        holder = {}

        def node_exists(path):
            holder["orchestrator"].cancel()
            return False

        orchestrator = make_orchestrator(node_exists=node_exists)
        holder["orchestrator"] = orchestrator
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.ABORTED
        assert "mkfs.fat" not in orchestrator.runner.names()

    @pytest.mark.asyncio
    async def test_cancel_during_final_sync_keeps_success(self, make_orchestrator, runner_factory):
        runner = runner_factory(block_on={"sync"})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")
        orchestrator.proceed()
        await runner.wait_until_blocked()

        assert orchestrator.cancel() is True
        job = await orchestrator.wait()

        assert job.state is JobState.SUCCEEDED
        assert runner.names()[-2:] == ["mkfs.fat", "sync"]
        assert "sync exited with -15, continuing" in job.log_lines

    @pytest.mark.asyncio
    async def test_cancel_during_mkfs_aborts(self, make_orchestrator, runner_factory):
        runner = runner_factory(block_on={"mkfs.fat"})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")
        orchestrator.proceed()
        await runner.wait_until_blocked()

        orchestrator.cancel()
        job = await orchestrator.wait()

        assert job.state is JobState.ABORTED
        assert "inconsistent state" in job.status_message
        assert "sync" not in runner.names()

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_is_noop(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        await run_to_end(orchestrator)

        assert orchestrator.cancel() is False

    def test_cancel_without_job(self, make_orchestrator):
        assert make_orchestrator().cancel() is False


class TestAcknowledge:
    """Terminal -> IDLE."""

    @pytest.mark.asyncio
    async def test_acknowledge_clears_job(self, make_orchestrator):
        orchestrator = make_orchestrator()
        await orchestrator.request_format("mmcblk1")
        await run_to_end(orchestrator)

        assert orchestrator.acknowledge() is True

        assert orchestrator.state is JobState.IDLE
        assert orchestrator.job is None

    @pytest.mark.asyncio
    async def test_acknowledge_running_job_raises(self, make_orchestrator, runner_factory):
        runner = runner_factory(block_on={"wipefs"})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")
        orchestrator.proceed()
        await runner.wait_until_blocked()

        with pytest.raises(JobActiveError):
            orchestrator.acknowledge()
        with pytest.raises(JobActiveError):
            await orchestrator.request_format("sdc")

        orchestrator.cancel()
        await orchestrator.wait()

    @pytest.mark.asyncio
    async def test_busy_device(self, make_orchestrator, runner_factory):
        runner = runner_factory(block_on={"wipefs"})
        orchestrator = make_orchestrator(runner=runner)
        await orchestrator.request_format("mmcblk1")
        assert orchestrator.busy_device is None

        orchestrator.proceed()
        await runner.wait_until_blocked()
        assert orchestrator.busy_device == "mmcblk1"

        orchestrator.cancel()
        await orchestrator.wait()
        assert orchestrator.busy_device is None


class TestListeners:
    """Subscriber management."""

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_orchestrator):
        orchestrator = make_orchestrator()
        events = []
        unsubscribe = orchestrator.subscribe(events.append)
        unsubscribe()

        await orchestrator.request_format("mmcblk1")

        assert events == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_pipeline(self, make_orchestrator):
        orchestrator = make_orchestrator()

        def broken(event):
            raise RuntimeError("listener bug")

        orchestrator.subscribe(broken)
        await orchestrator.request_format("mmcblk1")

        job = await run_to_end(orchestrator)

        assert job.state is JobState.SUCCEEDED
