"""SD/USB format orchestration.

This module drives the destructive part of sdprep: one ``FormatJob`` at a
time, through a fixed sequence of states.

States:
    IDLE -> CONFIRMING -> UNMOUNTING -> WIPING -> PARTITIONING_TABLE
    -> CREATING_PARTITIONS -> WAITING_FOR_DEVICE_NODES
    -> FORMATTING_FILESYSTEM -> SUCCEEDED | FAILED | ABORTED

Layout:
    - MBR partition table
    - p1: FAT32 data partition from 1MiB to ``total - reserved`` MiB
    - p2: raw reserved partition to the end of the device (left unformatted)

Safety:
    - The target is re-read, re-guarded and re-classified when the request
      is made; only SAFE/CAUTION devices reach CONFIRMING
    - Right before the wipe the target is re-read and must still be the
      same disk (size, model, transport, removable), must not back the root
      filesystem and must still classify as SAFE/CAUTION
    - Everything before WIPING fails closed without touching the device
    - Cancellation sends SIGTERM to the running step; ABORTED is entered
      only once the child has exited, and nothing is rolled back

Commands:
    wipefs -a DEV
    parted -s DEV mklabel msdos
    parted -s DEV mkpart primary fat32 1MiB ENDMiB
    parted -s DEV mkpart primary ENDMiB 100%
    partprobe DEV; udevadm settle          (best effort)
    mkfs.fat -F32 -v -I -n LABEL DEVp1
    sync                                   (best effort)

Example:
    >>> orchestrator = FormatOrchestrator()
    >>> job = await orchestrator.request_format("mmcblk0", "picocalc")
    >>> orchestrator.proceed()
    >>> job = await orchestrator.wait()
    >>> job.state
    <JobState.SUCCEEDED: 'succeeded'>
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from sdprep.config.settings import (
    DEFAULT_LABEL,
    DEFAULT_NODE_WAIT_ATTEMPTS,
    DEFAULT_NODE_WAIT_INTERVAL_SECONDS,
    DEFAULT_UNMOUNT_ATTEMPTS,
    DEFAULT_UNMOUNT_DELAY_SECONDS,
)
from sdprep.domain.models import (
    BlockDevice,
    FormatJob,
    JobEvent,
    JobState,
    RiskPolicy,
    StepRecord,
)
from sdprep.logging import LoggerFactory, new_job_id
from sdprep.storage.classifier import classify_device
from sdprep.storage.devices import (
    find_device,
    format_device_label,
    partition_paths,
    read_block_devices,
)
from sdprep.storage.exceptions import (
    ConfirmationMismatchError,
    DeviceNotFoundError,
    DeviceValidationError,
    FormatError,
    GuardError,
    JobActiveError,
    JobCancelled,
    StepFailure,
    StorageError,
    UnmountFailedError,
)
from sdprep.storage.guard import root_parent_device_path
from sdprep.storage.labels import sanitize_fat_label
from sdprep.storage.layout import plan_layout
from sdprep.storage.mount import unmount_all
from sdprep.storage.runner import ElevatedRunner


JobListener = Callable[[JobEvent], None]


def _is_block_device(path: str) -> bool:
    return Path(path).is_block_device()


def _identity(device: BlockDevice) -> tuple:
    return (device.size_bytes, device.model, device.transport, device.removable)


def wipe_command(device: BlockDevice) -> List[str]:
    return ["wipefs", "-a", device.path]


def partition_table_command(device: BlockDevice) -> List[str]:
    return ["parted", "-s", device.path, "mklabel", "msdos"]


def partition_commands(job: FormatJob) -> List[List[str]]:
    plan = job.plan
    device = job.target.path
    return [
        [
            "parted", "-s", device, "mkpart", "primary", "fat32",
            f"{plan.partition1_start_mib}MiB", f"{plan.partition1_end_mib}MiB",
        ],
        [
            "parted", "-s", device, "mkpart", "primary",
            f"{plan.partition2_start_mib}MiB", plan.partition2_end,
        ],
    ]


def mkfs_command(job: FormatJob) -> List[str]:
    return [
        "mkfs.fat", "-F32", "-v", "-I",
        "-n", job.volume_label,
        job.target.partition_path(1),
    ]


class FormatOrchestrator:
    """Owns the single current ``FormatJob`` and runs its pipeline.

    Collaborators are injectable so the state machine can run against fakes:
    ``inventory_reader`` returns a snapshot, ``guard`` returns the root parent
    disk path, ``unmounter`` is called as ``unmounter(path, attempts, delay)``,
    ``runner`` exposes ``run``/``terminate``, ``node_exists`` checks a device
    node and ``sleep`` paces the node wait.
    """

    def __init__(
        self,
        policy: Optional[RiskPolicy] = None,
        *,
        runner: Optional[ElevatedRunner] = None,
        inventory_reader: Callable[[], Sequence[BlockDevice]] = read_block_devices,
        guard: Callable[[], str] = root_parent_device_path,
        unmounter: Callable[[str, int, float], None] = unmount_all,
        node_exists: Callable[[str], bool] = _is_block_device,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        default_label: str = DEFAULT_LABEL,
        unmount_attempts: int = DEFAULT_UNMOUNT_ATTEMPTS,
        unmount_delay: float = DEFAULT_UNMOUNT_DELAY_SECONDS,
        node_wait_attempts: int = DEFAULT_NODE_WAIT_ATTEMPTS,
        node_wait_interval: float = DEFAULT_NODE_WAIT_INTERVAL_SECONDS,
    ) -> None:
        self.policy = policy or RiskPolicy()
        self.runner = runner or ElevatedRunner()
        self._read_inventory = inventory_reader
        self._resolve_root = guard
        self._unmount = unmounter
        self._node_exists = node_exists
        self._sleep = sleep
        self.default_label = default_label
        self.unmount_attempts = unmount_attempts
        self.unmount_delay = unmount_delay
        self.node_wait_attempts = node_wait_attempts
        self.node_wait_interval = node_wait_interval
        self.job: Optional[FormatJob] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[JobListener] = []
        self._log = LoggerFactory.for_format("-")

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> JobState:
        return self.job.state if self.job is not None else JobState.IDLE

    @property
    def busy_device(self) -> Optional[str]:
        """Kernel name of the device a running pipeline owns, if any."""
        if self.job is not None and self.job.working:
            return self.job.target.name
        return None

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        """Register ``listener`` for job events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self._log.exception("Job listener failed on {} event", event.kind)

    def _append_log(self, job: FormatJob, line: str) -> None:
        job.log_lines.append(line)
        self._log.debug(line)
        self._emit(
            JobEvent(
                kind="log",
                job_id=job.job_id,
                state=job.state,
                step=job.current_step,
                line=line,
                working=job.working,
            )
        )

    def _transition(self, job: FormatJob, state: JobState, step: Optional[str] = None) -> None:
        job.state = state
        if step is not None:
            job.current_step = step
        self._log.debug("State -> {}", state.value)
        self._emit(
            JobEvent(
                kind="state",
                job_id=job.job_id,
                state=state,
                step=job.current_step,
                working=job.working,
            )
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _ensure_idle(self) -> None:
        if self.job is None:
            return
        if self.job.state.is_terminal:
            self.acknowledge()
            return
        raise JobActiveError(self.job.target.path, self.job.state.value)

    async def request_format(self, device_name: str, label: Optional[str] = None) -> FormatJob:
        """Validate ``device_name`` against a fresh snapshot and enter CONFIRMING.

        Raises:
            JobActiveError: another job is confirming or running.
            InventoryError: the snapshot could not be read.
            GuardError: the root device could not be resolved.
            DeviceNotFoundError: the device is not in the snapshot.
            DeviceValidationError: the device is not a SAFE/CAUTION candidate.
            CapacityError: the device is too small for the layout.
        """
        self._ensure_idle()

        snapshot = await asyncio.to_thread(self._read_inventory)
        device = find_device(snapshot, device_name)
        if device is None:
            raise DeviceNotFoundError(device_name)
        root_parent = await asyncio.to_thread(self._resolve_root)
        result = classify_device(device, root_parent, self.policy)
        if not result.selectable:
            reason = result.reject_reason.value if result.reject_reason else "rejected"
            raise DeviceValidationError(device.path, reason)
        plan = plan_layout(
            device.size_bytes,
            reserved_mib=self.policy.reserved_mib,
            minimum_usable_mib=self.policy.minimum_usable_mib,
        )
        volume_label = sanitize_fat_label(label or "", fallback=self.default_label)

        # Another request may have landed while the snapshot was read
        self._ensure_idle()

        job = FormatJob(
            job_id=new_job_id(),
            target=device,
            safety_class=result.safety_class,
            volume_label=volume_label,
            plan=plan,
        )
        self.job = job
        self._log = LoggerFactory.for_format(job.job_id)
        self._log.info(
            "Format requested for {} ({}, score {}), label {}",
            result.description,
            result.safety_class.value,
            result.score,
            volume_label,
        )
        self._transition(job, JobState.CONFIRMING)
        return job

    def decline(self) -> bool:
        """Back out of CONFIRMING. Returns False when nothing was pending."""
        job = self.job
        if job is None or job.state is not JobState.CONFIRMING:
            return False
        self._log.info("Format of {} declined", job.target.path)
        self.job = None
        self._emit(JobEvent(kind="state", job_id=job.job_id, state=JobState.IDLE))
        return True

    def proceed(self, typed_path: Optional[str] = None) -> asyncio.Task:
        """Confirm the pending job and start the pipeline on the running loop.

        Raises:
            DeviceValidationError: no job is awaiting confirmation.
            ConfirmationMismatchError: a CAUTION device was not retyped exactly.
        """
        job = self.job
        if job is None or job.state is not JobState.CONFIRMING:
            raise DeviceValidationError(
                job.target.path if job else "-",
                "no format request is awaiting confirmation",
            )
        if job.requires_retype and self.policy.require_retype_for_caution:
            if (typed_path or "").strip() != job.target.path:
                self._log.warning("Confirmation for {} did not match", job.target.path)
                raise ConfirmationMismatchError(job.target.path, job.target.path)
        self._log.info("Format of {} confirmed", job.target.path)
        self._transition(job, JobState.UNMOUNTING, "unmount")
        self._task = asyncio.create_task(self._run(job))
        return self._task

    def cancel(self) -> bool:
        """Request cancellation. Returns False when there is nothing to cancel."""
        job = self.job
        if job is None or job.state.is_terminal:
            return False
        if job.state is JobState.CONFIRMING:
            job.cancel_requested = True
            self._finish(job, JobState.ABORTED, "Cancelled before any change was made")
            return True
        if job.cancel_requested:
            return True
        job.cancel_requested = True
        self._append_log(job, f"Cancel requested during {job.current_step}")
        self.runner.terminate()
        return True

    def acknowledge(self) -> bool:
        """Clear a terminal job and return to IDLE.

        Raises:
            JobActiveError: the job has not finished yet.
        """
        job = self.job
        if job is None:
            return False
        if not job.state.is_terminal:
            raise JobActiveError(job.target.path, job.state.value)
        self.job = None
        self._task = None
        self._emit(JobEvent(kind="state", job_id=job.job_id, state=JobState.IDLE))
        return True

    async def wait(self) -> Optional[FormatJob]:
        """Wait for the running pipeline, if any, and return the job."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.job

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _checkpoint(self, job: FormatJob) -> None:
        if job.cancel_requested:
            raise JobCancelled(job.current_step or "")

    async def _run_step(self, job: FormatJob, command: List[str], step: str):
        self._checkpoint(job)
        self._append_log(job, "$ " + " ".join(command))
        result = await self.runner.run(command, on_line=lambda line: self._append_log(job, line))
        # The child has exited by now
        self._checkpoint(job)
        if result.returncode != 0:
            raise StepFailure(step, command, result.returncode, result.output)
        return result

    async def _best_effort(self, job: FormatJob, command: List[str], check_cancel: bool = True) -> None:
        if check_cancel:
            self._checkpoint(job)
        self._append_log(job, "$ " + " ".join(command))
        result = await self.runner.run(command, on_line=lambda line: self._append_log(job, line))
        if check_cancel:
            self._checkpoint(job)
        if result.returncode != 0:
            self._append_log(job, f"{command[0]} exited with {result.returncode}, continuing")

    async def _unmount_target(self, job: FormatJob) -> None:
        self._append_log(job, f"Unmounting partitions of {job.target.path}")
        await asyncio.to_thread(
            self._unmount, job.target.path, self.unmount_attempts, self.unmount_delay
        )
        self._checkpoint(job)

    async def _revalidate_target(self, job: FormatJob) -> None:
        """Re-read, re-guard and re-classify the target right before the wipe.

        The node name alone does not identify a disk: a card swapped after
        confirmation can come back under the same name.
        """
        snapshot = await asyncio.to_thread(self._read_inventory)
        current = find_device(snapshot, job.target.path)
        if current is None:
            raise DeviceValidationError(job.target.path, "device disappeared before wipe")
        if _identity(current) != _identity(job.target):
            self._append_log(
                job,
                f"Expected {format_device_label(job.target)}, "
                f"found {format_device_label(current)}",
            )
            raise DeviceValidationError(job.target.path, "device changed since confirmation")

        root_parent = await asyncio.to_thread(self._resolve_root)
        if root_parent == job.target.path:
            raise GuardError(f"{job.target.path} now backs the root filesystem")
        result = classify_device(current, root_parent, self.policy)
        if not result.selectable:
            reason = result.reject_reason.value if result.reject_reason else "rejected"
            raise DeviceValidationError(job.target.path, reason)
        self._checkpoint(job)

    async def _wait_for_nodes(self, job: FormatJob) -> None:
        await self._best_effort(job, ["partprobe", job.target.path])
        await self._best_effort(job, ["udevadm", "settle"])
        nodes = list(partition_paths(job.target, 2))
        poll_log = self._log.bind(tags=["format", "poll"])
        for attempt in range(1, self.node_wait_attempts + 1):
            self._checkpoint(job)
            if all(self._node_exists(node) for node in nodes):
                self._append_log(job, "Partition nodes ready: " + ", ".join(nodes))
                return
            poll_log.trace("Waiting for {} ({}/{})", ", ".join(nodes), attempt, self.node_wait_attempts)
            await self._sleep(self.node_wait_interval)
        self._checkpoint(job)
        raise FormatError("partition nodes not detected: " + ", ".join(nodes))

    async def _run(self, job: FormatJob) -> None:
        device = job.target
        try:
            await self._unmount_target(job)
            await self._revalidate_target(job)

            self._transition(job, JobState.WIPING, "wipe")
            self._checkpoint(job)
            job.destructive_started = True
            await self._run_step(job, wipe_command(device), "wipe")

            self._transition(job, JobState.PARTITIONING_TABLE, "partition table")
            await self._run_step(job, partition_table_command(device), "partition table")

            self._transition(job, JobState.CREATING_PARTITIONS, "create partitions")
            for command in partition_commands(job):
                await self._run_step(job, command, "create partitions")

            self._transition(job, JobState.WAITING_FOR_DEVICE_NODES, "wait for partitions")
            await self._wait_for_nodes(job)

            self._transition(job, JobState.FORMATTING_FILESYSTEM, "format filesystem")
            await self._run_step(job, mkfs_command(job), "format filesystem")
            # mkfs has finished; a cancel now only cuts the flush short
            await self._best_effort(job, ["sync"], check_cancel=False)
        except JobCancelled:
            if job.destructive_started:
                message = (
                    f"Aborted during {job.current_step}; {device.path} may be in an "
                    "inconsistent state"
                )
            else:
                message = "Aborted before any change was made"
            self._finish(job, JobState.ABORTED, message)
        except asyncio.CancelledError:
            self._finish(job, JobState.ABORTED, "Aborted: format task was cancelled")
            raise
        except UnmountFailedError as error:
            self._fail(job, f"Device remains mounted: {', '.join(error.mountpoints)}")
        except StepFailure as error:
            job.failure = StepRecord(
                step=error.step,
                command=error.command,
                returncode=error.returncode,
                output=error.output,
            )
            self._fail(job, f"{error.step} failed with exit code {error.returncode}")
        except StorageError as error:
            self._fail(job, str(error))
        except Exception as error:
            self._log.exception("Unexpected error while formatting {}", device.path)
            self._fail(job, f"Unexpected error: {error}")
        else:
            plan = job.plan
            self._finish(
                job,
                JobState.SUCCEEDED,
                f"Formatted {device.path}: p1 FAT32 '{job.volume_label}' "
                f"{plan.partition1_start_mib}-{plan.partition1_end_mib}MiB, "
                f"p2 reserved {plan.partition2_start_mib}MiB-{plan.partition2_end}",
            )

    def _fail(self, job: FormatJob, message: str) -> None:
        self._finish(job, JobState.FAILED, message)

    def _finish(self, job: FormatJob, state: JobState, message: str) -> None:
        job.status_message = message
        self._append_log(job, message)
        if state is JobState.SUCCEEDED:
            self._log.info(message)
        elif state is JobState.FAILED:
            self._log.error(message)
        else:
            self._log.warning(message)
        self._transition(job, state)
