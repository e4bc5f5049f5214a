from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from sdprep.config import settings
from sdprep.domain.models import FormatJob, JobEvent, JobState, RiskPolicy
from sdprep.storage.exceptions import ConfirmationMismatchError
from sdprep.storage.format import FormatOrchestrator


def build_orchestrator(policy: RiskPolicy) -> FormatOrchestrator:
    """Orchestrator wired with the timing and label settings."""
    return FormatOrchestrator(
        policy,
        default_label=settings.get_setting("default_label", settings.DEFAULT_LABEL),
        unmount_attempts=settings.get_int("unmount_attempts", settings.DEFAULT_UNMOUNT_ATTEMPTS),
        unmount_delay=settings.get_float(
            "unmount_delay_seconds", settings.DEFAULT_UNMOUNT_DELAY_SECONDS
        ),
        node_wait_attempts=settings.get_int(
            "node_wait_attempts", settings.DEFAULT_NODE_WAIT_ATTEMPTS
        ),
        node_wait_interval=settings.get_float(
            "node_wait_interval_seconds", settings.DEFAULT_NODE_WAIT_INTERVAL_SECONDS
        ),
    )


class JobService:
    """Front door to the orchestrator for the CLI and the web API."""

    def __init__(self, orchestrator: FormatOrchestrator) -> None:
        self.orchestrator = orchestrator

    @property
    def job(self) -> Optional[FormatJob]:
        return self.orchestrator.job

    def status(self) -> dict:
        job = self.orchestrator.job
        if job is None:
            return {"state": JobState.IDLE.value, "working": False}
        return job.to_dict()

    async def request(self, device: str, label: Optional[str] = None) -> FormatJob:
        return await self.orchestrator.request_format(device, label)

    async def confirm(
        self,
        device: str,
        label: Optional[str] = None,
        typed_path: Optional[str] = None,
    ) -> FormatJob:
        """Request and confirm in one call; the pipeline keeps running."""
        job = await self.orchestrator.request_format(device, label)
        try:
            self.orchestrator.proceed(typed_path)
        except ConfirmationMismatchError:
            self.orchestrator.decline()
            raise
        return job

    def cancel(self) -> bool:
        return self.orchestrator.cancel()

    def acknowledge(self) -> bool:
        return self.orchestrator.acknowledge()

    async def wait(self) -> Optional[FormatJob]:
        return await self.orchestrator.wait()

    async def subscribe(self, until_terminal: bool = False) -> AsyncIterator[JobEvent]:
        """Yield job events, starting with the current job's log backlog.

        With ``until_terminal`` the stream ends after the job finishes.
        """
        queue: asyncio.Queue[JobEvent] = asyncio.Queue()
        unsubscribe = self.orchestrator.subscribe(queue.put_nowait)
        try:
            job = self.orchestrator.job
            if job is not None:
                for line in list(job.log_lines):
                    yield JobEvent(
                        kind="log",
                        job_id=job.job_id,
                        state=job.state,
                        step=job.current_step,
                        line=line,
                        working=job.working,
                    )
                yield JobEvent(
                    kind="state",
                    job_id=job.job_id,
                    state=job.state,
                    step=job.current_step,
                    working=job.working,
                )
                if until_terminal and job.state.is_terminal:
                    return
            while True:
                event = await queue.get()
                yield event
                if until_terminal and event.kind == "state" and event.state.is_terminal:
                    return
        finally:
            unsubscribe()
