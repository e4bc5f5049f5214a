"""Elevated command runner with line-buffered output streaming.

Every destructive command goes through ``ElevatedRunner``. Commands are
argument vectors handed straight to ``asyncio.create_subprocess_exec``; no
shell is ever involved. When the process is not root, the vector is
prefixed with an absolute ``pkexec`` path.
"""

import asyncio
import os
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from sdprep.logging import LoggerFactory
from sdprep.storage.exceptions import PrivilegeError


PKEXEC_PATHS = ("/usr/bin/pkexec", "/bin/pkexec")

log = LoggerFactory.for_system()


def is_root() -> bool:
    return os.geteuid() == 0


def find_pkexec(candidates: Sequence[str] = PKEXEC_PATHS) -> Optional[str]:
    for path in candidates:
        if os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return None


def privilege_available() -> bool:
    return is_root() or find_pkexec() is not None


@dataclass
class StepResult:
    command: List[str]
    returncode: Optional[int]
    output: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ElevatedRunner:
    """Run argument vectors with root privileges, one at a time.

    ``terminate()`` sends SIGTERM to the in-flight child; ``run()`` still
    waits for the child to exit before returning.
    """

    def __init__(self, pkexec_candidates: Sequence[str] = PKEXEC_PATHS) -> None:
        self._pkexec_candidates = tuple(pkexec_candidates)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._terminate_requested = False

    def prefix(self) -> List[str]:
        if is_root():
            return []
        pkexec = find_pkexec(self._pkexec_candidates)
        if pkexec is None:
            raise PrivilegeError(
                "Not running as root and pkexec was not found at "
                + " or ".join(self._pkexec_candidates)
            )
        return [pkexec]

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    def terminate(self) -> bool:
        """Ask the in-flight child to stop. Returns False when idle."""
        self._terminate_requested = True
        process = self._process
        if process is None or process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        log.warning("Sent SIGTERM to pid {}", process.pid)
        return True

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        output: List[str],
        on_line: Optional[Callable[[str], None]],
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            output.append(line)
            if on_line is not None:
                on_line(line)

    async def run(
        self,
        command: Sequence[str],
        on_line: Optional[Callable[[str], None]] = None,
    ) -> StepResult:
        """Run ``command`` to completion, streaming stdout and stderr lines.

        Raises:
            PrivilegeError: no way to elevate.
        """
        full_command = self.prefix() + list(command)
        output: List[str] = []
        self._terminate_requested = False
        log.debug(f"Running command: {' '.join(full_command)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *full_command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            line = f"{command[0]}: could not be started: {error}"
            output.append(line)
            if on_line is not None:
                on_line(line)
            return StepResult(command=list(command), returncode=127, output=output)

        self._process = process
        if self._terminate_requested:
            process.terminate()
        try:
            await asyncio.gather(
                self._pump(process.stdout, output, on_line),
                self._pump(process.stderr, output, on_line),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.terminate()
                await process.wait()
            raise
        finally:
            self._process = None
        log.debug(f"Command exited with {returncode}: {' '.join(full_command)}")
        return StepResult(command=list(command), returncode=returncode, output=output)
