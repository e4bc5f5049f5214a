"""
Pytest configuration and shared fixtures for sdprep tests.

This module provides lsblk fixtures, fake collaborators for the format
orchestrator, and settings isolation used across all test modules.
"""

import asyncio
import json
import subprocess
from typing import Any, Dict, List, Optional
from unittest.mock import Mock

import pytest

from sdprep.config import settings
from sdprep.domain.models import GIB, BlockDevice, DeviceKind, RiskPolicy, Transport
from sdprep.storage.runner import StepResult


# ==============================================================================
# Settings Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point the settings store at a temp file and reset it to defaults."""
    settings_file = tmp_path / "config" / "settings.json"
    monkeypatch.setattr("sdprep.config.settings.SETTINGS_PATH", settings_file)
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield settings_file
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def temp_settings_file(isolated_settings):
    isolated_settings.parent.mkdir(parents=True, exist_ok=True)
    return isolated_settings


# ==============================================================================
# lsblk Fixtures
# ==============================================================================


@pytest.fixture
def lsblk_sd_card() -> Dict[str, Any]:
    """An SD card in the built-in slot with a mounted FAT partition."""
    return {
        "name": "mmcblk1",
        "type": "disk",
        "size": 31914983424,
        "rm": True,
        "ro": False,
        "tran": None,
        "model": None,
        "mountpoint": None,
        "mountpoints": [None],
        "children": [
            {
                "name": "mmcblk1p1",
                "type": "part",
                "size": 31910789120,
                "rm": True,
                "ro": False,
                "tran": None,
                "model": None,
                "mountpoint": "/media/pi/SDCARD",
                "mountpoints": ["/media/pi/SDCARD"],
            }
        ],
    }


@pytest.fixture
def lsblk_usb_stick() -> Dict[str, Any]:
    """A USB stick reported with string flags, as older lsblk versions do."""
    return {
        "name": "sda",
        "type": "disk",
        "size": "16106127360",
        "rm": "1",
        "ro": "0",
        "tran": "usb",
        "model": "USB Flash Drive",
        "mountpoint": None,
        "children": [
            {
                "name": "sda1",
                "type": "part",
                "size": "16105078784",
                "rm": "1",
                "ro": "0",
                "mountpoint": "/media/usb",
            }
        ],
    }


@pytest.fixture
def lsblk_system_disk() -> Dict[str, Any]:
    """The disk backing / and /boot; must never be offered."""
    return {
        "name": "nvme0n1",
        "type": "disk",
        "size": 512110190592,
        "rm": False,
        "ro": False,
        "tran": "nvme",
        "model": "Samsung SSD 980",
        "mountpoints": [None],
        "children": [
            {
                "name": "nvme0n1p1",
                "type": "part",
                "size": 536870912,
                "mountpoints": ["/boot/efi"],
            },
            {
                "name": "nvme0n1p2",
                "type": "part",
                "size": 511571476480,
                "mountpoints": ["/"],
            },
        ],
    }


@pytest.fixture
def lsblk_output(lsblk_system_disk, lsblk_sd_card, lsblk_usb_stick) -> str:
    """lsblk JSON output with a system disk, an SD card and a USB stick."""
    return json.dumps({"blockdevices": [lsblk_system_disk, lsblk_sd_card, lsblk_usb_stick]})


@pytest.fixture
def lsblk_empty() -> str:
    return json.dumps({"blockdevices": []})


# ==============================================================================
# Domain Fixtures
# ==============================================================================


def make_disk(
    name: str = "sdb",
    size_bytes: int = 32 * GIB,
    removable: bool = True,
    transport: Transport = Transport.USB,
    model: str = "Card Reader",
    mountpoints=(),
    children=(),
    read_only: bool = False,
    kind: DeviceKind = DeviceKind.DISK,
) -> BlockDevice:
    return BlockDevice(
        name=name,
        kind=kind,
        size_bytes=size_bytes,
        removable=removable,
        read_only=read_only,
        transport=transport,
        model=model,
        mountpoints=tuple(mountpoints),
        children=tuple(children),
    )


@pytest.fixture
def disk_factory():
    return make_disk


@pytest.fixture
def policy() -> RiskPolicy:
    return RiskPolicy()


@pytest.fixture
def sd_card() -> BlockDevice:
    """A SAFE target: mmcblk name, removable, MMC transport."""
    return make_disk(
        name="mmcblk1",
        size_bytes=4_000_000_000,
        transport=Transport.MMC,
        model="",
    )


@pytest.fixture
def unknown_disk() -> BlockDevice:
    """A CAUTION target: small, not removable, unknown transport."""
    return make_disk(
        name="sdc",
        size_bytes=8 * GIB,
        removable=False,
        transport=Transport.UNKNOWN,
        model="Generic Disk",
    )


@pytest.fixture
def root_disk() -> BlockDevice:
    return make_disk(
        name="sda",
        size_bytes=256 * GIB,
        removable=False,
        transport=Transport.ATA,
        model="SSD",
        mountpoints=("/", "/boot"),
    )


# ==============================================================================
# Subprocess Mock Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_success(mocker) -> Mock:
    """subprocess.run that always succeeds with empty output."""
    mock_result = Mock()
    mock_result.returncode = 0
    mock_result.stdout = ""
    mock_result.stderr = ""
    return mocker.patch("subprocess.run", return_value=mock_result)


@pytest.fixture
def mock_subprocess_failure(mocker) -> Mock:
    """subprocess.run that always raises CalledProcessError."""

    def raise_error(*args, **kwargs):
        raise subprocess.CalledProcessError(1, args[0], stderr="Mock error")

    return mocker.patch("subprocess.run", side_effect=raise_error)


# ==============================================================================
# Fake Collaborators for the Orchestrator
# ==============================================================================


class FakeRunner:
    """Stands in for ElevatedRunner.

    ``returncodes`` maps a command name (``wipefs``, ``mkfs.fat``...) to the
    exit code it should report. A command listed in ``block_on`` does not
    exit until ``terminate()`` is called, like a real child process.
    """

    def __init__(self, returncodes: Optional[Dict[str, int]] = None, block_on=()):
        self.returncodes = returncodes or {}
        self.block_on = set(block_on)
        self.commands: List[List[str]] = []
        self.terminate_calls = 0
        self.exited = False
        self._release: Optional[asyncio.Event] = None

    async def run(self, command, on_line=None):
        self.commands.append(list(command))
        name = command[0]
        output = [f"{name}: ok"]
        if name in self.block_on:
            self._release = asyncio.Event()
            await self._release.wait()
            self.exited = True
            output = [f"{name}: terminated"]
            if on_line is not None:
                on_line(output[0])
            return StepResult(command=list(command), returncode=-15, output=output)
        if on_line is not None:
            on_line(output[0])
        return StepResult(
            command=list(command),
            returncode=self.returncodes.get(name, 0),
            output=output,
        )

    def terminate(self):
        self.terminate_calls += 1
        if self._release is not None:
            self._release.set()
            return True
        return False

    async def wait_until_blocked(self):
        while self._release is None:
            await asyncio.sleep(0)

    def names(self) -> List[str]:
        return [command[0] for command in self.commands]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def runner_factory():
    return FakeRunner


async def no_sleep(_seconds):
    await asyncio.sleep(0)


@pytest.fixture
def make_orchestrator(sd_card, unknown_disk, root_disk):
    """Build an orchestrator over a fixed snapshot and fake collaborators."""
    from sdprep.storage.format import FormatOrchestrator

    def factory(
        runner=None,
        snapshot=None,
        root="/dev/sda",
        unmounter=None,
        node_exists=None,
        policy=None,
        **kwargs,
    ):
        devices = snapshot if snapshot is not None else [root_disk, sd_card, unknown_disk]
        unmount_calls = []

        def default_unmounter(path, attempts, delay):
            unmount_calls.append((path, attempts, delay))

        def guard():
            if isinstance(root, Exception):
                raise root
            return root

        orchestrator = FormatOrchestrator(
            policy or RiskPolicy(),
            runner=runner or FakeRunner(),
            inventory_reader=lambda: list(devices),
            guard=guard,
            unmounter=unmounter or default_unmounter,
            node_exists=node_exists or (lambda path: True),
            sleep=no_sleep,
            **kwargs,
        )
        orchestrator.unmount_calls = unmount_calls
        return orchestrator

    return factory
