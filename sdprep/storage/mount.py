"""Unmount coordinator.

Unmounts every mounted partition of a target disk before it is wiped. Each
round re-enumerates the disk, tries ``udisksctl`` first (works for desktop
automounts without root) and ``umount`` second, through ``pkexec`` when not
root so fstab mounts are released too. Individual failures are ignored.
Only the final enumeration decides the outcome: a disk that still carries a
mountpoint raises ``UnmountFailedError``.
"""

import time
from typing import List

from sdprep.config.settings import DEFAULT_UNMOUNT_ATTEMPTS, DEFAULT_UNMOUNT_DELAY_SECONDS
from sdprep.domain.models import BlockDevice
from sdprep.logging import LoggerFactory, operation_context
from sdprep.storage.devices import (
    find_device,
    mounted_partitions,
    read_block_devices,
    run_command,
)
from sdprep.storage.exceptions import InventoryError, UnmountFailedError
from sdprep.storage.runner import find_pkexec, is_root


log = LoggerFactory.for_mount()


def _normalize(disk: str) -> str:
    return disk if disk.startswith("/dev/") else f"/dev/{disk}"


def mounted_targets(device: BlockDevice) -> List[BlockDevice]:
    """Mounted nodes of ``device``: its partitions, or the disk itself."""
    targets = mounted_partitions(device)
    child_mounts = {mp for part in targets for mp in part.mountpoints}
    # A filesystem written straight onto the disk has no partition table
    if any(mp not in child_mounts for mp in device.mountpoints):
        targets.insert(0, device)
    return targets


def list_mounted_targets(disk: str) -> List[BlockDevice]:
    """Enumerate the mounted nodes of ``disk`` from a fresh snapshot.

    Raises:
        UnmountFailedError: the disk could not be enumerated.
    """
    disk_path = _normalize(disk)
    try:
        snapshot = read_block_devices(disk_path)
    except InventoryError as error:
        log.warning("Cannot enumerate {}: {}", disk_path, error)
        raise UnmountFailedError(disk_path, [f"enumeration failed: {error.reason}"]) from error
    device = find_device(snapshot, disk_path)
    if device is None:
        raise UnmountFailedError(disk_path, ["device disappeared"])
    return mounted_targets(device)


def _umount_command(path: str) -> List[str]:
    """``umount`` for ``path``, through pkexec when not running as root."""
    if not is_root():
        pkexec = find_pkexec()
        if pkexec is not None:
            return [pkexec, "umount", path]
    return ["umount", path]


def _try_unmount(path: str) -> None:
    commands = (
        ["udisksctl", "unmount", "-b", path, "--no-user-interaction"],
        _umount_command(path),
    )
    for command in commands:
        try:
            result = run_command(command, check=False)
        except OSError as error:
            log.debug("{} unavailable: {}", command[0], error)
            continue
        if result.returncode == 0:
            log.info("Unmounted {} with {}", path, command[0])
            return
    log.debug("Could not unmount {} this round", path)


def unmount_all(
    disk: str,
    max_attempts: int = DEFAULT_UNMOUNT_ATTEMPTS,
    inter_delay: float = DEFAULT_UNMOUNT_DELAY_SECONDS,
) -> None:
    """Unmount every mounted partition of ``disk`` or raise.

    Raises:
        UnmountFailedError: a mountpoint survived all rounds, or the disk
            could not be enumerated.
    """
    disk_path = _normalize(disk)
    with operation_context("unmount", device=disk_path) as op_log:
        for attempt in range(1, max(max_attempts, 1) + 1):
            targets = list_mounted_targets(disk_path)
            if not targets:
                op_log.debug("{} has no mounted partitions", disk_path)
                return
            op_log.debug(
                "Unmount round {}/{} on {}: {}",
                attempt,
                max_attempts,
                disk_path,
                ", ".join(target.path for target in targets),
            )
            for target in targets:
                _try_unmount(target.path)
            time.sleep(inter_delay)

        remaining = list_mounted_targets(disk_path)
        if remaining:
            mountpoints = [mp for target in remaining for mp in target.mountpoints]
            raise UnmountFailedError(disk_path, mountpoints)
