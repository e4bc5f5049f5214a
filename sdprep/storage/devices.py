"""Block device inventory using lsblk.

Reads ``lsblk -J -b`` output and turns it into immutable ``BlockDevice``
records. Every read is a fresh snapshot; there is no incremental diffing.

Device Detection:
    lsblk reports, per device:
    - Device name (e.g., sda, mmcblk0)
    - Type (disk, part, rom, loop, ...)
    - Size in bytes (authoritative for all arithmetic)
    - Removable and read-only flags
    - Transport (usb, mmc, nvme, sata, ...)
    - Model string
    - Mountpoints of the device and its partitions

Error Handling:
    Output that is not JSON, lacks the ``blockdevices`` array or contains an
    entry without a name raises ``InventoryError``. Individual optional
    fields that cannot be read are treated as absent (false, zero, empty).

Example:
    >>> from sdprep.storage.devices import read_block_devices
    >>> for device in read_block_devices():
    ...     print(device.path, human_size(device.size_bytes))
    /dev/mmcblk0 29.7GB
"""

import json
import re
import subprocess
from typing import Any, Iterable, List, Optional, Sequence

from sdprep.domain.models import BlockDevice, DeviceKind, Transport
from sdprep.logging import LoggerFactory
from sdprep.storage.exceptions import InventoryError

LSBLK_COLUMNS = "NAME,TYPE,SIZE,RM,RO,TRAN,MODEL,MOUNTPOINT"

log = LoggerFactory.for_inventory()


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_device_label(device: Optional[BlockDevice]) -> str:
    """Human one-liner: ``/dev/sdb  SanDisk Ultra  [29.7GB]``."""
    if device is None:
        return ""
    size_label = re.sub(r"\.0([A-Z])", r"\1", human_size(device.size_bytes))
    model = device.model or "Removable"
    return f"{device.path}  {model}  [{size_label}]"


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return False


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
    return 0


def _own_mountpoints(entry: dict) -> List[str]:
    mountpoints: List[str] = []
    values = entry.get("mountpoints")
    if isinstance(values, list):
        mountpoints.extend(mp for mp in values if isinstance(mp, str) and mp)
    mountpoint = entry.get("mountpoint")
    if isinstance(mountpoint, str) and mountpoint and mountpoint not in mountpoints:
        mountpoints.append(mountpoint)
    return mountpoints


def _parse_entry(entry: Any) -> BlockDevice:
    if not isinstance(entry, dict):
        raise InventoryError(f"unexpected device record: {entry!r}")
    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        raise InventoryError("device record without a name")
    # lsblk -p prints full paths; keep kernel names only
    name = name.strip()
    if name.startswith("/dev/"):
        name = name[len("/dev/"):]

    raw_children = entry.get("children") or []
    if not isinstance(raw_children, list):
        raise InventoryError(f"children of {name} is not a list")
    children = tuple(_parse_entry(child) for child in raw_children)

    mountpoints = _own_mountpoints(entry)
    for child in children:
        for mountpoint in child.mountpoints:
            if mountpoint not in mountpoints:
                mountpoints.append(mountpoint)

    model = entry.get("model")
    return BlockDevice(
        name=name,
        kind=DeviceKind.from_lsblk(entry.get("type")),
        size_bytes=_as_int(entry.get("size")),
        removable=_as_bool(entry.get("rm")),
        read_only=_as_bool(entry.get("ro")),
        transport=Transport.from_lsblk(entry.get("tran")),
        model=model.strip() if isinstance(model, str) else "",
        mountpoints=tuple(mountpoints),
        children=children,
    )


def parse_lsblk_json(text: str) -> List[BlockDevice]:
    """Parse lsblk JSON output into block devices, preserving order."""
    try:
        data = json.loads(text)
    except (TypeError, json.JSONDecodeError) as error:
        raise InventoryError(f"invalid lsblk JSON: {error}", output=text or "") from error
    if not isinstance(data, dict):
        raise InventoryError("lsblk JSON is not an object", output=text)
    entries = data.get("blockdevices")
    if not isinstance(entries, list):
        raise InventoryError("lsblk JSON has no blockdevices array", output=text)
    return [_parse_entry(entry) for entry in entries]


def read_block_devices(device_path: Optional[str] = None) -> List[BlockDevice]:
    """Take a fresh snapshot of all block devices (or of one device tree)."""
    command = ["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS]
    if device_path:
        command.append(device_path)
    try:
        result = run_command(command, log_output=False, log_command=False)
    except subprocess.CalledProcessError as error:
        raise InventoryError(
            f"lsblk exited with {error.returncode}",
            output=(error.stderr or "").strip(),
        ) from error
    except OSError as error:
        raise InventoryError(f"lsblk could not be started: {error}") from error
    devices = parse_lsblk_json(result.stdout)
    log.trace(
        "lsblk found {} devices: {}",
        len(devices),
        ", ".join(device.name for device in devices),
    )
    return devices


def find_device(snapshot: Iterable[BlockDevice], name: str) -> Optional[BlockDevice]:
    """Look up a top-level device by kernel name or /dev path."""
    if not name:
        return None
    if name.startswith("/dev/"):
        name = name[len("/dev/"):]
    for device in snapshot:
        if device.name == name:
            return device
    return None


def iter_partitions(device: BlockDevice) -> Iterable[BlockDevice]:
    for child in device.children:
        if child.kind is DeviceKind.PARTITION:
            yield child
        yield from iter_partitions(child)


def mounted_partitions(device: BlockDevice) -> List[BlockDevice]:
    """Partitions of ``device`` (at any depth) that carry a mountpoint."""
    return [part for part in iter_partitions(device) if part.mountpoints]


def partition_paths(device: BlockDevice, count: int) -> Sequence[str]:
    return [device.partition_path(number) for number in range(1, count + 1)]
