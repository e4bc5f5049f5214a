"""Root device guard.

Resolves the disk that backs the running system's root filesystem so it can
be vetoed as a format target. Resolution is repeated on every call: live-USB
systems boot from removable media, and hotplug can change which node backs
``/`` during the life of the process.

Any resolution failure raises ``GuardError``. Callers must treat that as
"no device is safe" rather than as "no device matches".
"""

import subprocess

from sdprep.logging import LoggerFactory
from sdprep.storage.devices import run_command
from sdprep.storage.exceptions import GuardError


log = LoggerFactory.for_guard()

MAX_PARENT_DEPTH = 8


def _first_line(text: str) -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return ""


def _capture(command) -> str:
    try:
        result = run_command(command, log_output=False, log_command=False)
    except subprocess.CalledProcessError as error:
        stderr = (error.stderr or "").strip()
        raise GuardError(
            f"{' '.join(command)} exited with {error.returncode}: {stderr or 'no output'}"
        ) from error
    except OSError as error:
        raise GuardError(f"{command[0]} could not be started: {error}") from error
    return result.stdout


def resolve_root_source() -> str:
    """Return the block device backing the ``/`` mount (e.g. /dev/sda2)."""
    source = _first_line(_capture(["findmnt", "-n", "-o", "SOURCE", "/"]))
    # btrfs subvolumes are reported as /dev/sda2[/@]
    source = source.split("[", 1)[0]
    if not source.startswith("/dev/"):
        raise GuardError(f"root filesystem source is not a block device: {source or 'empty'}")
    return source


def resolve_parent_disk(source: str) -> str:
    """Return the whole-disk node that contains ``source``.

    Follows PKNAME links upwards so that roots on device-mapper stacks
    (LUKS, LVM) resolve to the physical disk and not to a partition.
    """
    current = source
    for _ in range(MAX_PARENT_DEPTH):
        fields = _first_line(
            _capture(["lsblk", "-n", "-d", "-o", "TYPE,PKNAME", current])
        ).split()
        if not fields:
            raise GuardError(f"lsblk returned nothing for {current}")
        device_type = fields[0]
        parent = fields[1] if len(fields) > 1 else ""
        if device_type == "disk" or not parent:
            # A filesystem directly on a disk has no parent
            return current
        current = parent if parent.startswith("/dev/") else f"/dev/{parent}"
    raise GuardError(f"device stack above {source} is deeper than {MAX_PARENT_DEPTH}")


def root_parent_device_path() -> str:
    """Resolve the canonical path of the disk backing the root filesystem."""
    source = resolve_root_source()
    parent = resolve_parent_disk(source)
    log.debug("Root filesystem {} lives on {}", source, parent)
    return parent


def is_root_parent_device(device_path: str) -> bool:
    """Return True when ``device_path`` backs ``/``; raises GuardError."""
    return root_parent_device_path() == device_path
