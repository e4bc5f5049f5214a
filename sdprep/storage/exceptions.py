"""Custom exceptions for storage operations.

Exception Hierarchy:
    StorageError (base)
        ├── InventoryError
        ├── GuardError
        ├── PrivilegeError
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   ├── DeviceBusyError
        │   │   └── JobActiveError
        │   └── DeviceValidationError
        │       └── ConfirmationMismatchError
        ├── MountError
        │   └── UnmountFailedError
        └── FormatError
            ├── CapacityError
            ├── StepFailure
            └── JobCancelled

Usage:
    from sdprep.storage.exceptions import CapacityError

    if end_mib <= minimum_mib:
        raise CapacityError(total_mib, end_mib, minimum_mib)
"""

from typing import Optional, Sequence


class StorageError(Exception):
    """Base exception for all storage operations."""


class InventoryError(StorageError):
    """Block device snapshot could not be read or parsed."""

    def __init__(self, reason: str, output: str = ""):
        self.reason = reason
        self.output = output
        super().__init__(f"Device inventory unavailable: {reason}")


class GuardError(StorageError):
    """Root filesystem backing device could not be resolved."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cannot resolve root device: {reason}")


class PrivilegeError(StorageError):
    """No way to run destructive commands with elevated privileges."""


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceBusyError(DeviceError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class JobActiveError(DeviceBusyError):
    """A format job is already running."""

    def __init__(self, device_name: str, state: str):
        self.state = state
        super().__init__(device_name, f"format job in progress ({state})")


class DeviceValidationError(DeviceError):
    """Device failed validation checks."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class ConfirmationMismatchError(DeviceValidationError):
    """Operator did not retype the exact device path."""

    def __init__(self, device_name: str, expected: str):
        self.expected = expected
        super().__init__(device_name, f"confirmation must be exactly {expected}")


class MountError(StorageError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount device or partition."""

    def __init__(self, device_name: str, mountpoints: Sequence[str]):
        self.device_name = device_name
        self.mountpoints = list(mountpoints)
        mounts_str = ", ".join(self.mountpoints) or "unknown"
        super().__init__(
            f"Device remains mounted: {device_name}. Active mountpoints: {mounts_str}"
        )


class FormatError(StorageError):
    """Base exception for format operations."""


class CapacityError(FormatError):
    """Device is too small for the partition layout."""

    def __init__(self, total_mib: int, partition_end_mib: int, minimum_mib: int):
        self.total_mib = total_mib
        self.partition_end_mib = partition_end_mib
        self.minimum_mib = minimum_mib
        super().__init__(
            f"Device too small: {total_mib} MiB leaves data partition ending at "
            f"{partition_end_mib} MiB (needs more than {minimum_mib} MiB)"
        )


class StepFailure(FormatError):
    """An external destructive command exited with a non-zero status."""

    def __init__(
        self,
        step: str,
        command: Sequence[str],
        returncode: Optional[int],
        output: Sequence[str] = (),
    ):
        self.step = step
        self.command = list(command)
        self.returncode = returncode
        self.output = list(output)
        super().__init__(
            f"{step} failed (rc={returncode}): {' '.join(self.command)}"
        )


class JobCancelled(FormatError):
    """Operator cancelled the running job."""

    def __init__(self, step: str = ""):
        self.step = step
        msg = "Cancelled by operator"
        if step:
            msg += f" during {step}"
        super().__init__(msg)
