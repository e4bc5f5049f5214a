from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from sdprep.domain.models import BlockDevice, ClassificationResult, RiskPolicy
from sdprep.logging import LoggerFactory
from sdprep.storage.classifier import classify
from sdprep.storage.devices import read_block_devices
from sdprep.storage.exceptions import GuardError, InventoryError
from sdprep.storage.guard import root_parent_device_path


log = LoggerFactory.for_inventory()


@dataclass
class DriveSnapshot:
    devices: List[BlockDevice] = field(default_factory=list)
    last_error: Optional[str] = None
    stale: bool = False


class DeviceInventory:
    """Last good block device snapshot.

    A failed refresh keeps the previous list and records the error so the
    caller can show it next to possibly stale data.
    """

    def __init__(
        self,
        reader: Callable[[], Sequence[BlockDevice]] = read_block_devices,
    ) -> None:
        self._reader = reader
        self._lock = threading.Lock()
        self._devices: List[BlockDevice] = []
        self._last_error: Optional[str] = None

    @property
    def devices(self) -> List[BlockDevice]:
        with self._lock:
            return list(self._devices)

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    def snapshot(self) -> DriveSnapshot:
        with self._lock:
            return DriveSnapshot(
                devices=list(self._devices),
                last_error=self._last_error,
                stale=self._last_error is not None,
            )

    def refresh(self) -> DriveSnapshot:
        try:
            devices = list(self._reader())
        except InventoryError as error:
            log.warning("Inventory refresh failed, keeping previous list: {}", error)
            with self._lock:
                self._last_error = str(error)
        else:
            with self._lock:
                self._devices = devices
                self._last_error = None
        return self.snapshot()


def resolve_root_parent(
    guard: Callable[[], str] = root_parent_device_path,
) -> Optional[str]:
    """Root parent disk path, or None when it cannot be resolved."""
    try:
        return guard()
    except GuardError as error:
        log.error("Root device guard failed, rejecting every device: {}", error)
        return None


def list_candidates(
    policy: RiskPolicy,
    include_rejected: bool = False,
    inventory: Optional[DeviceInventory] = None,
    guard: Callable[[], str] = root_parent_device_path,
    refresh: bool = True,
) -> List[ClassificationResult]:
    """Classify the inventory, refreshing it first unless told otherwise.

    Only selectable results are returned unless ``include_rejected`` is set.
    """
    inventory = inventory or DeviceInventory()
    snapshot = inventory.refresh() if refresh else inventory.snapshot()
    results = classify(snapshot.devices, resolve_root_parent(guard), policy)
    if include_rejected:
        return results
    return [result for result in results if result.selectable]


def candidate_payload(result: ClassificationResult) -> dict:
    device = result.device
    return {
        "name": device.name,
        "path": device.path,
        "size_bytes": device.size_bytes,
        "model": device.model,
        "transport": device.transport.value,
        "removable": device.removable,
        "mountpoints": list(device.mountpoints),
        "safety_class": result.safety_class.value,
        "grade": result.safety_class.grade,
        "score": result.score,
        "reject_reason": result.reject_reason.value if result.reject_reason else None,
        "description": result.description,
        "selectable": result.selectable,
    }
