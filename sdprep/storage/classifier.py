"""Device safety classifier.

Turns an inventory snapshot into ranked format candidates. Filtering runs per
device and stops at the first failing check, in this order:

    1. only whole disks are targets
    2. never the disk backing ``/``
    3. never a disk with a system mountpoint on it or its partitions
    4. never read-only media
    5. never an empty slot (zero size)

Survivors are scored. The score is an allowlist: anything that does not earn
a positive score is rejected, so unknown device families stay out of the
picker by default.

    +5  mmcblk* name (SD/MMC host controller)
    +3  removable flag
    +4  MMC transport
    +3  USB transport
    +2  smaller than the plausible SD/USB ceiling
    -10 loop/zram/ram devices
    -7  NVMe

Scores at or above the policy's safe threshold are SAFE, other positive
scores are CAUTION.
"""

from typing import Iterable, List, Optional

from sdprep.domain.models import (
    BlockDevice,
    ClassificationResult,
    DeviceKind,
    RejectReason,
    RiskPolicy,
    SafetyClass,
    Transport,
)
from sdprep.logging import LoggerFactory
from sdprep.storage.devices import format_device_label


PROTECTED_MOUNTPOINTS = frozenset(
    {"/", "/boot", "/boot/efi", "/usr", "/var", "/opt", "/snap", "/recovery"}
)
MMC_NAME_PREFIX = "mmcblk"
VIRTUAL_NAME_PREFIXES = ("loop", "zram", "ram")
NVME_NAME_PREFIX = "nvme"
SD_MODEL_HINTS = ("sd", "card", "reader", "massstorageclass", "generic")

log = LoggerFactory.for_inventory()


def has_protected_mountpoint(device: BlockDevice) -> bool:
    return any(mountpoint in PROTECTED_MOUNTPOINTS for mountpoint in device.mountpoints)


def score_device(device: BlockDevice, policy: RiskPolicy) -> int:
    score = 0
    if device.name.startswith(MMC_NAME_PREFIX):
        score += 5
    if device.removable:
        score += 3
    if device.transport is Transport.MMC:
        score += 4
    if device.transport is Transport.USB:
        score += 3
    if 0 < device.size_bytes < policy.plausible_media_ceiling_bytes:
        score += 2
    if device.name.startswith(VIRTUAL_NAME_PREFIXES):
        score -= 10
    if device.name.startswith(NVME_NAME_PREFIX) or device.transport is Transport.NVME:
        score -= 7
    return score


def looks_like_sd_media(device: BlockDevice) -> bool:
    """Heuristic for SD-only mode: SD slots and USB card readers."""
    if device.name.startswith(MMC_NAME_PREFIX):
        return True
    if device.transport is Transport.MMC:
        return True
    if device.transport is Transport.USB and device.removable:
        model = device.model.lower()
        if not model:
            return True
        return any(hint in model for hint in SD_MODEL_HINTS)
    return False


def _reject(device: BlockDevice, reason: RejectReason, score: int = 0) -> ClassificationResult:
    log.debug("Rejected {}: {}", device.path, reason.value)
    return ClassificationResult(
        device=device,
        safety_class=SafetyClass.REJECTED,
        score=score,
        reject_reason=reason,
        description=format_device_label(device),
    )


def _filter(device: BlockDevice, root_parent_path: Optional[str]) -> Optional[RejectReason]:
    if device.kind is not DeviceKind.DISK:
        return RejectReason.NOT_A_DISK
    if root_parent_path is None:
        return RejectReason.GUARD_UNAVAILABLE
    if device.path == root_parent_path:
        return RejectReason.ROOT_DEVICE
    if has_protected_mountpoint(device):
        return RejectReason.SYSTEM_MOUNT
    if device.read_only:
        return RejectReason.READ_ONLY
    if device.size_bytes == 0:
        return RejectReason.NO_MEDIA
    return None


def classify_device(
    device: BlockDevice,
    root_parent_path: Optional[str],
    policy: RiskPolicy,
) -> ClassificationResult:
    """Classify a single device.

    ``root_parent_path`` of ``None`` means the root guard failed; every
    device is then rejected.
    """
    reason = _filter(device, root_parent_path)
    if reason is not None:
        return _reject(device, reason)

    score = score_device(device, policy)
    if policy.restrict_mode and device.size_bytes >= policy.large_capacity_cutoff_bytes:
        return _reject(device, RejectReason.TOO_LARGE, score)
    if policy.sd_only and not looks_like_sd_media(device):
        return _reject(device, RejectReason.NOT_SD_MEDIA, score)
    if score <= 0:
        return _reject(device, RejectReason.LOW_SCORE, score)

    safety_class = SafetyClass.SAFE if score >= policy.safe_threshold else SafetyClass.CAUTION
    return ClassificationResult(
        device=device,
        safety_class=safety_class,
        score=score,
        description=format_device_label(device),
    )


def classify(
    snapshot: Iterable[BlockDevice],
    root_parent_path: Optional[str],
    policy: Optional[RiskPolicy] = None,
) -> List[ClassificationResult]:
    """Classify every device in ``snapshot``, keeping input order."""
    policy = policy or RiskPolicy()
    results = []
    for device in snapshot:
        try:
            results.append(classify_device(device, root_parent_path, policy))
        except (AttributeError, TypeError, ValueError) as error:
            # A record we cannot reason about is never a candidate
            log.warning("Could not classify {}: {}", getattr(device, "name", device), error)
            results.append(
                ClassificationResult(
                    device=device,
                    safety_class=SafetyClass.REJECTED,
                    reject_reason=RejectReason.LOW_SCORE,
                )
            )
    return results


def selectable(results: Iterable[ClassificationResult]) -> List[ClassificationResult]:
    """Only SAFE/CAUTION results, in classification order."""
    return [result for result in results if result.selectable]
