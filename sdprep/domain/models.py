"""Domain model for SD/USB preparation.

Type-safe records for the block device snapshot, classification results,
the partition layout and the format job. Raw lsblk dicts never leave the
inventory reader.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

MIB = 1024 * 1024
GIB = 1024 * MIB
TIB = 1024 * GIB


# ==============================================================================
# Block Device Domain
# ==============================================================================


class DeviceKind(Enum):
    DISK = "disk"
    PARTITION = "part"
    ROM = "rom"
    OTHER = "other"

    @classmethod
    def from_lsblk(cls, value: object) -> DeviceKind:
        text = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == text:
                return kind
        return cls.OTHER


class Transport(Enum):
    USB = "usb"
    MMC = "mmc"
    NVME = "nvme"
    ATA = "ata"
    UNKNOWN = "unknown"

    @classmethod
    def from_lsblk(cls, value: object) -> Transport:
        text = str(value or "").strip().lower()
        # lsblk reports "sata" for SATA links
        if text == "sata":
            return cls.ATA
        for transport in cls:
            if transport.value == text:
                return transport
        return cls.UNKNOWN


@dataclass(frozen=True)
class BlockDevice:
    """A block device as seen in one inventory snapshot."""

    name: str  # e.g., "mmcblk0"
    kind: DeviceKind = DeviceKind.DISK
    size_bytes: int = 0
    removable: bool = False
    read_only: bool = False
    transport: Transport = Transport.UNKNOWN
    model: str = ""
    mountpoints: Tuple[str, ...] = ()  # own and child mountpoints
    children: Tuple[BlockDevice, ...] = ()

    @property
    def path(self) -> str:
        """Device node path (e.g., /dev/mmcblk0)."""
        return f"/dev/{self.name}"

    @property
    def is_mounted(self) -> bool:
        return bool(self.mountpoints)

    def partition_path(self, number: int) -> str:
        """Kernel node for partition ``number`` (mmcblk0 -> mmcblk0p1)."""
        suffix = "p" if self.name[-1:].isdigit() else ""
        return f"{self.path}{suffix}{number}"


# ==============================================================================
# Classification Domain
# ==============================================================================


class SafetyClass(Enum):
    SAFE = "safe"
    CAUTION = "caution"
    REJECTED = "rejected"

    @property
    def grade(self) -> str:
        """Single-letter grade shown in device pickers."""
        return {"safe": "S", "caution": "C", "rejected": "-"}[self.value]


class RejectReason(Enum):
    NOT_A_DISK = "not a whole disk"
    ROOT_DEVICE = "backs the root filesystem"
    SYSTEM_MOUNT = "has a system mountpoint"
    READ_ONLY = "read-only"
    NO_MEDIA = "no media present"
    TOO_LARGE = "too large for restrict mode"
    NOT_SD_MEDIA = "does not look like SD media"
    LOW_SCORE = "not a plausible removable target"
    GUARD_UNAVAILABLE = "root device could not be resolved"


@dataclass(frozen=True)
class RiskPolicy:
    """Knobs for the safety classifier and layout planner."""

    safe_threshold: int = 5
    plausible_media_ceiling_bytes: int = 512 * GIB
    restrict_mode: bool = True
    large_capacity_cutoff_bytes: int = TIB
    sd_only: bool = False
    require_retype_for_caution: bool = True
    minimum_usable_mib: int = 64
    reserved_mib: int = 32


@dataclass(frozen=True)
class ClassificationResult:
    device: BlockDevice
    safety_class: SafetyClass
    score: int = 0
    reject_reason: Optional[RejectReason] = None
    description: str = ""

    @property
    def selectable(self) -> bool:
        return self.reject_reason is None and self.safety_class is not SafetyClass.REJECTED


# ==============================================================================
# Layout Domain
# ==============================================================================


@dataclass(frozen=True)
class LayoutPlan:
    """Two-partition MBR layout: FAT32 data partition + raw reserved tail."""

    total_mib: int
    reserved_mib: int
    partition1_start_mib: int
    partition1_end_mib: int

    @property
    def partition2_start_mib(self) -> int:
        return self.partition1_end_mib

    @property
    def partition2_end(self) -> str:
        return "100%"

    @property
    def data_span_mib(self) -> int:
        return self.partition1_end_mib - self.partition1_start_mib

    def describe(self) -> List[str]:
        return [
            f"p1 FAT32 {self.partition1_start_mib}MiB-{self.partition1_end_mib}MiB",
            f"p2 reserved {self.partition2_start_mib}MiB-{self.partition2_end}",
        ]


# ==============================================================================
# Format Job Domain
# ==============================================================================


class JobState(Enum):
    IDLE = "idle"
    CONFIRMING = "confirming"
    UNMOUNTING = "unmounting"
    WIPING = "wiping"
    PARTITIONING_TABLE = "partitioning_table"
    CREATING_PARTITIONS = "creating_partitions"
    WAITING_FOR_DEVICE_NODES = "waiting_for_device_nodes"
    FORMATTING_FILESYSTEM = "formatting_filesystem"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.ABORTED)

    @property
    def is_working(self) -> bool:
        """True while the pipeline is past confirmation and not finished."""
        return self not in (JobState.IDLE, JobState.CONFIRMING) and not self.is_terminal


@dataclass
class StepRecord:
    """Diagnostic details of a failed external step."""

    step: str
    command: List[str]
    returncode: Optional[int]
    output: List[str] = field(default_factory=list)


@dataclass
class FormatJob:
    """A format request owned by the orchestrator."""

    job_id: str
    target: BlockDevice
    safety_class: SafetyClass
    volume_label: str
    plan: LayoutPlan
    state: JobState = JobState.CONFIRMING
    log_lines: List[str] = field(default_factory=list)
    cancel_requested: bool = False
    current_step: Optional[str] = None
    failure: Optional[StepRecord] = None
    status_message: str = ""
    destructive_started: bool = False

    @property
    def working(self) -> bool:
        return self.state.is_working

    @property
    def requires_retype(self) -> bool:
        return self.safety_class is SafetyClass.CAUTION

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "device": self.target.path,
            "safety_class": self.safety_class.value,
            "label": self.volume_label,
            "state": self.state.value,
            "step": self.current_step,
            "working": self.working,
            "cancel_requested": self.cancel_requested,
            "status": self.status_message,
            "layout": self.plan.describe(),
            "log": list(self.log_lines),
        }


@dataclass(frozen=True)
class JobEvent:
    """State change or log line published to subscribers."""

    kind: str  # "state" or "log"
    job_id: str
    state: JobState
    step: Optional[str] = None
    line: Optional[str] = None
    working: bool = False

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "job_id": self.job_id,
            "state": self.state.value,
            "step": self.step,
            "line": self.line,
            "working": self.working,
        }
