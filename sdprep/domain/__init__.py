"""Domain models for SD/USB preparation."""

from __future__ import annotations

from .models import (
    BlockDevice,
    ClassificationResult,
    DeviceKind,
    FormatJob,
    JobEvent,
    JobState,
    LayoutPlan,
    RejectReason,
    RiskPolicy,
    SafetyClass,
    StepRecord,
    Transport,
)


__all__ = [
    "BlockDevice",
    "ClassificationResult",
    "DeviceKind",
    "FormatJob",
    "JobEvent",
    "JobState",
    "LayoutPlan",
    "RejectReason",
    "RiskPolicy",
    "SafetyClass",
    "StepRecord",
    "Transport",
]
