"""Partition layout planner.

Two MBR partitions: a FAT32 data partition from 1 MiB up to the reserved
tail, and a raw partition covering the reserved tail to the end of the disk.
"""

from sdprep.config.settings import DEFAULT_MINIMUM_USABLE_MIB, DEFAULT_RESERVED_MIB
from sdprep.domain.models import MIB, LayoutPlan
from sdprep.storage.exceptions import CapacityError

PARTITION1_START_MIB = 1


def bytes_to_mib(size_bytes: int) -> int:
    return max(int(size_bytes), 0) // MIB


def plan_layout(
    size_bytes: int,
    reserved_mib: int = DEFAULT_RESERVED_MIB,
    minimum_usable_mib: int = DEFAULT_MINIMUM_USABLE_MIB,
) -> LayoutPlan:
    """Plan the layout for a device of ``size_bytes``.

    Raises:
        CapacityError: the data partition would not end past
            ``minimum_usable_mib``.
    """
    total_mib = bytes_to_mib(size_bytes)
    partition1_end_mib = total_mib - reserved_mib
    if partition1_end_mib <= minimum_usable_mib:
        raise CapacityError(total_mib, partition1_end_mib, minimum_usable_mib)
    return LayoutPlan(
        total_mib=total_mib,
        reserved_mib=reserved_mib,
        partition1_start_mib=PARTITION1_START_MIB,
        partition1_end_mib=partition1_end_mib,
    )
