"""Tests for sdprep.storage.layout - partition layout planning."""

import pytest

from sdprep.domain.models import MIB
from sdprep.storage.exceptions import CapacityError
from sdprep.storage.layout import bytes_to_mib, plan_layout


class TestPlanLayout:
    """Tests for plan_layout()."""

    def test_four_gigabyte_card(self):
        plan = plan_layout(4_000_000_000)

        assert plan.total_mib == 3814
        assert plan.partition1_start_mib == 1
        assert plan.partition1_end_mib == 3782
        assert plan.partition2_start_mib == 3782
        assert plan.partition2_end == "100%"

    def test_describe(self):
        plan = plan_layout(4_000_000_000)

        assert plan.describe() == [
            "p1 FAT32 1MiB-3782MiB",
            "p2 reserved 3782MiB-100%",
        ]

    def test_exact_minimum_fails(self):
        with pytest.raises(CapacityError) as exc_info:
            plan_layout((64 + 32) * MIB)

        assert exc_info.value.partition_end_mib == 64
        assert exc_info.value.minimum_mib == 64

    def test_one_mib_over_minimum_succeeds(self):
        plan = plan_layout((64 + 32 + 1) * MIB)

        assert plan.partition1_end_mib == 65

    def test_tiny_and_empty_devices_fail(self):
        for size in (0, 1, 32 * MIB, 90 * MIB):
            with pytest.raises(CapacityError):
                plan_layout(size)

    def test_custom_reserved_and_minimum(self):
        plan = plan_layout(1024 * MIB, reserved_mib=100, minimum_usable_mib=10)

        assert plan.partition1_end_mib == 924
        assert plan.reserved_mib == 100
        assert plan.data_span_mib == 923

    def test_is_deterministic(self):
        assert plan_layout(31914983424) == plan_layout(31914983424)

    def test_partial_mebibytes_truncate(self):
        assert bytes_to_mib(MIB - 1) == 0
        assert bytes_to_mib(2 * MIB + 5) == 2
        assert bytes_to_mib(-5) == 0
