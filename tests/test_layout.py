import dataclasses

import pytest

from repartition.errors import (
    InsufficientHomeSpace,
    InvalidPlan,
    RemovableMediaPolicyViolation,
    RootSizeExceedsDevice,
    RootSizeOutOfRange,
)
from repartition.layout import describe_plan, plan_layout, removable_root_limit, validate_plan
from repartition.model import DeviceGeometry, FsKind, PartitionSpec, RemovablePolicy, Role
from repartition.sectors import ALIGNMENT

G = 1024 ** 3


@pytest.fixture
def sd_card():
    # 64 GB SD card, Raspberry Pi OS image with root starting at 260 MiB.
    return DeviceGeometry(
        device="/dev/mmcblk0",
        total_sectors=124_735_488,
        root_partition_start=532_480,
        is_removable_media=True,
        partition_table="msdos",
    )


def test_full_layout_on_usb_disk(geometry):
    plan = plan_layout(geometry, 16 * G, swap_size=4 * G, var_size=8 * G)

    assert [spec.role for spec in plan.partitions] == [Role.ROOT, Role.SWAP, Role.VAR, Role.HOME]
    assert [(spec.start, spec.end) for spec in plan.partitions] == [
        (1_056_768, 34_611_199),
        (34_611_200, 42_999_807),
        (42_999_808, 59_777_023),
        (59_777_024, 125_042_687),
    ]
    assert [spec.number for spec in plan.partitions] == [2, 3, 4, 5]
    assert [spec.fs_kind for spec in plan.partitions] == [FsKind.UNCHANGED, FsKind.SWAP, FsKind.BTRFS, FsKind.EXT4]
    assert plan.warnings == ()
    validate_plan(plan)


def test_root_only_gives_home_the_rest(geometry):
    plan = plan_layout(geometry, 8 * G)

    assert [spec.role for spec in plan.partitions] == [Role.ROOT, Role.HOME]
    assert plan.root.end == 17_833_983
    assert plan.home.start == 17_833_984
    assert plan.home.end == geometry.total_sectors - 1


def test_root_end_rounds_down_for_unaligned_start(geometry):
    geo = dataclasses.replace(geometry, root_partition_start=3000)
    plan = plan_layout(geo, 8 * G, swap_size=4 * G, var_size=2 * G)

    root, swap, var, home = plan.partitions
    assert root.start == 3000
    assert root.end == 16_779_263
    assert root.sectors < 16_777_216
    assert (swap.start, swap.end) == (16_779_264, 25_167_871)
    assert (var.start, var.end) == (25_167_872, 29_362_175)
    assert home.start == 29_362_176
    validate_plan(plan)


def test_new_partitions_start_aligned_and_are_disjoint(geometry):
    plan = plan_layout(geometry, 12 * G, swap_size=1 * G, var_size=3 * G)
    for spec in plan.created:
        assert spec.start % ALIGNMENT == 0
    for prev, nxt in zip(plan.partitions, plan.partitions[1:]):
        assert prev.end < nxt.start
    assert plan.home.sectors * 2 >= geometry.total_sectors


def test_plan_is_deterministic(geometry):
    first = plan_layout(geometry, 16 * G, swap_size=2 * G, var_size=4 * G)
    second = plan_layout(geometry, 16 * G, swap_size=2 * G, var_size=4 * G)
    assert first == second


@pytest.mark.parametrize("size", [4 * G, 8 * G - 1, 64 * G + 1, 128 * G])
def test_root_size_range(geometry, size):
    with pytest.raises(RootSizeOutOfRange):
        plan_layout(geometry, size)


@pytest.mark.parametrize("size", [8 * G, 64 * G])
def test_root_size_bounds_are_inclusive(size):
    geo = DeviceGeometry("/dev/sda", total_sectors=500_000_000, root_partition_start=2048)
    plan = plan_layout(geo, size)
    assert plan.root.start == 2048


def test_root_larger_than_device():
    geo = DeviceGeometry("/dev/sdb", total_sectors=8_000_000, root_partition_start=2048)
    with pytest.raises(RootSizeExceedsDevice):
        plan_layout(geo, 8 * G)


def test_home_must_keep_half_the_device():
    # 16 GB stick: an 8 GiB root leaves /home less than half.
    geo = DeviceGeometry("/dev/sda", total_sectors=31_251_656, root_partition_start=2048)
    with pytest.raises(InsufficientHomeSpace):
        plan_layout(geo, 8 * G)


def test_extras_can_starve_home(geometry):
    with pytest.raises(InsufficientHomeSpace):
        plan_layout(geometry, 16 * G, swap_size=8 * G, var_size=16 * G)


def test_removable_16gb_card_cannot_hold_minimum_root():
    geo = DeviceGeometry(
        "/dev/mmcblk0", total_sectors=31_251_656, root_partition_start=2048, is_removable_media=True
    )
    assert removable_root_limit(geo) == 15_622_144
    with pytest.raises(RootSizeExceedsDevice):
        plan_layout(geo, 8 * G)


def test_removable_card_root_only(sd_card):
    plan = plan_layout(sd_card, 8 * G)
    assert [spec.role for spec in plan.partitions] == [Role.ROOT, Role.HOME]
    assert plan.root.end == 17_309_695
    assert plan.home.start == 17_309_696
    assert plan.home.end == 124_735_487


def test_removable_root_above_half_is_rejected(sd_card):
    with pytest.raises(RootSizeExceedsDevice) as exc:
        plan_layout(sd_card, 32 * G)
    assert exc.value.details["limit"] == 61_835_264


def test_removable_deny_rejects_swap_before_geometry(sd_card):
    with pytest.raises(RemovableMediaPolicyViolation) as exc:
        plan_layout(sd_card, 8 * G, swap_size=2 * G, var_size=4 * G)
    assert exc.value.details["roles"] == ["swap", "var"]
    assert exc.value.result == "FAIL_REMOVABLE_POLICY"


def test_removable_skip_drops_extras_with_warning(sd_card):
    plan = plan_layout(sd_card, 8 * G, swap_size=2 * G, policy=RemovablePolicy.SKIP)
    assert plan.get(Role.SWAP) is None
    assert [spec.role for spec in plan.partitions] == [Role.ROOT, Role.HOME]
    assert plan.warnings and "skipping" in plan.warnings[0]


def test_removable_allow_creates_extras_with_warning(sd_card):
    plan = plan_layout(sd_card, 8 * G, swap_size=1 * G, var_size=2 * G, policy=RemovablePolicy.ALLOW)
    assert [spec.number for spec in plan.partitions] == [2, 3, 4, 5]
    assert "high-wear" in plan.warnings[0]
    # msdos tables stop at four primaries
    with pytest.raises(InvalidPlan):
        validate_plan(plan)


def test_policy_ignored_on_fixed_media(geometry):
    plan = plan_layout(geometry, 8 * G, swap_size=1 * G, policy=RemovablePolicy.DENY)
    assert plan.get(Role.SWAP) is not None


def test_validate_plan_rejects_overlap(geometry):
    plan = plan_layout(geometry, 8 * G, swap_size=1 * G)
    root, swap, home = plan.partitions
    bad = dataclasses.replace(plan, partitions=(root, dataclasses.replace(swap, start=root.end), home))
    with pytest.raises(InvalidPlan):
        validate_plan(bad)


def test_validate_plan_rejects_moved_root_and_short_home(geometry):
    plan = plan_layout(geometry, 8 * G)
    root, home = plan.partitions
    moved = dataclasses.replace(plan, partitions=(dataclasses.replace(root, start=2048), home))
    with pytest.raises(InvalidPlan):
        validate_plan(moved)
    short = dataclasses.replace(plan, partitions=(root, dataclasses.replace(home, end=home.end - 1)))
    with pytest.raises(InvalidPlan):
        validate_plan(short)


def test_validate_plan_rejects_unaligned_start(geometry):
    plan = plan_layout(geometry, 8 * G)
    root, home = plan.partitions
    bad = dataclasses.replace(plan, partitions=(root, PartitionSpec(Role.HOME, home.start + 1, home.end, FsKind.EXT4, 3)))
    with pytest.raises(InvalidPlan):
        validate_plan(bad)


def test_msdos_root_only_layout_fits(geometry):
    geo = dataclasses.replace(geometry, partition_table="msdos")
    validate_plan(plan_layout(geo, 8 * G, swap_size=1 * G))


def test_describe_plan_lists_partitions_and_warnings(sd_card):
    plan = plan_layout(sd_card, 8 * G, swap_size=1 * G, policy=RemovablePolicy.SKIP)
    lines = describe_plan(plan)
    assert lines[0].startswith("Device: /dev/mmcblk0")
    assert any("/home" in line and "ext4" in line for line in lines)
    assert any(line.startswith("  #2 /") and "existing" in line for line in lines)
    assert lines[-1].startswith("[WARN] removable media")


def test_plan_over_existing_partition_is_rejected(geometry):
    geo = dataclasses.replace(
        geometry,
        last_partition_number=3,
        root_partition_end=60_000_000,
        existing_partitions=((1, 8192, 1_056_767), (2, 1_056_768, 60_000_000), (3, 100_000_000, 125_042_654)),
    )
    plan = plan_layout(geo, 16 * G)
    assert plan.home.number == 4
    with pytest.raises(InvalidPlan) as exc:
        validate_plan(plan)
    assert exc.value.details["partition"] == 3


def test_shrunk_root_region_may_be_reused(geometry):
    geo = dataclasses.replace(
        geometry,
        root_partition_end=125_042_687,
        existing_partitions=((1, 8192, 1_056_767), (2, 1_056_768, 125_042_687)),
    )
    validate_plan(plan_layout(geo, 16 * G, swap_size=4 * G, var_size=8 * G))


def test_root_cannot_grow_past_current_partition(geometry):
    # unexpanded image: root partition is only ~5 GiB
    geo = dataclasses.replace(geometry, root_partition_end=11_542_527)
    with pytest.raises(RootSizeExceedsDevice) as exc:
        plan_layout(geo, 8 * G)
    assert exc.value.details["root_partition_end"] == 11_542_527
    exact = dataclasses.replace(geometry, root_partition_end=17_833_983)
    assert plan_layout(exact, 8 * G).root.end == 17_833_983
