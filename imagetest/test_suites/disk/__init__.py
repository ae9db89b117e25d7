# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Disk read/write, resize and block device naming."""

from ... import daisy
from ...testworkflow import HYPERDISK_BALANCED, SHOULD_REBOOT_DURING_TEST, TestWorkflow
from ...utils import has_feature

NAME = "disk"

RESIZE_DISK_SIZE_GB = 200
SECONDARY_DISK_SIZE_GB = 10
# (machine type, image architecture)
BLOCK_DEVICE_NAMING_CASES = [
    ("c4a-standard-1", "ARM64"),
    ("c3-standard-4", "X86_64"),
]


def test_setup(twf: TestWorkflow) -> None:
    instance = daisy.Instance(metadata={SHOULD_REBOOT_DURING_TEST: "true"})
    vm = twf.create_test_vm_multiple_disks([daisy.Disk(name="resize")], instance)
    vm.resize_disk_and_reboot(RESIZE_DISK_SIZE_GB)
    # The resized boot disk is pd-standard.
    twf.wait_for_disks_quota(
        daisy.QuotaAvailable(metric="DISKS_TOTAL_GB", units=RESIZE_DISK_SIZE_GB, region=twf.zone.region)
    )
    vm.run_tests("test_disk_read_write|test_disk_resize")

    # udev rules only exist on Linux guests.
    if not has_feature(twf.image, "GVNIC"):
        return
    for machine_type, arch in BLOCK_DEVICE_NAMING_CASES:
        if arch != twf.image.architecture:
            continue
        name = "blocknaming" + machine_type.split("-", 1)[0]
        disks = [
            daisy.Disk(name=name, type=HYPERDISK_BALANCED),
            daisy.Disk(name="secondary", type=HYPERDISK_BALANCED, size_gb=SECONDARY_DISK_SIZE_GB),
        ]
        naming = twf.create_test_vm_multiple_disks(
            disks, daisy.Instance(name=name, machine_type=machine_type)
        )
        naming.run_tests("test_block_device_naming")
