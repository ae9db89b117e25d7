# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the disk suite."""

import logging
import os
import unittest
from pathlib import Path

from ...utils.system import linux_only, run_command

logger = logging.getLogger("imagetest.guest")

GIB = 1024 ** 3
RESIZED_DISK_SIZE_GB = 200
RESIZE_MARKER = Path("/var/disk-resize-marker")
DISK_BY_ID = Path("/dev/disk/by-id")
SECONDARY_DEVICE = "google-secondary"


def root_disk() -> str:
    """Kernel name of the disk holding the root filesystem, e.g. sda."""
    source = run_command(["findmnt", "-n", "-o", "SOURCE", "/"], check=True).stdout.strip()
    parent = run_command(["lsblk", "-n", "-o", "PKNAME", source], check=True).stdout.strip()
    return parent or os.path.basename(source)


def block_device_size(name: str) -> int:
    """Size in bytes, /sys/block sizes are in 512 byte sectors."""
    sectors = Path(f"/sys/block/{name}/size").read_text(encoding="utf-8").strip()
    return int(sectors) * 512


def test_disk_read_write():
    linux_only()
    path = Path("/var/tmp/disk-read-write-test")
    content = "disk read write test\n" * 1024
    path.write_text(content, encoding="utf-8")
    try:
        assert path.read_text(encoding="utf-8") == content, "read back different content"
    finally:
        path.unlink()


def test_disk_resize():
    linux_only()
    if not RESIZE_MARKER.exists():
        RESIZE_MARKER.touch()
        raise unittest.SkipTest("disk is resized before the next boot")

    disk = root_disk()
    size = block_device_size(disk)
    logger.info("root disk %s is %d bytes", disk, size)
    assert size >= RESIZED_DISK_SIZE_GB * GIB, (
        f"root disk {disk} is {size // GIB}GiB, want at least {RESIZED_DISK_SIZE_GB}GiB"
    )
    stat = os.statvfs("/")
    fs_size = stat.f_blocks * stat.f_frsize
    assert fs_size > size // 2, (
        f"root filesystem is {fs_size // GIB}GiB, was not expanded to the {size // GIB}GiB disk"
    )


def test_block_device_naming():
    linux_only()
    run_command(["udevadm", "trigger"], check=True)
    run_command(["udevadm", "settle"], check=True)
    disks = sorted(entry.name for entry in DISK_BY_ID.iterdir())
    assert SECONDARY_DEVICE in disks, (
        f"could not find a disk named {SECONDARY_DEVICE}, found these disks: {' '.join(disks)}"
    )
