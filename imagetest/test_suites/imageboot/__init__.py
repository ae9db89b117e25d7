# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Boot, reboot and secure boot."""

import re

from ...testworkflow import TestWorkflow
from ...utils import has_feature

NAME = "imageboot"

SECURE_BOOT_UNSUPPORTED = [
    re.compile(r"debian-1[01].*arm64"),
    # Waiting on signed shims.
    re.compile(r"rocky-linux-9.*arm64"),
    re.compile(r"rhel-9.*arm64"),
    re.compile(r"(sles-15|opensuse-leap).*arm64"),
]


def test_setup(twf: TestWorkflow) -> None:
    boot = twf.create_test_vm("boot")
    boot.reboot()
    boot.run_tests("test_guest_boot|test_guest_reboot$")

    guestreboot = twf.create_test_vm("guestreboot")
    guestreboot.run_tests("test_guest_reboot_on_host")

    boottime = twf.create_test_vm("boottime")
    boottime.run_tests("test_boot_time")

    if any(r.search(twf.image.name) for r in SECURE_BOOT_UNSUPPORTED):
        return
    if not has_feature(twf.image, "UEFI_COMPATIBLE"):
        return
    secureboot = twf.create_test_vm("secureboot")
    secureboot.enable_secure_boot()
    secureboot.run_tests("test_guest_secure_boot")
