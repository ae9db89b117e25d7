# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Suspend and resume."""

from ...testworkflow import TestWorkflow

NAME = "suspendresume"

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
# Matched as substrings of the image name.
UNSUPPORTED_IMAGES = [
    "windows-server-2025",
    "windows-2025-dc",
    "windows-11-24h2",
    "windows-server-2012-r2",
    "rhel-8-2-sap",
    "rhel-8-1-sap",
    "debian-10",
    "ubuntu-pro-1804-bionic-arm64",
]


def test_setup(twf: TestWorkflow) -> None:
    if twf.image.architecture == "ARM64":
        return
    if any(image in twf.image.name for image in UNSUPPORTED_IMAGES):
        return

    vm = twf.create_test_vm("suspend")
    vm.add_scope(CLOUD_PLATFORM_SCOPE)
    vm.run_tests("test_suspend")
    vm.resume()
