# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the packagevalidation suite."""

import json
import logging
import re
import unittest
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Set

from ...utils import metadata
from ...utils.system import check_cmd_exists, linux_only, run_command

logger = logging.getLogger("imagetest.guest")

COS_PACKAGE_INFO = Path("/etc/cos-package-info.json")
SNAP_NAME_RE = re.compile(r"[a-z0-9][a-z0-9-]*[a-z0-9]|[a-z0-9]")


@dataclass
class PackageRule:
    """Expected installation state of a package on matching images.

    A rule applies to images matching any of images (all images when empty)
    and none of images_skip.
    """

    name: str
    should_not_be_installed: bool = False
    alternatives: List[str] = field(default_factory=list)
    images_skip: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)

    def applies_to(self, image: str) -> bool:
        if any(re.search(expr, image) for expr in self.images_skip):
            return False
        return not self.images or any(re.search(expr, image) for expr in self.images)

    def is_satisfied(self, installed: Set[str]) -> bool:
        found = any(name in installed for name in [self.name, *self.alternatives])
        return found != self.should_not_be_installed


SLES_SUSE_COS = ["sles", "suse", "cos"]

PACKAGE_RULES = [
    PackageRule("google-guest-agent"),
    PackageRule("google-osconfig-agent"),
    PackageRule("google-compute-engine", images_skip=SLES_SUSE_COS),
    PackageRule("google-guest-configs", images=SLES_SUSE_COS),
    PackageRule("google-guest-oslogin", images=["sles", "suse"]),
    PackageRule("oslogin", images=["cos"]),
    PackageRule("gce-disk-expand", images_skip=["sles", "suse", "ubuntu", "cos"]),
    PackageRule("cloud-disk-resize", images=["cos"]),
    PackageRule(
        "google-cloud-cli",
        images_skip=["sles", "suse", "ubuntu-1604", "ubuntu-pro-1604", "cos"],
    ),
    PackageRule("google-compute-engine-oslogin", images_skip=SLES_SUSE_COS),
    PackageRule("epel-release", images=["centos-7", "rhel-7"]),
    PackageRule("haveged", images=["debian"]),
    PackageRule("net-tools", images=["debian", "cos"]),
    PackageRule("google-cloud-packages-archive-keyring", images=["debian"]),
    PackageRule("isc-dhcp-client", images=["debian"]),
    PackageRule("cloud-initramfs-growroot", should_not_be_installed=True, images=["debian"]),
    PackageRule("rdma-core", images=["accelerator", "nvidia"]),
    PackageRule(
        "linux-modules-nvidia-550-server-open-gcp",
        alternatives=["nvidia-dc-driver550-cuda"],
        images=["ubuntu.*nvidia-550"],
    ),
    PackageRule(
        "linux-modules-nvidia-570-server-open-gcp",
        alternatives=["nvidia-dc-driver570-cuda"],
        images=["ubuntu.*nvidia-570"],
    ),
    PackageRule(
        "nvidia-kernel-common",
        alternatives=["linux-modules-nvidia-570-server-open-gcp"],
        images=["ubuntu.*nvidia-latest"],
    ),
    PackageRule("mlnx-ofed-guest", alternatives=["doca-ofed"], images=["rocky.*nvidia"]),
    PackageRule(
        "nvidia-open-gpu-kernel-modules",
        alternatives=[
            "kmod-nvidia-open-latest",
            "kmod-nvidia-dc-open-latest",
            "kmod-nvidia-dc-open550",
            "kmod-nvidia-dc-open570",
        ],
        images=["rocky.*nvidia"],
    ),
]


def _lines(cmd: List[str]) -> List[str]:
    return run_command(cmd, check=True).stdout.splitlines()


def parse_snap_list(output: str) -> List[str]:
    packages = []
    for line in output.splitlines()[1:]:
        match = SNAP_NAME_RE.search(line)
        if match:
            packages.append(match.group(0))
    return packages


def parse_cos_package_info(text: str) -> List[str]:
    """Names of every package listed in cos-package-info.json."""
    info = json.loads(text)
    return [
        package["name"]
        for packages in info.values()
        if isinstance(packages, list)
        for package in packages
        if isinstance(package, dict) and "name" in package
    ]


def installed_packages(image: str) -> Set[str]:
    if "cos" in image:
        return set(parse_cos_package_info(COS_PACKAGE_INFO.read_text(encoding="utf-8")))
    if check_cmd_exists("rpm"):
        return set(_lines(["rpm", "-qa", "--queryformat", "%{NAME}\\n"]))
    if check_cmd_exists("dpkg-query"):
        packages = set(_lines(["dpkg-query", "-W", "--showformat", "${Package}\\n"]))
        if check_cmd_exists("snap"):
            packages.update(parse_snap_list(run_command(["snap", "list"], check=True).stdout))
        return packages
    raise AssertionError("could not determine how to list installed packages")


def test_standard_programs():
    image = metadata.get_image()
    if "sles" in image or "suse" in image:
        raise unittest.SkipTest("cloud sdk not supported on sles/suse")
    if "cos" in image:
        raise unittest.SkipTest("cloud sdk not supported on cos")

    assert run_command(["gcloud", "-h"]).returncode == 0, "gcloud not installed properly"
    assert run_command(["gsutil", "help"]).returncode == 0, "gsutil not installed properly"


def test_guest_packages():
    linux_only()
    image = metadata.get_image()
    installed = installed_packages(image)
    wrong = [
        rule.name
        for rule in PACKAGE_RULES
        if rule.applies_to(image) and not rule.is_satisfied(installed)
    ]
    for name in wrong:
        logger.info("package %s has wrong installation state", name)
    assert not wrong, f"packages with wrong installation state: {wrong}"
