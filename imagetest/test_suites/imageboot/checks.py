# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the imageboot suite."""

import logging
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import List

from ...utils import metadata
from ...utils.system import is_cos, linux_only, run_command

logger = logging.getLogger("imagetest.guest")

MARKER_FILE = Path("/var/boot-marker")
SECURE_BOOT_FILE = Path(
    "/sys/firmware/efi/efivars/SecureBoot-8be4df61-93ca-11d2-aa0d-00e098032b8c"
)
SETUP_MODE_FILE = Path(
    "/sys/firmware/efi/efivars/SetupMode-8be4df61-93ca-11d2-aa0d-00e098032b8c"
)
# systemd.time(7), e.g. "Mon 2024-01-02 15:04:05 UTC"
SYSTEMD_TIME_FORMAT = "%a %Y-%m-%d %H:%M:%S"
DEFAULT_MAX_BOOT_TIME = 20
SERVICE_WAIT_SECONDS = 600

# Seconds from instance start until the essential services are up, first match wins.
BOOT_TIME_THRESHOLDS = [
    ("almalinux", 20),
    ("centos", 20),
    ("debian", 20),
    ("rhel", 30),
    ("rocky-linux", 20),
    ("opensuse", 40),
    ("sles-12", 40),
    ("sles-15", 40),
    ("ubuntu", 30),
]


def _create_marker() -> None:
    MARKER_FILE.parent.mkdir(parents=True, exist_ok=True)
    MARKER_FILE.touch()


def test_guest_boot():
    logger.info("guest booted successfully")


def test_guest_reboot():
    if not MARKER_FILE.exists():
        _create_marker()
        logger.info("first boot, created %s", MARKER_FILE)
        return
    logger.info("marker file exists, the guest rebooted successfully")


def test_guest_reboot_on_host():
    linux_only()
    if not MARKER_FILE.exists():
        _create_marker()
        run_command(["sudo", "nohup", "reboot"], check=True)
        raise AssertionError("marker file does not exist")
    logger.info("marker file exists, the guest rebooted successfully")


def _mount_efivars_on_cos() -> None:
    if SECURE_BOOT_FILE.exists():
        return
    if is_cos(metadata.get_image()):
        run_command(
            ["mount", "-t", "efivarfs", "efivarfs", "/sys/firmware/efi/efivars/"],
            check=True,
        )


def test_guest_secure_boot():
    linux_only()
    _mount_efivars_on_cos()

    assert SECURE_BOOT_FILE.exists(), "secureboot efi var is missing"
    secure_boot_mode = SECURE_BOOT_FILE.read_bytes()[-1]
    # Secure boot is only enforced once a platform key is enrolled.
    assert SETUP_MODE_FILE.exists(), "setupmode efi var is missing"
    setup_mode = SETUP_MODE_FILE.read_bytes()[-1]
    assert secure_boot_mode == 1 and setup_mode == 0, (
        f"secure boot is not enabled, found secureboot mode: {secure_boot_mode} "
        f"(want 1) and setup mode: {setup_mode} (want 0)"
    )


def instance_start_time() -> datetime:
    uptime = float(Path("/proc/uptime").read_text(encoding="utf-8").split()[0])
    return datetime.now() - timedelta(seconds=uptime)


def essential_services(image: str) -> List[str]:
    if "ubuntu" in image:
        return ["google-guest-agent.service", "ssh.service"]
    return ["google-guest-agent.service", "sshd.service"]


def _systemctl_property(service: str, prop: str) -> str:
    proc = run_command(["systemctl", "show", f"--property={prop}", service], check=True)
    return proc.stdout.strip().split("=", 1)[-1]


def service_start_time(service: str) -> datetime:
    """Wait until service is active and return when it became active."""
    deadline = time.monotonic() + SERVICE_WAIT_SECONDS
    while _systemctl_property(service, "ActiveState") != "active":
        assert time.monotonic() < deadline, f"service {service} did not start"
        time.sleep(1)

    timestamp = _systemctl_property(service, "ActiveEnterTimestamp")
    # Drop the trailing timezone, systemd prints local time.
    return datetime.strptime(timestamp.rsplit(" ", 1)[0], SYSTEMD_TIME_FORMAT)


def max_boot_time(image: str) -> int:
    for prefix, seconds in BOOT_TIME_THRESHOLDS:
        if prefix in image:
            return seconds
    return DEFAULT_MAX_BOOT_TIME


def test_boot_time():
    linux_only()
    image = metadata.get_image()
    start = instance_start_time()
    services_started = max(service_start_time(s) for s in essential_services(image))
    boot_time = int((services_started - start).total_seconds())
    logger.info("instance start time: %s", start.ctime())
    logger.info("service start time: %s", services_started.ctime())

    assert boot_time >= 0, "invalid boot time, services started before boot"
    limit = max_boot_time(image)
    assert boot_time <= limit, f"boot time of {boot_time} is greater than limit of {limit}"
    if boot_time + 10 < limit:
        logger.info(
            "boot time of %d is more than 10 seconds below limit of %d", boot_time, limit
        )
