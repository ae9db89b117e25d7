# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Local OS helpers for guest checks."""

import logging
import platform
import re
import shutil
import subprocess
import unittest
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger("imagetest.guest")

OS_RELEASE = "/etc/os-release"


def run_command(
    cmd: List[str], *, check: bool = False, timeout: Optional[float] = None
) -> subprocess.CompletedProcess:
    """Run a command capturing text output."""
    logger.debug("executing command: %s", " ".join(cmd))
    proc = subprocess.run(
        cmd, capture_output=True, text=True, check=False, timeout=timeout
    )
    if check and proc.returncode != 0:
        raise AssertionError(
            f"command {cmd} failed rc={proc.returncode}: stdout={proc.stdout!r} stderr={proc.stderr!r}"
        )
    return proc


def check_cmd_exists(name: str) -> bool:
    return shutil.which(name) is not None


def is_windows() -> bool:
    return platform.system() == "Windows"


def linux_only() -> None:
    """Skip the calling check on non-Linux guests."""
    if is_windows():
        raise unittest.SkipTest("test only runs on linux")


def read_os_release(path: str = OS_RELEASE) -> Dict[str, str]:
    """Parse os-release into a dict with unquoted values."""
    values: Dict[str, str] = {}
    os_release = Path(path)
    if not os_release.exists():
        return values

    for line in os_release.read_text(encoding="utf-8").splitlines():
        if "=" not in line or line.startswith("#"):
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"')
    return values


def is_cos(image: str) -> bool:
    """Container-Optimized OS image."""
    return re.search(r"(^|/)cos-", image) is not None or "cos-cloud" in image


def is_ubuntu(text: str) -> bool:
    return "ubuntu" in text.lower()
