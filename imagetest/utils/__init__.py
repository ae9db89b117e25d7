# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Helpers shared by the host-side builder and the in-guest test runner.

Everything under this package only depends on the standard library so it can
be shipped into test VMs inside a zipapp.
"""

import re
from typing import Any

# Guest attribute the wrapper writes once the test package has finished.
GUEST_ATTRIBUTE_TEST_NAMESPACE = "citTest"
GUEST_ATTRIBUTE_TEST_KEY = "test-complete"
# Written instead of GUEST_ATTRIBUTE_TEST_KEY on the first boot of VMs that
# reboot during the test.
FIRST_BOOT_GA_KEY = "first-boot-key"
# Instance attribute set on VMs that reboot themselves during the test.
SHOULD_REBOOT_DURING_TEST = "shouldRebootDuringTest"


def has_feature(image: Any, feature: str) -> bool:
    """Check whether an image advertises a guest OS feature."""
    return feature in (getattr(image, "guest_os_features", None) or [])


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> float:
    """Parse a duration such as "45m", "1h30m" or "90s" into seconds."""
    value = value.strip()
    if not value:
        raise ValueError("empty duration")
    if value.replace(".", "", 1).isdigit():
        return float(value)

    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(value):
        raise ValueError(f"invalid duration: {value!r}")
    return total
