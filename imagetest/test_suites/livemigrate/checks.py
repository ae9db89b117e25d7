# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the livemigrate suite."""

import logging
import unittest
import urllib.error
import urllib.request
from pathlib import Path

from ...utils import compute_api
from ...utils.system import linux_only

logger = logging.getLogger("imagetest.guest")

MARKER_FILE = Path("/var/lm-test-start")
# Live migrations mostly finish in under 12 minutes. Give up before the
# test package times out.
LIVE_MIGRATE_TIMEOUT = 600
CONNECTIVITY_URL = "https://cloud.google.com/"


def migrate_and_verify(marker: Path = MARKER_FILE) -> None:
    """Live migrate this VM and check it kept its state and network."""
    assert not marker.exists(), "unexpected reboot during live migrate test"
    marker.write_text("", encoding="utf-8")

    operation = compute_api.simulate_maintenance_event()
    try:
        compute_api.wait_for_operation(operation, timeout=LIVE_MIGRATE_TIMEOUT)
    except TimeoutError as error:
        raise unittest.SkipTest(
            f"live migration timed out after {LIVE_MIGRATE_TIMEOUT}s"
        ) from error
    except RuntimeError as error:
        raise unittest.SkipTest(f"live migration failed: {error}") from error
    logger.info("live migration finished")

    assert marker.exists(), "could not confirm migrate testing has started ok"
    try:
        with urllib.request.urlopen(CONNECTIVITY_URL, timeout=30):
            pass
    except urllib.error.URLError as error:
        raise AssertionError(f"lost network connection after live migration: {error}") from error


def test_live_migrate():
    linux_only()
    migrate_and_verify()
