# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the suspendresume suite."""

import logging
import urllib.error
import urllib.request
from pathlib import Path

from ...utils import compute_api
from ...utils.system import linux_only

logger = logging.getLogger("imagetest.guest")

MARKER_FILE = Path("/var/suspend-test-start")
CONNECTIVITY_URL = "https://cloud.google.com"


def test_suspend():
    linux_only()
    assert not MARKER_FILE.exists(), "unexpected reboot during suspend test"
    MARKER_FILE.write_text("", encoding="utf-8")

    operation = compute_api.suspend_instance()
    try:
        compute_api.wait_for_operation(operation)
    except (RuntimeError, OSError) as error:
        # Waiting is usually interrupted by the suspension itself.
        logger.info("waiting for suspend operation: %r", error)
    logger.info("resumed")

    assert MARKER_FILE.exists(), "could not confirm suspend testing has started ok"
    try:
        with urllib.request.urlopen(CONNECTIVITY_URL, timeout=30):
            pass
    except urllib.error.URLError as error:
        raise AssertionError(f"no network connectivity after resume: {error}") from error
