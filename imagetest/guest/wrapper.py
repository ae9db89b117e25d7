# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Startup script of every test VM.

Downloads the test package named in the instance metadata, runs it, uploads
its output and the VM properties to GCS and finally signals the workflow
through a guest attribute and the serial console.
"""

import argparse
import json
import logging
import subprocess
import sys
import tempfile
import time
import urllib.error
from pathlib import Path
from typing import Dict, List, Optional

from ..utils import (
    FIRST_BOOT_GA_KEY,
    GUEST_ATTRIBUTE_TEST_KEY,
    GUEST_ATTRIBUTE_TEST_NAMESPACE,
    SHOULD_REBOOT_DURING_TEST,
    parse_duration,
)
from ..utils import metadata, storage

logger = logging.getLogger("imagetest.guest")

FINISHED_TEST_RETRIES = 10
UPLOAD_RETRIES = 5


def first_boot_special_ga() -> bool:
    """True on the first boot of a VM that reboots during the test.

    The first boot then signals with FIRST_BOOT_GA_KEY so the workflow can
    wait for it separately from the final test-complete signal.
    """
    if metadata.get_attribute(SHOULD_REBOOT_DURING_TEST) is None:
        return False
    try:
        metadata.get_guest_attribute(GUEST_ATTRIBUTE_TEST_NAMESPACE, FIRST_BOOT_GA_KEY)
    except metadata.MetadataNotFoundError:
        return True
    return False


def signal_finished(first_boot: bool) -> None:
    """Set the completion guest attribute and print the serial console marker."""
    key = FIRST_BOOT_GA_KEY if first_boot else GUEST_ATTRIBUTE_TEST_KEY
    try:
        metadata.put_guest_attribute(GUEST_ATTRIBUTE_TEST_NAMESPACE, key, "")
    except RuntimeError as error:
        logger.error("could not place guest attribute key to end test: %r", error)

    for _ in range(FINISHED_TEST_RETRIES):
        logger.info("FINISHED-TEST")
        time.sleep(1)


def upload_with_retries(url: str, data: bytes, content_type: str = "text/plain") -> None:
    """Upload data, backing off i seconds after the i-th failure."""
    last_error: Optional[Exception] = None
    for attempt in range(1, UPLOAD_RETRIES + 1):
        try:
            storage.upload_gcs_object(url, data, content_type)
            logger.info("uploaded %d bytes to %s", len(data), url)
            return
        except (urllib.error.URLError, OSError, RuntimeError) as error:
            last_error = error
            logger.info("failed to upload to %s (attempt %d): %r", url, attempt, error)
            time.sleep(attempt)

    raise RuntimeError(f"failed to upload {url}: {last_error}")


def package_arguments(suite: str) -> List[str]:
    """Arguments for the test package from the instance metadata."""
    arguments = ["--suite", suite]
    test_run = metadata.get_attribute("_test_run", "")
    if test_run:
        arguments += ["--run", test_run]
    exclude = metadata.get_attribute("_exclude_discrete_tests", "")
    if exclude:
        arguments += ["--skip", exclude]
    return arguments


def run_test_package(package: Path, arguments: List[str], timeout: float) -> bytes:
    """Run the test package and return its output, even when it fails."""
    cmd = [sys.executable, str(package), *arguments]
    logger.info("going to execute: %s", " ".join(cmd))
    try:
        proc = subprocess.run(
            cmd, cwd=package.parent, capture_output=True, timeout=timeout, check=False
        )
    except subprocess.TimeoutExpired as error:
        logger.error("test package timed out after %ss", timeout)
        output = error.stdout or b""
        status = f"\ntest package timed out after {timeout}s\n".encode("utf-8")
        return output + status + b"FAIL\n"

    if proc.returncode == 0:
        return proc.stdout

    logger.info("test package exited with rc=%d stderr: %r", proc.returncode, proc.stderr)
    # A trailing FAIL marks the run failed even when no check reported it.
    status = f"\ntest package exited with status {proc.returncode}\n".encode("utf-8")
    return proc.stdout + status + proc.stderr + b"\nFAIL\n"


def vm_properties(suite: str) -> Dict[str, str]:
    """Identify the VM the results came from."""
    return {
        "test_suite": suite,
        "test_regex": metadata.get_attribute("_test_run", "") or "",
        "name": metadata.get_metadata("instance", "name"),
        "id": metadata.get_metadata("instance", "id"),
        "zone": metadata.get_metadata("instance", "zone"),
        "machine_type": metadata.get_metadata("instance", "machine-type"),
    }


def _required_attribute(key: str) -> str:
    value = metadata.get_attribute(key)
    if value is None:
        raise RuntimeError(f"failed to get metadata {key}")
    return value


def run(stabilize_seconds: float = 30) -> None:
    timeout = parse_duration(_required_attribute("_cit_timeout"))
    logger.info("FINISHED-BOOTING")

    first_boot = first_boot_special_ga()
    try:
        package_url = _required_attribute("_test_package_url")
        results_url = _required_attribute("_test_results_url")
        properties_url = _required_attribute("_test_properties_url")
        package_name = _required_attribute("_test_package_name")
        suite = _required_attribute("_test_suite_name")
        logger.info("results url: %s", results_url)

        work_dir = Path(tempfile.mkdtemp(prefix="image_test"))
        package = storage.download_gcs_object(package_url, work_dir / package_name)

        logger.info("sleep %ss to allow environment to stabilize", stabilize_seconds)
        time.sleep(stabilize_seconds)

        output = run_test_package(package, package_arguments(suite), timeout)
        logger.info("command output:\n%s", output.decode("utf-8", errors="replace"))

        upload_with_retries(results_url, output)
        upload_with_retries(
            properties_url,
            json.dumps(vm_properties(suite)).encode("utf-8"),
            "application/json",
        )
    finally:
        signal_finished(first_boot)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the image test package on this VM.")
    parser.add_argument(
        "--stabilize_seconds",
        type=float,
        default=30,
        help="Seconds to wait after boot before running the test package.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="[%(asctime)s] %(message)s",
        level=logging.DEBUG if args.debug else logging.INFO,
    )

    try:
        run(args.stabilize_seconds)
    except (RuntimeError, OSError, ValueError) as error:
        logger.error("wrapper failed: %r", error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
