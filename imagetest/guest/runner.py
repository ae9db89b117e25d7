# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Run the guest checks of a test suite.

Checks are the module level test_* functions of
imagetest.test_suites.<suite>.checks, run in definition order. A check fails
by raising AssertionError (or anything else) and skips by raising
unittest.SkipTest. Results are printed in go test format so the host side
junit conversion can parse them:

    === RUN   test_guest_boot
        checks.py:42: boot marker found
    --- PASS: test_guest_boot (0.01s)
    PASS
"""

import argparse
import importlib
import logging
import os
import re
import sys
import time
import traceback
import unittest
from typing import Callable, List, Optional, TextIO, Tuple

logger = logging.getLogger("imagetest.guest")

Check = Tuple[str, Callable[[], None]]


class _CaptureHandler(logging.Handler):
    """Collect log records emitted while a check runs."""

    def __init__(self) -> None:
        super().__init__()
        self.lines: List[str] = []
        self.setFormatter(logging.Formatter("%(filename)s:%(lineno)d: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.extend(self.format(record).splitlines())


def discover(suite: str) -> List[Check]:
    """Checks of a suite in definition order."""
    module = importlib.import_module(f"imagetest.test_suites.{suite}.checks")
    return [
        (name, obj)
        for name, obj in vars(module).items()
        if name.startswith("test_")
        and callable(obj)
        and getattr(obj, "__module__", None) == module.__name__
    ]


def select(checks: List[Check], run: str = "", skip: str = "") -> List[Check]:
    """Keep checks matching run and not matching skip."""
    run_re = re.compile(run) if run else None
    skip_re = re.compile(skip) if skip else None
    return [
        (name, check)
        for name, check in checks
        if (run_re is None or run_re.search(name))
        and (skip_re is None or not skip_re.search(name))
    ]


def _location(error: BaseException) -> str:
    frames = traceback.extract_tb(error.__traceback__)
    if not frames:
        return ""
    frame = frames[-1]
    return f"{os.path.basename(frame.filename)}:{frame.lineno}: "


def run_check(name: str, check: Callable[[], None], out: TextIO) -> str:
    """Run one check and print its result block, returning PASS, FAIL or SKIP."""
    print(f"=== RUN   {name}", file=out, flush=True)
    handler = _CaptureHandler()
    logger.addHandler(handler)
    start = time.monotonic()
    try:
        check()
        status = "PASS"
    except unittest.SkipTest as skip:
        status = "SKIP"
        handler.lines.append(f"{_location(skip)}{skip}")
    except AssertionError as error:
        status = "FAIL"
        message = str(error) or "assertion failed"
        handler.lines.extend(f"{_location(error)}{message}".splitlines())
    except Exception:  # pylint: disable=broad-exception-caught
        status = "FAIL"
        handler.lines.extend(traceback.format_exc().splitlines())
    finally:
        logger.removeHandler(handler)
    elapsed = time.monotonic() - start

    for line in handler.lines:
        print(f"    {line}", file=out)
    print(f"--- {status}: {name} ({elapsed:.2f}s)", file=out, flush=True)
    return status


def run_checks(checks: List[Check], out: Optional[TextIO] = None) -> bool:
    """Run checks, returning True if none failed."""
    if out is None:
        out = sys.stdout
    if not checks:
        print("testing: warning: no tests to run", file=out)

    failed = False
    for name, check in checks:
        if run_check(name, check, out) == "FAIL":
            failed = True

    print("FAIL" if failed else "PASS", file=out, flush=True)
    return not failed


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run image test checks on this VM.")
    parser.add_argument("--suite", required=True, help="Test suite to run.")
    parser.add_argument("--run", default="", help="Only run checks matching this regex.")
    parser.add_argument("--skip", default="", help="Skip checks matching this regex.")
    parser.add_argument("--debug", action="store_true", help="Capture debug logs.")
    args = parser.parse_args(argv)

    logger.setLevel(logging.DEBUG if args.debug else logging.INFO)
    logger.propagate = False

    checks = select(discover(args.suite), args.run, args.skip)
    return 0 if run_checks(checks) else 1


if __name__ == "__main__":
    sys.exit(main())
