# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Turn guest test output into junit XML."""

import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)

RUN_RE = re.compile(r"^=== RUN\s+(?P<name>\S+)")
RESULT_RE = re.compile(
    r"^\s*--- (?P<status>PASS|FAIL|SKIP): (?P<name>\S+) \((?P<time>[0-9.]+)s\)"
)
XML_HEADER = '<?xml version="1.0" encoding="UTF-8"?>\n'
# Case reported when the test package itself failed.
PACKAGE_CASE_NAME = "test_package"


def _format_time(seconds: float) -> str:
    return f"{seconds:.3f}"


@dataclass(eq=True, repr=True)
class TestCase:
    """A single check result."""

    __test__ = False

    name: str
    classname: str = ""
    time: str = "0.000"
    failure: Optional[str] = None
    skipped: Optional[str] = None
    error: Optional[str] = None

    def to_element(self) -> ET.Element:
        element = ET.Element(
            "testcase", {"classname": self.classname, "name": self.name, "time": self.time}
        )
        if self.failure is not None:
            ET.SubElement(element, "failure", {"message": "Failed"}).text = self.failure
        if self.skipped is not None:
            ET.SubElement(element, "skipped", {"message": self.skipped})
        if self.error is not None:
            ET.SubElement(element, "error", {"message": self.error})
        return element


@dataclass(eq=True, repr=True)
class TestSuite:
    """Results of one test workflow."""

    __test__ = False

    name: str
    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0
    disabled: int = 0
    time: str = "0.000"
    test_cases: List[TestCase] = field(default_factory=list)
    system_out: str = ""
    system_err: str = ""

    def to_element(self) -> ET.Element:
        element = ET.Element(
            "testsuite",
            {
                "name": self.name,
                "tests": str(self.tests),
                "failures": str(self.failures),
                "errors": str(self.errors),
                "skipped": str(self.skipped),
                "disabled": str(self.disabled),
                "time": self.time,
            },
        )
        for case in self.test_cases:
            element.append(case.to_element())
        if self.system_out:
            ET.SubElement(element, "system-out").text = self.system_out
        if self.system_err:
            ET.SubElement(element, "system-err").text = self.system_err
        return element


@dataclass(eq=True, repr=True)
class TestSuites:
    """Results of a whole run."""

    __test__ = False

    suites: List[TestSuite] = field(default_factory=list)

    @property
    def tests(self) -> int:
        return sum(s.tests for s in self.suites)

    @property
    def failures(self) -> int:
        return sum(s.failures for s in self.suites)

    @property
    def errors(self) -> int:
        return sum(s.errors for s in self.suites)

    @property
    def skipped(self) -> int:
        return sum(s.skipped for s in self.suites)

    @property
    def time(self) -> str:
        return _format_time(sum(float(s.time) for s in self.suites))

    def to_xml(self) -> str:
        root = ET.Element(
            "testsuites",
            {
                "tests": str(self.tests),
                "failures": str(self.failures),
                "errors": str(self.errors),
                "skipped": str(self.skipped),
                "time": self.time,
            },
        )
        for suite in self.suites:
            root.append(suite.to_element())
        ET.indent(root, space="\t")
        return XML_HEADER + ET.tostring(root, encoding="unicode")


def _unfinished_case(name: str, log: List[str]) -> TestCase:
    lines = ["test did not finish"] + log
    return TestCase(name=name, failure="\n".join(lines))


def convert_to_test_case(output: str) -> List[TestCase]:
    """Parse go test style output into test cases.

    Indented lines between a test's RUN and result lines are its log; they
    become the failure or skip message of failed or skipped tests. A test
    with a RUN line but no result line is a failure. An output that ends in
    FAIL without any failed test gets an error case carrying the lines no
    test claimed, e.g. the traceback of a crashed test package.
    """
    cases: List[TestCase] = []
    logs: dict = {}
    current: Optional[str] = None
    last_case: Optional[TestCase] = None
    unclaimed: List[str] = []
    failed = False

    for line in output.splitlines():
        run = RUN_RE.match(line)
        if run:
            if current is not None:
                cases.append(_unfinished_case(current, logs.pop(current, [])))
            current = run.group("name")
            logs[current] = []
            last_case = None
            continue

        result = RESULT_RE.match(line)
        if result:
            name = result.group("name")
            text = "\n".join(logs.pop(name, []))
            case = TestCase(name=name, time=_format_time(float(result.group("time"))))
            if result.group("status") == "FAIL":
                case.failure = text
            elif result.group("status") == "SKIP":
                case.skipped = text
            cases.append(case)
            last_case = case
            current = None
            continue

        if line.strip() == "FAIL":
            failed = True
            continue
        if not line.startswith((" ", "\t")):
            if line.strip() and line.strip() != "PASS":
                unclaimed.append(line)
            continue
        if current is not None:
            logs[current].append(line)
        elif last_case is not None and last_case.failure is not None:
            last_case.failure = "\n".join(filter(None, [last_case.failure, line]))
        elif last_case is not None and last_case.skipped is not None:
            last_case.skipped = "\n".join(filter(None, [last_case.skipped, line]))
        else:
            unclaimed.append(line)

    if current is not None:
        cases.append(_unfinished_case(current, logs.pop(current, [])))
    if failed and not any(case.failure is not None for case in cases):
        message = "\n".join(unclaimed) or "test package failed without reporting a failed test"
        cases.append(TestCase(name=PACKAGE_CASE_NAME, error=message))

    return cases


def convert_to_test_suite(outputs: List[str], name: str) -> TestSuite:
    """Merge the output of every VM of a workflow into one suite."""
    suite = TestSuite(name=name)
    total = 0.0
    for output in outputs:
        for case in convert_to_test_case(output):
            case.classname = name
            suite.test_cases.append(case)
            suite.tests += 1
            if case.failure is not None:
                suite.failures += 1
            if case.skipped is not None:
                suite.skipped += 1
            if case.error is not None:
                suite.errors += 1
            total += float(case.time)

    suite.time = _format_time(total)
    logger.debug("converted %d outputs into %r", len(outputs), suite)
    return suite


def skipped_test_suite(name: str, message: str) -> TestSuite:
    """Suite reported for a workflow that was skipped at setup."""
    case = TestCase(name=name, classname=name, skipped=message)
    return TestSuite(name=name, tests=1, skipped=1, test_cases=[case], system_out=message)


def error_test_suite(name: str, message: str) -> TestSuite:
    """Suite reported for a workflow that failed to run."""
    case = TestCase(name=name, classname=name, error=message)
    return TestSuite(name=name, tests=1, errors=1, test_cases=[case], system_err=message)
