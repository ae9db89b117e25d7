# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Package the guest code and run test workflows through the daisy CLI."""

import logging
import shutil
import time
import zipapp
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Iterable, List, Optional

from . import junit
from .compute import basename, subprocess_run
from .testworkflow import (
    WRAPPER_PACKAGE,
    TestMetrics,
    TestWorkflow,
    clean_test_workflow,
)

logger = logging.getLogger(__name__)

# pylint: disable=too-many-arguments

DAISY = "daisy"
INTERPRETER = "/usr/bin/env python3"
WRAPPER_MAIN = "imagetest.guest.wrapper:main"
RUNNER_MAIN = "imagetest.guest.runner:main"


def build_test_packages(out_dir: Path, suites: Iterable[str]) -> List[Path]:
    """Zip the imagetest package into wrapper.pyz and one <suite>.pyz per suite."""
    out_dir = Path(out_dir)
    staging = out_dir / "pyz-src"
    shutil.copytree(
        Path(__file__).parent,
        staging / "imagetest",
        ignore=shutil.ignore_patterns("__pycache__", "*.pyc"),
        dirs_exist_ok=True,
    )

    packages = [out_dir / WRAPPER_PACKAGE]
    zipapp.create_archive(staging, packages[0], interpreter=INTERPRETER, main=WRAPPER_MAIN)
    for suite in sorted(set(suites)):
        package = out_dir / f"{suite}.pyz"
        zipapp.create_archive(staging, package, interpreter=INTERPRETER, main=RUNNER_MAIN)
        packages.append(package)

    logger.debug("built test packages: %s", [p.name for p in packages])
    return packages


def finalize_workflows(twfs: List[TestWorkflow], work_dir: Path, gcs_path: str) -> None:
    """Build the test packages and add test metadata to every workflow."""
    work_dir = Path(work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)
    build_test_packages(work_dir, [twf.name for twf in twfs])
    for twf in twfs:
        twf.finalize(gcs_path, work_dir)


def write_workflow(twf: TestWorkflow, work_dir: Path) -> Path:
    """Write the daisy workflow document of twf and return its path."""
    path = Path(work_dir) / f"{twf.wf.name}-{twf.wf.id}.wf.json"
    path.write_text(twf.wf.to_json(), encoding="utf-8")
    return path


def _daisy(twf: TestWorkflow, work_dir: Path, *flags: str, artifacts_path: Optional[Path] = None):
    path = write_workflow(twf, work_dir)
    return subprocess_run(
        [DAISY, *flags, path.as_posix()],
        artifacts_path=artifacts_path,
        artifact_name=f"daisy-{twf.wf.name}-{twf.wf.id}{''.join(flags)}",
        check=True,
    )


def print_tests(twfs: List[TestWorkflow], work_dir: Path) -> None:
    """Print the populated workflows."""
    for twf in twfs:
        if twf.skipped:
            logger.info("%r is skipped: %s", twf, twf.skipped_message)
            continue
        proc = _daisy(twf, work_dir, "-print")
        print(proc.stdout)


def validate_tests(twfs: List[TestWorkflow], work_dir: Path) -> List[Exception]:
    """Validate every workflow with daisy, returning the failures."""
    errors: List[Exception] = []
    for twf in twfs:
        if twf.skipped:
            continue
        logger.info("validating %r", twf)
        try:
            _daisy(twf, work_dir, "-validate")
        except RuntimeError as error:
            errors.append(error)
    return errors


def suite_name(twf: TestWorkflow) -> str:
    return f"{twf.image.name or basename(twf.image_url)}-{twf.name}"


def read_gcs_text(url: str, artifacts_path: Optional[Path] = None) -> str:
    proc = subprocess_run(
        ["gcloud", "storage", "cat", url],
        artifacts_path=artifacts_path,
        artifact_name=f"cat-{basename(url)}",
        check=True,
    )
    return proc.stdout


def collect_results(twf: TestWorkflow, artifacts_path: Optional[Path] = None) -> junit.TestSuite:
    """Fetch the output of every VM of a finished workflow into a suite."""
    outputs: List[str] = []
    properties: List[str] = []
    errors: List[str] = []
    for vm, (results_url, properties_url) in twf.results_urls().items():
        try:
            outputs.append(read_gcs_text(results_url, artifacts_path))
            properties.append(read_gcs_text(properties_url, artifacts_path).strip())
        except RuntimeError as error:
            errors.append(f"failed to read results of {vm}: {error}")

    suite = junit.convert_to_test_suite(outputs, suite_name(twf))
    suite.errors += len(errors)
    suite.system_out = "\n".join(properties)
    suite.system_err = "\n".join(errors)
    return suite


def run_workflow(
    twf: TestWorkflow,
    work_dir: Path,
    metrics: TestMetrics,
    artifacts_path: Optional[Path] = None,
) -> junit.TestSuite:
    """Run one workflow, report its results and clean up after it."""
    name = suite_name(twf)
    if twf.skipped:
        logger.info("%r is skipped: %s", twf, twf.skipped_message)
        return junit.skipped_test_suite(name, twf.skipped_message)

    metrics.started()
    logger.info("running %r in project %s: %s", twf, twf.wf.project, metrics)
    try:
        _daisy(twf, work_dir, artifacts_path=artifacts_path)
        suite = collect_results(twf, artifacts_path)
    except RuntimeError as error:
        logger.error("%r failed: %r", twf, error)
        suite = junit.error_test_suite(name, str(error))
    finally:
        cleaned, errors = clean_test_workflow(twf)
        if cleaned:
            logger.info("cleaned up %d resources of %r: %s", len(cleaned), twf, cleaned)
        for error in errors:
            logger.error("failed to clean up after %r: %r", twf, error)
        metrics.done()
        logger.info("finished %r: %s", twf, metrics)

    return suite


def run_tests(
    twfs: List[TestWorkflow],
    work_dir: Path,
    *,
    test_projects: List[str],
    parallel_count: int = 5,
    parallel_stagger: float = 60,
    artifacts_path: Optional[Path] = None,
) -> junit.TestSuites:
    """Run workflows in parallel, spreading them over the test projects."""
    if not test_projects:
        raise ValueError("at least one test project is required")

    runnable = [twf for twf in twfs if not twf.skipped]
    for i, twf in enumerate(runnable):
        twf.wf.project = test_projects[i % len(test_projects)]

    metrics = TestMetrics(len(runnable))
    with ThreadPoolExecutor(max_workers=max(1, parallel_count)) as executor:
        futures = []
        started = 0
        for twf in twfs:
            if not twf.skipped and started:
                time.sleep(parallel_stagger)
            started += 0 if twf.skipped else 1
            futures.append(
                executor.submit(run_workflow, twf, work_dir, metrics, artifacts_path)
            )
        suites = [future.result() for future in futures]

    return junit.TestSuites(suites=suites)


def download_artifacts(twfs: List[TestWorkflow], local_path: Path) -> None:
    """Copy everything the workflows wrote to GCS, except their sources."""
    for twf in twfs:
        if not twf.gcs_path or twf.skipped:
            continue
        dst = Path(local_path) / f"{twf.wf.name}-{twf.wf.id}"
        dst.mkdir(parents=True, exist_ok=True)
        proc = subprocess_run(
            [
                "gcloud",
                "storage",
                "rsync",
                "--recursive",
                "--exclude=.*/sources/.*",
                twf.gcs_path,
                dst.as_posix(),
            ]
        )
        if proc.returncode != 0:
            logger.error("failed to download test artifacts of %r to %s", twf, dst)
