# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Command line entry point: build, print, validate or run test workflows."""

import argparse
import logging
import os
import re
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Pattern

from . import runner
from .compute import ComputeClient
from .testworkflow import (
    TestWorkflow,
    TestWorkflowOpts,
    new_test_workflow,
    randomly_select_zone,
)
from .test_suites import (
    cvm,
    disk,
    imageboot,
    livemigrate,
    loadbalancer,
    network,
    packagevalidation,
    suspendresume,
    vmspec,
)
from .test_suites import metadata as metadata_suite
from .utils import parse_duration

logger = logging.getLogger(__name__)

# Suites in the order their workflows are built.
TEST_SUITES = [
    imageboot,
    cvm,
    disk,
    livemigrate,
    loadbalancer,
    metadata_suite,
    network,
    packagevalidation,
    suspendresume,
    vmspec,
]

# Image name prefix to the project hosting the image.
PROJECT_MAP = {
    "almalinux": "almalinux-cloud",
    "centos": "centos-cloud",
    "cos": "cos-cloud",
    "debian": "debian-cloud",
    "fedora-cloud": "fedora-cloud",
    "fedora-coreos": "fedora-coreos-cloud",
    "opensuse": "opensuse-cloud",
    "rhel": "rhel-cloud",
    "rhel-sap": "rhel-sap-cloud",
    "rocky-linux": "rocky-linux-cloud",
    "sles": "suse-cloud",
    "sles-sap": "suse-sap-cloud",
    "sql-": "windows-sql-cloud",
    "ubuntu": "ubuntu-os-cloud",
    "ubuntu-pro": "ubuntu-os-pro-cloud",
    "windows": "windows-cloud",
}

IMAGE_VERSION_RE = re.compile(r".*v([0-9]+)")


def image_project(image: str) -> Optional[str]:
    """Project of a short image name, longest matching prefix first."""
    for prefix in sorted(PROJECT_MAP, key=len, reverse=True):
        if "sap" in prefix:
            # e.g. rhel-8-4-sap-ha lives in rhel-sap-cloud
            if image.startswith(prefix.split("-")[0]) and "sap" in image:
                return PROJECT_MAP[prefix]
            continue
        if image.startswith(prefix):
            return PROJECT_MAP[prefix]
    return None


def resolve_image(image: str) -> str:
    """Expand a short image or family name into a partial image URL.

    Names with a version suffix such as debian-12-bookworm-v20240110 are
    images, anything else is taken as a family. Names containing a slash are
    returned unchanged.
    """
    if "/" in image:
        return image
    project = image_project(image)
    if project is None:
        raise ValueError(f"unknown image {image!r}: cannot determine its project")
    if IMAGE_VERSION_RE.match(image):
        return f"projects/{project}/global/images/{image}"
    return f"projects/{project}/global/images/family/{image}"


def _regex(value: str) -> Pattern:
    try:
        return re.compile(value)
    except re.error as error:
        raise argparse.ArgumentTypeError(f"invalid regex {value!r}: {error}") from error


def _duration(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as error:
        raise argparse.ArgumentTypeError(str(error)) from error


def _csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run cloud image tests.")
    parser.add_argument("--project", default="", help="Project to run the manager in.")
    parser.add_argument(
        "--test_projects",
        type=_csv,
        default=[],
        help="Comma separated projects to run tests in, defaults to --project.",
    )
    parser.add_argument(
        "--zone",
        default="us-central1-a",
        help="Zone to run tests in, a comma separated list picks one per workflow.",
    )
    parser.add_argument("--print", action="store_true", help="Print out the workflows and exit.")
    parser.add_argument("--validate", action="store_true", help="Validate the workflows and exit.")
    parser.add_argument("--out_path", default="junit.xml", help="Junit xml output path.")
    parser.add_argument("--gcs_path", default="", help="GCS path for workflow sources and outputs.")
    parser.add_argument(
        "--write_local_artifacts",
        default="",
        help="Local directory to download test artifacts to.",
    )
    parser.add_argument(
        "--local_path",
        default="",
        help="Local directory for test packages and workflow files.",
    )
    parser.add_argument(
        "--images",
        type=_csv,
        default=[],
        help="Comma separated images or image families to test.",
    )
    parser.add_argument("--timeout", default="45m", help="Timeout of each workflow.")
    parser.add_argument(
        "--compute_endpoint_override", default="", help="Use a different compute endpoint."
    )
    parser.add_argument(
        "--parallel_count", type=int, default=5, help="Workflows to run in parallel."
    )
    parser.add_argument(
        "--parallel_stagger",
        type=_duration,
        default="60s",
        help="Time to wait between starting workflows.",
    )
    parser.add_argument("--filter", type=_regex, default=None, help="Only run suites matching this regex.")
    parser.add_argument("--exclude", type=_regex, default=None, help="Skip suites matching this regex.")
    parser.add_argument(
        "--exclude_discrete_tests",
        default="",
        help="Skip guest checks matching this regex.",
    )
    parser.add_argument(
        "--machine_type",
        default="",
        help="Deprecated, use --x86_shape and --arm64_shape. Overrides both.",
    )
    parser.add_argument("--x86_shape", default="n1-standard-1", help="Machine type for x86 images.")
    parser.add_argument("--arm64_shape", default="t2a-standard-1", help="Machine type for arm64 images.")
    parser.add_argument(
        "--set_exit_status",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Exit with non-zero status on test failures or errors.",
    )
    parser.add_argument("--use_reservations", action="store_true", help="Consume reservations.")
    parser.add_argument(
        "--reservation_urls",
        type=_csv,
        default=[],
        help="Comma separated reservations to consume, any reservation when empty.",
    )
    parser.add_argument("--accelerator_type", default="", help="Accelerator to attach.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")

    args = parser.parse_args(argv)
    if not args.project:
        parser.error("--project must be provided")
    if not args.images:
        parser.error("--images must be provided")
    if args.parallel_count < 1:
        parser.error("--parallel_count must be positive")
    if not args.test_projects:
        args.test_projects = [args.project]
    if args.machine_type:
        logger.warning("--machine_type is deprecated, use --x86_shape and --arm64_shape")
        args.x86_shape = args.arm64_shape = args.machine_type
    return args


def select_suites(suite_filter: Optional[Pattern], exclude: Optional[Pattern]) -> list:
    suites = []
    for suite in TEST_SUITES:
        if suite_filter is not None and not suite_filter.search(suite.NAME):
            continue
        if exclude is not None and exclude.search(suite.NAME):
            logger.info("skipping suite %s, excluded", suite.NAME)
            continue
        suites.append(suite)
    return suites


def build_test_workflows(client, args: argparse.Namespace) -> List[TestWorkflow]:
    """One workflow per (image, selected suite)."""
    twfs = []
    suites = select_suites(args.filter, args.exclude)
    for image in args.images:
        image_url = resolve_image(image)
        for suite in suites:
            opts = TestWorkflowOpts(
                client=client,
                name=suite.NAME,
                image=image_url,
                timeout=args.timeout,
                project=args.project,
                zone=randomly_select_zone(args.zone),
                exclude_filter=args.exclude_discrete_tests,
                x86_shape=args.x86_shape,
                arm64_shape=args.arm64_shape,
                compute_endpoint_override=args.compute_endpoint_override,
                use_reservations=args.use_reservations,
                reservation_urls=args.reservation_urls,
                accelerator_type=args.accelerator_type,
            )
            twf = new_test_workflow(opts)
            if "windows" in image_url:
                twf.skip("windows guests are not supported")
            else:
                suite.test_setup(twf)
            if not twf.wf.steps and not twf.skipped:
                twf.skip(f"no vms created for {suite.NAME} on {twf.image.name}")
            logger.info("built %r", twf)
            twfs.append(twf)
    return twfs


def junit_path(out_path: str) -> Path:
    artifacts = os.environ.get("ARTIFACTS")
    if artifacts:
        return Path(artifacts) / "junit.xml"
    return Path(out_path)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        format="[%(asctime)s] %(message)s",
        level=logging.DEBUG if args.debug else logging.INFO,
    )

    client = ComputeClient(compute_endpoint_override=args.compute_endpoint_override)
    twfs = build_test_workflows(client, args)
    if not twfs:
        logger.error("no test workflows to run")
        return 1

    work_dir = Path(args.local_path) if args.local_path else Path(tempfile.mkdtemp(prefix="cit-"))
    gcs_path = args.gcs_path or f"gs://{args.project}-daisy-bkt"
    runner.finalize_workflows(twfs, work_dir, gcs_path)

    if args.print:
        runner.print_tests(twfs, work_dir)
        return 0

    if args.validate:
        errors = runner.validate_tests(twfs, work_dir)
        for error in errors:
            logger.error("validation failed: %s", error)
        return 1 if errors else 0

    suites = runner.run_tests(
        twfs,
        work_dir,
        test_projects=args.test_projects,
        parallel_count=args.parallel_count,
        parallel_stagger=args.parallel_stagger,
    )
    if args.write_local_artifacts:
        runner.download_artifacts(twfs, Path(args.write_local_artifacts))

    xml = suites.to_xml()
    out = junit_path(args.out_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(xml, encoding="utf-8")
    print(xml)
    logger.info("wrote junit results to %s", out)

    if args.set_exit_status and (suites.errors or suites.failures):
        logger.error(
            "test suites had %d failures and %d errors", suites.failures, suites.errors
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
