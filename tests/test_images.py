# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""End to end runs against a real project.

Skipped unless CIT_PROJECT is set. Requires gcloud credentials and the daisy
binary on PATH.
"""

import logging
import os
import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from imagetest import manager

logger = logging.getLogger(__name__)

# pylint: disable=redefined-outer-name

IMAGES = [image for image in os.getenv("CIT_IMAGES", "").split(",") if image]
if not IMAGES:
    IMAGES = [
        "debian-12",
        "ubuntu-2204-lts",
        "rhel-9",
    ]
SUITES = os.getenv("CIT_SUITES", "^(imageboot|packagevalidation)$")

pytestmark = pytest.mark.skipif(
    not os.getenv("CIT_PROJECT"), reason="CIT_PROJECT environment variable is required"
)


@pytest.fixture
def cit_project():
    """Get the project to run workflows in."""
    yield os.getenv("CIT_PROJECT", "")


@pytest.fixture
def cit_zone():
    """Get the zones to run workflows in."""
    yield os.getenv("CIT_ZONE", "us-central1-a")


@pytest.fixture
def artifacts_path(tmp_path, image):
    """Per image directory for workflow files and results."""
    artifacts_path = os.getenv("CIT_ARTIFACTS_PATH")
    if artifacts_path:
        tmp_path = Path(artifacts_path)

    path = tmp_path / image.replace("/", "_")
    path.mkdir(exist_ok=True, parents=True)
    yield path


@pytest.mark.parametrize("image", IMAGES)
def test_image(image, cit_project, cit_zone, artifacts_path, monkeypatch):
    """Run the selected suites against an image and expect no failures."""
    monkeypatch.delenv("ARTIFACTS", raising=False)
    out_path = artifacts_path / "junit.xml"
    argv = [
        f"--project={cit_project}",
        f"--zone={cit_zone}",
        f"--images={image}",
        f"--filter={SUITES}",
        f"--local_path={artifacts_path / 'work'}",
        f"--write_local_artifacts={artifacts_path / 'outputs'}",
        f"--out_path={out_path}",
        "--parallel_stagger=5s",
    ]
    gcs_path = os.getenv("CIT_GCS_PATH")
    if gcs_path:
        argv.append(f"--gcs_path={gcs_path}")

    rc = manager.main(argv)
    logger.info("results for %s: %s", image, out_path.as_posix())

    root = ET.parse(out_path).getroot()
    assert int(root.attrib["tests"]) > 0, f"no test results: {out_path.as_posix()}"
    assert rc == 0, f"test failures for {image}: {out_path.as_posix()}"
