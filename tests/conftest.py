# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""pytest configuration for cloud image tests."""

import logging
import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from imagetest.compute import Image, MachineType, Project, Zone, basename

logger = logging.getLogger(__name__)


# pylint: disable=unused-argument
# pylint: disable=redefined-outer-name


def pytest_configure(config):
    """Configure pytest logging and artifacts directory.

    Create artifacts directory based on the current timestamp if not configured.
    If running under pytest-xdist, use the worker ID to create separate logs for each worker.
    """
    artifacts_path = os.getenv("CIT_ARTIFACTS_PATH")
    if "PYTEST_XDIST_WORKER" not in os.environ:
        if not artifacts_path:
            timestamp = datetime.now().strftime("%Y%m%d%H%M%S%f")
            artifacts_path = f"/tmp/cit-{timestamp}"
            os.environ["CIT_ARTIFACTS_PATH"] = artifacts_path
        print(f"artifacts={artifacts_path}", file=sys.stderr)

    artifacts_path = os.getenv("CIT_ARTIFACTS_PATH")
    assert artifacts_path, "CIT_ARTIFACTS_PATH must be set"

    log_path = Path(artifacts_path)
    log_path.mkdir(parents=True, exist_ok=True)

    worker_id = os.environ.get("PYTEST_XDIST_WORKER")
    logging.basicConfig(
        format="%(asctime)s [%(levelname)s] %(message)s",
        filename=log_path / f"{worker_id or 'main'}.log",
        level=logging.DEBUG,
    )


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(config, items):
    """Group tests by image for pytest-xdist to avoid quota issues."""
    for item in items:
        image = (
            item.callspec.params.get("image", None)
            if hasattr(item, "callspec")
            else None
        )
        if image:
            item.add_marker(pytest.mark.xdist_group(image))


class FakeComputeClient:
    """In-memory stand-in for ComputeClient.

    resources maps a kind such as "instances" to the dicts list_resources
    returns. Deleting removes the resource and records the call.
    """

    def __init__(
        self,
        images: Optional[Dict[str, Image]] = None,
        resources: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        regions: Optional[List[Dict[str, Any]]] = None,
        fail_deletes: Optional[List[str]] = None,
    ) -> None:
        self.images = images or {}
        self.resources = resources or {}
        self.regions = regions if regions is not None else [{"name": "us-central1"}]
        self.fail_deletes = set(fail_deletes or [])
        self.deleted: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def get_image(self, url: str) -> Image:
        if url in self.images:
            return self.images[url]
        return Image(name=basename(url), architecture="X86_64", self_link=url)

    def get_project(self, project: str) -> Project:
        return Project(name=project)

    def get_zone(self, project: str, zone: str) -> Zone:
        return Zone(name=zone, region=zone.rsplit("-", 1)[0])

    def get_machine_type(self, project: str, zone: str, machine_type: str) -> MachineType:
        return MachineType(name=machine_type)

    def list_regions(self, project: str) -> List[Dict[str, Any]]:
        return list(self.regions)

    def list_resources(
        self, kind: str, project: str, region: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        items = list(self.resources.get(kind, []))
        if region:
            items = [item for item in items if basename(item.get("region")) == region]
        return items

    def delete_resource(
        self,
        kind: str,
        project: str,
        name: str,
        *,
        zone: Optional[str] = None,
        region: Optional[str] = None,
    ) -> None:
        if name in self.fail_deletes:
            raise RuntimeError(f"failed to delete {kind} {name}")
        with self._lock:
            self.deleted.append(
                {"kind": kind, "project": project, "name": name, "zone": zone, "region": region}
            )
            self.resources[kind] = [
                item for item in self.resources.get(kind, []) if item.get("name") != name
            ]

    def deleted_names(self, kind: str) -> List[str]:
        return [d["name"] for d in self.deleted if d["kind"] == kind]


@pytest.fixture
def fake_client():
    yield FakeComputeClient()


@pytest.fixture
def fake_client_factory():
    """Build fake clients preloaded with images, resources or failures."""
    yield FakeComputeClient
