# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Compute API calls made from inside a test VM."""

import json
import logging
import time
import urllib.request
from typing import Any, Dict, Optional

from . import metadata

logger = logging.getLogger("imagetest.guest")

COMPUTE_API = "https://compute.googleapis.com/compute/v1"


def _call(method: str, url: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    token = metadata.get_access_token()
    headers = {"Authorization": f"Bearer {token}"}
    data = None
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        headers["Content-Type"] = "application/json"
    elif method == "POST":
        data = b""
    req = urllib.request.Request(url, data=data, method=method, headers=headers)
    with urllib.request.urlopen(req, timeout=60) as response:
        return json.load(response)


def _instance_action(action: str) -> Dict[str, Any]:
    project, zone = metadata.get_project_zone()
    name = metadata.get_instance_name()
    url = f"{COMPUTE_API}/projects/{project}/zones/{zone}/instances/{name}/{action}"
    logger.info("calling %s on %s", action, name)
    return _call("POST", url)


def _operation_wait_url(operation: Dict[str, Any]) -> str:
    if operation.get("selfLink"):
        return f"{operation['selfLink']}/wait"
    project, zone = metadata.get_project_zone()
    return f"{COMPUTE_API}/projects/{project}/zones/{zone}/operations/{operation['name']}/wait"


def wait_for_operation(operation: Dict[str, Any], timeout: float = 600) -> None:
    """Poll a zonal, regional or global operation until it is DONE."""
    url = _operation_wait_url(operation)
    deadline = time.time() + timeout
    while operation.get("status") != "DONE":
        if time.time() > deadline:
            raise TimeoutError(f"operation {operation['name']} did not finish in {timeout}s")
        operation = _call("POST", url)

    if operation.get("error"):
        raise RuntimeError(f"operation failed: {operation['error']}")


def resource_url(project: str, path: str) -> str:
    """Full URL of a project resource, e.g. path="regions/r/healthChecks/hc"."""
    return f"{COMPUTE_API}/projects/{project}/{path}"


def insert(project: str, collection: str, resource: Dict[str, Any]) -> str:
    """Create resource in collection, e.g. "zones/z/instanceGroups", and return its URL."""
    logger.info("creating %s in %s", resource.get("name"), collection)
    wait_for_operation(_call("POST", resource_url(project, collection), resource))
    return resource_url(project, f"{collection}/{resource['name']}")


def post(url: str, body: Dict[str, Any]) -> None:
    """Call a resource method such as instanceGroups addInstances and wait for it."""
    wait_for_operation(_call("POST", url, body))


def delete(url: str) -> None:
    logger.info("deleting %s", url)
    wait_for_operation(_call("DELETE", url))


def simulate_maintenance_event() -> Dict[str, Any]:
    """Trigger a host maintenance event (live migration) for this instance."""
    return _instance_action("simulateMaintenanceEvent")


def suspend_instance() -> Dict[str, Any]:
    """Suspend this instance."""
    return _instance_action("suspend")
