# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Metadata server access from inside a test VM."""

import json
import logging
import time
import urllib.error
import urllib.request
from typing import Dict, Optional, Tuple

logger = logging.getLogger("imagetest.guest")

METADATA_URL_PREFIX = "http://metadata.google.internal/computeMetadata/v1/"
METADATA_IP_URL_PREFIX = "http://169.254.169.254/computeMetadata/v1/"
HTTP_TIMEOUT = 30
RETRIES = 5


class MetadataNotFoundError(LookupError):
    """Metadata entry returned 404."""


def _join(prefix: str, *elems: str) -> str:
    return prefix + "/".join(e.strip("/") for e in elems if e)


def _do_request(
    method: str, url: str, data: Optional[str] = None
) -> Tuple[str, Dict[str, str]]:
    body = data.encode("utf-8") if data is not None else None
    req = urllib.request.Request(
        url, data=body, method=method, headers={"Metadata-Flavor": "Google"}
    )
    try:
        with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as response:
            return response.read().decode("utf-8"), dict(response.headers)
    except urllib.error.HTTPError as error:
        if error.code == 404:
            raise MetadataNotFoundError(f"no metadata entry found: {url}") from error
        raise


def _request_with_retries(
    method: str, url: str, data: Optional[str] = None
) -> Tuple[str, Dict[str, str]]:
    """Issue a request, backing off i seconds after the i-th failure."""
    last_error: Optional[Exception] = None
    for attempt in range(1, RETRIES + 1):
        try:
            return _do_request(method, url, data)
        except MetadataNotFoundError:
            raise
        except (urllib.error.URLError, OSError) as error:
            last_error = error
            logger.debug("metadata %s %s failed (attempt %d): %r", method, url, attempt, error)
            time.sleep(attempt)

    raise RuntimeError(f"failed to {method} metadata {url}: {last_error}")


def get_metadata(*elems: str) -> str:
    """Get a metadata entry, e.g. get_metadata("instance", "attributes", "foo")."""
    body, _ = _request_with_retries("GET", _join(METADATA_URL_PREFIX, *elems))
    return body


def get_metadata_with_headers(*elems: str) -> Tuple[str, Dict[str, str]]:
    """Same as get_metadata but also return the response headers."""
    return _request_with_retries("GET", _join(METADATA_URL_PREFIX, *elems))


def get_metadata_by_ip(*elems: str) -> str:
    """Get a metadata entry using the link-local address instead of DNS."""
    body, _ = _request_with_retries("GET", _join(METADATA_IP_URL_PREFIX, *elems))
    return body


def put_metadata(path: str, data: str) -> None:
    """Put data to a writable metadata path such as a guest attribute."""
    _request_with_retries("PUT", _join(METADATA_URL_PREFIX, path), data)


def get_attribute(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get an instance attribute, returning default when it is not set."""
    try:
        return get_metadata("instance", "attributes", key)
    except MetadataNotFoundError:
        return default


def get_guest_attribute(namespace: str, key: str) -> str:
    return get_metadata("instance", "guest-attributes", namespace, key)


def put_guest_attribute(namespace: str, key: str, value: str) -> None:
    put_metadata(f"instance/guest-attributes/{namespace}/{key}", value)


def get_project_zone() -> Tuple[str, str]:
    """Project id and zone name of the current instance."""
    project = get_metadata("project", "project-id")
    zone = get_metadata("instance", "zone").rsplit("/", 1)[-1]
    return project, zone


def get_instance_name() -> str:
    return get_metadata("instance", "name")


def get_image() -> str:
    """Image the instance was created from, as a partial URL."""
    return get_metadata("instance", "image")


def get_access_token() -> str:
    """OAuth access token of the default service account."""
    body = get_metadata("instance", "service-accounts", "default", "token")
    return json.loads(body)["access_token"]


def _sibling_name(real_name: str, daisy_name: str, name: str) -> str:
    if daisy_name and real_name.startswith(daisy_name):
        return name + real_name[len(daisy_name):]
    return name


def get_real_name(name: str) -> str:
    """Project name of the resource this VM's workflow calls name."""
    return _sibling_name(get_instance_name(), get_attribute("_test_vmname") or "", name)
