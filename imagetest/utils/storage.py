# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Cloud Storage access from inside a test VM using the JSON API."""

import logging
import re
import shutil
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Tuple

from . import metadata

logger = logging.getLogger("imagetest.guest")

STORAGE_API = "https://storage.googleapis.com"
GCS_URL_RE = re.compile(r"^gs://(?P<bucket>[a-z0-9][-_.a-z0-9]*)/(?P<object>.+)$")


def parse_gcs_url(url: str) -> Tuple[str, str]:
    """Split gs://bucket/object into (bucket, object)."""
    match = GCS_URL_RE.match(url)
    if not match:
        raise ValueError(f"invalid gcs url: {url!r}")
    return match.group("bucket"), match.group("object")


def _authorized_request(url: str, **kwargs) -> urllib.request.Request:
    token = metadata.get_access_token()
    headers = {"Authorization": f"Bearer {token}"}
    headers.update(kwargs.pop("headers", {}))
    return urllib.request.Request(url, headers=headers, **kwargs)


def download_gcs_object(url: str, dst: Path) -> Path:
    """Download gs://bucket/object to dst."""
    bucket, obj = parse_gcs_url(url)
    api_url = (
        f"{STORAGE_API}/storage/v1/b/{bucket}/o/"
        f"{urllib.parse.quote(obj, safe='')}?alt=media"
    )
    req = _authorized_request(api_url)
    logger.debug("downloading %s -> %s", url, dst)
    with urllib.request.urlopen(req, timeout=300) as response, open(dst, "wb") as out:
        shutil.copyfileobj(response, out)
    return dst


def upload_gcs_object(url: str, data: bytes, content_type: str = "text/plain") -> None:
    """Upload data to gs://bucket/object."""
    bucket, obj = parse_gcs_url(url)
    api_url = (
        f"{STORAGE_API}/upload/storage/v1/b/{bucket}/o"
        f"?uploadType=media&name={urllib.parse.quote(obj, safe='')}"
    )
    req = _authorized_request(
        api_url, data=data, method="POST", headers={"Content-Type": content_type}
    )
    logger.debug("uploading %d bytes -> %s", len(data), url)
    with urllib.request.urlopen(req, timeout=300) as response:
        response.read()
