# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Compute Engine access through the gcloud CLI."""

import json
import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# pylint: disable=line-too-long
# pylint: disable=too-many-arguments

COMPUTE_API_PREFIX = "https://www.googleapis.com/compute/v1/"
COMPUTE_BETA_API_PREFIX = "https://www.googleapis.com/compute/beta/"

ZONAL_KINDS = ("instances", "disks", "instance-groups")
REGIONAL_KINDS = (
    "subnets",
    "forwarding-rules",
    "backend-services",
    "health-checks",
    "url-maps",
    "target-http-proxies",
    "network-endpoint-groups",
)
GLOBAL_KINDS = (
    "images",
    "machine-images",
    "snapshots",
    "networks",
    "firewall-rules",
    "routes",
)
# gcloud command groups for kinds that are not top-level compute groups.
KIND_COMMANDS = {
    "subnets": ["networks", "subnets"],
    "instance-groups": ["instance-groups", "unmanaged"],
}

IMAGE_URL_RE = re.compile(
    r"^(?:.*/)?projects/(?P<project>[^/]+)/global/images/(?:(?P<family>family)/)?(?P<name>[^/]+)$"
)


def subprocess_run(
    cmd: List[str],
    *,
    artifacts_path: Optional[Path] = None,
    artifact_name: Optional[str] = None,
    check: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> subprocess.CompletedProcess:
    """Run a subprocess command and capture outputs as utf-8."""
    printable_cmd = shlex.join(cmd)
    artifact_path = (
        artifacts_path / artifact_name if artifacts_path and artifact_name else None
    )

    logger.debug("executing command: %s", printable_cmd)
    proc = subprocess.run(
        cmd,
        check=False,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
    )
    logger.debug("executed command=%s rc=%d", printable_cmd, proc.returncode)

    if artifact_path:
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        artifact_path.write_text(
            f"cmd: {printable_cmd}\nrc: {proc.returncode}\nstdout:\n{proc.stdout!s}\nstderr:\n{proc.stderr!s}",
            encoding="utf-8",
        )

    if proc.returncode != 0:
        logger.error(
            "command failed: %s rc=%d\nstdout:\n%s\nstderr:\n%s",
            printable_cmd,
            proc.returncode,
            proc.stdout,
            proc.stderr,
        )

    if check and proc.returncode != 0:
        raise RuntimeError(
            f"Command '{printable_cmd}' failed with return code {proc.returncode}\nstdout={proc.stdout!s}\nstderr={proc.stderr!s}"
        )

    return proc


def basename(url: Optional[str]) -> str:
    """Last path element of a resource URL, e.g. zones/us-central1-a -> us-central1-a."""
    return (url or "").rstrip("/").rsplit("/", 1)[-1]


def partial_url(self_link: str) -> str:
    """Strip the API prefix from a self link."""
    for prefix in (COMPUTE_API_PREFIX, COMPUTE_BETA_API_PREFIX):
        if self_link.startswith(prefix):
            return self_link[len(prefix) :]
    return self_link


def parse_image_url(url: str) -> Tuple[str, str, bool]:
    """Split an image URL into (project, name, is_family)."""
    match = IMAGE_URL_RE.match(url)
    if not match:
        raise ValueError(f"invalid image url: {url!r}")
    return match.group("project"), match.group("name"), bool(match.group("family"))


@dataclass(eq=True, repr=True)
class Image:
    """Subset of a compute image resource."""

    name: str
    architecture: str = ""
    guest_os_features: List[str] = field(default_factory=list)
    family: str = ""
    self_link: str = ""
    licenses: List[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Image":
        """Build from a compute API resource."""
        return cls(
            name=data.get("name", ""),
            architecture=data.get("architecture", ""),
            guest_os_features=[
                f.get("type", "") for f in data.get("guestOsFeatures", [])
            ],
            family=data.get("family", ""),
            self_link=data.get("selfLink", ""),
            licenses=list(data.get("licenses", [])),
        )


@dataclass(eq=True, repr=True)
class MachineType:
    """Subset of a compute machine type resource."""

    name: str
    guest_cpus: int = 0
    memory_mb: int = 0


@dataclass(eq=True, repr=True)
class Project:
    """Subset of a compute project resource."""

    name: str


@dataclass(eq=True, repr=True)
class Zone:
    """Subset of a compute zone resource."""

    name: str
    region: str = ""


class ComputeClient:
    """Compute Engine client backed by gcloud.

    Resources are returned as the JSON dictionaries gcloud prints so callers
    see the same camelCase fields as the compute API.
    """

    def __init__(
        self,
        *,
        compute_endpoint_override: str = "",
        artifacts_path: Optional[Path] = None,
    ) -> None:
        self.compute_endpoint_override = compute_endpoint_override
        self.artifacts_path = artifacts_path

    def _env(self) -> Optional[Dict[str, str]]:
        if not self.compute_endpoint_override:
            return None
        env = dict(os.environ)
        env["CLOUDSDK_API_ENDPOINT_OVERRIDES_COMPUTE"] = self.compute_endpoint_override
        return env

    def _gcloud(self, args: Sequence[str], *, artifact_name: Optional[str] = None) -> Any:
        """Run a gcloud command and decode its json output."""
        proc = subprocess_run(
            ["gcloud", *args, "--format=json", "--quiet"],
            artifacts_path=self.artifacts_path,
            artifact_name=artifact_name,
            check=True,
            env=self._env(),
        )
        stdout = proc.stdout.strip()
        return json.loads(stdout) if stdout else None

    def get_image(self, url: str) -> Image:
        """Fetch an image by url, resolving image family urls."""
        project, name, is_family = parse_image_url(url)
        if is_family:
            data = self._gcloud(
                ["compute", "images", "describe-from-family", name, "--project", project]
            )
        else:
            data = self._gcloud(["compute", "images", "describe", name, "--project", project])
        return Image.from_api(data)

    def get_project(self, project: str) -> Project:
        data = self._gcloud(["compute", "project-info", "describe", "--project", project])
        return Project(name=data.get("name", project))

    def get_zone(self, project: str, zone: str) -> Zone:
        data = self._gcloud(["compute", "zones", "describe", zone, "--project", project])
        return Zone(name=data.get("name", zone), region=basename(data.get("region")))

    def get_machine_type(self, project: str, zone: str, machine_type: str) -> MachineType:
        data = self._gcloud(
            [
                "compute",
                "machine-types",
                "describe",
                machine_type,
                "--zone",
                zone,
                "--project",
                project,
            ]
        )
        return MachineType(
            name=data.get("name", machine_type),
            guest_cpus=int(data.get("guestCpus", 0)),
            memory_mb=int(data.get("memoryMb", 0)),
        )

    def list_regions(self, project: str) -> List[Dict[str, Any]]:
        return self._gcloud(["compute", "regions", "list", "--project", project]) or []

    def list_resources(
        self, kind: str, project: str, region: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """List resources of a kind, e.g. instances or backend-services.

        Zonal and global kinds are listed across the whole project. Regional
        kinds may be narrowed to one region.
        """
        args = ["compute", *KIND_COMMANDS.get(kind, [kind]), "list", "--project", project]
        if kind == "images":
            args.append("--no-standard-images")
        if region:
            args.append(f"--filter=region:{region}")
        return self._gcloud(args, artifact_name=f"list-{kind}") or []

    def delete_resource(
        self,
        kind: str,
        project: str,
        name: str,
        *,
        zone: Optional[str] = None,
        region: Optional[str] = None,
    ) -> None:
        """Delete a resource and wait for the operation to finish."""
        args = ["compute", *KIND_COMMANDS.get(kind, [kind]), "delete", name, "--project", project]
        if kind in ZONAL_KINDS:
            args += ["--zone", zone or ""]
        elif kind in REGIONAL_KINDS:
            args += ["--region", region] if region else ["--global"]
        self._gcloud(args, artifact_name=f"delete-{kind}-{name}")
