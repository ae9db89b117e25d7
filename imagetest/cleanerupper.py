# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Delete leftover test resources from a project.

Every clean_* function takes a compute client, a project and a deletion
policy, and returns the partial URLs of what it deleted (or would delete on a
dry run) together with the errors it hit. A failing deletion never stops the
others.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .compute import basename

logger = logging.getLogger(__name__)

# pylint: disable=too-many-locals

KEEP_LABEL = "do-not-delete"
MAX_WORKERS = 16

Results = Tuple[List[str], List[Exception]]


@dataclass(eq=True, repr=True)
class Resource:
    """The fields of a compute resource the deletion policies look at."""

    kind: str
    name: str
    description: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    created: Optional[datetime] = None
    deletion_protection: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, kind: str, data: Dict[str, Any]) -> "Resource":
        created = None
        timestamp = data.get("creationTimestamp")
        if timestamp:
            try:
                created = datetime.fromisoformat(timestamp)
            except ValueError:
                logger.debug("unparseable creation timestamp %r on %s", timestamp, data.get("name"))
        return cls(
            kind=kind,
            name=data.get("name", ""),
            description=data.get("description", "") or "",
            labels=dict(data.get("labels") or {}),
            created=created,
            deletion_protection=bool(data.get("deletionProtection", False)),
            data=data,
        )


Policy = Callable[[Resource], bool]


@dataclass(eq=True, repr=True)
class Deletion:
    """A single pending delete call."""

    kind: str
    name: str
    partial: str
    zone: Optional[str] = None
    region: Optional[str] = None


def _protected(resource: Resource) -> bool:
    if resource.kind == "networks" and resource.name == "default":
        return True
    if resource.kind == "instances" and resource.deletion_protection:
        return True
    return KEEP_LABEL in resource.labels


def age_policy(older_than: datetime) -> Policy:
    """Delete anything created before older_than, short of protected resources.

    A naive older_than is taken as local time.
    """
    if older_than.tzinfo is None:
        older_than = older_than.astimezone()

    def policy(resource: Resource) -> bool:
        if _protected(resource):
            return False
        if resource.kind == "networks" and "delete" in resource.description:
            return False
        if resource.created is None:
            return False
        created = resource.created
        if created.tzinfo is None:
            created = created.astimezone()
        return (
            created < older_than
            and KEEP_LABEL not in resource.description
            and KEEP_LABEL not in resource.name
        )

    return policy


def workflow_policy(workflow_id: str) -> Policy:
    """Delete what appears to have been created by the workflow with this id."""

    def policy(resource: Resource) -> bool:
        if _protected(resource):
            return False
        return resource.name.endswith(workflow_id) and KEEP_LABEL not in resource.description

    return policy


def _delete_all(client: Any, project: str, deletions: List[Deletion], dry_run: bool) -> Results:
    """Run deletions concurrently, collecting what was deleted and what failed."""
    deleted: List[str] = []
    errors: List[Exception] = []
    if not deletions:
        return deleted, errors

    def delete(deletion: Deletion) -> Optional[Exception]:
        if dry_run:
            return None
        try:
            client.delete_resource(
                deletion.kind,
                project,
                deletion.name,
                zone=deletion.zone,
                region=deletion.region,
            )
        except RuntimeError as error:
            return error
        return None

    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(deletions))) as executor:
        for deletion, error in zip(deletions, executor.map(delete, deletions)):
            if error is not None:
                logger.error("failed to delete %s: %r", deletion.partial, error)
                errors.append(error)
            else:
                logger.debug("deleted %s (dry_run=%s)", deletion.partial, dry_run)
                deleted.append(deletion.partial)

    return deleted, errors


def _list(client: Any, kind: str, project: str, region: Optional[str] = None) -> List[Dict[str, Any]]:
    return client.list_resources(kind, project, region=region) if region else client.list_resources(kind, project)


def _clean_simple(
    client: Any,
    project: str,
    policy: Policy,
    dry_run: bool,
    kind: str,
    collection: str,
    zonal: bool = False,
) -> Results:
    try:
        items = _list(client, kind, project)
    except RuntimeError as error:
        return [], [RuntimeError(f"error listing {kind} in project {project!r}: {error}")]

    deletions = []
    for item in items:
        if not policy(Resource.from_api(kind, item)):
            continue
        name = item.get("name", "")
        if zonal:
            zone = basename(item.get("zone"))
            partial = f"projects/{project}/zones/{zone}/{collection}/{name}"
            deletions.append(Deletion(kind, name, partial, zone=zone))
        else:
            partial = f"projects/{project}/global/{collection}/{name}"
            deletions.append(Deletion(kind, name, partial))
    return _delete_all(client, project, deletions, dry_run)


def clean_instances(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    return _clean_simple(client, project, policy, dry_run, "instances", "instances", zonal=True)


def clean_disks(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    return _clean_simple(client, project, policy, dry_run, "disks", "disks", zonal=True)


def clean_instance_groups(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    """Delete unmanaged instance groups, which keep their network in use."""
    return _clean_simple(
        client, project, policy, dry_run, "instance-groups", "instanceGroups", zonal=True
    )


def clean_images(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    return _clean_simple(client, project, policy, dry_run, "images", "images")


def clean_machine_images(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    return _clean_simple(client, project, policy, dry_run, "machine-images", "machineImages")


def clean_snapshots(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    return _clean_simple(client, project, policy, dry_run, "snapshots", "snapshots")


def _regional_deletion(project: str, kind: str, collection: str, item: Dict[str, Any]) -> Deletion:
    """Delete call for a resource that is either regional or global."""
    name = item.get("name", "")
    region = basename(item.get("region")) or None
    scope = f"regions/{region}" if region else "global"
    return Deletion(kind, name, f"projects/{project}/{scope}/{collection}/{name}", region=region)


def _health_check_deletion(project: str, url: str) -> Deletion:
    """Delete call for a health check URL, which is either regional or global."""
    parts = url.split("/")
    region = parts[parts.index("regions") + 1] if "regions" in parts else None
    return _regional_deletion(
        project, "health-checks", "healthChecks", {"name": basename(url), "region": region}
    )


def clean_load_balancer_resources(
    client: Any, project: str, policy: Policy, dry_run: bool = False
) -> Results:
    """Delete load balancer resources, frontends first so nothing is in use."""
    deleted: List[str] = []
    errors: List[Exception] = []

    def run(deletions: List[Deletion]) -> None:
        phase_deleted, phase_errors = _delete_all(client, project, deletions, dry_run)
        deleted.extend(phase_deleted)
        errors.extend(phase_errors)

    try:
        forwarding_rules = _list(client, "forwarding-rules", project)
        regions = client.list_regions(project)
    except RuntimeError as error:
        return [], [RuntimeError(f"could not list load balancer resources: {error}")]

    run(
        [
            _regional_deletion(project, "forwarding-rules", "forwardingRules", fr)
            for fr in forwarding_rules
            if policy(Resource.from_api("forwarding-rules", fr))
        ]
    )

    phases = (
        ("forwarding-rules", "forwardingRules"),
        ("target-http-proxies", "targetHttpProxies"),
        ("url-maps", "urlMaps"),
        ("backend-services", "backendServices"),
        ("health-checks", "healthChecks"),
        ("network-endpoint-groups", "networkEndpointGroups"),
    )
    for region_data in regions:
        region = region_data.get("name") or basename(region_data.get("selfLink"))
        for kind, collection in phases:
            try:
                items = _list(client, kind, project, region)
            except RuntimeError as error:
                errors.append(error)
                continue
            deletions = []
            for item in items:
                if basename(item.get("region")) != region:
                    continue
                if not policy(Resource.from_api(kind, item)):
                    continue
                deletion = _regional_deletion(project, kind, collection, item)
                if deletion.partial not in deleted:
                    deletions.append(deletion)
            run(deletions)

    return deleted, errors


def _auto_mode_range(network: Dict[str, Any], subnetwork: Dict[str, Any]) -> bool:
    """Auto mode networks own every subnetwork in 10.128.0.0/9."""
    if not network.get("autoCreateSubnetworks"):
        return False
    try:
        octets = subnetwork.get("ipCidrRange", "").split(".")
        return octets[0] == "10" and int(octets[1]) >= 128
    except (IndexError, ValueError):
        logger.debug("error parsing network range %r", subnetwork.get("ipCidrRange"))
        return False


def _clean_network(
    client: Any,
    project: str,
    network: Dict[str, Any],
    listings: Dict[str, List[Dict[str, Any]]],
    dry_run: bool,
) -> Results:
    """Delete one network after everything attached to it."""
    deleted: List[str] = []
    errors: List[Exception] = []
    self_link = network.get("selfLink", "")
    name = network.get("name", "")

    def run(deletions: List[Deletion]) -> None:
        phase_deleted, phase_errors = _delete_all(client, project, deletions, dry_run)
        deleted.extend(phase_deleted)
        errors.extend(phase_errors)

    run(
        [
            Deletion("firewall-rules", f["name"], f"projects/{project}/global/firewalls/{f['name']}")
            for f in listings["firewall-rules"]
            if f.get("network") == self_link
        ]
    )

    for subnetwork in listings["subnets"]:
        if subnetwork.get("network") != self_link or _auto_mode_range(network, subnetwork):
            continue
        region = basename(subnetwork.get("region"))

        def in_region(kind: str) -> List[Dict[str, Any]]:
            try:
                return _list(client, kind, project, region)
            except RuntimeError as error:
                errors.append(error)
                return []

        run(
            [
                _regional_deletion(project, "forwarding-rules", "forwardingRules", fr)
                for fr in in_region("forwarding-rules")
                if fr.get("network") == self_link
            ]
        )

        backend_services = [bs for bs in in_region("backend-services") if bs.get("network") == self_link]
        backend_links = {bs.get("selfLink") for bs in backend_services}
        url_maps = [um for um in in_region("url-maps") if um.get("defaultService") in backend_links]
        url_map_links = {um.get("selfLink") for um in url_maps}
        run(
            [
                _regional_deletion(project, "target-http-proxies", "targetHttpProxies", hp)
                for hp in in_region("target-http-proxies")
                if hp.get("urlMap") in url_map_links
            ]
        )
        run([_regional_deletion(project, "url-maps", "urlMaps", um) for um in url_maps])
        run([_regional_deletion(project, "backend-services", "backendServices", bs) for bs in backend_services])
        run(
            [
                _health_check_deletion(project, hc)
                for bs in backend_services
                for hc in bs.get("healthChecks", [])
            ]
        )
        run(
            [
                _regional_deletion(project, "network-endpoint-groups", "networkEndpointGroups", neg)
                for neg in in_region("network-endpoint-groups")
                if neg.get("network") == self_link
            ]
        )
        subnetwork_name = subnetwork.get("name", "")
        run(
            [
                Deletion(
                    "subnets",
                    subnetwork_name,
                    f"projects/{project}/regions/{region}/subnetworks/{subnetwork_name}",
                    region=region,
                )
            ]
        )

    run(
        [
            Deletion("routes", r["name"], f"projects/{project}/global/routes/{r['name']}")
            for r in listings["routes"]
            if r.get("network") == self_link
        ]
    )
    run([Deletion("networks", name, f"projects/{project}/global/networks/{name}")])
    return deleted, errors


def clean_networks(client: Any, project: str, policy: Policy, dry_run: bool = False) -> Results:
    """Delete networks with their firewalls, subnetworks and routes."""
    listings: Dict[str, List[Dict[str, Any]]] = {}
    try:
        for kind in ("networks", "firewall-rules", "subnets", "routes"):
            listings[kind] = _list(client, kind, project)
    except RuntimeError as error:
        return [], [RuntimeError(f"error listing networks in project {project!r}: {error}")]

    networks = [n for n in listings["networks"] if policy(Resource.from_api("networks", n))]
    deleted: List[str] = []
    errors: List[Exception] = []
    if not networks:
        return deleted, errors

    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(networks))) as executor:
        for network_deleted, network_errors in executor.map(
            lambda n: _clean_network(client, project, n, listings, dry_run), networks
        ):
            deleted.extend(network_deleted)
            errors.extend(network_errors)
    return deleted, errors
