# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Daisy workflow document model.

Only the subset of the Daisy schema used by the test workflow builder is
modelled here. Workflows are serialized to JSON and executed out of process
by the daisy CLI.
"""

import json
import random
import string
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# pylint: disable=too-many-instance-attributes


class StepNotFoundError(KeyError):
    """Workflow step does not exist."""


def _compact(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset values so the document only carries what was configured."""
    return {
        key: value
        for key, value in values.items()
        if value is not None and value != [] and value != {} and value != ""
    }


def random_id(length: int = 5) -> str:
    """Generate a workflow id in the same alphabet daisy uses."""
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


@dataclass(eq=True, repr=True)
class Disk:
    """Persistent disk to create."""

    name: str
    real_name: Optional[str] = None
    source_image: Optional[str] = None
    type: Optional[str] = None
    size_gb: Optional[int] = None
    zone: Optional[str] = None
    licenses: List[str] = field(default_factory=list)
    guest_os_features: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "RealName": self.real_name,
                "sourceImage": self.source_image,
                "type": self.type,
                "sizeGb": str(self.size_gb) if self.size_gb else None,
                "zone": self.zone,
                "licenses": self.licenses,
                "guestOsFeatures": [{"type": f} for f in self.guest_os_features],
            }
        )


@dataclass(eq=True, repr=True)
class AttachedDisk:
    """Disk attached to an instance."""

    source: Optional[str] = None
    type: Optional[str] = None
    device_name: Optional[str] = None
    initialize_params: Optional[Dict[str, Any]] = None
    auto_delete: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "source": self.source,
                "type": self.type,
                "deviceName": self.device_name,
                "initializeParams": self.initialize_params,
                "autoDelete": self.auto_delete,
            }
        )


@dataclass(eq=True, repr=True)
class NetworkInterface:
    """Instance network interface."""

    network: Optional[str] = None
    subnetwork: Optional[str] = None
    network_ip: Optional[str] = None
    nic_type: Optional[str] = None
    alias_ip_ranges: List[Dict[str, str]] = field(default_factory=list)
    access_configs: Optional[List[Dict[str, str]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "network": self.network,
                "subnetwork": self.subnetwork,
                "networkIP": self.network_ip,
                "nicType": self.nic_type,
                "aliasIpRanges": self.alias_ip_ranges,
                "accessConfigs": self.access_configs,
            }
        )


@dataclass(eq=True, repr=True)
class Instance:
    """Instance to create.

    Beta instances are emitted under InstancesBeta so daisy creates them with
    the compute beta API.
    """

    name: Optional[str] = None
    real_name: Optional[str] = None
    disks: List[AttachedDisk] = field(default_factory=list)
    machine_type: Optional[str] = None
    zone: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    scopes: List[str] = field(default_factory=list)
    network_interfaces: List[NetworkInterface] = field(default_factory=list)
    scheduling: Optional[Dict[str, Any]] = None
    shielded_instance_config: Optional[Dict[str, Any]] = None
    confidential_instance_config: Optional[Dict[str, Any]] = None
    min_cpu_platform: Optional[str] = None
    hostname: Optional[str] = None
    reservation_affinity: Optional[Dict[str, Any]] = None
    guest_accelerators: List[Dict[str, Any]] = field(default_factory=list)
    beta: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "RealName": self.real_name,
                "disks": [d.to_dict() for d in self.disks],
                "machineType": self.machine_type,
                "zone": self.zone,
                "metadata": dict(self.metadata),
                "Scopes": self.scopes,
                "networkInterfaces": [n.to_dict() for n in self.network_interfaces],
                "scheduling": self.scheduling,
                "shieldedInstanceConfig": self.shielded_instance_config,
                "confidentialInstanceConfig": self.confidential_instance_config,
                "minCpuPlatform": self.min_cpu_platform,
                "hostname": self.hostname,
                "reservationAffinity": self.reservation_affinity,
                "guestAccelerators": self.guest_accelerators,
            }
        )


@dataclass(eq=True, repr=True)
class Network:
    """VPC network to create."""

    name: str
    real_name: Optional[str] = None
    auto_create_subnetworks: Optional[bool] = None
    mtu: Optional[int] = None
    ipv4_range: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "RealName": self.real_name,
                "autoCreateSubnetworks": self.auto_create_subnetworks,
                "mtu": self.mtu,
                "IPv4Range": self.ipv4_range,
            }
        )


@dataclass(eq=True, repr=True)
class Subnetwork:
    """Subnetwork to create."""

    name: str
    network: str
    ip_cidr_range: str
    real_name: Optional[str] = None
    region: Optional[str] = None
    purpose: Optional[str] = None
    role: Optional[str] = None
    secondary_ip_ranges: Optional[List[Dict[str, str]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "RealName": self.real_name,
                "network": self.network,
                "ipCidrRange": self.ip_cidr_range,
                "region": self.region,
                "purpose": self.purpose,
                "role": self.role,
                "secondaryIpRanges": self.secondary_ip_ranges,
            }
        )


@dataclass(eq=True, repr=True)
class FirewallRule:
    """Firewall rule to create."""

    name: str
    network: str
    allowed: List[Dict[str, Any]] = field(default_factory=list)
    source_ranges: List[str] = field(default_factory=list)
    real_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "name": self.name,
                "RealName": self.real_name,
                "network": self.network,
                "allowed": self.allowed,
                "sourceRanges": self.source_ranges,
            }
        )


@dataclass(eq=True, repr=True)
class SerialOutput:
    """Serial port output to match while waiting on an instance."""

    success_match: Optional[str] = None
    failure_match: Optional[str] = None
    status_match: Optional[str] = None
    port: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "Port": self.port,
                "SuccessMatch": self.success_match,
                "FailureMatch": self.failure_match,
                "StatusMatch": self.status_match,
            }
        )


@dataclass(eq=True, repr=True)
class GuestAttribute:
    """Guest attribute to poll while waiting on an instance."""

    namespace: str
    key_name: str
    success_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "Namespace": self.namespace,
                "KeyName": self.key_name,
                "SuccessValue": self.success_value,
            }
        )


@dataclass(eq=True, repr=True)
class InstanceSignal:
    """Condition a WaitForInstancesSignal step waits for."""

    name: str
    stopped: bool = False
    status: Optional[List[str]] = None
    serial_output: Optional[SerialOutput] = None
    guest_attribute: Optional[GuestAttribute] = None
    interval: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        values = _compact(
            {
                "Name": self.name,
                "Status": self.status,
                "Interval": self.interval,
                "SerialOutput": (
                    self.serial_output.to_dict() if self.serial_output else None
                ),
                "GuestAttribute": (
                    self.guest_attribute.to_dict() if self.guest_attribute else None
                ),
            }
        )
        values["Stopped"] = self.stopped
        return values


@dataclass(eq=True, repr=True)
class QuotaAvailable:
    """Quota that must be available before a step continues."""

    metric: str
    units: float
    region: str

    def to_dict(self) -> Dict[str, Any]:
        return {"Metric": self.metric, "Units": self.units, "Region": self.region}


@dataclass(eq=True, repr=True)
class ResizeDisk:
    """Disk resize request."""

    name: str
    size_gb: int

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "sizeGb": str(self.size_gb)}


@dataclass(eq=True, repr=True)
class DetachDisk:
    """Disk detach request."""

    instance: str
    device_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"Instance": self.instance, "DeviceName": self.device_name}


@dataclass(eq=False, repr=True)
class Step:
    """A single workflow step.

    Exactly one action is expected to be set. List-valued actions are appended
    to in place so several builder calls can share one step.
    """

    name: str
    timeout: Optional[str] = None
    create_disks: Optional[List[Disk]] = None
    create_instances: Optional[List[Instance]] = None
    create_networks: Optional[List[Network]] = None
    create_subnetworks: Optional[List[Subnetwork]] = None
    create_firewall_rules: Optional[List[FirewallRule]] = None
    start_instances: Optional[List[str]] = None
    stop_instances: Optional[List[str]] = None
    suspend_instances: Optional[List[str]] = None
    resume_instances: Optional[List[str]] = None
    wait_for_instances_signal: Optional[List[InstanceSignal]] = None
    wait_for_available_quotas: Optional[List[QuotaAvailable]] = None
    resize_disks: Optional[List[ResizeDisk]] = None
    detach_disks: Optional[List[DetachDisk]] = None

    def instance_names(self) -> List[str]:
        """Names of the instances this step acts on."""
        names: List[str] = []
        for instances in (
            self.start_instances,
            self.stop_instances,
            self.suspend_instances,
            self.resume_instances,
        ):
            names.extend(instances or [])
        names.extend(i.name for i in self.create_instances or [] if i.name)
        names.extend(s.name for s in self.wait_for_instances_signal or [])
        names.extend(d.instance for d in self.detach_disks or [])
        names.extend(d.name for d in self.resize_disks or [])
        return names

    def to_dict(self) -> Dict[str, Any]:
        def instances(names):
            return {"Instances": list(names)} if names else None

        create_instances = None
        if self.create_instances:
            create_instances = _compact(
                {
                    "Instances": [
                        i.to_dict() for i in self.create_instances if not i.beta
                    ],
                    "InstancesBeta": [
                        i.to_dict() for i in self.create_instances if i.beta
                    ],
                }
            )

        def dump(items):
            return [i.to_dict() for i in items] if items else None

        return _compact(
            {
                "Timeout": self.timeout,
                "CreateDisks": dump(self.create_disks),
                "CreateInstances": create_instances,
                "CreateNetworks": dump(self.create_networks),
                "CreateSubnetworks": dump(self.create_subnetworks),
                "CreateFirewallRules": dump(self.create_firewall_rules),
                "StartInstances": instances(self.start_instances),
                "StopInstances": instances(self.stop_instances),
                "SuspendInstances": instances(self.suspend_instances),
                "ResumeInstances": instances(self.resume_instances),
                "WaitForInstancesSignal": dump(self.wait_for_instances_signal),
                "WaitForAvailableQuotas": (
                    {"Quotas": dump(self.wait_for_available_quotas)}
                    if self.wait_for_available_quotas
                    else None
                ),
                "ResizeDisks": dump(self.resize_disks),
                "DetachDisks": dump(self.detach_disks),
            }
        )


@dataclass(eq=False, repr=True)
class Workflow:
    """Daisy workflow: named steps plus a dependency map between them."""

    name: str = ""
    project: str = ""
    zone: str = ""
    gcs_path: str = ""
    default_timeout: str = ""
    compute_endpoint: str = ""
    steps: Dict[str, Step] = field(default_factory=dict)
    dependencies: Dict[str, List[str]] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)
    vars: Dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=random_id)

    def new_step(self, name: str) -> Step:
        """Add an empty step, refusing to overwrite an existing one."""
        if name in self.steps:
            raise ValueError(f"step {name!r} already exists")

        step = Step(name=name)
        self.steps[name] = step
        return step

    def get_step(self, name: str) -> Step:
        """Look up a step by name."""
        try:
            return self.steps[name]
        except KeyError as error:
            raise StepNotFoundError(name) from error

    def add_dependency(self, dependent: str, *dependencies: str) -> None:
        """Make dependent run only after every step in dependencies."""
        self.get_step(dependent)
        deps = self.dependencies.setdefault(dependent, [])
        for dependency in dependencies:
            self.get_step(dependency)
            if dependency == dependent:
                raise ValueError(f"step {dependent!r} cannot depend on itself")
            if dependency not in deps:
                deps.append(dependency)

    def created_resources(self) -> List[Any]:
        """Every resource some create step of the workflow makes."""
        resources: List[Any] = []
        for step in self.steps.values():
            for created in (
                step.create_disks,
                step.create_instances,
                step.create_networks,
                step.create_subnetworks,
                step.create_firewall_rules,
            ):
                resources.extend(created or [])
        return resources

    def dependents(self, name: str) -> List[str]:
        """Names of steps that directly depend on the named step."""
        return [step for step, deps in self.dependencies.items() if name in deps]

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "Name": self.name,
                "Project": self.project,
                "Zone": self.zone,
                "GCSPath": self.gcs_path,
                "DefaultTimeout": self.default_timeout,
                "ComputeEndpoint": self.compute_endpoint,
                "Sources": self.sources,
                "Vars": self.vars,
                "Steps": {name: step.to_dict() for name, step in self.steps.items()},
                "Dependencies": {
                    name: list(deps) for name, deps in self.dependencies.items() if deps
                },
            }
        )

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=False)
