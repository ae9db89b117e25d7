# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Assemble daisy workflows that provision, drive and wait on test VMs.

A TestWorkflow owns one daisy workflow per (suite, image) pair. Suites add VMs
through the factory methods here and then chain extra steps (reboots, resizes,
suspend/resume) onto each VM through the TestVM handles they get back.
"""

import dataclasses
import logging
import random
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import cleanerupper, daisy
from .compute import Image, MachineType, Project, Zone
from .fixtures import Network, TestVM
from .utils import (
    FIRST_BOOT_GA_KEY,
    GUEST_ATTRIBUTE_TEST_KEY,
    GUEST_ATTRIBUTE_TEST_NAMESPACE,
    SHOULD_REBOOT_DURING_TEST,
)

logger = logging.getLogger(__name__)

# pylint: disable=too-many-instance-attributes
# pylint: disable=too-many-arguments
# pylint: disable=too-many-public-methods

PD_STANDARD = "pd-standard"
PD_SSD = "pd-ssd"
PD_BALANCED = "pd-balanced"
PD_EXTREME = "pd-extreme"
HYPERDISK_EXTREME = "hyperdisk-extreme"
HYPERDISK_THROUGHPUT = "hyperdisk-throughput"
HYPERDISK_BALANCED = "hyperdisk-balanced"

SUCCESS_MATCH = "FINISHED-TEST"

CREATE_DISKS_STEP_NAME = "create-disks"
CREATE_VMS_STEP_NAME = "create-vms"
CREATE_NETWORK_STEP_NAME = "create-networks"
CREATE_SUBNETWORK_STEP_NAME = "create-subnetworks"
CREATE_FIREWALL_STEP_NAME = "create-firewall-rules"
WAIT_FOR_VM_QUOTA_STEP_NAME = "wait-for-vm-quota"
WAIT_FOR_DISK_QUOTA_STEP_NAME = "wait-for-disk-quota"

WRAPPER_PACKAGE = "wrapper.pyz"
RESERVATION_KEY = "compute.googleapis.com/reservation-name"


@dataclass(eq=True, repr=True)
class TestWorkflowOpts:
    """Inputs for new_test_workflow."""

    __test__ = False

    client: Any
    name: str
    image: str
    timeout: str = "45m"
    project: str = ""
    zone: str = ""
    exclude_filter: str = ""
    x86_shape: str = "n1-standard-1"
    arm64_shape: str = "t2a-standard-1"
    compute_endpoint_override: str = ""
    use_reservations: bool = False
    reservation_urls: List[str] = field(default_factory=list)
    accelerator_type: str = ""


class TestWorkflow:
    """A test suite's daisy workflow for a single image."""

    __test__ = False

    def __init__(
        self,
        name: str,
        image_url: str,
        timeout: str = "45m",
        *,
        client: Any = None,
        image: Optional[Image] = None,
        machine_type: Optional[MachineType] = None,
        project: Optional[Project] = None,
        zone: Optional[Zone] = None,
        exclude_filter: str = "",
        compute_endpoint_override: str = "",
        reservation_affinity: Optional[Dict[str, Any]] = None,
        accelerator_type: str = "",
    ) -> None:
        self.name = name
        self.image_url = image_url
        self.timeout = timeout
        self.client = client
        self.image = image or Image(name="")
        self.machine_type = machine_type or MachineType(name="")
        self.project = project or Project(name="")
        self.zone = zone or Zone(name="")
        self.exclude_filter = exclude_filter
        self.compute_endpoint_override = compute_endpoint_override
        self.reservation_affinity = reservation_affinity
        self.accelerator_type = accelerator_type

        self.wf = daisy.Workflow(
            name=name.replace("_", "-"),
            project=self.project.name,
            zone=self.zone.name,
            default_timeout=timeout,
            compute_endpoint=compute_endpoint_override,
        )
        self.counter = 0
        self.gcs_path = ""
        self.skipped = False
        self.skipped_message = ""
        self.test_vms: List[TestVM] = []
        self.local_sources: Dict[str, str] = {}

    def __repr__(self) -> str:
        return f"TestWorkflow(name={self.name!r}, image={self.image_url!r}, id={self.wf.id!r})"

    @property
    def package_name(self) -> str:
        """File name of this suite's test package."""
        return f"{self.name}.pyz"

    def skip(self, message: str) -> None:
        """Mark the workflow as skipped so it is reported but never run."""
        self.skipped = True
        self.skipped_message = message

    def is_compute_staging(self) -> bool:
        return "staging" in self.compute_endpoint_override

    def _get_or_new_step(self, name: str) -> daisy.Step:
        step = self.wf.steps.get(name)
        return step if step is not None else self.wf.new_step(name)

    def _add_create_vms_dependencies(self) -> None:
        """Order create-vms after every provisioning step that exists so far."""
        if CREATE_VMS_STEP_NAME not in self.wf.steps:
            return
        for name in (
            CREATE_DISKS_STEP_NAME,
            CREATE_NETWORK_STEP_NAME,
            CREATE_SUBNETWORK_STEP_NAME,
            WAIT_FOR_VM_QUOTA_STEP_NAME,
        ):
            if name in self.wf.steps:
                self.wf.add_dependency(CREATE_VMS_STEP_NAME, name)

    def _apply_instance_defaults(self, instance: daisy.Instance) -> None:
        if self.reservation_affinity and not instance.reservation_affinity:
            instance.reservation_affinity = dict(self.reservation_affinity)

    # Step builders.

    def add_new_vm_step(
        self, disks: List[daisy.Disk], instance: Optional[daisy.Instance] = None
    ) -> Tuple[daisy.Step, daisy.Instance]:
        """Create an instance in its own create-vms-<counter> step.

        The caller is responsible for incrementing the counter and for the
        dependencies of the new step.
        """
        if not disks or not disks[0].name:
            raise ValueError("failed to create vm: no boot disk given")

        instance = instance or daisy.Instance()
        if not instance.name:
            instance.name = disks[0].name
        instance.disks = [daisy.AttachedDisk(source=d.name) for d in disks] + instance.disks
        self._apply_instance_defaults(instance)

        step = self.wf.new_step(f"{CREATE_VMS_STEP_NAME}-{self.counter}")
        step.create_instances = [instance]
        return step, instance

    def add_start_step(self, suffix: str, vm: str) -> daisy.Step:
        step = self.wf.new_step(f"start-{suffix}")
        step.start_instances = [vm]
        return step

    def add_stop_step(self, suffix: str, vm: str) -> daisy.Step:
        step = self.wf.new_step(f"stop-{suffix}")
        step.stop_instances = [vm]
        return step

    def add_resume_step(self, suffix: str, vm: str) -> daisy.Step:
        step = self.wf.new_step(f"resume-{suffix}")
        step.resume_instances = [vm]
        return step

    def _add_signal_step(self, name: str, signal: daisy.InstanceSignal) -> daisy.Step:
        step = self.wf.new_step(name)
        step.wait_for_instances_signal = [signal]
        return step

    def add_wait_step(self, suffix: str, vm: str) -> daisy.Step:
        """Wait for the test package on vm to finish."""
        return self._add_signal_step(
            f"wait-{suffix}",
            daisy.InstanceSignal(
                name=vm,
                stopped=False,
                serial_output=daisy.SerialOutput(success_match=SUCCESS_MATCH),
                guest_attribute=daisy.GuestAttribute(
                    namespace=GUEST_ATTRIBUTE_TEST_NAMESPACE,
                    key_name=GUEST_ATTRIBUTE_TEST_KEY,
                ),
            ),
        )

    def add_wait_reboot_ga_step(self, suffix: str, vm: str) -> daisy.Step:
        """Wait for the first boot of a vm that reboots itself during the test."""
        return self._add_signal_step(
            f"wait-{suffix}",
            daisy.InstanceSignal(
                name=vm,
                stopped=False,
                serial_output=daisy.SerialOutput(success_match=SUCCESS_MATCH),
                guest_attribute=daisy.GuestAttribute(
                    namespace=GUEST_ATTRIBUTE_TEST_NAMESPACE,
                    key_name=FIRST_BOOT_GA_KEY,
                ),
            ),
        )

    def add_wait_stopped_step(self, suffix: str, vm: str) -> daisy.Step:
        return self._add_signal_step(
            f"wait-stopped-{suffix}", daisy.InstanceSignal(name=vm, stopped=True)
        )

    def add_wait_suspended_step(self, suffix: str, vm: str) -> daisy.Step:
        """Wait for vm to reach SUSPENDED once it has been created."""
        step = self._add_signal_step(
            f"wait-suspended-{suffix}",
            daisy.InstanceSignal(name=vm, stopped=False, status=["SUSPENDED"]),
        )
        self.wf.add_dependency(step.name, CREATE_VMS_STEP_NAME)
        return step

    def add_resize_disk_step(self, suffix: str, disk: str, size_gb: int) -> daisy.Step:
        step = self.wf.new_step(f"resize-disk-{suffix}")
        step.resize_disks = [daisy.ResizeDisk(name=disk, size_gb=size_gb)]
        return step

    def add_detach_disk_step(self, suffix: str, vm: str, device_name: str) -> daisy.Step:
        step = self.wf.new_step(f"detach-disk-{suffix}")
        step.detach_disks = [daisy.DetachDisk(instance=vm, device_name=device_name)]
        return step

    def append_create_disks_step(self, disk: daisy.Disk) -> daisy.Step:
        """Add a boot disk built from the image under test."""
        disk.source_image = self.image_url
        return self.append_create_mount_disks_step(disk)

    def append_create_mount_disks_step(self, disk: daisy.Disk) -> daisy.Step:
        """Add a blank disk, keeping its type and size."""
        step = self._get_or_new_step(CREATE_DISKS_STEP_NAME)
        step.create_disks = (step.create_disks or []) + [disk]
        if WAIT_FOR_DISK_QUOTA_STEP_NAME in self.wf.steps:
            self.wf.add_dependency(CREATE_DISKS_STEP_NAME, WAIT_FOR_DISK_QUOTA_STEP_NAME)
        return step

    def append_create_vms_step(
        self, disks: List[daisy.Disk], instance: Optional[daisy.Instance] = None
    ) -> Tuple[daisy.Step, daisy.Instance]:
        """Add an instance booting from disks[0] to the shared create-vms step."""
        if not disks or not disks[0].name:
            raise ValueError("failed to create vm: no boot disk given")

        instance = instance or daisy.Instance()
        if not instance.name:
            instance.name = disks[0].name
        instance.disks = [daisy.AttachedDisk(source=d.name) for d in disks] + instance.disks
        self._apply_instance_defaults(instance)

        step = self._get_or_new_step(CREATE_VMS_STEP_NAME)
        step.create_instances = (step.create_instances or []) + [instance]
        self._add_create_vms_dependencies()
        return step, instance

    def append_create_subnetworks_step(self, subnetwork: daisy.Subnetwork) -> daisy.Step:
        step = self._get_or_new_step(CREATE_SUBNETWORK_STEP_NAME)
        step.create_subnetworks = (step.create_subnetworks or []) + [subnetwork]
        self.wf.add_dependency(CREATE_SUBNETWORK_STEP_NAME, CREATE_NETWORK_STEP_NAME)
        self._add_create_vms_dependencies()
        return step

    def append_create_firewall_rules_step(self, rule: daisy.FirewallRule) -> daisy.Step:
        step = self._get_or_new_step(CREATE_FIREWALL_STEP_NAME)
        step.create_firewall_rules = (step.create_firewall_rules or []) + [rule]
        self.wf.add_dependency(CREATE_FIREWALL_STEP_NAME, CREATE_NETWORK_STEP_NAME)
        return step

    def wait_for_quota_step(self, quota: daisy.QuotaAvailable, step_name: str) -> daisy.Step:
        """Add quota to a WaitForAvailableQuotas step.

        Quotas for the same metric and region are merged by summing units.
        """
        step = self._get_or_new_step(step_name)
        quotas = step.wait_for_available_quotas or []
        for existing in quotas:
            if existing.metric == quota.metric and existing.region == quota.region:
                existing.units += quota.units
                break
        else:
            quotas.append(dataclasses.replace(quota))
        step.wait_for_available_quotas = quotas
        return step

    def wait_for_vm_quota(self, quota: daisy.QuotaAvailable) -> daisy.Step:
        """Hold VM creation until quota is available."""
        step = self.wait_for_quota_step(quota, WAIT_FOR_VM_QUOTA_STEP_NAME)
        self._add_create_vms_dependencies()
        return step

    def wait_for_disks_quota(self, quota: daisy.QuotaAvailable) -> daisy.Step:
        """Hold disk creation until quota is available."""
        step = self.wait_for_quota_step(quota, WAIT_FOR_DISK_QUOTA_STEP_NAME)
        if CREATE_DISKS_STEP_NAME in self.wf.steps:
            self.wf.add_dependency(CREATE_DISKS_STEP_NAME, WAIT_FOR_DISK_QUOTA_STEP_NAME)
        return step

    def get_last_step_for_vm(self, vm: str) -> daisy.Step:
        """Follow the chain of steps acting on vm from its initial wait step."""
        name = f"wait-{vm}"
        if name not in self.wf.steps:
            raise ValueError(f"no step {name}")

        while True:
            dependents = [
                dependent
                for dependent in self.wf.dependents(name)
                if vm in self.wf.steps[dependent].instance_names()
            ]
            if not dependents:
                return self.wf.steps[name]
            if len(dependents) > 1:
                raise ValueError(
                    f"workflow has non-linear dependencies for {vm}: {name} -> {dependents}"
                )
            name = dependents[0]

    # VM and network factories.

    def _create_test_vm(
        self, disks: List[daisy.Disk], instance: Optional[daisy.Instance]
    ) -> TestVM:
        if not disks or not disks[0].name:
            raise ValueError("failed to create test vm: no boot disk given")

        name = disks[0].name
        self.append_create_disks_step(disks[0])
        for disk in disks[1:]:
            self.append_create_mount_disks_step(disk)

        _, instance = self.append_create_vms_step(disks, instance)
        if SHOULD_REBOOT_DURING_TEST in instance.metadata:
            wait_step = self.add_wait_reboot_ga_step(name, name)
        else:
            wait_step = self.add_wait_step(name, name)
        self.wf.add_dependency(wait_step.name, CREATE_VMS_STEP_NAME)

        tvm = TestVM(name, instance, self)
        self.test_vms.append(tvm)
        return tvm

    def create_test_vm(self, name: str) -> TestVM:
        """Create a VM booting the image under test."""
        return self._create_test_vm([daisy.Disk(name=name)], None)

    def create_test_vm_beta(self, name: str) -> TestVM:
        """Create a VM through the compute beta API."""
        return self._create_test_vm([daisy.Disk(name=name)], daisy.Instance(beta=True))

    def create_test_vm_multiple_disks(
        self, disks: List[daisy.Disk], instance: Optional[daisy.Instance] = None
    ) -> TestVM:
        """Create a VM booting from disks[0] with the other disks attached blank."""
        return self._create_test_vm(disks, instance)

    def create_test_vm_from_instance_beta(
        self, instance: daisy.Instance, disks: List[daisy.Disk]
    ) -> TestVM:
        instance.beta = True
        return self._create_test_vm(disks, instance)

    def create_network(self, name: str, auto_subnets: bool) -> Network:
        return self.create_network_from_daisy_network(
            daisy.Network(name=name, auto_create_subnetworks=auto_subnets)
        )

    def create_network_from_daisy_network(self, network: daisy.Network) -> Network:
        step = self._get_or_new_step(CREATE_NETWORK_STEP_NAME)
        step.create_networks = (step.create_networks or []) + [network]
        self._add_create_vms_dependencies()
        return Network(network.name, self, network)

    def real_name(self, name: str) -> str:
        """Name a resource gets in the project, ending in the workflow id."""
        return f"{name}-{self.wf.id}"

    def add_source(self, name: str, content: str) -> str:
        """Ship a file with the workflow and return its path on GCS."""
        self.local_sources[name] = content
        return f"${{SOURCESPATH}}/{name}"

    # Rendering.

    def finalize(self, gcs_path: str, local_path: Path) -> None:
        """Add what every test VM needs to run the test package.

        local_path must hold the wrapper and test packages. Files added with
        add_source are written next to them.
        """
        self.gcs_path = f"{gcs_path.rstrip('/')}/{self.wf.name}-{self.image.name or 'image'}-{self.wf.id}"
        self.wf.gcs_path = self.gcs_path

        local_path = Path(local_path)
        self.wf.sources[WRAPPER_PACKAGE] = (local_path / WRAPPER_PACKAGE).as_posix()
        self.wf.sources[self.package_name] = (local_path / self.package_name).as_posix()

        if self.local_sources:
            sources_path = local_path / f"{self.wf.name}-{self.wf.id}"
            sources_path.mkdir(parents=True, exist_ok=True)
            for name, content in self.local_sources.items():
                path = sources_path / name
                path.write_text(content, encoding="utf-8")
                self.wf.sources[name] = path.as_posix()

        # Real names must end in wf.id for clean_test_workflow to find them.
        for resource in self.wf.created_resources():
            if not resource.real_name:
                resource.real_name = self.real_name(resource.name)

        for step in self.wf.steps.values():
            for instance in step.create_instances or []:
                self._finalize_instance(instance)

    def _finalize_instance(self, instance: daisy.Instance) -> None:
        outs = f"{self.gcs_path}/outs"
        metadata = instance.metadata
        metadata["_test_vmname"] = instance.name or ""
        metadata["_test_package_url"] = f"${{SOURCESPATH}}/{self.package_name}"
        metadata["_test_results_url"] = f"{outs}/{instance.name}.txt"
        metadata["_test_properties_url"] = f"{outs}/{instance.name}.json"
        metadata["_test_suite_name"] = self.name
        metadata["_test_package_name"] = self.package_name
        metadata["_cit_timeout"] = self.timeout
        if self.exclude_filter:
            metadata["_exclude_discrete_tests"] = self.exclude_filter
        metadata["startup-script-url"] = f"${{SOURCESPATH}}/{WRAPPER_PACKAGE}"

        if not instance.machine_type:
            instance.machine_type = self.machine_type.name
        if not instance.zone:
            instance.zone = self.zone.name

    def results_urls(self) -> Dict[str, Tuple[str, str]]:
        """Map of VM name to its (results, properties) GCS URLs."""
        urls = {}
        for step in self.wf.steps.values():
            for instance in step.create_instances or []:
                metadata = instance.metadata
                urls[instance.name] = (
                    metadata.get("_test_results_url", ""),
                    metadata.get("_test_properties_url", ""),
                )
        return urls


def new_test_workflow(opts: TestWorkflowOpts) -> TestWorkflow:
    """Look up the image, machine type, project and zone and build a workflow."""
    client = opts.client
    image = client.get_image(opts.image)
    shape = opts.arm64_shape if image.architecture == "ARM64" else opts.x86_shape
    machine_type = client.get_machine_type(opts.project, opts.zone, shape)
    project = client.get_project(opts.project)
    zone = client.get_zone(opts.project, opts.zone)

    reservation_affinity = None
    if opts.use_reservations:
        if opts.reservation_urls:
            reservation_affinity = {
                "consumeReservationType": "SPECIFIC_RESERVATION",
                "key": RESERVATION_KEY,
                "values": list(opts.reservation_urls),
            }
        else:
            reservation_affinity = {"consumeReservationType": "ANY_RESERVATION"}

    twf = TestWorkflow(
        opts.name,
        opts.image,
        opts.timeout,
        client=client,
        image=image,
        machine_type=machine_type,
        project=project,
        zone=zone,
        exclude_filter=opts.exclude_filter,
        compute_endpoint_override=opts.compute_endpoint_override,
        reservation_affinity=reservation_affinity,
        accelerator_type=opts.accelerator_type,
    )
    logger.debug("created %r for image %s shape %s", twf, image.name, machine_type.name)
    return twf


class TestMetrics:
    """Thread-safe progress counter for a batch of workflows."""

    __test__ = False

    def __init__(self, total: int) -> None:
        self.total = total
        self.running = 0
        self.finished = 0
        self._lock = threading.Lock()

    def started(self) -> None:
        with self._lock:
            self.running += 1

    def done(self) -> None:
        with self._lock:
            self.running -= 1
            self.finished += 1

    def __str__(self) -> str:
        with self._lock:
            return (
                f"{self.finished}/{self.total} workflows finished, "
                f"{self.running} running, {self.total - self.finished - self.running} waiting"
            )


def randomly_select_zone(zones: str) -> str:
    """Pick one zone from a comma separated list."""
    candidates = [zone.strip() for zone in zones.split(",") if zone.strip()]
    if not candidates:
        raise ValueError(f"no zones to select from: {zones!r}")
    return random.choice(candidates)


def clean_test_workflow(
    twf: TestWorkflow, *, dry_run: bool = False
) -> Tuple[List[str], List[Exception]]:
    """Delete leftovers of a workflow run, i.e. resources named with its id."""
    policy = cleanerupper.workflow_policy(twf.wf.id)
    project = twf.wf.project or twf.project.name
    cleaned: List[str] = []
    errors: List[Exception] = []
    for clean in (
        cleanerupper.clean_instances,
        cleanerupper.clean_disks,
        cleanerupper.clean_images,
        cleanerupper.clean_machine_images,
        cleanerupper.clean_snapshots,
        cleanerupper.clean_load_balancer_resources,
        cleanerupper.clean_instance_groups,
        cleanerupper.clean_networks,
    ):
        clean_cleaned, clean_errors = clean(twf.client, project, policy, dry_run=dry_run)
        cleaned.extend(clean_cleaned)
        errors.extend(clean_errors)

    logger.debug("cleaned %d resources for %r with %d errors", len(cleaned), twf, len(errors))
    return cleaned, errors
