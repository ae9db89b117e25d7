# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Handles test suites use to shape the VMs and networks of a workflow."""

import logging
from typing import Any, Dict, List, Optional

from . import daisy

logger = logging.getLogger(__name__)


def _is_placeholder(interface: daisy.NetworkInterface) -> bool:
    return interface.network == "default" and not interface.subnetwork and interface.access_configs is None


class TestVM:
    """A VM in a test workflow.

    Changes to the instance only take effect if made before the workflow is
    finalized. Steps added by reboot(), resume() and friends are chained after
    the VM's current last step.
    """

    __test__ = False

    def __init__(self, name: str, instance: daisy.Instance, test_workflow: Any) -> None:
        self.name = name
        self.instance = instance
        self.test_workflow = test_workflow

    def __repr__(self) -> str:
        return f"TestVM(name={self.name!r})"

    def add_metadata(self, key: str, value: str) -> None:
        self.instance.metadata[key] = value

    def add_user(self, user: str, key: str) -> None:
        """Add an ssh key for user to the instance ssh-keys."""
        entry = f"{user}:{key}"
        keys = self.instance.metadata.get("ssh-keys")
        self.add_metadata("ssh-keys", f"{keys}\n{entry}" if keys else entry)

    def run_tests(self, test_regex: str) -> None:
        """Only run guest checks whose name matches test_regex."""
        self.add_metadata("_test_run", test_regex)

    def set_startup_script(self, script: str) -> None:
        self.add_metadata("startup-script", script)

    def set_shutdown_script(self, script: str) -> None:
        self.add_metadata("shutdown-script", script)

    def set_shutdown_script_url(self, script: str) -> None:
        """Ship script with the workflow and run it from shutdown-script-url."""
        url = self.test_workflow.add_source(f"shutdown-script-{self.name}", script)
        self.add_metadata("shutdown-script-url", url)

    def enable_secure_boot(self) -> None:
        config = dict(self.instance.shielded_instance_config or {})
        config["enableSecureBoot"] = True
        self.instance.shielded_instance_config = config

    def enable_confidential_instance(self, config: Dict[str, Any]) -> None:
        """Set the confidential instance config, e.g. {"confidentialInstanceType": "SEV"}."""
        self.instance.confidential_instance_config = dict(config)

    def set_min_cpu_platform(self, platform: str) -> None:
        self.instance.min_cpu_platform = platform

    def set_scheduling(self, **scheduling: Any) -> None:
        """Merge scheduling options, e.g. onHostMaintenance="TERMINATE"."""
        merged = dict(self.instance.scheduling or {})
        merged.update(scheduling)
        self.instance.scheduling = merged

    def add_scope(self, scope: str) -> None:
        if scope not in self.instance.scopes:
            self.instance.scopes.append(scope)

    def use_gvnic(self) -> None:
        if not self.instance.network_interfaces:
            self.instance.network_interfaces.append(daisy.NetworkInterface(network="default"))
        self.instance.network_interfaces[0].nic_type = "GVNIC"

    def add_disk(self, disk_type: str, initialize_params: Optional[Dict[str, Any]] = None) -> None:
        """Attach an extra disk such as a SCRATCH local SSD."""
        self.instance.disks.append(
            daisy.AttachedDisk(
                type=disk_type,
                initialize_params=dict(initialize_params) if initialize_params else None,
                auto_delete=True,
            )
        )

    def add_custom_network(self, network: "Network", subnetwork: Optional["Subnetwork"] = None) -> None:
        """Attach the VM to network, which needs a subnetwork unless auto mode."""
        if subnetwork is None and not network.network.auto_create_subnetworks:
            raise ValueError(f"network {network.name} is not auto mode, subnet is required")

        interfaces = self.instance.network_interfaces
        # The default-network NIC use_gvnic creates is replaced, keeping its nic type.
        if interfaces and _is_placeholder(interfaces[0]):
            interfaces[0].network = network.name
            interfaces[0].subnetwork = subnetwork.name if subnetwork else None
            interfaces[0].access_configs = [{"type": "ONE_TO_ONE_NAT"}]
            return

        interfaces.append(
            daisy.NetworkInterface(
                network=network.name,
                subnetwork=subnetwork.name if subnetwork else None,
                access_configs=[{"type": "ONE_TO_ONE_NAT"}],
            )
        )

    def add_alias_ip_ranges(self, ip_range: str, range_name: str) -> None:
        interfaces = self.instance.network_interfaces
        if not interfaces or _is_placeholder(interfaces[0]):
            raise ValueError("must call add_custom_network prior to add_alias_ip_ranges")

        self.instance.network_interfaces[0].alias_ip_ranges.append(
            {"ipCidrRange": ip_range, "subnetworkRangeName": range_name}
        )

    def set_private_ip(self, network: "Network", ip: str) -> None:
        for interface in self.instance.network_interfaces:
            if interface.network == network.name:
                interface.network_ip = ip
                return
        raise ValueError(f"vm {self.name} is not attached to network {network.name}")

    def set_hostname(self, hostname: str) -> None:
        self.instance.hostname = hostname

    def force_machine_type(self, machine_type: str) -> None:
        self.instance.machine_type = machine_type

    def force_zone(self, zone: str) -> None:
        self.instance.zone = zone

    def _chain(self, *steps: daisy.Step) -> None:
        """Make each step depend on the one before it."""
        for previous, step in zip(steps, steps[1:]):
            self.test_workflow.wf.add_dependency(step.name, previous.name)

    def reboot(self) -> None:
        """Stop and start the VM after its last step, then wait for the test again."""
        twf = self.test_workflow
        last_step = twf.get_last_step_for_vm(self.name)
        twf.counter += 1
        suffix = f"{self.name}-{twf.counter}"

        self._chain(
            last_step,
            twf.add_stop_step(suffix, self.name),
            twf.add_wait_stopped_step(suffix, self.name),
            twf.add_start_step(suffix, self.name),
            twf.add_wait_step(f"started-{suffix}", self.name),
        )

    def resize_disk_and_reboot(self, size_gb: int) -> None:
        """Grow the boot disk after the last step and reboot so the guest sees it."""
        twf = self.test_workflow
        last_step = twf.get_last_step_for_vm(self.name)
        twf.counter += 1
        suffix = f"{self.name}-{twf.counter}"

        resize_step = twf.add_resize_disk_step(suffix, self.name, size_gb)
        self._chain(last_step, resize_step)
        self.reboot()

    def resume(self) -> None:
        """Resume the VM once the guest has suspended itself.

        The guest writes the test-complete signal after it has been resumed,
        so the resume wait step replaces the initial wait as the last step.
        """
        twf = self.test_workflow
        last_step = twf.get_last_step_for_vm(self.name)
        twf.counter += 1
        suffix = f"{self.name}-{twf.counter}"

        wait_suspended = twf.add_wait_suspended_step(suffix, self.name)
        resume_step = twf.add_resume_step(suffix, self.name)
        wait_resumed = twf.add_wait_step(f"resumed-{suffix}", self.name)
        self._chain(wait_suspended, resume_step, wait_resumed)
        twf.wf.add_dependency(wait_resumed.name, last_step.name)

    def create_derivative_vm(self, name: str) -> "TestVM":
        """Boot a new VM from this VM's boot disk once the test on it is done."""
        twf = self.test_workflow
        last_step = twf.get_last_step_for_vm(self.name)
        twf.counter += 1
        suffix = f"{self.name}-{twf.counter}"
        boot_disk = self.name

        stop_step = twf.add_stop_step(suffix, self.name)
        wait_stopped = twf.add_wait_stopped_step(suffix, self.name)
        detach_step = twf.add_detach_disk_step(suffix, self.name, boot_disk)

        derivative_name = f"derivative-{name}"
        instance = daisy.Instance(
            name=derivative_name,
            machine_type=self.instance.machine_type,
            zone=self.instance.zone,
            metadata=dict(self.instance.metadata),
            scopes=list(self.instance.scopes),
            beta=self.instance.beta,
        )
        create_step, instance = twf.add_new_vm_step([daisy.Disk(name=boot_disk)], instance)
        wait_step = twf.add_wait_step(derivative_name, derivative_name)
        self._chain(last_step, stop_step, wait_stopped, detach_step, create_step, wait_step)

        derivative = TestVM(derivative_name, instance, twf)
        twf.test_vms.append(derivative)
        return derivative


class Network:
    """A network created by a test workflow."""

    def __init__(self, name: str, test_workflow: Any, network: daisy.Network) -> None:
        self.name = name
        self.test_workflow = test_workflow
        self.network = network

    def __repr__(self) -> str:
        return f"Network(name={self.name!r})"

    def create_subnetwork(self, name: str, ip_range: str) -> "Subnetwork":
        subnetwork = daisy.Subnetwork(name=name, network=self.name, ip_cidr_range=ip_range)
        self.test_workflow.append_create_subnetworks_step(subnetwork)
        return Subnetwork(name, self.test_workflow, subnetwork, self)

    def create_firewall_rule(
        self, name: str, protocol: str, ports: List[str], ranges: List[str]
    ) -> None:
        """Allow protocol on ports from source ranges."""
        allowed: Dict[str, Any] = {"IPProtocol": protocol}
        if ports:
            allowed["ports"] = list(ports)
        rule = daisy.FirewallRule(
            name=name, network=self.name, allowed=[allowed], source_ranges=list(ranges)
        )
        self.test_workflow.append_create_firewall_rules_step(rule)


class Subnetwork:
    """A subnetwork created by a test workflow."""

    def __init__(
        self,
        name: str,
        test_workflow: Any,
        subnetwork: daisy.Subnetwork,
        network: Network,
    ) -> None:
        self.name = name
        self.test_workflow = test_workflow
        self.subnetwork = subnetwork
        self.network = network

    def __repr__(self) -> str:
        return f"Subnetwork(name={self.name!r})"

    def add_secondary_range(self, range_name: str, ip_range: str) -> None:
        ranges = self.subnetwork.secondary_ip_ranges or []
        ranges.append({"rangeName": range_name, "ipCidrRange": ip_range})
        self.subnetwork.secondary_ip_ranges = ranges

    def set_region(self, region: str) -> None:
        self.subnetwork.region = region

    def set_purpose(self, purpose: str) -> None:
        self.subnetwork.purpose = purpose

    def set_role(self, role: str) -> None:
        self.subnetwork.role = role
