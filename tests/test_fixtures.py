# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Tests for the VM and network handles suites use."""

import pytest

from imagetest.testworkflow import TestWorkflow


@pytest.fixture
def twf():
    yield TestWorkflow("name", "projects/p/global/images/image")


def test_add_disk(twf):
    vm = twf.create_test_vm("vm")
    vm.add_disk("SCRATCH", {"diskType": "local-ssd"})

    assert len(vm.instance.disks) == 2
    scratch = vm.instance.disks[1]
    assert scratch.type == "SCRATCH"
    assert scratch.auto_delete is True
    assert scratch.initialize_params == {"diskType": "local-ssd"}


def test_alias_ip_ranges_need_a_network(twf):
    vm = twf.create_test_vm("vm")
    with pytest.raises(ValueError):
        vm.add_alias_ip_ranges("10.14.8.0/24", "secondary")


def test_custom_network_replaces_gvnic_default_interface(twf):
    vm = twf.create_test_vm("vm")
    network = twf.create_network("net", False)
    subnetwork = network.create_subnetwork("subnet", "192.168.0.0/24")
    vm.use_gvnic()
    with pytest.raises(ValueError):
        vm.add_alias_ip_ranges("10.14.8.0/24", "secondary")

    vm.add_custom_network(network, subnetwork)
    assert len(vm.instance.network_interfaces) == 1
    assert vm.instance.network_interfaces[0].to_dict() == {
        "network": "net",
        "subnetwork": "subnet",
        "nicType": "GVNIC",
        "accessConfigs": [{"type": "ONE_TO_ONE_NAT"}],
    }

    second = twf.create_network("second", True)
    vm.add_custom_network(second)
    assert [nic.network for nic in vm.instance.network_interfaces] == ["net", "second"]


def test_custom_network_needs_subnet_unless_auto(twf):
    vm = twf.create_test_vm("vm")
    custom = twf.create_network("custom", False)
    with pytest.raises(ValueError):
        vm.add_custom_network(custom)

    auto = twf.create_network("auto", True)
    vm.add_custom_network(auto)
    assert vm.instance.network_interfaces[0].network == "auto"
    assert vm.instance.network_interfaces[0].subnetwork is None


def test_subnetwork_settings(twf):
    network = twf.create_network("net", False)
    subnetwork = network.create_subnetwork("subnet", "192.168.0.0/24")
    assert subnetwork.subnetwork.secondary_ip_ranges is None

    subnetwork.add_secondary_range("secondary", "10.14.0.0/16")
    subnetwork.set_region("us-east1")
    subnetwork.set_purpose("REGIONAL_MANAGED_PROXY")
    subnetwork.set_role("ACTIVE")

    assert subnetwork.subnetwork.secondary_ip_ranges == [
        {"rangeName": "secondary", "ipCidrRange": "10.14.0.0/16"}
    ]
    assert subnetwork.subnetwork.to_dict()["region"] == "us-east1"
    assert subnetwork.subnetwork.purpose == "REGIONAL_MANAGED_PROXY"
    assert subnetwork.subnetwork.role == "ACTIVE"

    vm = twf.create_test_vm("vm")
    vm.add_custom_network(network, subnetwork)
    vm.add_alias_ip_ranges("10.14.8.0/24", "secondary")
    vm.set_private_ip(network, "192.168.0.5")
    interface = vm.instance.network_interfaces[0]
    assert interface.alias_ip_ranges == [
        {"ipCidrRange": "10.14.8.0/24", "subnetworkRangeName": "secondary"}
    ]
    assert interface.network_ip == "192.168.0.5"


def test_set_private_ip_on_unattached_network(twf):
    vm = twf.create_test_vm("vm")
    network = twf.create_network("net", True)
    with pytest.raises(ValueError):
        vm.set_private_ip(network, "10.0.0.2")


def test_add_user_appends_ssh_keys(twf):
    vm = twf.create_test_vm("vm")
    vm.add_user("alice", "ssh-rsa AAAA")
    vm.add_user("bob", "ssh-ed25519 BBBB")
    assert vm.instance.metadata["ssh-keys"] == "alice:ssh-rsa AAAA\nbob:ssh-ed25519 BBBB"


def test_forced_machine_type_and_zone_survive_finalize(twf, tmp_path):
    vm = twf.create_test_vm("vm")
    other = twf.create_test_vm("other")
    vm.force_machine_type("c3-standard-4")
    vm.force_zone("us-east1-b")

    twf.finalize("gs://bucket", tmp_path)
    assert vm.instance.machine_type == "c3-standard-4"
    assert vm.instance.zone == "us-east1-b"
    assert other.instance.machine_type == twf.machine_type.name


def test_use_gvnic(twf):
    vm = twf.create_test_vm("vm")
    vm.use_gvnic()
    assert vm.instance.network_interfaces[0].network == "default"
    assert vm.instance.network_interfaces[0].to_dict() == {"network": "default", "nicType": "GVNIC"}


def test_instance_settings(twf):
    vm = twf.create_test_vm("vm")
    vm.enable_secure_boot()
    vm.enable_confidential_instance({"confidentialInstanceType": "SEV"})
    vm.set_min_cpu_platform("AMD Milan")
    vm.set_scheduling(onHostMaintenance="MIGRATE")
    vm.set_scheduling(automaticRestart=True)
    vm.add_scope("https://www.googleapis.com/auth/cloud-platform")
    vm.add_scope("https://www.googleapis.com/auth/cloud-platform")
    vm.run_tests("test_boot$")
    vm.set_hostname("host.example.com")

    instance = vm.instance.to_dict()
    assert instance["shieldedInstanceConfig"] == {"enableSecureBoot": True}
    assert instance["confidentialInstanceConfig"] == {"confidentialInstanceType": "SEV"}
    assert instance["minCpuPlatform"] == "AMD Milan"
    assert instance["scheduling"] == {"onHostMaintenance": "MIGRATE", "automaticRestart": True}
    assert instance["Scopes"] == ["https://www.googleapis.com/auth/cloud-platform"]
    assert instance["metadata"]["_test_run"] == "test_boot$"
    assert instance["hostname"] == "host.example.com"


def test_shutdown_script_url_is_shipped_as_source(twf):
    vm = twf.create_test_vm("vm")
    vm.set_shutdown_script_url("echo bye")
    assert twf.local_sources == {"shutdown-script-vm": "echo bye"}
    assert vm.instance.metadata["shutdown-script-url"] == "${SOURCESPATH}/shutdown-script-vm"
