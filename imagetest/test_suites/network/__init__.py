# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Network configuration: multi-NIC, alias IPs, static IPs, DHCP, MTU and NTP."""

import re

from ... import daisy
from ...testworkflow import SHOULD_REBOOT_DURING_TEST, TestWorkflow
from ...utils import has_feature
from ...utils.system import is_cos

NAME = "network"

PING_SOURCE = "ping1"
PING_TARGET = "ping2"
PING_SOURCE_IP = "192.168.0.2"
PING_TARGET_IP = "192.168.0.3"
ALIAS_RANGE_NAME = "secondary-range"
ALIAS_IP_RANGE = "10.14.8.0/24"

# Guest routing for alias IPs is not managed on these images.
NO_ALIAS_IMAGES = ["sles-15", "opensuse-leap", "ubuntu-1604", "ubuntu-pro-1604"]
EL7_RE = re.compile(r"(centos|rhel)-7")


def _supports_aliases(twf: TestWorkflow) -> bool:
    name = twf.image.name
    if has_feature(twf.image, "WINDOWS") or is_cos(name):
        return False
    return not any(image in name for image in NO_ALIAS_IMAGES)


def test_setup(twf: TestWorkflow) -> None:
    network1 = twf.create_network("network-1", False)
    subnetwork1 = network1.create_subnetwork("subnetwork-1", "10.128.0.0/20")
    subnetwork1.add_secondary_range(ALIAS_RANGE_NAME, "10.14.0.0/16")
    network1.create_firewall_rule("allow-tcp-net1", "tcp", [], ["10.128.0.0/20"])

    network2 = twf.create_network("network-2", False)
    subnetwork2 = network2.create_subnetwork("subnetwork-2", "192.168.0.0/16")
    network2.create_firewall_rule("allow-tcp-net2", "tcp", [], ["192.168.0.0/16"])

    source = twf.create_test_vm(PING_SOURCE)
    source.add_custom_network(network1, subnetwork1)
    source.add_custom_network(network2, subnetwork2)
    source.set_private_ip(network2, PING_SOURCE_IP)
    source.run_tests("test_send_ping|test_dhcp|test_default_mtu|test_ntp")

    multinic_tests = "test_static_ip|test_wait_for_ping"
    if _supports_aliases(twf):
        multinic_tests += "|test_alias"

    # The target reboots so alias IPs are checked again after a restart.
    instance = daisy.Instance(metadata={SHOULD_REBOOT_DURING_TEST: "true"})
    target = twf.create_test_vm_multiple_disks([daisy.Disk(name=PING_TARGET)], instance)
    target.add_metadata("enable-guest-attributes", "TRUE")
    target.add_custom_network(network1, subnetwork1)
    target.add_custom_network(network2, subnetwork2)
    target.set_private_ip(network2, PING_TARGET_IP)
    target.add_alias_ip_ranges(ALIAS_IP_RANGE, ALIAS_RANGE_NAME)
    target.reboot()

    el7 = EL7_RE.search(twf.image.family or "") is not None
    if has_feature(twf.image, "GVNIC") and not el7:
        multinic_tests += "|test_gvnic"
        target.use_gvnic()
    target.run_tests(multinic_tests)

    if el7:
        gvnic = twf.create_test_vm("gvnicel7")
        gvnic.use_gvnic()
        gvnic.run_tests("test_gvnic")
