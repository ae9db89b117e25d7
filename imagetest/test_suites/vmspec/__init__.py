# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Changing the VM shape under an existing boot disk.

A source VM records its NICs, then its boot disk is moved to a derivative VM
with local SSDs and two custom networks, which must boot with working
networking.
"""

import random

from ... import daisy
from ...testworkflow import PD_BALANCED, TestWorkflow

NAME = "vmspec"

REGION = "us-central1"
# Zones and machine types in REGION with local SSD capacity.
ZONES = ["us-central1-a", "us-central1-b", "us-central1-c"]
MACHINE_TYPES = ["n1-standard-1", "n2-standard-2", "n2d-standard-2"]
LOCAL_SSD_PARAMS = {"diskSizeGb": 375, "diskType": "local-ssd"}


def test_setup(twf: TestWorkflow) -> None:
    if twf.image.architecture == "ARM64":
        twf.skip("vmspec not supported on ARM images")
        return
    if "ubuntu" in twf.image.name and "2204" in twf.image.name:
        twf.skip("vmspec not supported on ubuntu-2204")
        return

    network1 = twf.create_network("test-network", False)
    subnetwork1 = network1.create_subnetwork("test-subnetwork-1", "10.128.0.0/16")
    subnetwork1.set_region(REGION)
    network2 = twf.create_network("test-network-2", False)
    subnetwork2 = network2.create_subnetwork("test-subnetwork-2", "10.0.0.0/24")
    subnetwork2.set_region(REGION)

    # Spread concurrent runs over zones and machine types to avoid stockouts.
    zone = random.choice(ZONES)
    machine_type = random.choice(MACHINE_TYPES)

    disks = [daisy.Disk(name="source", type=PD_BALANCED, zone=zone)]
    source = twf.create_test_vm_multiple_disks(disks)
    source.force_machine_type(machine_type)
    source.force_zone(zone)
    source.run_tests("test_empty")

    derivative = source.create_derivative_vm("lssd")
    # Stay in the machine generation of the source VM.
    derivative.force_machine_type(machine_type)
    derivative.force_zone(zone)
    # Two local SSDs move the NICs to new PCIe slots.
    derivative.add_disk("SCRATCH", LOCAL_SSD_PARAMS)
    derivative.add_disk("SCRATCH", LOCAL_SSD_PARAMS)
    derivative.add_custom_network(network1, subnetwork1)
    derivative.add_custom_network(network2, subnetwork2)
    derivative.run_tests("test_pcie_changed|test_ping|test_metadata_server")
