# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Internal L3 (passthrough) and L7 (proxy) load balancing.

Backends serve their instance name over HTTP. Clients build the load balancer
through the compute API and expect answers from both of their backends.
"""

from ... import daisy
from ...testworkflow import TestWorkflow

NAME = "loadbalancer"

NETWORK = "loadbalancer"
BACKEND_SUBNETWORK = "lb-backend-subnet"
PROXY_SUBNETWORK = "lb-proxy-subnet"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

L3_ILB_IP = "10.1.2.100"
L7_ILB_IP = "10.1.2.101"
# name: private IP
L3_BACKENDS = {"l3backend1": "10.1.2.10", "l3backend2": "10.1.2.20"}
L7_BACKENDS = {"l7backend1": "10.1.2.30", "l7backend2": "10.1.2.40"}
L3_CLIENT = ("l3client", "10.1.2.50")
L7_CLIENT = ("l7client", "10.1.2.60")
HEALTH_CHECK_RANGES = ["130.211.0.0/22", "35.191.0.0/16"]


def test_setup(twf: TestWorkflow) -> None:
    network = twf.create_network(NETWORK, False)
    proxy_subnetwork = network.create_subnetwork(PROXY_SUBNETWORK, "10.1.2.128/25")
    proxy_subnetwork.set_purpose("REGIONAL_MANAGED_PROXY")
    proxy_subnetwork.set_role("ACTIVE")
    subnetwork = network.create_subnetwork(BACKEND_SUBNETWORK, "10.1.2.0/25")

    network.create_firewall_rule("fw-allow-health-check", "tcp", [], HEALTH_CHECK_RANGES)
    network.create_firewall_rule("fw-lb-access", "tcp", [], ["10.1.2.0/25"])
    network.create_firewall_rule("fw-proxy-access", "tcp", [], ["10.1.2.128/25"])

    def add_vm(name: str, ip: str, tests: str):
        vm = twf.create_test_vm_multiple_disks([daisy.Disk(name=name)])
        vm.add_custom_network(network, subnetwork)
        vm.set_private_ip(network, ip)
        vm.run_tests(tests)
        return vm

    for backends, client, layer in ((L3_BACKENDS, L3_CLIENT, "l3"), (L7_BACKENDS, L7_CLIENT, "l7")):
        for name, ip in backends.items():
            add_vm(name, ip, f"test_{layer}_backend")
        add_vm(*client, f"test_{layer}_client").add_scope(CLOUD_PLATFORM_SCOPE)
