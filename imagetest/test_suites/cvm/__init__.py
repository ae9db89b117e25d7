# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Confidential computing: SEV, SEV-SNP and TDX enablement."""

from typing import Optional

from ... import daisy
from ...fixtures import TestVM
from ...testworkflow import PD_BALANCED, TestWorkflow
from ...utils import has_feature

NAME = "cvm"

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
# SEV-SNP and TDX are not available in every region.
CONFIDENTIAL_ZONE = "us-central1-a"
CONFIDENTIAL_REGION = "us-central1"
VM_CPUS = 2


def _confidential_vm(
    twf: TestWorkflow, name: str, kind: str, machine_type: str, platform: str, zone: Optional[str] = None
) -> TestVM:
    disk = daisy.Disk(name=name, type=PD_BALANCED, zone=zone)
    vm = twf.create_test_vm_from_instance_beta(daisy.Instance(), [disk])
    vm.force_machine_type(machine_type)
    if zone:
        vm.force_zone(zone)
    vm.set_min_cpu_platform(platform)
    vm.set_scheduling(onHostMaintenance="TERMINATE")
    vm.enable_confidential_instance(
        {"confidentialInstanceType": kind, "enableConfidentialCompute": True}
    )
    return vm


def _add_sev(twf: TestWorkflow) -> None:
    vm = _confidential_vm(twf, "sev", "SEV", "n2d-standard-2", "AMD Milan")
    tests = "test_sev_enabled"
    if has_feature(twf.image, "SEV_LIVE_MIGRATABLE_V2"):
        tests += "|test_live_migrate"
        vm.add_scope(CLOUD_PLATFORM_SCOPE)
        vm.set_scheduling(onHostMaintenance="MIGRATE")
    vm.run_tests(tests)


def _add_zonal(twf: TestWorkflow, name: str, kind: str, machine_type: str, platform: str, tests: str) -> None:
    vm = _confidential_vm(twf, name, kind, machine_type, platform, CONFIDENTIAL_ZONE)
    metric = machine_type.split("-", 1)[0].upper() + "_CPUS"
    twf.wait_for_vm_quota(daisy.QuotaAvailable(metric=metric, units=VM_CPUS, region=CONFIDENTIAL_REGION))
    vm.run_tests(tests)


def test_setup(twf: TestWorkflow) -> None:
    for feature in twf.image.guest_os_features:
        if feature == "SEV_CAPABLE":
            _add_sev(twf)
        elif feature == "SEV_SNP_CAPABLE":
            _add_zonal(twf, "sevsnp", "SEV_SNP", "n2d-standard-2", "AMD Milan", "test_sev_snp_enabled")
        elif feature == "TDX_CAPABLE":
            _add_zonal(twf, "tdx", "TDX", "c3-standard-2", "Intel Sapphire Rapids", "test_tdx_enabled")
