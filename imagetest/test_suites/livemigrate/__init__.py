# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Standard live migration. Confidential VM live migration lives in cvm."""

from ...testworkflow import TestWorkflow

NAME = "livemigrate"

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def test_setup(twf: TestWorkflow) -> None:
    vm = twf.create_test_vm("livemigrate")
    vm.add_scope(CLOUD_PLATFORM_SCOPE)
    vm.set_scheduling(onHostMaintenance="MIGRATE")
    vm.run_tests("test_live_migrate")
