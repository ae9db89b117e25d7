# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest environment and standard packages are installed."""

from ...testworkflow import TestWorkflow

NAME = "packagevalidation"


def test_setup(twf: TestWorkflow) -> None:
    vm = twf.create_test_vm("installedpackages")
    vm.run_tests("test_standard_programs|test_guest_packages")
