# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Compute Engine image integration tests.

Test suites describe the VMs they need through a TestWorkflow, which is
rendered to a daisy workflow and executed by the daisy CLI. Each VM runs the
guest wrapper on boot, which executes the suite's checks and uploads the
results for junit reporting.
"""

__version__ = "0.1.0"
