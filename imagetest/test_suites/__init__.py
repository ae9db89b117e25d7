# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Test suites.

Each suite is a package with a NAME, a test_setup(twf) that shapes the
workflow on the host and a checks module whose test_* functions run in the
guest.
"""
