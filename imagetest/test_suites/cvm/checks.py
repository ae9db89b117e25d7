# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the cvm suite.

Only kernel-visible enablement is checked, attestation quotes are not.
"""

import logging
from typing import List

from ...utils.system import linux_only, run_command
from ..livemigrate.checks import migrate_and_verify

logger = logging.getLogger("imagetest.guest")

SEV_MESSAGES = [
    "AMD Secure Encrypted Virtualization (SEV) active",
    "AMD Memory Encryption Features active: SEV",
    "Memory Encryption Features active: AMD SEV",
]
SEV_SNP_MESSAGES = [
    "SEV: SNP guest platform device initialized",
    "Memory Encryption Features active: SEV SEV-ES SEV-SNP",
    "Memory Encryption Features active: AMD SEV SEV-ES SEV-SNP",
]
TDX_MESSAGES = [
    "Memory Encryption Features active: TDX",
    "Memory Encryption Features active: Intel TDX",
    "Intel TDX",
    "tdx: Guest detected",
]


def search_dmesg(messages: List[str]) -> None:
    output = run_command(["dmesg"], check=True).stdout
    for message in messages:
        if message in output:
            logger.info("found %r in dmesg", message)
            return
    raise AssertionError(f"want dmesg to contain one of {messages}, found none")


def test_sev_enabled():
    linux_only()
    search_dmesg(SEV_MESSAGES)


def test_sev_snp_enabled():
    linux_only()
    search_dmesg(SEV_SNP_MESSAGES)


def test_tdx_enabled():
    linux_only()
    search_dmesg(TDX_MESSAGES)


def test_live_migrate():
    linux_only()
    migrate_and_verify()
