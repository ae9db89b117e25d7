# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Metadata server access and metadata scripts."""

from ... import daisy
from ...testworkflow import SHOULD_REBOOT_DURING_TEST, TestWorkflow
from ...utils import has_feature

NAME = "metadata"

# Kept below the 256KiB metadata limit, the script runner's output scanner
# cannot handle more.
METADATA_MAX_LENGTH = 32768

GUEST_ATTRIBUTE_URL = (
    "http://metadata.google.internal/computeMetadata/v1/instance/guest-attributes"
)

STARTUP_SCRIPT = f"""#!/bin/bash
curl -X PUT --data "startup_success" -H "Metadata-Flavor: Google" \\
  {GUEST_ATTRIBUTE_URL}/testing/result
"""

SHUTDOWN_SCRIPT = f"""#!/bin/bash
curl -X PUT --data "shutdown_success" -H "Metadata-Flavor: Google" \\
  {GUEST_ATTRIBUTE_URL}/testing/result
"""

SSH_USER = "test-user"
# Only written to authorized_keys, never used to log in.
SSH_PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIKa7rKvCx1o2q3uXbqUqzVZ0pVbZqZ0QmY9yq3kDqK7e test-user"
CUSTOM_HOSTNAME = "customhostname.custom.domain"

DAEMON_SCRIPT = """#!/bin/bash
nohup sleep 3600 > /dev/null 2>&1 &
echo $! > /var/daemon_out.txt
"""


def _rebooting_vm(twf: TestWorkflow, name: str):
    """VM whose first boot signals separately because it reboots mid-test."""
    instance = daisy.Instance(metadata={SHOULD_REBOOT_DURING_TEST: "true"})
    vm = twf.create_test_vm_multiple_disks([daisy.Disk(name=name)], instance)
    vm.add_metadata("enable-guest-attributes", "TRUE")
    vm.reboot()
    return vm


def _scripted_vm(twf: TestWorkflow, name: str):
    vm = twf.create_test_vm(name)
    vm.add_metadata("enable-guest-attributes", "TRUE")
    return vm


def test_setup(twf: TestWorkflow) -> None:
    mds = twf.create_test_vm("mdscommunication")

    shutdown = _rebooting_vm(twf, "shutdownscripts")
    shutdown_failed = _rebooting_vm(twf, "shutdownscriptsfailed")
    shutdown_url = _rebooting_vm(twf, "shutdownurlscripts")

    startup = _scripted_vm(twf, "startupscripts")
    startup_failed = _scripted_vm(twf, "startupscriptsfailed")
    daemon = _scripted_vm(twf, "daemonscripts")
    sshkeys = twf.create_test_vm("sshkeys")
    sshkeys.add_user(SSH_USER, SSH_PUBLIC_KEY)
    sshkeys.add_metadata("enable-oslogin", "false")

    shutdown.set_shutdown_script(SHUTDOWN_SCRIPT)
    shutdown_failed.set_shutdown_script("a" * METADATA_MAX_LENGTH)
    shutdown_url.set_shutdown_script_url(SHUTDOWN_SCRIPT)
    startup.set_startup_script(STARTUP_SCRIPT)
    startup_failed.set_startup_script("a" * METADATA_MAX_LENGTH)
    daemon.set_startup_script(DAEMON_SCRIPT)

    tests = "test_token_fetch|test_get_metadata_using_ip"
    if not twf.is_compute_staging():
        # Staging metadata servers add extra headers.
        tests += "|test_metadata_response_headers"
    mds.run_tests(tests)
    shutdown.run_tests("test_shutdown_scripts$")
    shutdown_failed.run_tests("test_shutdown_scripts_failed")
    shutdown_url.run_tests("test_shutdown_url_scripts")
    startup.run_tests("test_startup_scripts$")
    startup_failed.run_tests("test_startup_scripts_failed")
    daemon.run_tests("test_daemon_scripts")
    sshkeys.run_tests("test_ssh_keys_user")

    # Custom hostnames are not implemented on Windows guests.
    if not has_feature(twf.image, "WINDOWS"):
        hostname = twf.create_test_vm("customhostname")
        hostname.set_hostname(CUSTOM_HOSTNAME)
        hostname.run_tests("test_custom_hostname")
