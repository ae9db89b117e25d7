# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the metadata suite."""

import json
import logging
import time
import unittest
from pathlib import Path
from typing import List, Optional

from ...utils import metadata
from ...utils.system import (
    check_cmd_exists,
    is_cos,
    is_ubuntu,
    linux_only,
    read_os_release,
    run_command,
)

logger = logging.getLogger("imagetest.guest")

GUEST_AGENT_PACKAGE = "google-guest-agent"
DAEMON_PID_FILE = Path("/var/daemon_out.txt")
RESULT_ATTRIBUTE = ("testing", "result")
ZYPP_LOCKED = "System management is locked by the application"
SSH_KEYS_TIMEOUT = 120


def _script_result() -> str:
    try:
        return metadata.get_guest_attribute(*RESULT_ATTRIBUTE)
    except metadata.MetadataNotFoundError as error:
        raise AssertionError(f"failed to read script result key: {error}") from error


def _clear_script_result() -> None:
    metadata.put_guest_attribute(*RESULT_ATTRIBUTE, "")


def test_token_fetch():
    body = metadata.get_metadata("instance", "service-accounts", "default", "token")
    try:
        token = json.loads(body)
    except ValueError as error:
        raise AssertionError(f"token {body} has incorrect format") from error
    assert "access_token" in token, f"token {body} has incorrect format"


def test_metadata_response_headers():
    _, headers = metadata.get_metadata_with_headers("instance", "id")
    for key, value in headers.items():
        if key.lower() == "metadata-flavor":
            continue
        assert "google" not in value.lower(), (
            f"unexpected google header in metadata response: {key}: {value}"
        )


def test_get_metadata_using_ip():
    instance_id = metadata.get_metadata_by_ip("instance", "id")
    assert instance_id.strip(), "empty instance id from metadata server ip"


def _reinstall_commands(package: str) -> List[List[str]]:
    """Commands to try in order until one reinstalls package."""
    if check_cmd_exists("apt"):
        return [
            ["apt", "reinstall", "-y", package],
            ["apt", "install", "-y", "--reinstall", package],
        ]
    if check_cmd_exists("dnf"):
        repo = "--repo=google-compute-engine"
        return [
            ["dnf", "-y", "reinstall", package, repo],
            ["dnf", "-y", "upgrade", package, repo],
        ]
    if check_cmd_exists("yum"):
        repos = ["--disablerepo=*", "--enablerepo=google-compute-engine"]
        return [
            ["yum", "-y", "reinstall", package, *repos],
            ["yum", "-y", "upgrade", package, *repos],
        ]
    if check_cmd_exists("zypper"):
        cmd = ["zypper", "--non-interactive", "install", "--force", package]
        # Wait for a zypp lock held by another process.
        return [cmd, ["env", "ZYPP_LOCK_TIMEOUT=300", *cmd]]
    raise AssertionError(f"could not find a package manager to reinstall {package} with")


def _is_version_mismatch(package: str) -> bool:
    """Ubuntu built agent packages carry ubuntu in their version."""
    if not is_ubuntu(read_os_release().get("ID", "")) or not check_cmd_exists("dpkg"):
        return False
    proc = run_command(["dpkg", "-s", package], check=True)
    return not is_ubuntu(proc.stdout)


def reinstall_guest_agent() -> None:
    if _is_version_mismatch(GUEST_AGENT_PACKAGE):
        logger.info("skipping agent reinstall as a version mismatch is detected")
        return
    if check_cmd_exists("apt"):
        proc = run_command(["apt", "update", "-y"])
        if proc.returncode != 0:
            logger.info("could not prep to reinstall %s: %s", GUEST_AGENT_PACKAGE, proc.stderr)

    output: Optional[str] = None
    for cmd in _reinstall_commands(GUEST_AGENT_PACKAGE):
        proc = run_command(cmd)
        if proc.returncode == 0:
            return
        output = proc.stdout + proc.stderr
    if output and ZYPP_LOCKED in output:
        raise unittest.SkipTest(f"system management is locked, output: {output}")
    raise AssertionError(f"could not reinstall {GUEST_AGENT_PACKAGE}, output: {output}")


def _check_script_result(stage: str, success: bool) -> None:
    result = _script_result()
    assert (result == f"{stage}_success") == success, (
        f"{stage} script output expected to be success: {success}, got {result!r}"
    )
    if is_cos(metadata.get_image()):
        return
    _clear_script_result()


def test_shutdown_scripts():
    linux_only()
    result = _script_result()
    assert result == "shutdown_success", (
        f'shutdown script output expected "shutdown_success", got "{result}"'
    )
    image = metadata.get_image()
    if "sles" in image or "suse" in image:
        raise unittest.SkipTest(f"image {image} has known issues with metadata scripts on reinstall")

    _clear_script_result()
    reinstall_guest_agent()
    assert _script_result() != "shutdown_success", (
        "shutdown script executed after a reinstall of guest agent"
    )


def test_shutdown_scripts_failed():
    linux_only()
    assert metadata.get_attribute("shutdown-script") is not None, (
        "couldn't get shutdown-script from metadata"
    )


def test_shutdown_url_scripts():
    linux_only()
    result = _script_result()
    assert result == "shutdown_success", (
        f'shutdown script output expected "shutdown_success", got "{result}"'
    )


def test_startup_scripts():
    linux_only()
    _check_script_result("startup", True)
    if not is_cos(metadata.get_image()):
        reinstall_guest_agent()
        _check_script_result("startup", False)


def test_startup_scripts_failed():
    linux_only()
    assert metadata.get_attribute("startup-script") is not None, (
        "couldn't get startup-script from metadata"
    )


def test_daemon_scripts():
    linux_only()
    try:
        pid = DAEMON_PID_FILE.read_text(encoding="utf-8").strip()
    except OSError as error:
        raise AssertionError(f"failed to read daemon script pid file: {error}") from error
    proc = run_command(["ps", "-p", pid])
    assert proc.returncode == 0, (
        f'daemon process not running: "ps -p {pid}" failed, output was: {proc.stdout}'
    )


def _authorized_keys(user: str, timeout: float) -> Path:
    """Wait for the agent to create user and its authorized_keys file."""
    import pwd  # pylint: disable=import-outside-toplevel

    deadline = time.time() + timeout
    while True:
        try:
            path = Path(pwd.getpwnam(user).pw_dir) / ".ssh" / "authorized_keys"
        except KeyError:
            path = None
        if path is not None and path.exists():
            return path
        if time.time() > deadline:
            raise AssertionError(f"no authorized_keys for {user} within {timeout}s")
        time.sleep(5)


def test_ssh_keys_user():
    """The guest agent creates users listed in the ssh-keys attribute."""
    linux_only()
    keys = metadata.get_attribute("ssh-keys") or ""
    user, _, key = (keys.splitlines() or [""])[0].partition(":")
    assert user and key, f"unexpected ssh-keys metadata: {keys!r}"

    authorized_keys = _authorized_keys(user, SSH_KEYS_TIMEOUT)
    content = authorized_keys.read_text(encoding="utf-8")
    assert key.strip() in content, f"key for {user} missing from {authorized_keys}: {content!r}"


def test_custom_hostname():
    """hostname -f matches the custom hostname served by the metadata server."""
    linux_only()
    image = metadata.get_image()
    if is_cos(image) or any(distro in image for distro in ("sles", "suse", "ubuntu")):
        raise unittest.SkipTest(f"custom hostnames are not supported on {image}")

    expected = metadata.get_metadata("instance", "hostname").strip()
    hostname = run_command(["/bin/hostname", "-f"], check=True).stdout.strip()
    assert hostname == expected, f"hostname -f does not match metadata, expected {expected!r} got {hostname!r}"
