# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the vmspec suite."""

import http.client
import logging
from pathlib import Path
from typing import List, Tuple

from ...utils.system import linux_only, run_command

logger = logging.getLogger("imagetest.guest")

# Survives the move of the boot disk to the derivative VM.
INTERFACE_FILE = Path("/var/tmp/interface_names.txt")
SYS_CLASS_NET = Path("/sys/class/net")
PING_HOST = "www.google.com"
METADATA_HOST = "metadata.google.internal"


def list_nics(sys_class_net: Path = SYS_CLASS_NET) -> List[Tuple[str, str]]:
    """(name, mac) of every interface backed by a device, sorted by name."""
    nics = []
    for path in sorted(sys_class_net.iterdir()):
        if not (path / "device").exists():
            continue
        nics.append((path.name, (path / "address").read_text(encoding="utf-8").strip()))
    return nics


def _primary_nic() -> str:
    nics = list_nics()
    assert nics, "no network interfaces found"
    return nics[0][0]


def _ipv4_address(interface: str) -> str:
    proc = run_command(["ip", "-o", "-4", "addr", "show", "dev", interface], check=True)
    fields = proc.stdout.split()
    assert "inet" in fields, f"interface {interface} has no ipv4 address: {proc.stdout!r}"
    return fields[fields.index("inet") + 1].split("/")[0]


def test_empty():
    """Record the source VM's NICs for the derivative VM to compare against."""
    linux_only()
    macs = [mac for _, mac in list_nics()]
    INTERFACE_FILE.write_text("\n".join(macs), encoding="utf-8")


def test_pcie_changed():
    linux_only()
    try:
        old = INTERFACE_FILE.read_text(encoding="utf-8").splitlines()
    except OSError as error:
        raise AssertionError(f"error reading interface names from {INTERFACE_FILE}: {error}") from error
    current = list_nics()
    logger.info("nics before %s, now %s", old, current)
    assert len(current) != len(old), "failed to change vmspec: same number of nics"


def test_ping():
    linux_only()
    interface = _primary_nic()
    proc = run_command(["ping", "-c", "5", "-w", "5", PING_HOST, "-I", interface])
    assert proc.returncode == 0, f"error pinging {PING_HOST} on nic {interface}: {proc.stdout}{proc.stderr}"


def test_metadata_server():
    """The metadata server answers over the primary NIC."""
    linux_only()
    interface = _primary_nic()
    source = _ipv4_address(interface)
    conn = http.client.HTTPConnection(METADATA_HOST, 80, timeout=5, source_address=(source, 0))
    try:
        conn.request("GET", "/", headers={"Metadata-Flavor": "Google"})
        status = conn.getresponse().status
    except OSError as error:
        raise AssertionError(f"error connecting to metadata server on primary nic {interface}: {error}") from error
    finally:
        conn.close()
    assert status == 200, f"metadata server returned {status} on primary nic {interface}"
