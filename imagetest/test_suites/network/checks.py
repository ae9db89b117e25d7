# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the network suite."""

import http.client
import http.server
import logging
import os
import time
import unittest
from pathlib import Path
from typing import List

from ...utils import metadata
from ...utils.system import check_cmd_exists, is_cos, linux_only, run_command
from . import PING_TARGET, PING_TARGET_IP

logger = logging.getLogger("imagetest.guest")

GCE_MTU = 1460
PING_PORT = 8080
PING_TIMEOUT = 600
PING_MARKER = Path("/var/ping-done")
BOOT_MARKER = Path("/var/boot-marker")
SYS_CLASS_NET = Path("/sys/class/net")
# Routes the guest agent installs for alias IPs use this protocol number.
GOOGLE_ROUTE_PROTO = "66"
ROUTE_SETTLE_SECONDS = 30
NTP_SERVERS = ["metadata.google.internal", "metadata", "169.254.169.254"]


def parse_google_routes(output: str) -> List[str]:
    """Destinations of `ip route list table local ...` lines."""
    routes = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2:
            routes.append(fields[1])
    return routes


def parse_ipv4_addresses(output: str) -> List[str]:
    """Addresses with prefix from `ip -o -4 addr show` output."""
    addresses = []
    for line in output.splitlines():
        fields = line.split()
        if "inet" in fields:
            addresses.append(fields[fields.index("inet") + 1])
    return addresses


def _interface_indexes() -> List[str]:
    body = metadata.get_metadata("instance", "network-interfaces") + "\n"
    return [line.strip("/") for line in body.splitlines() if line.strip("/")]


def _nic_metadata(index: str, key: str) -> str:
    return metadata.get_metadata("instance", "network-interfaces", index, key).strip()


def interface_by_mac(mac: str) -> str:
    for path in sorted(SYS_CLASS_NET.iterdir()):
        address = path / "address"
        if address.exists() and address.read_text(encoding="utf-8").strip().lower() == mac.lower():
            return path.name
    raise AssertionError(f"no interface has mac {mac}")


def _interface(index: str = "0") -> str:
    return interface_by_mac(_nic_metadata(index, "mac"))


def _skip_cos(reason: str) -> None:
    image = metadata.get_image()
    if is_cos(image):
        raise unittest.SkipTest(f"{reason} on {image}")


def _google_routes(interface: str) -> List[str]:
    # The guest agent adds alias routes some time after boot.
    time.sleep(ROUTE_SETTLE_SECONDS)
    proc = run_command(
        [
            "ip", "route", "list", "table", "local", "type", "local",
            "scope", "host", "dev", interface, "proto", GOOGLE_ROUTE_PROTO,
        ]
    )
    assert proc.returncode == 0, f"error listing google routes: {proc.stdout}{proc.stderr}"
    routes = parse_google_routes(proc.stdout)
    assert routes, f"no google routes found on {interface}"
    return routes


def _verify_alias() -> None:
    expected = metadata.get_metadata("instance", "network-interfaces", "0", "ip-aliases", "0").strip()
    routes = _google_routes(_interface())
    assert any(route in expected for route in routes), (
        f"alias ip {expected} does not exist, routes: {routes}"
    )


def test_alias():
    linux_only()
    _skip_cos("ip aliases are not supported")
    _verify_alias()


def test_alias_after_reboot():
    linux_only()
    _skip_cos("ip aliases are not supported")
    if not BOOT_MARKER.exists():
        BOOT_MARKER.touch()
        return
    _verify_alias()


def _ping(source: str, target: str) -> None:
    """Send "echo" from source to the target's ping server until it answers."""
    deadline = time.time() + PING_TIMEOUT
    while True:
        conn = http.client.HTTPConnection(target, PING_PORT, timeout=5, source_address=(source, 0))
        try:
            conn.request("GET", "/", body=b"echo")
            body = conn.getresponse().read()
            assert body == b"echo", f"unexpected response from {target}, got {body!r} want echo"
            return
        except OSError as error:
            if time.time() > deadline:
                raise AssertionError(f"failed to reach {target} from {source}: {error}") from error
            logger.debug("ping %s from %s failed: %r", target, source, error)
            time.sleep(1)
        finally:
            conn.close()


def test_send_ping():
    linux_only()
    primary = _nic_metadata("0", "ip")
    secondary = _nic_metadata("1", "ip")
    _ping(primary, metadata.get_real_name(PING_TARGET))
    if not is_cos(metadata.get_image()):
        _ping(secondary, PING_TARGET_IP)


class _EchoHandler(http.server.BaseHTTPRequestHandler):
    pings = 0

    def do_GET(self):  # pylint: disable=invalid-name
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length)
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)
        type(self).pings += 1

    def log_message(self, format, *args):  # pylint: disable=redefined-builtin
        logger.debug("ping server: " + format, *args)


def test_wait_for_ping():
    """Answer pings from the other VM until every network has been used."""
    linux_only()
    if PING_MARKER.exists():
        return
    want = 1 if is_cos(metadata.get_image()) else 2
    _EchoHandler.pings = 0
    server = http.server.HTTPServer(("", PING_PORT), _EchoHandler)
    server.timeout = PING_TIMEOUT
    try:
        while _EchoHandler.pings < want:
            server.handle_request()
    finally:
        server.server_close()
    PING_MARKER.touch()


def test_default_mtu():
    interface = _interface()
    mtu = int((SYS_CLASS_NET / interface / "mtu").read_text(encoding="utf-8"))
    assert mtu == GCE_MTU, f"expected MTU {GCE_MTU} on interface {interface}, got MTU {mtu}"


def _dhcp_configured() -> bool:
    if check_cmd_exists("networkctl"):
        proc = run_command(["networkctl", "status"])
        if proc.returncode == 0 and "DHCPV4" in proc.stdout.upper():
            return True
    if check_cmd_exists("nmcli"):
        proc = run_command(["nmcli", "device", "show"])
        if proc.returncode == 0 and "DHCP4.OPTION" in proc.stdout.upper():
            return True
    if check_cmd_exists("wicked"):
        proc = run_command(["wicked", "show", "all"])
        if proc.returncode == 0 and "dhcp" in proc.stdout.lower():
            return True
    return run_command(["pgrep", "-f", "dhclient|dhcpcd|dhcp"]).returncode == 0


def test_dhcp():
    linux_only()
    image = metadata.get_image()
    if any(debian in image for debian in ("debian-10", "debian-11", "debian-12")):
        raise unittest.SkipTest(f"dhcp check not supported on {image}")
    assert _dhcp_configured(), "no dhcp client configuration or process found"


def _ntp_service(image: str) -> str:
    if "debian-12" in image or "debian-13" in image:
        return "systemd-timesyncd"
    if any(name in image for name in ("debian-9", "ubuntu-pro-1604", "ubuntu-1604")):
        return "ntp"
    if "sles-12" in image:
        return "ntpd"
    return "chronyd"


def test_ntp():
    linux_only()
    if check_cmd_exists("chronyc"):
        cmd = ["chronyc", "-c", "sources"]
    elif check_cmd_exists("ntpq"):
        cmd = ["ntpq", "-np"]
    elif check_cmd_exists("timedatectl"):
        cmd = ["timedatectl", "show-timesync", "--property=FallbackNTPServers"]
    else:
        raise AssertionError("failed to find timedatectl chronyc or ntpq cmd")
    output = run_command(cmd, check=True).stdout
    assert any(server in output for server in NTP_SERVERS), f"could not find ntp server in {output!r}"

    service = _ntp_service(metadata.get_image())
    assert run_command(["systemctl", "is-active", service]).returncode == 0, (
        f"{service} service is not running"
    )


def test_static_ip():
    linux_only()
    for index in _interface_indexes():
        expected = _nic_metadata(index, "ip")
        interface = interface_by_mac(_nic_metadata(index, "mac"))
        proc = run_command(["ip", "-o", "-4", "addr", "show", "dev", interface], check=True)
        addresses = parse_ipv4_addresses(proc.stdout)
        logger.info("interface %s has addresses %s", interface, addresses)
        assert any(address.split("/")[0] == expected for address in addresses), (
            f"no address for interface {index} with ip {expected} was found"
        )


def test_gvnic():
    linux_only()
    interface = _interface()
    driver = os.path.basename(os.readlink(SYS_CLASS_NET / interface / "device" / "driver"))
    assert driver == "gve", f"interface {interface} uses driver {driver}, want gve"
