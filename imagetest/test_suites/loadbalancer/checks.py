# --------------------------------------------------------------------------
# Copyright (c) The cloud-image-tests Authors. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest checks of the loadbalancer suite."""

import http.server
import logging
import time
import urllib.error
import urllib.request
from typing import Dict, Iterable, List, Set

from ...utils import compute_api, metadata
from ...utils.system import linux_only
from . import (
    BACKEND_SUBNETWORK,
    L3_BACKENDS,
    L3_ILB_IP,
    L7_BACKENDS,
    L7_ILB_IP,
    NETWORK,
)

logger = logging.getLogger("imagetest.guest")

HTTP_PORT = 80
STOP_PATH = "/stop"
SERVE_TIMEOUT = 1800
BALANCE_TIMEOUT = 900


class _NameHandler(http.server.BaseHTTPRequestHandler):
    """Answer every request with the instance name. /stop ends serve_name."""

    name = ""
    stopped = False

    def do_GET(self):  # pylint: disable=invalid-name
        if self.path == STOP_PATH:
            type(self).stopped = True
        body = self.name.encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):  # pylint: disable=redefined-builtin
        logger.debug("backend: " + format, *args)


def serve_name(name: str, port: int = HTTP_PORT, timeout: float = SERVE_TIMEOUT) -> None:
    """Serve name over HTTP until a client requests STOP_PATH."""
    _NameHandler.name = name
    _NameHandler.stopped = False
    server = http.server.HTTPServer(("", port), _NameHandler)
    server.timeout = 5
    deadline = time.time() + timeout
    try:
        while not _NameHandler.stopped:
            if time.time() > deadline:
                raise AssertionError(f"no stop request from the client within {timeout}s")
            server.handle_request()
    finally:
        server.server_close()


def _get(url: str) -> str:
    with urllib.request.urlopen(url, timeout=5) as response:
        return response.read().decode("utf-8")


def expect_backends(ip: str, names: Iterable[str], timeout: float = BALANCE_TIMEOUT) -> Set[str]:
    """Query the load balancer at ip until every backend in names has answered."""
    want = set(names)
    seen: Set[str] = set()
    deadline = time.time() + timeout
    while not want <= seen:
        if time.time() > deadline:
            raise AssertionError(f"load balancer {ip} only reached {sorted(seen)}, want {sorted(want)}")
        try:
            seen.add(_get(f"http://{ip}/"))
        except OSError as error:
            logger.debug("load balancer %s not ready: %r", ip, error)
            time.sleep(5)
    return seen


def _stop_backends(ips: Iterable[str]) -> None:
    for ip in ips:
        try:
            _get(f"http://{ip}{STOP_PATH}")
        except OSError as error:
            logger.warning("failed to stop backend %s: %r", ip, error)


class LoadBalancer:
    """Resources of one internal load balancer, deleted in reverse creation order."""

    def __init__(self, prefix: str) -> None:
        self.project, self.zone = metadata.get_project_zone()
        self.region = self.zone.rsplit("-", 1)[0]
        self.prefix = prefix
        self.urls: List[str] = []
        self.network = compute_api.resource_url(
            self.project, f"global/networks/{metadata.get_real_name(NETWORK)}"
        )
        self.subnetwork = compute_api.resource_url(
            self.project,
            f"regions/{self.region}/subnetworks/{metadata.get_real_name(BACKEND_SUBNETWORK)}",
        )

    def name(self, kind: str) -> str:
        return metadata.get_real_name(f"{self.prefix}-{kind}")

    def create(self, collection: str, resource: Dict) -> str:
        url = compute_api.insert(self.project, collection, resource)
        self.urls.append(url)
        return url

    def regional(self, collection: str, resource: Dict) -> str:
        return self.create(f"regions/{self.region}/{collection}", resource)

    def instance_group(self, backends: Iterable[str]) -> str:
        group = self.create(
            f"zones/{self.zone}/instanceGroups", {"name": self.name("ig"), "network": self.network}
        )
        instances = [
            {
                "instance": compute_api.resource_url(
                    self.project, f"zones/{self.zone}/instances/{metadata.get_real_name(backend)}"
                )
            }
            for backend in backends
        ]
        compute_api.post(f"{group}/addInstances", {"instances": instances})
        return group

    def health_check(self) -> str:
        return self.regional(
            "healthChecks",
            {"name": self.name("hc"), "type": "HTTP", "httpHealthCheck": {"port": HTTP_PORT}},
        )

    def delete_all(self) -> None:
        """Delete what was created. Leftovers are removed by workflow cleanup."""
        while self.urls:
            url = self.urls.pop()
            try:
                compute_api.delete(url)
            except (OSError, RuntimeError) as error:
                logger.warning("failed to delete %s: %r", url, error)


def build_l3(lb: LoadBalancer) -> None:
    group = lb.instance_group(L3_BACKENDS)
    health_check = lb.health_check()
    backend_service = lb.regional(
        "backendServices",
        {
            "name": lb.name("bs"),
            "loadBalancingScheme": "INTERNAL",
            "protocol": "TCP",
            "healthChecks": [health_check],
            "backends": [{"group": group, "balancingMode": "CONNECTION"}],
        },
    )
    lb.regional(
        "forwardingRules",
        {
            "name": lb.name("fr"),
            "IPAddress": L3_ILB_IP,
            "IPProtocol": "TCP",
            "ports": [str(HTTP_PORT)],
            "loadBalancingScheme": "INTERNAL",
            "backendService": backend_service,
            "network": lb.network,
            "subnetwork": lb.subnetwork,
        },
    )


def build_l7(lb: LoadBalancer) -> None:
    group = lb.instance_group(L7_BACKENDS)
    health_check = lb.health_check()
    backend_service = lb.regional(
        "backendServices",
        {
            "name": lb.name("bs"),
            "loadBalancingScheme": "INTERNAL_MANAGED",
            "protocol": "HTTP",
            "healthChecks": [health_check],
            "backends": [{"group": group, "balancingMode": "UTILIZATION", "capacityScaler": 1.0}],
        },
    )
    url_map = lb.regional("urlMaps", {"name": lb.name("um"), "defaultService": backend_service})
    proxy = lb.regional("targetHttpProxies", {"name": lb.name("proxy"), "urlMap": url_map})
    lb.regional(
        "forwardingRules",
        {
            "name": lb.name("fr"),
            "IPAddress": L7_ILB_IP,
            "IPProtocol": "TCP",
            "portRange": str(HTTP_PORT),
            "loadBalancingScheme": "INTERNAL_MANAGED",
            "target": proxy,
            "network": lb.network,
            "subnetwork": lb.subnetwork,
            "networkTier": "PREMIUM",
        },
    )


def _run_client(prefix: str, ip: str, backends: Dict[str, str], build) -> None:
    lb = LoadBalancer(prefix)
    try:
        build(lb)
        expect_backends(ip, [metadata.get_real_name(name) for name in backends])
    finally:
        _stop_backends(backends.values())
        lb.delete_all()


def test_l3_backend():
    linux_only()
    serve_name(metadata.get_instance_name())


def test_l7_backend():
    linux_only()
    serve_name(metadata.get_instance_name())


def test_l3_client():
    linux_only()
    _run_client("l3", L3_ILB_IP, L3_BACKENDS, build_l3)


def test_l7_client():
    linux_only()
    _run_client("l7", L7_ILB_IP, L7_BACKENDS, build_l7)
