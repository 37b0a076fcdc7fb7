# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/bootstrap/host/bridge.py

from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional, Sequence

from snolab.bootstrap.template_renderer import TemplateRenderer
from snolab.errors import ProvisionError
from snolab.utils.ssh_runner import SSHRunner, shq

from . import libvirt
from .libvirt import VIRSH
from .models import BridgeState

log = logging.getLogger("snolab")

CONVENTIONAL_IFACES = ("eno3", "eno1", "eth0", "ens3")
BRIDGE_DNS = "8.8.8.8 8.8.4.4"


def parse_addr_table(output: str) -> dict[str, str]:
    """
    `ip -4 -o addr show` -> {address: interface}.
    """
    table: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.split()
        # 2: eno1    inet 10.8.125.20/24 brd ...
        if len(parts) >= 4 and parts[2] == "inet":
            table[parts[3].split("/", 1)[0]] = parts[1]
    return table


def parse_route_dev(output: str) -> Optional[str]:
    m = re.search(r"\bdev\s+(\S+)", output)
    return m.group(1) if m else None


def parse_route_gateway(output: str, iface: str) -> Optional[str]:
    for line in output.splitlines():
        m = re.search(r"default via (\S+) dev (\S+)", line)
        if m and m.group(2) == iface:
            return m.group(1)
    return None


def link_is_up(output: str) -> bool:
    m = re.search(r"<([^>]*)>", output)
    return bool(m) and "UP" in m.group(1).split(",")


class BridgedNetwork:
    """
    Converges a host bridge plus a libvirt network of forward mode "bridge"
    on top of it, so guests sit directly on the hypervisor's segment.

    Bridge construction is algorithmic: find the interface carrying the
    host address, build the bridge with that address, enslave the interface,
    then define the libvirt network.
    """

    def __init__(
        self,
        runner: SSHRunner,
        address: str,
        *,
        sudo: bool,
        renderer: Optional[TemplateRenderer] = None,
        bridge: str = "br0",
        network: str = "bridged",
        candidates: Sequence[str] = CONVENTIONAL_IFACES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.address = address
        self.sudo = sudo
        self.renderer = renderer or TemplateRenderer()
        self.candidates = candidates
        self.sleep = sleep
        self.state = BridgeState(bridge=bridge, network=network)

    # ------------------ detection ------------------

    def detect_interface(self) -> Optional[str]:
        table = parse_addr_table(self.runner.output("ip -4 -o addr show"))
        iface = table.get(self.address)
        if iface == self.state.bridge:
            # address already moved to the bridge: report the enslaved port
            ports = self.runner.output(f"ip -o link show master {self.state.bridge}")
            m = re.match(r"\d+:\s+([^:@\s]+)", ports)
            return m.group(1) if m else None
        if iface:
            return iface

        iface = parse_route_dev(self.runner.output("ip route get 8.8.8.8"))
        if iface:
            log.info("[bridge] using default-route interface %s", iface)
            return iface

        for candidate in self.candidates:
            if self.runner.probe(f"ip link show {candidate}"):
                log.info("[bridge] using conventional interface %s", candidate)
                return candidate
        return None

    def _network_info(self):
        return libvirt.info(self.runner, "net", self.state.network, sudo=self.sudo)

    def refresh(self) -> BridgeState:
        self.state.physical_iface = self.detect_interface()
        self.state.bridge_up = link_is_up(self.runner.output(f"ip -o link show {self.state.bridge}"))
        net = self._network_info()
        self.state.network_defined = bool(net) and net.get("active") == "yes"
        return self.state

    def detect(self) -> bool:
        return self.refresh().ready

    # ------------------ remediation ------------------

    def remediate(self) -> None:
        if not self.state.bridge_up:
            self._build_bridge()
        if not self.state.bridge_up and not link_is_up(
            self.runner.output(f"ip -o link show {self.state.bridge}")
        ):
            # never put a libvirt network on top of a bridge that is not up
            raise ProvisionError(f"bridge {self.state.bridge} did not come up")
        if not self.state.network_defined:
            self._define_network()

    def _sh(self, cmd: str, check: bool = True) -> int:
        _, rc = self.runner.execute(cmd, sudo=True, check=check)
        return rc

    def _build_bridge(self) -> None:
        iface = self.state.physical_iface
        if not iface:
            raise ProvisionError(
                "could not determine the physical interface; configure the bridge manually"
            )
        br = self.state.bridge
        log.info("[bridge] creating %s on top of %s", br, iface)

        if self.runner.probe("command -v nmcli"):
            connections = self.runner.output("nmcli -t -f NAME,DEVICE connection show")
            names = {ln.split(":", 1)[0] for ln in connections.splitlines() if ln}
            gateway = parse_route_gateway(self.runner.output("ip route show default"), iface)

            if br not in names:
                cmd = (
                    f"nmcli connection add type bridge con-name {br} ifname {br} "
                    f"ipv4.method manual ipv4.addresses {self.address}/24 "
                    f"ipv4.dns {shq(BRIDGE_DNS)}"
                )
                if gateway:
                    cmd += f" ipv4.gateway {gateway}"
                self._sh(cmd)
            if f"{br}-slave" not in names:
                self._sh(f"nmcli connection add type bridge-slave con-name {br}-slave ifname {iface} master {br}")

            phys_conn = next(
                (ln.split(":", 1)[0] for ln in connections.splitlines()
                 if ln.endswith(f":{iface}") and not ln.startswith(f"{br}")),
                None,
            )
            # one command: the session may drop while the address moves
            swap = f"nmcli connection up {br}"
            if phys_conn:
                swap += f" && (nmcli connection down {shq(phys_conn)} || true)"
            self._sh(swap, check=False)
        else:
            if not self.runner.probe("command -v brctl"):
                raise ProvisionError("neither nmcli nor brctl available to build the bridge")
            self._sh(f"brctl addbr {br}", check=False)
            self._sh(f"ip addr add {self.address}/24 dev {br}", check=False)
            self._sh(f"brctl addif {br} {iface}", check=False)
            self._sh(f"ip link set {br} up")
            self._sh(f"ip link set {iface} up")

        self.sleep(3)

    def _define_network(self) -> None:
        net = self.state.network
        if self._network_info() is None:
            xml = self.renderer.render(
                "bridged-network.xml.j2",
                {"network_name": net, "bridge_name": self.state.bridge},
            )
            tmp = f"/tmp/{net}-network.xml"
            self.runner.put_text(xml, tmp)
            try:
                self._sh(f"{VIRSH} net-define {tmp}")
            finally:
                self.runner.execute(f"rm -f {tmp}", check=False)
        self._sh(f"{VIRSH} net-start {net}", check=False)
        self._sh(f"{VIRSH} net-autostart {net}", check=False)
