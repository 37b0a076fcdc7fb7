# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/bootstrap/host/prerequisites.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from snolab.bootstrap.template_renderer import TemplateRenderer
from snolab.errors import AuthError, HostConnectionError, PrivilegeError, ProvisionError, RemoteExecError
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import CapabilityChecked, ConvergenceFinished
from snolab.utils.ssh_runner import SSHRunner, shq

from . import libvirt
from .bridge import BridgedNetwork
from .libvirt import VIRSH
from .models import (
    CapabilityResult,
    CapabilityStatus,
    ConvergenceReport,
    HostFacts,
    TargetHost,
)

log = logging.getLogger("snolab")

COREOS_INSTALLER_URL = "https://github.com/coreos/coreos-installer/releases/latest/download/coreos-installer"
NONINTERACTIVE_PATH = "PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

LIBVIRT_PACKAGES = {
    "rhel": ("libvirt", "libvirt-daemon-driver-qemu", "qemu-kvm", "tar"),
    "debian": ("libvirt-daemon-system", "libvirt-clients", "qemu-kvm", "tar"),
}

LIBVIRTD_ACTIVE = (
    "systemctl is-active --quiet libvirtd"
    " || systemctl is-active --quiet virtqemud"
    " || systemctl is-active --quiet libvirt-bin"
)


@dataclass
class Capability:
    """
    One reconciler: detect -> remediate -> re-detect.
    remediate=None means detection only (nothing we may fix).
    """
    name: str
    detect: Callable[[], bool]
    remediate: Optional[Callable[[], Optional[str]]]
    manual_hint: str = ""
    required: bool = True
    advisory: Optional[str] = None


class HostPrerequisites:
    """
    Converges the hypervisor into a ready libvirt/KVM environment:
      - libvirt + qemu-kvm packages, libvirtd running
      - login in qemu/libvirt groups (effective on next login)
      - default storage pool, default NAT network
      - br0 + libvirt "bridged" network for VIP reachability
      - coreos-installer and podman for ISO generation

    Re-running on a converged host only detects; nothing is changed.
    Without sudo nothing is changed either: missing pieces are reported as
    manual actions.
    """

    def __init__(
        self,
        runner: SSHRunner,
        host: TargetHost,
        *,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[dict] = None,
        renderer: Optional[TemplateRenderer] = None,
        pool_name: str = "default",
        pool_path: str = "/var/lib/libvirt/images",
        require_bridge: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.host = host
        self.bus = bus or EventBus([])
        self.event_ctx = event_ctx or {"ts": "", "run_id": "", "env": "provision", "context": None}
        self.renderer = renderer or TemplateRenderer()
        self.pool_name = pool_name
        self.pool_path = pool_path
        self.require_bridge = require_bridge
        self.sleep = sleep
        self.facts = HostFacts()
        self.bridge: Optional[BridgedNetwork] = None

    # ------------------ facts ------------------

    def gather_facts(self) -> HostFacts:
        raw = self.runner.output(
            "if [ -f /etc/os-release ]; then . /etc/os-release && echo \"$ID|$VERSION_ID\"; else echo 'unknown|unknown'; fi"
        )
        os_id, _, os_version = (raw or "unknown|unknown").partition("|")
        has_sudo = self.host.username == "root" or self.runner.probe("sudo -n true")
        groups = self.runner.output("id -nG").split()

        self.facts = HostFacts(
            os_id=os_id.strip() or "unknown",
            os_version=os_version.strip() or "unknown",
            has_sudo=has_sudo,
            groups=groups,
        )
        log.info("[host] %s: OS %s %s, sudo=%s", self.host.address, self.facts.os_id, self.facts.os_version, has_sudo)
        if not has_sudo:
            log.warning("[host] %s has no passwordless sudo; missing prerequisites will only be reported", self.host.username)
        return self.facts

    # ------------------ helpers ------------------

    def _sh(self, cmd: str) -> str:
        out, _ = self.runner.execute(cmd, sudo=True)
        return out

    def _virsh_sudo(self) -> bool:
        return self.facts.has_sudo

    def _has(self, binary: str) -> bool:
        return self.runner.probe(f"command -v {binary} >/dev/null 2>&1")

    def install_packages(self, *packages: str) -> None:
        pkgs = " ".join(packages)
        family = self.facts.family
        if family == "rhel":
            try:
                self._sh(f"dnf install -y {pkgs}")
            except RemoteExecError:
                self._sh(f"yum install -y {pkgs}")
        elif family == "debian":
            self._sh(f"apt-get update && DEBIAN_FRONTEND=noninteractive apt-get install -y {pkgs}")
        else:
            raise ProvisionError(f"unsupported OS '{self.facts.os_id}'; install {pkgs} manually")

    def _append_line(self, line: str, remote_path: str) -> None:
        self._sh(f"touch {remote_path}")
        self._sh(f"grep -qxF {shq(line)} {remote_path} || echo {shq(line)} >> {remote_path}")

    # ------------------ reconcile ------------------

    def reconcile(self, cap: Capability) -> CapabilityResult:
        if cap.detect():
            return CapabilityResult(cap.name, CapabilityStatus.SATISFIED, "present", required=cap.required)

        if cap.remediate is None:
            return CapabilityResult(
                cap.name, CapabilityStatus.FAILED, "not detected", advisory=cap.advisory, required=cap.required
            )

        if not self.facts.has_sudo:
            err = PrivilegeError(cap.name, cap.manual_hint or None)
            return CapabilityResult(cap.name, CapabilityStatus.MANUAL_ACTION, str(err), required=cap.required)

        log.info("[host] %s missing, remediating...", cap.name)
        detail = ""
        advisory = None
        try:
            advisory = cap.remediate()
        except (HostConnectionError, AuthError):
            raise
        except ProvisionError as exc:
            detail = str(exc)
            log.warning("[host] remediation of %s failed: %s", cap.name, exc)

        # never trust the remediation's exit status; look again
        if cap.detect():
            return CapabilityResult(
                cap.name, CapabilityStatus.REMEDIATED, "remediated", advisory=advisory or cap.advisory, required=cap.required
            )
        return CapabilityResult(
            cap.name,
            CapabilityStatus.FAILED,
            detail or "still missing after remediation",
            advisory=cap.manual_hint or None,
            required=cap.required,
        )

    def converge(self) -> ConvergenceReport:
        self.gather_facts()
        report = ConvergenceReport(facts=self.facts)

        for cap in self.capabilities():
            result = self.reconcile(cap)
            report.results.append(result)
            self.bus.emit(CapabilityChecked(
                capability=result.name, status=result.status.value, detail=result.detail, **self.event_ctx
            ))
            _log_result(result)

        if self.bridge is not None:
            report.bridge = self.bridge.state

        self.bus.emit(ConvergenceFinished(ok=report.ok, remediated=report.remediated, **self.event_ctx))
        return report

    # ------------------ capabilities ------------------

    def capabilities(self) -> List[Capability]:
        self.bridge = BridgedNetwork(
            self.runner,
            self.host.address,
            sudo=self._virsh_sudo(),
            renderer=self.renderer,
            sleep=self.sleep,
        )
        return [
            Capability(
                "libvirt",
                detect=lambda: self._has("virsh"),
                remediate=lambda: self.install_packages(*LIBVIRT_PACKAGES.get(self.facts.family, ("libvirt",))),
                manual_hint="install libvirt and qemu-kvm",
            ),
            Capability(
                "qemu-kvm",
                detect=lambda: self._has("qemu-system-x86_64") or self._has("qemu-kvm")
                or self.runner.probe("test -x /usr/libexec/qemu-kvm"),
                remediate=lambda: self.install_packages("qemu-kvm"),
                manual_hint="install qemu-kvm",
            ),
            Capability(
                "libvirtd",
                detect=lambda: self.runner.probe(LIBVIRTD_ACTIVE),
                remediate=self._start_libvirtd,
                manual_hint="sudo systemctl enable --now libvirtd",
            ),
            Capability(
                "user-groups",
                detect=self._groups_ok,
                remediate=self._add_groups,
                manual_hint=f"sudo usermod -aG qemu,libvirt {self.host.username}",
                required=False,
            ),
            Capability(
                "storage-pool",
                detect=self._pool_ok,
                remediate=self._ensure_pool,
                manual_hint=f"kcli create pool -p {self.pool_path} {self.pool_name}",
            ),
            Capability(
                "bridge-utils",
                detect=lambda: self._has("nmcli") or self._has("brctl"),
                remediate=lambda: self.install_packages("bridge-utils"),
                manual_hint="install NetworkManager or bridge-utils",
                required=self.require_bridge,
            ),
            Capability(
                "bridged-network",
                detect=self.bridge.detect,
                remediate=self.bridge.remediate,
                manual_hint="create br0 on the host interface and a libvirt network 'bridged' (forward mode=bridge)",
                required=self.require_bridge,
            ),
            Capability(
                "default-network",
                detect=self._default_net_ok,
                remediate=self._ensure_default_net,
                manual_hint="kcli create network -c 192.168.122.0/24 default",
            ),
            Capability(
                "cpu-virtualization",
                detect=lambda: self.runner.probe("grep -Eq 'vmx|svm' /proc/cpuinfo"),
                remediate=None,
                required=False,
                advisory="CPU virtualization flags not found (may be nested virtualization)",
            ),
            Capability(
                "coreos-installer",
                detect=lambda: self._has("coreos-installer"),
                remediate=self._install_coreos_installer,
                manual_hint="download from https://github.com/coreos/coreos-installer/releases",
            ),
            Capability(
                "podman",
                detect=lambda: self._has("podman"),
                remediate=lambda: self.install_packages("podman"),
                manual_hint="install podman",
            ),
            Capability(
                "noninteractive-path",
                detect=lambda: self.runner.probe("grep -q '^PATH=' /etc/environment"),
                remediate=lambda: self._append_line(NONINTERACTIVE_PATH, "/etc/environment"),
                manual_hint=f"echo '{NONINTERACTIVE_PATH}' | sudo tee -a /etc/environment",
                required=False,
            ),
        ]

    # ------------------ remediations ------------------

    def _start_libvirtd(self) -> None:
        for unit in ("libvirtd", "virtqemud", "libvirt-bin"):
            _, rc = self.runner.execute(f"systemctl enable --now {unit}", sudo=True, check=False)
            if rc == 0:
                break
        self.sleep(2)

    def _groups_ok(self) -> bool:
        if self.host.username == "root":
            return True
        groups = self.runner.output(f"id -nG {self.host.username}").split()
        return "qemu" in groups and "libvirt" in groups

    def _add_groups(self) -> str:
        groups = self.runner.output(f"id -nG {self.host.username}").split()
        for group in ("qemu", "libvirt"):
            if group not in groups:
                self._sh(f"usermod -aG {group} {self.host.username}")
        return "group membership takes effect on next login (or run: newgrp libvirt)"

    def _pool_ok(self) -> bool:
        pool = libvirt.info(self.runner, "pool", self.pool_name, sudo=self._virsh_sudo())
        return bool(pool) and pool.get("state") in ("running", "active")

    def _ensure_pool(self) -> Optional[str]:
        advisory = None
        name, path = self.pool_name, self.pool_path
        if libvirt.info(self.runner, "pool", name, sudo=True) is None:
            self._sh(f"mkdir -p {path}")
            if self.host.username != "root":
                _, rc = self.runner.execute(f"setfacl -m u:{self.host.username}:rwx {path}", sudo=True, check=False)
                if rc != 0:
                    advisory = f"could not grant {self.host.username} rwx on {path}; takes effect once fixed and re-logged in"
            self._sh(f"{VIRSH} pool-define-as {name} dir - - - - {path}")
            self.runner.execute(f"{VIRSH} pool-build {name}", sudo=True, check=False)
        self.runner.execute(f"{VIRSH} pool-start {name}", sudo=True, check=False)
        self.runner.execute(f"{VIRSH} pool-autostart {name}", sudo=True, check=False)
        return advisory

    def _default_net_ok(self) -> bool:
        net = libvirt.info(self.runner, "net", "default", sudo=self._virsh_sudo())
        return bool(net) and net.get("active") == "yes"

    def _ensure_default_net(self) -> None:
        if libvirt.info(self.runner, "net", "default", sudo=True) is None:
            xml = self.renderer.render(
                "default-network.xml.j2",
                {
                    "network_name": "default",
                    "bridge_name": "virbr0",
                    "gateway": "192.168.122.1",
                    "netmask": "255.255.255.0",
                    "dhcp_start": "192.168.122.2",
                    "dhcp_end": "192.168.122.254",
                },
            )
            tmp = "/tmp/default-network.xml"
            self.runner.put_text(xml, tmp)
            try:
                self._sh(f"{VIRSH} net-define {tmp}")
            finally:
                self.runner.execute(f"rm -f {tmp}", check=False)
        self.runner.execute(f"{VIRSH} net-start default", sudo=True, check=False)
        self.runner.execute(f"{VIRSH} net-autostart default", sudo=True, check=False)

    def _install_coreos_installer(self) -> None:
        if self.facts.family == "rhel":
            try:
                self.install_packages("coreos-installer")
                return
            except RemoteExecError:
                log.info("[host] coreos-installer not in repos, downloading from GitHub...")
        self._sh(
            f"(curl -fsSL -o /tmp/coreos-installer {COREOS_INSTALLER_URL}"
            f" || wget -q -O /tmp/coreos-installer {COREOS_INSTALLER_URL})"
            " && mv /tmp/coreos-installer /usr/local/bin/coreos-installer"
            " && chmod +x /usr/local/bin/coreos-installer"
        )


def _log_result(result: CapabilityResult) -> None:
    if result.status is CapabilityStatus.SATISFIED:
        log.info("[host] %-20s ok", result.name)
    elif result.status is CapabilityStatus.REMEDIATED:
        log.info("[host] %-20s remediated", result.name)
    elif result.required:
        log.error("[host] %-20s %s: %s", result.name, result.status.value, result.detail)
    else:
        log.warning("[host] %-20s %s: %s", result.name, result.status.value, result.detail)
    if result.advisory:
        log.warning("[host] %-20s %s", result.name, result.advisory)
