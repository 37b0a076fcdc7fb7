# src/snolab/bootstrap/host/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

RHEL_FAMILY = ("fedora", "rhel", "centos", "rocky", "almalinux")
DEBIAN_FAMILY = ("ubuntu", "debian")


@dataclass(frozen=True)
class TargetHost:
    """
    The virtualization host you will SSH into.
    """
    address: str                    # IP the hypervisor is reachable on
    username: str = "root"          # SSH login
    password: Optional[str] = None  # only used when explicitly supplied
    port: int = 22
    pkey_path: Optional[Path] = None

    @classmethod
    def from_cli(cls, address: str, username: Optional[str] = None, credential: Optional[str] = None) -> "TargetHost":
        # "none" on the command line means: keys only
        password = credential if credential and credential.lower() != "none" else None
        return cls(address=address, username=username or "root", password=password)

    @property
    def registry_name(self) -> str:
        return "sno-hypervisor-" + self.address.replace(".", "-")


@dataclass
class HostFacts:
    os_id: str = "unknown"
    os_version: str = "unknown"
    has_sudo: bool = False
    groups: List[str] = field(default_factory=list)

    @property
    def family(self) -> str:
        if self.os_id in RHEL_FAMILY:
            return "rhel"
        if self.os_id in DEBIAN_FAMILY:
            return "debian"
        return "unknown"


@dataclass
class BridgeState:
    bridge: str = "br0"
    physical_iface: Optional[str] = None
    network: str = "bridged"
    bridge_up: bool = False
    network_defined: bool = False

    @property
    def ready(self) -> bool:
        return self.bridge_up and self.network_defined


class CapabilityStatus(str, Enum):
    SATISFIED = "already-satisfied"
    REMEDIATED = "remediated"
    FAILED = "failed"
    MANUAL_ACTION = "manual-action-required"


@dataclass
class CapabilityResult:
    name: str
    status: CapabilityStatus
    detail: str = ""
    advisory: Optional[str] = None   # non-fatal follow-up (e.g. re-login)
    required: bool = True

    @property
    def ok(self) -> bool:
        return self.status in (CapabilityStatus.SATISFIED, CapabilityStatus.REMEDIATED)


@dataclass
class ConvergenceReport:
    facts: HostFacts
    results: List[CapabilityResult] = field(default_factory=list)
    bridge: BridgeState = field(default_factory=BridgeState)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results if r.required)

    @property
    def remediated(self) -> List[str]:
        return [r.name for r in self.results if r.status is CapabilityStatus.REMEDIATED]

    def failures(self) -> List[CapabilityResult]:
        return [r for r in self.results if not r.ok]
