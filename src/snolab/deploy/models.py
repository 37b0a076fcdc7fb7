# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/deploy/models.py

from __future__ import annotations

import ipaddress
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from snolab.errors import ProvisionError, VipPlanError


@dataclass(frozen=True)
class VipAssignment:
    ordinal: int
    name: str
    vip: str
    overridden: bool = False
    # base + (ordinal - 1), whatever the final vip is
    computed: Optional[str] = None

    @property
    def auto_vip(self) -> str:
        return self.computed or self.vip


@dataclass
class VipPlan:
    assignments: List[VipAssignment] = field(default_factory=list)

    def __iter__(self):
        return iter(self.assignments)

    def __len__(self) -> int:
        return len(self.assignments)

    def vip_for(self, name: str) -> Optional[str]:
        for a in self.assignments:
            if a.name == name:
                return a.vip
        return None

    def as_dict(self) -> dict[str, str]:
        return {a.name: a.vip for a in self.assignments}

    def validate(self, host_address: str, require_same_segment: bool = False) -> None:
        seen: dict[str, str] = {}
        for a in self.assignments:
            try:
                ipaddress.IPv4Address(a.vip)
            except ValueError as exc:
                raise VipPlanError(f"{a.name}: invalid VIP {a.vip!r}") from exc
            if a.vip in seen:
                raise VipPlanError(f"{a.name} and {seen[a.vip]} share VIP {a.vip}")
            if a.vip == host_address:
                raise VipPlanError(f"{a.name}: VIP {a.vip} is the hypervisor's own address")
            seen[a.vip] = a.name

        if require_same_segment:
            segment = ipaddress.IPv4Network(f"{host_address}/24", strict=False)
            outside = [a.name for a in self.assignments if ipaddress.IPv4Address(a.vip) not in segment]
            if outside:
                raise VipPlanError(f"VIPs outside {segment}: {', '.join(outside)}")


@dataclass(frozen=True)
class ClusterInstance:
    name: str
    vip: str
    memory_mb: int = 16384
    cpu_count: int = 8
    disk_gb: int = 120
    os_channel: str = "stable"
    domain_suffix: str = "local"
    network: Optional[str] = None

    def hosts_line(self) -> str:
        d = f"{self.name}.{self.domain_suffix}"
        return f"{self.vip} api.{d} console-openshift-console.apps.{d} oauth-openshift.apps.{d}"


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class DeploymentJob:
    instance: ClusterInstance
    log_path: Path
    pid_path: Path
    exit_path: Path
    vip_path: Path
    launched_at: float
    process: Optional[subprocess.Popen] = None
    pid: Optional[int] = None
    network: Optional[str] = None
    launch_error: Optional[str] = None   # set when the job never started

    @property
    def name(self) -> str:
        return self.instance.name

    @property
    def launched(self) -> bool:
        return self.launch_error is None


@dataclass
class JobOutcome:
    job: DeploymentJob
    status: JobStatus
    exit_code: Optional[int] = None
    reason: str = ""
    remediation: Optional[str] = None    # created | manual
    error: Optional[ProvisionError] = None
    ready: Optional[bool] = None

    @property
    def name(self) -> str:
        return self.job.name


@dataclass
class DeploymentReport:
    outcomes: List[JobOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.status is JobStatus.SUCCEEDED]

    @property
    def failed(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if o.status is not JobStatus.SUCCEEDED]

    def get(self, name: str) -> Optional[JobOutcome]:
        return next((o for o in self.outcomes if o.name == name), None)


@dataclass
class CleanupReport:
    found: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    remaining: List[str] = field(default_factory=list)

    @property
    def nothing_to_clean(self) -> bool:
        return not self.found
