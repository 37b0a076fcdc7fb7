# src/snolab/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    env: str          # provision/cleanup
    context: Optional[str]  # kcli host name

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


# ---------------------------------------------------------------------
# Host convergence
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class CapabilityChecked(BaseEvent):
    capability: str
    status: str
    detail: str = ""

@dataclass(frozen=True)
class ConvergenceFinished(BaseEvent):
    ok: bool
    remediated: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class HostRegistered(BaseEvent):
    name: str
    created: bool
    verified: bool


# ---------------------------------------------------------------------
# Planning & deployment lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class VipPlanComputed(BaseEvent):
    assignments: Dict[str, str]
    overridden: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class StalePurged(BaseEvent):
    name: str
    removed: List[str] = field(default_factory=list)

@dataclass(frozen=True)
class DeploymentLaunched(BaseEvent):
    name: str
    pid: Optional[int]
    vip: str
    log_path: str
    network: Optional[str] = None

@dataclass(frozen=True)
class DeploymentLaunchFailed(BaseEvent):
    name: str
    error: str

@dataclass(frozen=True)
class DeploymentFinished(BaseEvent):
    name: str
    status: str
    exit_code: Optional[int] = None

@dataclass(frozen=True)
class RemediationAttempted(BaseEvent):
    name: str
    result: str

@dataclass(frozen=True)
class DeploySummary(BaseEvent):
    succeeded: int
    failed: int


# ---------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ResourceRemoved(BaseEvent):
    kind: str
    name: str

@dataclass(frozen=True)
class CleanupSummary(BaseEvent):
    removed: int
    remaining: List[str] = field(default_factory=list)
