# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/deploy/cleanup.py

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from snolab.bootstrap.host import libvirt
from snolab.errors import KcliError, ProvisionError
from snolab.kcli.cli_runner import KcliRunner
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import CleanupSummary, ResourceRemoved, StalePurged
from snolab.utils.execution import ExecutionContext
from snolab.utils.ssh_runner import SSHRunner, shq

from .models import CleanupReport

log = logging.getLogger("snolab")


@dataclass
class Inventory:
    """Everything on the host and locally that belongs to matching instances."""
    kubes: List[str] = field(default_factory=list)
    vms: List[str] = field(default_factory=list)
    volumes: List[str] = field(default_factory=list)
    images: List[str] = field(default_factory=list)        # remote paths
    remote_tmp: List[str] = field(default_factory=list)    # remote paths
    local_dirs: List[Path] = field(default_factory=list)
    local_files: List[Path] = field(default_factory=list)

    def labels(self) -> List[str]:
        return (
            [f"kube:{n}" for n in self.kubes]
            + [f"vm:{n}" for n in self.vms]
            + [f"volume:{n}" for n in self.volumes]
            + [f"image:{p}" for p in self.images]
            + [f"remote-tmp:{p}" for p in self.remote_tmp]
            + [f"local-dir:{p}" for p in self.local_dirs]
            + [f"local-file:{p}" for p in self.local_files]
        )

    def __bool__(self) -> bool:
        return bool(self.labels())


class CleanupOrchestrator:
    """
    Reverses everything a provisioning run leaves behind for instances named
    <prefix>-NN: kube clusters, VMs, pool volumes and boot images on the
    host, local cluster state and scratch files.

    Enumerate first. When nothing matches, nothing destructive runs.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        kcli: KcliRunner,
        runner: Optional[SSHRunner] = None,
        *,
        registered: bool = True,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[dict] = None,
    ):
        self.ctx = ctx
        self.kcli = kcli
        self.runner = runner
        self.registered = registered
        self.bus = bus or EventBus([])
        self.event_ctx = event_ctx or {"ts": "", "run_id": "", "env": "cleanup", "context": ctx.registry_name}
        self._sudo: Optional[bool] = None
        self._owner = re.compile(rf"^({re.escape(ctx.name_prefix)}-\d+)(?:[-_.].*)?$")

    # ------------------ helpers ------------------

    @property
    def sudo(self) -> bool:
        if self._sudo is None:
            self._sudo = bool(self.runner) and (self.runner.is_root or self.runner.probe("sudo -n true"))
        return self._sudo

    def owner_of(self, filename: str) -> Optional[str]:
        m = self._owner.match(filename)
        return m.group(1) if m else None

    def _remote_ls(self, pattern: str) -> List[str]:
        if self.runner is None:
            return []
        out, rc = self.runner.execute(f"ls -1d {pattern} 2>/dev/null", sudo=self.sudo, check=False)
        if rc != 0:
            return []
        return [ln.strip() for ln in out.splitlines() if ln.strip()]

    # ------------------ enumeration ------------------

    def _list_vms(self) -> List[str]:
        if self.registered:
            try:
                return self.kcli.list_vms()
            except KcliError as exc:
                log.debug("[cleanup] kcli list vm failed, asking virsh: %s", exc)
        if self.runner is None:
            return []
        return libvirt.list_domains(self.runner, sudo=self.sudo)

    def enumerate(self, match: Callable[[str], bool]) -> Inventory:
        inv = Inventory()

        try:
            inv.kubes = [n for n in self.kcli.list_kubes() if match(n)]
        except KcliError as exc:
            log.debug("[cleanup] kcli get kube failed: %s", exc)
        inv.vms = [n for n in self._list_vms() if match(n)]

        def owned(fname: str) -> bool:
            owner = self.owner_of(fname)
            return owner is not None and match(owner)

        if self.runner is not None:
            inv.volumes = [
                v for v in libvirt.list_volumes(self.runner, self.ctx.pool_name, sudo=self.sudo) if owned(v)
            ]
            pool_dir = self.ctx.pool_path.rstrip("/")
            for path in self._remote_ls(f"{pool_dir}/{self.ctx.name_prefix}-*"):
                fname = path.rsplit("/", 1)[-1]
                if owned(fname) and fname not in inv.volumes and fname.endswith((".iso", ".ign")):
                    inv.images.append(path)
            inv.remote_tmp = [
                p for p in self._remote_ls(f"/tmp/{self.ctx.name_prefix}-*")
                if owned(p.rsplit("/", 1)[-1])
            ]

        clusters = self.ctx.clusters_dir
        if clusters.is_dir():
            for child in sorted(clusters.iterdir()):
                if child.is_dir() and match(child.name):
                    inv.local_dirs.append(child)
                elif child.is_file() and child.suffix == ".ign" and owned(child.name):
                    inv.local_files.append(child)

        scratch = self.ctx.scratch_root
        if scratch.is_dir():
            for path in sorted(scratch.glob(f"kcli-{self.ctx.name_prefix}-*")):
                if owned(path.name[len("kcli-"):]):
                    inv.local_files.append(path)
        return inv

    # ------------------ removal ------------------

    def _removed(self, kind: str, name: str, removed: List[str]) -> None:
        removed.append(f"{kind}:{name}")
        self.bus.emit(ResourceRemoved(kind=kind, name=str(name), **self.event_ctx))

    def delete(self, inv: Inventory) -> List[str]:
        removed: List[str] = []
        if self.ctx.dry_run:
            for label in inv.labels():
                log.info("[cleanup] DRY-RUN: would remove %s", label)
            return removed

        for name in inv.kubes:
            try:
                self.kcli.delete_kube(name)
                self._removed("kube", name, removed)
            except KcliError as exc:
                log.warning("[cleanup] could not delete kube %s: %s", name, exc)

        for name in inv.vms:
            if self._delete_vm(name):
                self._removed("vm", name, removed)

        for vol in inv.volumes:
            try:
                self.runner.execute(
                    f"{libvirt.VIRSH} vol-delete {shq(vol)} --pool {shq(self.ctx.pool_name)}", sudo=self.sudo
                )
                self._removed("volume", vol, removed)
            except ProvisionError as exc:
                log.warning("[cleanup] could not delete volume %s: %s", vol, exc)

        for path in inv.images + inv.remote_tmp:
            try:
                self.runner.execute(f"rm -rf {shq(path)}", sudo=self.sudo)
                self._removed("remote-file", path, removed)
            except ProvisionError as exc:
                log.warning("[cleanup] could not remove %s: %s", path, exc)

        for d in inv.local_dirs:
            shutil.rmtree(d, ignore_errors=True)
            if d.exists():
                log.warning("[cleanup] could not remove %s", d)
            else:
                self._removed("local-dir", d, removed)

        for f in inv.local_files:
            try:
                f.unlink(missing_ok=True)
            except OSError as exc:
                log.warning("[cleanup] could not remove %s: %s", f, exc)
                continue
            self._removed("local-file", f, removed)

        return removed

    def _delete_vm(self, name: str) -> bool:
        if self.registered:
            try:
                self.kcli.delete_vm(name)
                return True
            except KcliError as exc:
                log.debug("[cleanup] kcli delete vm %s failed, using virsh: %s", name, exc)
        if self.runner is None:
            log.warning("[cleanup] could not delete vm %s", name)
            return False
        try:
            libvirt.destroy_domain(self.runner, name, sudo=self.sudo)
            return True
        except ProvisionError as exc:
            log.warning("[cleanup] could not delete vm %s: %s", name, exc)
            return False

    # ------------------ entry points ------------------

    def _matches_any(self, name: str) -> bool:
        return bool(self.ctx.name_pattern.match(name))

    def run(self) -> CleanupReport:
        log.info("[cleanup] enumerating %s-* resources on %s", self.ctx.name_prefix, self.ctx.host.address)
        inv = self.enumerate(self._matches_any)

        shared = self.ctx.shared_ignition()
        if inv and shared.exists():
            inv.local_files.append(shared)

        report = CleanupReport(found=inv.labels())
        if not inv:
            log.info("[cleanup] nothing to clean")
            self.bus.emit(CleanupSummary(removed=0, remaining=[], **self.event_ctx))
            return report

        for label in report.found:
            log.info("[cleanup] found %s", label)
        report.removed = self.delete(inv)
        report.remaining = self.enumerate(self._matches_any).labels()

        if report.remaining:
            log.warning("[cleanup] %d resource(s) resisted removal:", len(report.remaining))
            for label in report.remaining:
                log.warning("  - %s", label)
        else:
            log.info("[cleanup] removed %d resource(s)", len(report.removed))
        self.bus.emit(CleanupSummary(removed=len(report.removed), remaining=report.remaining, **self.event_ctx))
        return report

    def purge(self, name: str) -> List[str]:
        inv = self.enumerate(lambda n: n == name)
        if not inv:
            return []
        log.info("[purge] removing stale state of %s: %s", name, ", ".join(inv.labels()))
        removed = self.delete(inv)
        self.bus.emit(StalePurged(name=name, removed=removed, **self.event_ctx))
        return removed

    def still_present(self, name: str) -> List[str]:
        """
        Everything owned by name that survived a purge. The shared iso.ign
        is never listed; it belongs to no single instance.
        """
        return self.enumerate(lambda n: n == name).labels()


def purge_instance(
    name: str,
    ctx: ExecutionContext,
    kcli: KcliRunner,
    runner: Optional[SSHRunner] = None,
    **kwargs,
) -> List[str]:
    return CleanupOrchestrator(ctx, kcli, runner, **kwargs).purge(name)
