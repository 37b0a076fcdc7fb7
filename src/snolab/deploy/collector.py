# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/deploy/collector.py

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import Callable, List, Optional

from snolab.bootstrap.host import libvirt
from snolab.config.models import Settings
from snolab.errors import CapacityOrEnvironmentError, KcliError, ProvisionError
from snolab.kcli.cli_runner import KcliRunner
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import DeploySummary, DeploymentFinished, RemediationAttempted
from snolab.utils.execution import ExecutionContext
from snolab.utils.ssh_runner import SSHRunner, shq

from .models import DeploymentJob, DeploymentReport, JobOutcome, JobStatus

log = logging.getLogger("snolab")

# remote and local clocks are not synchronised
CLOCK_SKEW_SECONDS = 120


def read_exit_marker(path: Path) -> Optional[int]:
    try:
        return int(path.read_text().strip())
    except (OSError, ValueError):
        return None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def tail(path: Path, lines: int = 5) -> List[str]:
    try:
        return path.read_text(errors="replace").splitlines()[-lines:]
    except OSError:
        return []


class OutcomeCollector:
    """
    Fan-in for the detached installs: wait for every job in launch order,
    classify it by its exit marker, then try to rescue failed ones whose
    boot image made it to the host.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        settings: Settings,
        kcli: KcliRunner,
        runner: Optional[SSHRunner] = None,
        *,
        sudo: bool = True,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
        is_alive: Callable[[int], bool] = pid_alive,
        clock: Callable[[], float] = time.monotonic,
        poll_seconds: float = 10.0,
    ):
        self.ctx = ctx
        self.settings = settings
        self.kcli = kcli
        self.runner = runner
        self.sudo = sudo
        self.bus = bus or EventBus([])
        self.event_ctx = event_ctx or {"ts": "", "run_id": "", "env": "provision", "context": ctx.registry_name}
        self.sleep = sleep
        self.is_alive = is_alive
        self.clock = clock
        self.poll_seconds = poll_seconds

    # ------------------ waiting ------------------

    def _wait(self, job: DeploymentJob) -> None:
        if job.process is not None:
            job.process.wait()
            return
        if job.pid is None:
            return
        while not job.exit_path.exists() and self.is_alive(job.pid):
            self.sleep(self.poll_seconds)

    def classify(self, job: DeploymentJob) -> JobOutcome:
        if not job.launched:
            err = CapacityOrEnvironmentError(job.launch_error)
            return JobOutcome(job, JobStatus.FAILED, reason=f"not launched: {job.launch_error}", error=err)

        code = read_exit_marker(job.exit_path)
        if code == 0:
            return JobOutcome(job, JobStatus.SUCCEEDED, exit_code=0)
        if code is None:
            reason = "exit status unknown"
        else:
            reason = f"kcli exited with status {code}"
        err = CapacityOrEnvironmentError(f"{job.name}: {reason} (see {job.log_path})")
        return JobOutcome(job, JobStatus.FAILED, exit_code=code, reason=reason, error=err)

    def collect(self, jobs: List[DeploymentJob], *, wait_ready: bool = False) -> DeploymentReport:
        report = DeploymentReport()

        for job in jobs:
            if job.launched:
                log.info("[collect] waiting for %s (pid %s)...", job.name, job.pid)
                self._wait(job)
            outcome = self.classify(job)
            report.outcomes.append(outcome)

            if outcome.status is JobStatus.SUCCEEDED:
                log.info("[collect] %s: succeeded", job.name)
            else:
                log.error("[collect] %s: %s", job.name, outcome.reason)
                for line in tail(job.log_path):
                    log.error("[collect]   | %s", line)
            self.bus.emit(DeploymentFinished(
                name=job.name, status=outcome.status.value, exit_code=outcome.exit_code, **self.event_ctx
            ))

        self.remediate(report)
        if wait_ready:
            self.wait_ready(report)

        self.bus.emit(DeploySummary(
            succeeded=len(report.succeeded), failed=len(report.failed), **self.event_ctx
        ))
        return report

    # ------------------ remediation ------------------

    def _vm_names(self) -> List[str]:
        try:
            return self.kcli.list_vms()
        except KcliError:
            if self.runner is None:
                return []
            return libvirt.list_domains(self.runner, sudo=self.sudo)

    def _image_mtime(self, path: str) -> Optional[int]:
        if self.runner is None:
            return None
        out = self.runner.output(f"stat -c %Y {shq(path)}", sudo=self.sudo)
        try:
            return int(out)
        except ValueError:
            return None

    def remediate(self, report: DeploymentReport) -> None:
        """
        kcli can upload the ISO and still leave no VM behind, whatever its
        exit status. Such instances get one direct create from that image.
        Classification is never changed: a failed job stays failed.
        """
        candidates = [o for o in report.outcomes if o.job.launched]
        if not candidates:
            return
        vms = set(self._vm_names())

        for outcome in candidates:
            job = outcome.job
            if job.name in vms:
                continue
            image = self.ctx.remote_image_path(self.ctx.iso_name(job.name))
            mtime = self._image_mtime(image)
            if mtime is None:
                continue

            if mtime + CLOCK_SKEW_SECONDS < job.launched_at:
                log.warning("[remediate] %s: %s predates this run; not using it", job.name, image)
                outcome.remediation = "manual"
            else:
                outcome.remediation = "created" if self._create_from_image(job, image) else "manual"

            if outcome.remediation == "manual":
                log.warning(
                    "[remediate] %s: create it manually: kcli -C %s create vm -P iso=%s -P memory=%s -P numcpus=%s -P disksize=%s %s",
                    job.name, self.ctx.registry_name, self.ctx.iso_name(job.name),
                    job.instance.memory_mb, job.instance.cpu_count, job.instance.disk_gb, job.name,
                )
            self.bus.emit(RemediationAttempted(name=job.name, result=outcome.remediation, **self.event_ctx))

    def _create_from_image(self, job: DeploymentJob, image: str) -> bool:
        inst = job.instance
        log.info("[remediate] %s: boot image found, creating the VM directly", job.name)
        try:
            self.kcli.create_vm_from_iso(
                inst.name,
                iso=self.ctx.iso_name(inst.name),
                memory_mb=inst.memory_mb,
                cpus=inst.cpu_count,
                disk_gb=inst.disk_gb,
                network=inst.network,
            )
            return True
        except KcliError as exc:
            log.info("[remediate] kcli create vm failed, trying virt-install: %s", exc)

        if self.runner is None:
            return False
        try:
            if not self.runner.probe("command -v virt-install"):
                self.runner.execute("dnf install -y virt-install || yum install -y virt-install", sudo=True)
            self.runner.execute(
                f"virt-install --name {shq(inst.name)} --memory {inst.memory_mb} --vcpus {inst.cpu_count}"
                f" --disk size={inst.disk_gb},pool={self.ctx.pool_name} --cdrom {shq(image)}"
                f" --network network={inst.network or 'default'} --graphics none"
                " --console pty,target_type=serial --noautoconsole",
                sudo=True,
            )
            return True
        except ProvisionError as exc:
            log.warning("[remediate] virt-install failed for %s: %s", inst.name, exc)
            return False

    # ------------------ readiness ------------------

    def wait_ready(self, report: DeploymentReport) -> None:
        """One deadline for the whole batch, polled in launch order."""
        interval = self.settings.poll_interval_seconds
        limit = self.settings.max_wait_seconds
        deadline = self.clock() + limit
        log.info("[ready] waiting up to %ss for %d cluster(s)", limit, len(report.succeeded))

        for outcome in report.succeeded:
            name = outcome.name
            while True:
                if self.kcli.ssh_succeeds(name, "oc get nodes"):
                    outcome.ready = True
                    log.info("[ready] %s is answering 'oc get nodes'", name)
                    break
                if self.clock() + interval > deadline:
                    outcome.ready = False
                    log.warning("[ready] %s did not become ready within %ss", name, limit)
                    break
                self.sleep(interval)


def render_summary(report: DeploymentReport, ctx: ExecutionContext) -> str:
    lines = [
        "=" * 70,
        f"Deployment summary: {len(report.succeeded)} succeeded, {len(report.failed)} failed",
        "=" * 70,
    ]
    for o in report.outcomes:
        inst = o.job.instance
        line = f"  {o.name:<10} {o.status.value:<10} VIP {inst.vip:<15} log {o.job.log_path}"
        if o.reason:
            line += f"  ({o.reason})"
        if o.remediation:
            line += f"  remediation: {o.remediation}"
        if o.ready is not None:
            line += "  ready" if o.ready else "  not ready"
        lines.append(line)

    if report.succeeded:
        lines += ["", "Add to /etc/hosts:"]
        lines += [f"  {o.job.instance.hosts_line()}" for o in report.succeeded]

    rescued = [o for o in report.succeeded if o.remediation]
    if rescued:
        lines += ["", "Installed but no VM was defined, remediation:"]
        lines += [f"  {o.name}: {o.remediation}" for o in rescued]

    if report.failed:
        lines += ["", "Failed instances, inspect:"]
        lines += [f"  tail -100 {o.job.log_path}" for o in report.failed]

    lines += [
        "",
        "Next steps:",
        f"  kcli -C {ctx.registry_name} list vm",
        f"  kcli -C {ctx.registry_name} ssh -u root {ctx.name_prefix}-XX 'oc get nodes'",
        f"  export KUBECONFIG={ctx.clusters_dir}/{ctx.name_prefix}-XX/auth/kubeconfig",
        f"  snolab --cleanup {ctx.host.address} {ctx.host.username}",
    ]
    return "\n".join(lines)
