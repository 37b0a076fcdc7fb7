# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/deploy/executor.py

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from typing import Callable, List, Optional

import yaml

from snolab.config.models import Settings
from snolab.errors import AuthError, HostConnectionError, ProvisionError, StaleStateConflict
from snolab.kcli.cli_runner import KcliRunner
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import DeploymentLaunched, DeploymentLaunchFailed
from snolab.utils.execution import ExecutionContext
from snolab.utils.ssh_runner import shq

from .cleanup import CleanupOrchestrator
from .models import ClusterInstance, DeploymentJob, VipPlan

log = logging.getLogger("snolab")

BRIDGED_NETWORK = "bridged"
FALLBACK_NETWORK = "default"


class DeploymentExecutor:
    """
    Fans out one detached `kcli create kube openshift` per planned instance.

    Each job owns its own files under the scratch root:
        kcli-<name>.log   combined output
        kcli-<name>.pid   pid of the background shell
        kcli-<name>.exit  exit status, written when kcli returns
        kcli-<name>.vip   assigned VIP
    launch_all() returns as soon as every job is started.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        settings: Settings,
        kcli: KcliRunner,
        cleanup: CleanupOrchestrator,
        *,
        bridge_ready: bool,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[dict] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.time,
    ):
        self.ctx = ctx
        self.settings = settings
        self.kcli = kcli
        self.cleanup = cleanup
        self.bridge_ready = bridge_ready
        self.bus = bus or EventBus([])
        self.event_ctx = event_ctx or {"ts": "", "run_id": "", "env": "provision", "context": ctx.registry_name}
        self.popen = popen
        self.clock = clock

    def network(self) -> Optional[str]:
        if self.bridge_ready:
            return BRIDGED_NETWORK
        if self.settings.require_bridge:
            return None
        return FALLBACK_NETWORK

    def instance_for(self, name: str, vip: str) -> ClusterInstance:
        s = self.settings
        return ClusterInstance(
            name=name,
            vip=vip,
            memory_mb=s.memory_mb,
            cpu_count=s.cpu_count,
            disk_gb=s.disk_gb,
            os_channel=s.os_channel,
            domain_suffix=s.domain_suffix,
            network=self.network(),
        )

    def launch_all(self, plan: VipPlan) -> List[DeploymentJob]:
        network = self.network()
        if network == FALLBACK_NETWORK:
            log.warning("=" * 70)
            log.warning("[deploy] bridged network is NOT ready; instances go on the isolated '%s' network", network)
            log.warning("[deploy] VIPs will not be reachable from outside the hypervisor")
            log.warning("=" * 70)

        jobs = []
        for a in plan:
            jobs.append(self.launch(self.instance_for(a.name, a.vip)))

        started = sum(1 for j in jobs if j.launched)
        log.info("[deploy] %d of %d deployment(s) started", started, len(jobs))
        return jobs

    def launch(self, inst: ClusterInstance) -> DeploymentJob:
        ctx = self.ctx
        job = DeploymentJob(
            instance=inst,
            log_path=ctx.log_path(inst.name),
            pid_path=ctx.pid_path(inst.name),
            exit_path=ctx.exit_path(inst.name),
            vip_path=ctx.vip_path(inst.name),
            launched_at=self.clock(),
            network=inst.network,
        )
        try:
            self._launch(job)
        except (HostConnectionError, AuthError):
            raise
        except (ProvisionError, OSError) as exc:
            job.launch_error = str(exc)
            log.error("[deploy] %s: launch failed: %s", inst.name, exc)
            self.bus.emit(DeploymentLaunchFailed(name=inst.name, error=str(exc), **self.event_ctx))
        return job

    def _launch(self, job: DeploymentJob) -> None:
        inst = job.instance
        if inst.network is None:
            raise ProvisionError("bridged network is not ready and require_bridge is set")

        # never reuse a name while anything of a previous run survives
        self.cleanup.purge(inst.name)
        left = [] if self.ctx.dry_run else self.cleanup.still_present(inst.name)
        if left:
            raise StaleStateConflict(f"{inst.name} still present after purge: {', '.join(left)}")

        argv = self.kcli.create_kube_argv(
            inst.name,
            pull_secret=str(self.settings.pull_credential_path),
            domain=inst.domain_suffix,
            api_ip=inst.vip,
            memory_mb=inst.memory_mb,
            cpus=inst.cpu_count,
            disk_gb=inst.disk_gb,
            version=inst.os_channel,
            network=inst.network,
        )
        shell = f"{shlex.join(argv)} > {shq(str(job.log_path))} 2>&1; echo $? > {shq(str(job.exit_path))}"

        if self.ctx.dry_run:
            log.info("[deploy] DRY-RUN: %s", shell)
            return

        self.ctx.scratch_root.mkdir(parents=True, exist_ok=True)
        job.vip_path.write_text(inst.vip + "\n")
        self.ctx.params_path(inst.name).write_text(yaml.safe_dump(self._params(inst), sort_keys=False))

        log.info("[deploy] %s: starting install (VIP %s, network %s)", inst.name, inst.vip, inst.network)
        proc = self.popen(
            ["bash", "-c", shell],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        job.process = proc
        job.pid = proc.pid
        job.pid_path.write_text(f"{proc.pid}\n")

        log.info("[deploy] %s: pid %s, log %s", inst.name, proc.pid, job.log_path)
        self.bus.emit(DeploymentLaunched(
            name=inst.name,
            pid=proc.pid,
            vip=inst.vip,
            log_path=str(job.log_path),
            network=inst.network,
            **self.event_ctx,
        ))

    def _params(self, inst: ClusterInstance) -> dict:
        return {
            "cluster": inst.name,
            "domain": inst.domain_suffix,
            "api_ip": inst.vip,
            "ctlplanes": 1,
            "workers": 0,
            "ctlplane_memory": inst.memory_mb,
            "numcpus": inst.cpu_count,
            "disk_size": inst.disk_gb,
            "version": inst.os_channel,
            "network": inst.network,
        }
