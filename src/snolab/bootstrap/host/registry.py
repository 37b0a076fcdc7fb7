# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/bootstrap/host/registry.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import paramiko
import yaml

from snolab.errors import KcliError
from snolab.kcli.cli_runner import KcliRunner
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import HostRegistered
from snolab.utils.execution import ExecutionContext
from snolab.utils.retry import RetryError, retry
from snolab.utils.ssh_runner import SSHRunner, shq

from .models import TargetHost

log = logging.getLogger("snolab")

PUBLIC_KEYS = ("id_ed25519.pub", "id_rsa.pub", "id_ecdsa.pub")


class HostRegistry:
    """
    Keeps exactly one kcli client entry per hypervisor, named
    sno-hypervisor-<a>-<b>-<c>-<d>. Existing entries are never touched.
    """

    def __init__(
        self,
        ctx: ExecutionContext,
        kcli: KcliRunner,
        *,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[dict] = None,
        ssh_dir: Optional[Path] = None,
    ):
        self.ctx = ctx
        self.kcli = kcli
        self.bus = bus or EventBus([])
        self.event_ctx = event_ctx or {"ts": "", "run_id": "", "env": "provision", "context": ctx.registry_name}
        self.ssh_dir = ssh_dir or Path.home() / ".ssh"

    # ------------------ config store ------------------

    def _load_store(self) -> dict:
        path = self.ctx.registry_path
        if not path.exists():
            return {}
        data = yaml.safe_load(path.read_text()) or {}
        return data if isinstance(data, dict) else {}

    def is_registered(self, name: str) -> bool:
        return name in self.kcli.list_hosts() or name in self._load_store()

    def _write_entry(self, host: TargetHost, name: str) -> None:
        data = self._load_store()
        data[name] = {
            "host": host.address,
            "protocol": "ssh",
            "user": host.username,
            "pool": self.ctx.pool_name,
        }
        data.setdefault("default", {"client": name})

        path = self.ctx.registry_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
        log.info("[registry] wrote %s into %s", name, path)

    # ------------------ public ------------------

    def ensure_registered(self, host: TargetHost) -> str:
        name = host.registry_name

        if self.is_registered(name):
            log.info("[registry] host %s already registered", name)
            self.bus.emit(HostRegistered(name=name, created=False, verified=True, **self.event_ctx))
            return name

        if self.ctx.dry_run:
            log.info("[registry] DRY-RUN: kcli create host kvm -H %s %s", host.address, name)
            return name

        log.info("[registry] registering %s as %s", host.address, name)
        try:
            out = self.kcli.create_host(host.address, name)
            log.debug("[registry] %s", out.strip())
        except KcliError as exc:
            log.warning("[registry] kcli create host failed: %s", exc)

        if name not in self._load_store() and name not in self.kcli.list_hosts():
            self._write_entry(host, name)

        verified = self.verify(name)
        if not verified:
            log.warning(
                "[registry] could not verify %s; keeping the entry. Try: kcli -C %s list vm", name, name
            )
        self.bus.emit(HostRegistered(name=name, created=True, verified=verified, **self.event_ctx))
        return name

    def verify(self, name: str, *, retries: int = 2, delay: float = 2.0, sleep=None) -> bool:
        """
        Probe the entry through the client: list pool, then list vm, then
        list network. Any one answering is enough.
        """
        probe = KcliRunner(client=name, binary=self.kcli.binary, timeout=self.kcli.timeout)
        kwargs = {"sleep": sleep} if sleep else {}

        @retry(retries=retries, delay=delay, retry_on=(KcliError,), label=f"verify {name}", **kwargs)
        def _probe() -> None:
            if probe.list_pools():
                return
            try:
                probe.list_vms()
                return
            except KcliError:
                pass
            if not probe.list_networks():
                raise KcliError(f"{name} did not answer list pool/vm/network")

        try:
            _probe()
            return True
        except RetryError:
            return False

    def authorize_key(self, runner: SSHRunner) -> bool:
        """
        Install the local public key into the remote authorized_keys so
        kcli's own SSH sessions do not need the password. Idempotent.
        """
        pub = next((self.ssh_dir / n for n in PUBLIC_KEYS if (self.ssh_dir / n).exists()), None)
        if pub is None:
            log.warning("[registry] no local public key in %s; kcli will need key access to the host", self.ssh_dir)
            return False

        key = pub.read_text().strip()
        runner.execute(
            "mkdir -p ~/.ssh && chmod 700 ~/.ssh && touch ~/.ssh/authorized_keys"
            f" && (grep -qxF {shq(key)} ~/.ssh/authorized_keys || echo {shq(key)} >> ~/.ssh/authorized_keys)"
            " && chmod 600 ~/.ssh/authorized_keys"
        )
        log.info("[registry] authorized %s on the host", pub.name)
        return True

    def trust_host_key(self, runner: SSHRunner, address: str) -> bool:
        key = runner.remote_host_key()
        if key is None:
            return False

        known_hosts = self.ssh_dir / "known_hosts"
        known_hosts.parent.mkdir(parents=True, exist_ok=True)
        known_hosts.touch(exist_ok=True)

        keys = paramiko.HostKeys(str(known_hosts))
        existing = keys.lookup(address)
        if existing is not None and key.get_name() in existing:
            return False

        keys.add(address, key.get_name(), key)
        keys.save(str(known_hosts))
        log.debug("[registry] recorded %s host key for %s", key.get_name(), address)
        return True
