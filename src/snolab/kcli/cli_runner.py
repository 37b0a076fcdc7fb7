# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import shutil
import subprocess
from typing import Iterable, List, Optional

from snolab.errors import KcliError

log = logging.getLogger("snolab")

_HEADER_WORDS = {"name", "client", "cluster", "host", "pool", "network"}


def first_column(output: str) -> List[str]:
    """
    Extract the first column from kcli table output, accepting both the
    boxed (`| sno-01 | up |`) and the plain (`sno-01 up`) form.
    """
    names: List[str] = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line or line.startswith("+") or line.startswith("-"):
            continue
        cells = [c.strip() for c in line.strip("|").split("|")] if "|" in line else line.split()
        if not cells or not cells[0]:
            continue
        token = cells[0].split()[0]
        if token.lower() in _HEADER_WORDS:
            continue
        names.append(token)
    return names


class KcliRunner:
    """
    A pragmatic wrapper around the local `kcli` CLI.
    - Every hypervisor-scoped call carries `-C <client>`.
    - Testable by mocking subprocess.run.
    """

    def __init__(self, client: Optional[str] = None, binary: str = "kcli", timeout: int = 600):
        self.client = client
        self.binary = binary
        self.timeout = timeout

    # ------------------------- internal helpers -------------------------

    def _base(self, scoped: bool = True) -> list[str]:
        cmd = [self.binary]
        if scoped and self.client:
            cmd += ["-C", self.client]
        return cmd

    def _run(
        self,
        argv: List[str],
        allow_rc: set[int] | None = None,
        input: Optional[str] = None,
    ) -> subprocess.CompletedProcess:
        allow_rc = allow_rc or {0}
        log.debug("[kcli] $ %s", " ".join(argv))
        try:
            cp = subprocess.run(
                argv,
                check=False,
                text=True,
                capture_output=True,
                input=input,
                timeout=self.timeout,
            )
        except FileNotFoundError as exc:
            raise KcliError(f"{self.binary} is not installed") from exc
        except subprocess.TimeoutExpired as exc:
            raise KcliError(f"kcli timed out after {self.timeout}s for {argv!r}") from exc

        if cp.returncode not in allow_rc:
            stderr = getattr(cp, "stderr", "") or ""
            raise KcliError(f"kcli failed (rc={cp.returncode}) for {argv!r}\n{stderr}")
        return cp

    def _succeeds(self, argv: List[str]) -> bool:
        try:
            self._run(argv)
            return True
        except KcliError as exc:
            log.debug("[kcli] %s", exc)
            return False

    # ------------------------- local client -------------------------

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def version(self) -> str:
        try:
            return self._run([self.binary, "version"]).stdout.strip()
        except KcliError:
            return "version check failed"

    # ------------------------- host registry -------------------------

    def list_hosts(self) -> List[str]:
        try:
            return first_column(self._run(self._base(scoped=False) + ["list", "host"]).stdout)
        except KcliError:
            return []

    def create_host(self, address: str, name: str) -> str:
        cp = self._run(self._base(scoped=False) + ["create", "host", "kvm", "-H", address, name], allow_rc={0, 1})
        return (cp.stdout or "") + (cp.stderr or "")

    def list_pools(self) -> bool:
        return self._succeeds(self._base() + ["list", "pool"])

    def list_networks(self) -> bool:
        return self._succeeds(self._base() + ["list", "network"])

    # ------------------------- VMs / clusters -------------------------

    def list_vms(self) -> List[str]:
        return first_column(self._run(self._base() + ["list", "vm"]).stdout)

    def delete_vm(self, name: str) -> None:
        self._run(self._base() + ["delete", "vm", name, "-y"])

    def create_vm_from_iso(
        self,
        name: str,
        *,
        iso: str,
        memory_mb: int,
        cpus: int,
        disk_gb: int,
        network: Optional[str] = None,
    ) -> None:
        argv = self._base() + [
            "create", "vm",
            "-P", f"memory={memory_mb}",
            "-P", f"numcpus={cpus}",
            "-P", f"disksize={disk_gb}",
            "-P", f"iso={iso}",
        ]
        if network:
            argv += ["-P", f"nets=[{network}]"]
        self._run(argv + [name])

    def list_kubes(self) -> List[str]:
        return first_column(self._run(self._base(scoped=False) + ["get", "kube"]).stdout)

    def delete_kube(self, name: str) -> None:
        # kcli asks for confirmation on stdin
        self._run(self._base(scoped=False) + ["delete", "kube", name], input="y\n")

    def create_kube_argv(
        self,
        name: str,
        *,
        pull_secret: str,
        domain: str,
        api_ip: str,
        memory_mb: int,
        cpus: int,
        disk_gb: int,
        version: str,
        network: Optional[str] = None,
    ) -> list[str]:
        argv = self._base() + [
            "create", "kube", "openshift",
            "-P", "ctlplanes=1",
            "-P", "workers=0",
            "-P", f"pull_secret={pull_secret}",
            "-P", f"cluster={name}",
            "-P", f"domain={domain}",
            "-P", f"api_ip={api_ip}",
            "-P", f"ctlplane_memory={memory_mb}",
            "-P", f"numcpus={cpus}",
            "-P", f"disk_size={disk_gb}",
            "-P", f"version={version}",
        ]
        if network:
            argv += ["-P", f"network={network}"]
        return argv + [name]

    def ssh_succeeds(self, name: str, command: str, user: str = "root") -> bool:
        return self._succeeds(self._base() + ["ssh", "-u", user, name, command])


def names_matching(names: Iterable[str], pattern) -> List[str]:
    return [n for n in names if pattern.match(n)]
