# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/utils/ssh_runner.py

from __future__ import annotations

import logging
import os
import socket
from typing import Optional, Tuple

import paramiko

from snolab.errors import HostConnectionError, RemoteExecError

log = logging.getLogger("snolab")


def shq(value: str) -> str:
    """
    Quote for bash -lc.
    """
    return "'" + value.replace("'", "'\"'\"'") + "'"


class SSHRunner:
    """
    Remote command channel over an authenticated paramiko session.

    execute() returns (stdout, exit_status) and raises RemoteExecError on a
    non-zero exit unless check=False. There are no retries here; callers own
    their retry policy.
    """

    def __init__(
        self,
        client: paramiko.SSHClient,
        *,
        label: str = "remote",
        is_root: bool = False,
        cmd_timeout: float = 900.0,
    ):
        self.client = client
        self.label = label
        self.is_root = is_root
        self.cmd_timeout = cmd_timeout

    def __enter__(self) -> "SSHRunner":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _wrap(self, cmd: str, sudo: bool) -> str:
        if sudo and not self.is_root:
            return f"sudo -n bash -lc {shq(cmd)}"
        return f"bash -lc {shq(cmd)}"

    def execute(
        self,
        cmd: str,
        *,
        sudo: bool = False,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> Tuple[str, int]:
        final = self._wrap(cmd, sudo)
        log.debug("[%s] $ %s", self.label, final)

        try:
            _, stdout, stderr = self.client.exec_command(final, timeout=timeout or self.cmd_timeout)
            out = stdout.read().decode("utf-8", "replace")
            err = stderr.read().decode("utf-8", "replace")
            rc = stdout.channel.recv_exit_status()
        except (socket.timeout, paramiko.SSHException, EOFError) as exc:
            raise HostConnectionError(f"[{self.label}] lost connection while running: {cmd}") from exc

        log.debug("[%s] [exit %d] %s", self.label, rc, out.strip()[:500])
        if err.strip():
            log.debug("[%s] [stderr] %s", self.label, err.strip()[:500])

        if rc != 0 and check:
            raise RemoteExecError(cmd, rc, err)
        return out, rc

    def probe(self, cmd: str, *, sudo: bool = False) -> bool:
        """True when the command exits 0."""
        _, rc = self.execute(cmd, sudo=sudo, check=False)
        return rc == 0

    def output(self, cmd: str, *, sudo: bool = False) -> str:
        """Stripped stdout, empty when the command fails."""
        out, rc = self.execute(cmd, sudo=sudo, check=False)
        return out.strip() if rc == 0 else ""

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False) -> None:
        if sudo and not self.is_root:
            tmp = f"/tmp/.snolab.tmp.{os.getpid()}"
            self.put_text(content, tmp)
            self.execute(f"mv {tmp} {remote_path}", sudo=True)
            return

        sftp = self.client.open_sftp()
        try:
            with sftp.open(remote_path, "w") as f:
                f.write(content)
        finally:
            sftp.close()

    def remote_host_key(self) -> Optional[paramiko.PKey]:
        transport = self.client.get_transport()
        if transport is None:
            return None
        return transport.get_remote_server_key()

    def close(self) -> None:
        self.client.close()
