# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging

import paramiko

from snolab.bootstrap.host.models import TargetHost
from snolab.errors import AuthError, HostConnectionError
from snolab.utils.ssh_runner import SSHRunner

log = logging.getLogger("snolab")


def _load_pkey(path) -> paramiko.PKey:
    last_exc = None
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(str(path))
        except paramiko.SSHException as exc:
            last_exc = exc
            continue
    raise AuthError(f"Unsupported private key format for {path}") from last_exc


def open_ssh(
    host: TargetHost,
    *,
    connect_timeout: float = 10.0,
    cmd_timeout: float = 900.0,
) -> SSHRunner:
    """
    Connect to the hypervisor. Keys (explicit file, agent, ~/.ssh) are tried
    first; the password is only offered when one was supplied.
    """
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    pkey = _load_pkey(host.pkey_path) if host.pkey_path else None

    try:
        client.connect(
            hostname=host.address,
            port=host.port,
            username=host.username,
            password=host.password if not pkey else None,
            pkey=pkey,
            timeout=connect_timeout,
            banner_timeout=connect_timeout,
            auth_timeout=connect_timeout,
            allow_agent=True,
            look_for_keys=True,
        )
    except paramiko.AuthenticationException as exc:
        client.close()
        raise AuthError(
            f"Authentication failed for {host.username}@{host.address}. "
            f"Check the password or SSH keys."
        ) from exc
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise HostConnectionError(
            f"Cannot reach {host.address}:{host.port} within {connect_timeout:.0f}s: {exc}"
        ) from exc

    log.debug("[ssh] connected to %s@%s", host.username, host.address)
    return SSHRunner(
        client,
        label=host.address,
        is_root=host.username == "root",
        cmd_timeout=cmd_timeout,
    )
