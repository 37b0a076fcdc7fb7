# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/bootstrap/host/libvirt.py

from __future__ import annotations

from typing import Dict, List, Optional

from snolab.utils.ssh_runner import SSHRunner, shq

# always talk to the system instance; a plain `virsh` as non-root would
# land on qemu:///session and see none of the hypervisor's objects
VIRSH = "virsh -c qemu:///system"


def parse_info(output: str) -> Dict[str, str]:
    """
    Parse `virsh pool-info` / `net-info` / `dominfo` output into a dict
    keyed by lowercased field name.
    """
    info: Dict[str, str] = {}
    for line in output.splitlines():
        if ":" not in line:
            continue
        key, _, value = line.partition(":")
        info[key.strip().lower()] = value.strip()
    return info


def info(runner: SSHRunner, kind: str, name: str, *, sudo: bool = False) -> Optional[Dict[str, str]]:
    """None when the object does not exist."""
    out, rc = runner.execute(f"{VIRSH} {kind}-info {shq(name)}", sudo=sudo, check=False)
    if rc != 0:
        return None
    return parse_info(out)


def domain_exists(runner: SSHRunner, name: str, *, sudo: bool = False) -> bool:
    return runner.probe(f"{VIRSH} dominfo {shq(name)}", sudo=sudo)


def list_domains(runner: SSHRunner, *, sudo: bool = False) -> List[str]:
    out, rc = runner.execute(f"{VIRSH} list --all --name", sudo=sudo, check=False)
    if rc != 0:
        return []
    return [ln.strip() for ln in out.splitlines() if ln.strip()]


def list_volumes(runner: SSHRunner, pool: str, *, sudo: bool = False) -> List[str]:
    """
    Volume names in a pool, parsed from the `Name  Path` table.
    """
    out, rc = runner.execute(f"{VIRSH} vol-list {shq(pool)}", sudo=sudo, check=False)
    if rc != 0:
        return []
    names: List[str] = []
    for line in out.splitlines():
        parts = line.split()
        if not parts or parts[0] == "Name" or set(parts[0]) == {"-"}:
            continue
        names.append(parts[0])
    return names


def destroy_domain(runner: SSHRunner, name: str, *, sudo: bool = False) -> None:
    # destroy fails on a shut-off domain; undefine is what must succeed
    runner.execute(f"{VIRSH} destroy {shq(name)}", sudo=sudo, check=False)
    runner.execute(f"{VIRSH} undefine {shq(name)} --remove-all-storage", sudo=sudo)
