# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/deploy/planner.py

from __future__ import annotations

import ipaddress
import logging
from typing import Callable, Mapping, Optional

from snolab.errors import VipPlanError

from .models import VipAssignment, VipPlan

log = logging.getLogger("snolab")


def is_dotted_quad(value: str) -> bool:
    """Four decimal octets, each 0-255, no leading zeros."""
    if not isinstance(value, str):
        return False
    try:
        ipaddress.IPv4Address(value.strip())
    except ValueError:
        return False
    return True


def default_base(host_address: str) -> str:
    """The first VIP sits right after the hypervisor's address."""
    return _offset(host_address, 1)


def _offset(address: str, n: int) -> str:
    try:
        return str(ipaddress.IPv4Address(address) + n)
    except (ipaddress.AddressValueError, ValueError) as exc:
        raise VipPlanError(f"cannot offset {address} by {n}: {exc}") from exc


def compute_plan(
    host_address: str,
    count: int,
    *,
    name_for: Callable[[int], str],
    vip_base: Optional[str] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> VipPlan:
    """
    vip(i) = base + (i - 1) for i in 1..count; overrides win per name.
    """
    if count < 1:
        raise VipPlanError(f"instance count must be at least 1, got {count}")
    base = vip_base or default_base(host_address)
    if not is_dotted_quad(base):
        raise VipPlanError(f"invalid VIP base: {base}")
    overrides = overrides or {}

    assignments = []
    for ordinal in range(1, count + 1):
        name = name_for(ordinal)
        auto = _offset(base, ordinal - 1)
        if name in overrides:
            vip = overrides[name].strip()
            if not is_dotted_quad(vip):
                raise VipPlanError(f"{name}: invalid VIP override {vip!r}")
            assignments.append(VipAssignment(ordinal, name, vip, overridden=True, computed=auto))
        else:
            assignments.append(VipAssignment(ordinal, name, auto, computed=auto))

    unused = sorted(set(overrides) - {a.name for a in assignments})
    if unused:
        log.warning("[plan] ignoring VIP overrides for instances not in this run: %s", ", ".join(unused))
    return VipPlan(assignments)


def render_plan_table(plan: VipPlan) -> str:
    rows = [("#", "INSTANCE", "VIP", "SOURCE")]
    for a in plan:
        rows.append((f"{a.ordinal:02d}", a.name, a.vip, "override" if a.overridden else "auto"))
    widths = [max(len(r[i]) for r in rows) for i in range(4)]

    sep = "+" + "+".join("-" * (w + 2) for w in widths) + "+"
    lines = [sep]
    for i, row in enumerate(rows):
        lines.append("| " + " | ".join(c.ljust(w) for c, w in zip(row, widths)) + " |")
        if i == 0:
            lines.append(sep)
    lines.append(sep)
    return "\n".join(lines)


def confirm_plan(
    plan: VipPlan,
    confirm: Callable[[str], bool],
    prompt: Callable[[str, str], str],
    echo: Callable[[str], None] = print,
) -> VipPlan:
    """
    Show the plan and ask for confirmation. When declined, walk every
    instance with its computed VIP as default; invalid addresses re-prompt.
    """
    echo(render_plan_table(plan))
    if confirm("Use these VIP assignments?"):
        return plan

    updated = []
    for a in plan:
        while True:
            answer = prompt(f"VIP for {a.name}", a.auto_vip).strip()
            if is_dotted_quad(answer):
                break
            echo(f"  '{answer}' is not a valid IPv4 address (four octets, each 0-255)")
        updated.append(VipAssignment(
            a.ordinal, a.name, answer, overridden=answer != a.auto_vip, computed=a.auto_vip
        ))

    final = VipPlan(updated)
    echo(render_plan_table(final))
    return final
