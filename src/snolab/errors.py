# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/errors.py
from __future__ import annotations

from typing import Optional


class ProvisionError(RuntimeError):
    """Base class for provisioning failures."""


class HostConnectionError(ProvisionError, ConnectionError):
    """Target host unreachable (refused, timed out, no route)."""


class AuthError(ProvisionError):
    """Credential or key rejected by the target host."""


class RemoteExecError(ProvisionError):
    """A remote command ran but exited non-zero."""

    def __init__(self, command: str, exit_status: int, stderr: str = ""):
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr and stderr.strip() else ""
        super().__init__(f"remote command failed (rc={exit_status}): {command}{detail}")


class PrivilegeError(ProvisionError):
    """Remediation is needed but the login has no sudo."""

    def __init__(self, capability: str, manual_hint: Optional[str] = None):
        self.capability = capability
        self.manual_hint = manual_hint
        msg = f"{capability}: manual action required (no sudo access)"
        if manual_hint:
            msg += f" -> {manual_hint}"
        super().__init__(msg)


class CapacityOrEnvironmentError(ProvisionError):
    """Remote-side install failure, known only through a job's exit status."""


class StaleStateConflict(ProvisionError):
    """Artifacts of a previous run survived the purge of an instance name."""


class VipPlanError(ProvisionError, ValueError):
    """VIP plan is malformed, has duplicates or leaves the host segment."""


class KcliError(ProvisionError):
    """The local kcli client failed."""
