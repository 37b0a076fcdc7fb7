# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from snolab.bootstrap.host.models import TargetHost


def _kcli_home() -> Path:
    return Path.home() / ".kcli"


@dataclass(frozen=True)
class ExecutionContext:
    """
    Everything a run needs to know about where state lives: the target host,
    the kcli registry, local cluster state, scratch files and the remote pool.
    Passed explicitly; nothing reads process-wide defaults behind its back.
    """

    host: TargetHost
    registry_path: Path = field(default_factory=lambda: _kcli_home() / "config.yml")
    clusters_dir: Path = field(default_factory=lambda: _kcli_home() / "clusters")
    scratch_root: Path = Path("/tmp")
    pool_name: str = "default"
    pool_path: str = "/var/lib/libvirt/images"
    name_prefix: str = "sno"
    dry_run: bool = False

    @property
    def registry_name(self) -> str:
        return self.host.registry_name

    @property
    def name_pattern(self) -> "re.Pattern[str]":
        return re.compile(rf"^{re.escape(self.name_prefix)}-\d+$")

    def instance_name(self, ordinal: int) -> str:
        return f"{self.name_prefix}-{ordinal:02d}"

    def ordinal_of(self, name: str) -> Optional[int]:
        if not self.name_pattern.match(name):
            return None
        return int(name.rsplit("-", 1)[1])

    # ---- per-instance artifacts ----

    def scratch_file(self, name: str, suffix: str) -> Path:
        return self.scratch_root / f"kcli-{name}{suffix}"

    def log_path(self, name: str) -> Path:
        return self.scratch_file(name, ".log")

    def pid_path(self, name: str) -> Path:
        return self.scratch_file(name, ".pid")

    def exit_path(self, name: str) -> Path:
        return self.scratch_file(name, ".exit")

    def vip_path(self, name: str) -> Path:
        return self.scratch_file(name, ".vip")

    def params_path(self, name: str) -> Path:
        return self.scratch_file(name, "-params.yml")

    def scratch_files(self, name: str) -> list[Path]:
        return [
            self.log_path(name),
            self.pid_path(name),
            self.exit_path(name),
            self.vip_path(name),
            self.params_path(name),
        ]

    def state_dir(self, name: str) -> Path:
        return self.clusters_dir / name

    def ignition_files(self, name: str) -> list[Path]:
        return [self.clusters_dir / f"{name}-sno.ign", self.clusters_dir / f"{name}.ign"]

    def shared_ignition(self) -> Path:
        # written by whichever install ran last, not owned by one instance
        return self.clusters_dir / "iso.ign"

    def iso_name(self, name: str) -> str:
        return f"{name}-sno.iso"

    def remote_image_path(self, filename: str) -> str:
        return f"{self.pool_path.rstrip('/')}/{filename}"
