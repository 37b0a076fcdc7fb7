# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/config/models.py

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from snolab.deploy.planner import is_dotted_quad


class Settings(BaseModel):
    """Run configuration: YAML file and environment, validated together."""

    model_config = ConfigDict(validate_default=True)

    # VIP allocation
    vip_base: Optional[str] = None                  # default: host address + 1
    vip_overrides: Dict[str, str] = Field(default_factory=dict)   # instance name -> VIP

    # Instance sizing
    memory_mb: int = Field(16384, gt=0)
    cpu_count: int = Field(8, gt=0)
    disk_gb: int = Field(120, gt=0)
    domain_suffix: str = "local"
    os_channel: str = "stable"                      # OpenShift version/channel

    # Installer inputs
    pull_credential_path: Path = Path("~/.pull-secret.json")
    max_wait_seconds: int = Field(3600, ge=0)
    poll_interval_seconds: int = Field(60, gt=0)

    # Layout
    name_prefix: str = "sno"
    scratch_root: Path = Path("/tmp")
    require_bridge: bool = False
    connect_timeout: float = Field(10.0, gt=0)

    @field_validator("vip_base")
    @classmethod
    def _check_vip_base(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_dotted_quad(v):
            raise ValueError(f"vip_base is not a valid IPv4 address: {v}")
        return v

    @field_validator("vip_overrides")
    @classmethod
    def _check_overrides(cls, v: Dict[str, str]) -> Dict[str, str]:
        bad = {name: ip for name, ip in v.items() if not is_dotted_quad(ip)}
        if bad:
            raise ValueError(f"invalid VIP overrides: {bad}")
        return v

    @field_validator("pull_credential_path", "scratch_root")
    @classmethod
    def _expand(cls, v: Path) -> Path:
        return Path(v).expanduser()
