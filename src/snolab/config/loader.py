# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/config/loader.py

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

import yaml

from .models import Settings

log = logging.getLogger("snolab")

# environment variable -> Settings field
ENV_FIELDS = {
    "SNO_VIP_BASE": "vip_base",
    "SNO_MEMORY": "memory_mb",
    "SNO_CPUS": "cpu_count",
    "SNO_DISK_SIZE": "disk_gb",
    "SNO_DOMAIN": "domain_suffix",
    "OCP_VERSION": "os_channel",
    "PULL_SECRET_PATH": "pull_credential_path",
    "CLUSTER_WAIT_TIME": "max_wait_seconds",
    "SNO_SCRATCH_DIR": "scratch_root",
    "SNO_REQUIRE_BRIDGE": "require_bridge",
}

# VIP_sno_02=10.8.125.40 overrides the VIP of sno-02
VIP_OVERRIDE_PREFIX = "VIP_"


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def settings_from_env(env: Mapping[str, str]) -> dict:
    data: dict = {}
    for var, field_name in ENV_FIELDS.items():
        if env.get(var):
            data[field_name] = env[var]

    overrides = {}
    for var, value in env.items():
        if var.startswith(VIP_OVERRIDE_PREFIX) and value:
            name = var[len(VIP_OVERRIDE_PREFIX):].lower().replace("_", "-")
            overrides[name] = value
    if overrides:
        data["vip_overrides"] = overrides
    return data


def load_settings(path: Optional[str | Path] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Defaults < YAML file (with ${VAR} expansion) < environment variables.
    """
    data: dict = {}
    if path:
        raw = Path(path).read_text()
        expanded = os.path.expandvars(raw)
        data = yaml.safe_load(expanded) or {}
        log.debug("loaded config file %s", path)

    _deep_merge(data, settings_from_env(os.environ if env is None else env))
    return Settings.model_validate(data)
