from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from snolab.config.loader import load_settings, settings_from_env


def test_defaults_without_file_or_env():
    s = load_settings(env={})
    assert s.memory_mb == 16384
    assert s.cpu_count == 8
    assert s.disk_gb == 120
    assert s.domain_suffix == "local"
    assert s.os_channel == "stable"
    assert s.max_wait_seconds == 3600
    assert s.vip_base is None
    assert s.require_bridge is False
    assert s.pull_credential_path == Path("~/.pull-secret.json").expanduser()


def test_env_overrides_file(tmp_path: Path):
    f = tmp_path / "snolab.yaml"
    f.write_text(textwrap.dedent("""
        memory_mb: 32768
        cpu_count: 12
        vip_base: 10.8.125.40
    """))
    s = load_settings(f, env={"SNO_CPUS": "16", "SNO_REQUIRE_BRIDGE": "true"})
    assert s.memory_mb == 32768
    assert s.cpu_count == 16
    assert s.vip_base == "10.8.125.40"
    assert s.require_bridge is True


def test_file_expands_environment_variables(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("SNOLAB_TEST_DOMAIN", "lab.example")
    f = tmp_path / "snolab.yaml"
    f.write_text("domain_suffix: ${SNOLAB_TEST_DOMAIN}\n")
    s = load_settings(f, env={})
    assert s.domain_suffix == "lab.example"


def test_per_instance_vip_overrides_from_env():
    data = settings_from_env({"VIP_sno_02": "10.8.125.50", "SNO_VIP_BASE": "10.8.125.30", "HOME": "/root"})
    assert data == {"vip_base": "10.8.125.30", "vip_overrides": {"sno-02": "10.8.125.50"}}


def test_overrides_merge_file_and_env(tmp_path: Path):
    f = tmp_path / "snolab.yaml"
    f.write_text("vip_overrides:\n  sno-01: 10.8.125.60\n")
    s = load_settings(f, env={"VIP_sno_03": "10.8.125.61"})
    assert s.vip_overrides == {"sno-01": "10.8.125.60", "sno-03": "10.8.125.61"}


@pytest.mark.parametrize("env", [
    {"SNO_VIP_BASE": "10.8.125.256"},
    {"VIP_sno_01": "not-an-ip"},
    {"SNO_MEMORY": "0"},
])
def test_invalid_values_rejected(env):
    with pytest.raises(ValidationError):
        load_settings(env=env)
