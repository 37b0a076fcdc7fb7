import subprocess

import paramiko
import yaml

from snolab.bootstrap.host.models import TargetHost
from snolab.bootstrap.host.registry import HostRegistry
from snolab.kcli.cli_runner import KcliRunner
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import HostRegistered
from snolab.utils.execution import ExecutionContext

HOST = TargetHost("10.8.125.20", username="kezie")


class DummyCP:
    def __init__(self, rc=0, out="", err=""):
        self.returncode = rc
        self.stdout = out
        self.stderr = err


def _ctx(tmp_path):
    return ExecutionContext(
        host=HOST,
        registry_path=tmp_path / "kcli" / "config.yml",
        clusters_dir=tmp_path / "kcli" / "clusters",
        scratch_root=tmp_path,
    )


def test_registry_name_from_address():
    assert HOST.registry_name == "sno-hypervisor-10-8-125-20"


def test_existing_entry_is_left_alone(monkeypatch, tmp_path, capture):
    ctx = _ctx(tmp_path)
    ctx.registry_path.parent.mkdir(parents=True)
    ctx.registry_path.write_text("sno-hypervisor-10-8-125-20:\n  host: 10.8.125.20\n")
    before = ctx.registry_path.read_text()

    calls = []

    def fake_run(argv, **kw):
        calls.append(argv)
        return DummyCP(0, "")

    monkeypatch.setattr(subprocess, "run", fake_run)

    reg = HostRegistry(ctx, KcliRunner(), bus=EventBus([capture]))
    assert reg.ensure_registered(HOST) == "sno-hypervisor-10-8-125-20"

    assert not [c for c in calls if "create" in c]
    assert ctx.registry_path.read_text() == before
    assert capture.of(HostRegistered)[0].created is False


def test_listed_host_is_not_created_again(monkeypatch, tmp_path):
    calls = []

    def fake_run(argv, **kw):
        calls.append(argv)
        if argv[1:] == ["list", "host"]:
            return DummyCP(0, "+----------------------------+\n| Client |\n| sno-hypervisor-10-8-125-20 |\n")
        return DummyCP(0)

    monkeypatch.setattr(subprocess, "run", fake_run)
    HostRegistry(_ctx(tmp_path), KcliRunner()).ensure_registered(HOST)
    assert not [c for c in calls if "create" in c]


def test_falls_back_to_writing_config_store(monkeypatch, tmp_path, capture):
    calls = []

    def fake_run(argv, **kw):
        calls.append(argv)
        if "create" in argv:
            return DummyCP(1, "", "cannot connect")
        return DummyCP(0, "")

    monkeypatch.setattr(subprocess, "run", fake_run)

    ctx = _ctx(tmp_path)
    reg = HostRegistry(ctx, KcliRunner(), bus=EventBus([capture]))
    name = reg.ensure_registered(HOST)

    data = yaml.safe_load(ctx.registry_path.read_text())
    assert data[name] == {"host": "10.8.125.20", "protocol": "ssh", "user": "kezie", "pool": "default"}
    assert data["default"] == {"client": name}

    create = next(c for c in calls if "create" in c)
    assert create == ["kcli", "create", "host", "kvm", "-H", "10.8.125.20", name]
    # verification goes through the new client
    assert ["kcli", "-C", name, "list", "pool"] in calls
    assert capture.of(HostRegistered)[0].verified is True


def test_existing_default_section_is_kept(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", lambda argv, **kw: DummyCP(0, ""))
    ctx = _ctx(tmp_path)
    ctx.registry_path.parent.mkdir(parents=True)
    ctx.registry_path.write_text("default:\n  client: local\nlocal:\n  type: kvm\n")

    HostRegistry(ctx, KcliRunner()).ensure_registered(HOST)
    data = yaml.safe_load(ctx.registry_path.read_text())
    assert data["default"] == {"client": "local"}
    assert "sno-hypervisor-10-8-125-20" in data and "local" in data


def test_verify_falls_back_to_list_vm(monkeypatch, tmp_path):
    calls = []

    def fake_run(argv, **kw):
        calls.append(argv[3:])
        if argv[3:] == ["list", "pool"]:
            return DummyCP(1, "", "pool error")
        return DummyCP(0, "")

    monkeypatch.setattr(subprocess, "run", fake_run)
    reg = HostRegistry(_ctx(tmp_path), KcliRunner())
    assert reg.verify("sno-hypervisor-10-8-125-20", sleep=lambda s: None)
    assert calls == [["list", "pool"], ["list", "vm"]]


def test_verify_failure_is_reported_not_raised(monkeypatch, tmp_path):
    monkeypatch.setattr(subprocess, "run", lambda argv, **kw: DummyCP(1, "", "unreachable"))
    reg = HostRegistry(_ctx(tmp_path), KcliRunner())
    assert reg.verify("sno-hypervisor-10-8-125-20", sleep=lambda s: None) is False


def test_authorize_key_is_idempotent_append(tmp_path, ssh_client, runner):
    ssh_dir = tmp_path / ".ssh"
    ssh_dir.mkdir()
    (ssh_dir / "id_ed25519.pub").write_text("ssh-ed25519 AAAAC3Nz kezie@laptop\n")

    reg = HostRegistry(_ctx(tmp_path), KcliRunner(), ssh_dir=ssh_dir)
    assert reg.authorize_key(runner)

    cmd = ssh_client.calls[-1]
    assert "authorized_keys" in cmd
    assert "grep -qxF" in cmd and "ssh-ed25519 AAAAC3Nz kezie@laptop" in cmd


def test_authorize_key_without_local_key(tmp_path, ssh_client, runner):
    reg = HostRegistry(_ctx(tmp_path), KcliRunner(), ssh_dir=tmp_path / "nothing")
    assert reg.authorize_key(runner) is False
    assert ssh_client.calls == []


class FakeTransport:
    def __init__(self, key):
        self.key = key

    def get_remote_server_key(self):
        return self.key


def test_trust_host_key_records_once(tmp_path, ssh_client, runner):
    ssh_client.transport = FakeTransport(paramiko.RSAKey.generate(1024))
    reg = HostRegistry(_ctx(tmp_path), KcliRunner(), ssh_dir=tmp_path / ".ssh")

    assert reg.trust_host_key(runner, "10.8.125.20") is True
    assert reg.trust_host_key(runner, "10.8.125.20") is False

    lines = (tmp_path / ".ssh" / "known_hosts").read_text().splitlines()
    assert len(lines) == 1 and lines[0].startswith("10.8.125.20 ssh-rsa ")
