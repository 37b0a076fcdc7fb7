from pathlib import Path

from snolab.bootstrap.host.models import TargetHost
from snolab.deploy import cleanup as cleanup_mod
from snolab.deploy.cleanup import CleanupOrchestrator, purge_instance
from snolab.errors import KcliError
from snolab.observers.dispatcher import EventBus
from snolab.observers.events import CleanupSummary
from snolab.utils.execution import ExecutionContext

HOST = TargetHost("10.8.125.20")
POOL = "/var/lib/libvirt/images"


class FakeKcli:
    def __init__(self, kubes=(), vms=(), vm_delete_fails=False):
        self.kubes = set(kubes)
        self.vms = set(vms)
        self.vm_delete_fails = vm_delete_fails
        self.calls = []

    def list_kubes(self):
        self.calls.append("get kube")
        return sorted(self.kubes)

    def list_vms(self):
        self.calls.append("list vm")
        return sorted(self.vms)

    def delete_kube(self, name):
        self.calls.append(f"delete kube {name}")
        self.kubes.discard(name)

    def delete_vm(self, name):
        self.calls.append(f"delete vm {name}")
        if self.vm_delete_fails:
            raise KcliError("vm busy")
        self.vms.discard(name)


def _ctx(tmp_path, dry_run=False):
    return ExecutionContext(
        host=HOST,
        scratch_root=tmp_path / "scratch",
        clusters_dir=tmp_path / "clusters",
        dry_run=dry_run,
    )


def _deployed(tmp_path, libvirt_host):
    ctx = _ctx(tmp_path)
    ctx.scratch_root.mkdir()
    ctx.clusters_dir.mkdir()
    for name in ("sno-01", "sno-02"):
        for f in ctx.scratch_files(name)[:4]:
            f.write_text("x")
        (ctx.state_dir(name) / "auth").mkdir(parents=True)
        ctx.ignition_files(name)[0].write_text("{}")
    ctx.shared_ignition().write_text("{}")
    (ctx.clusters_dir / "hub").mkdir()
    (ctx.scratch_root / "kcli-hub.log").write_text("x")

    kcli = FakeKcli(kubes={"sno-01", "sno-02", "hub"}, vms={"sno-01", "sno-02", "hub"})
    host = libvirt_host(
        volumes={"sno-01_0.img", "sno-02_0.img", "hub_0.img"},
        files={f"{POOL}/sno-01-sno.iso", f"{POOL}/sno-02-sno.iso", "/tmp/sno-01-install", f"{POOL}/rhcos.iso"},
    )
    return ctx, kcli, host


def test_full_cleanup_then_second_run_finds_nothing(tmp_path, ssh_client, runner, capture, libvirt_host):
    ctx, kcli, host = _deployed(tmp_path, libvirt_host)
    cleanup = CleanupOrchestrator(ctx, kcli, runner, bus=EventBus([capture]))

    report = cleanup.run()
    assert "kube:sno-01" in report.found and "vm:sno-02" in report.found
    assert report.remaining == []

    assert kcli.kubes == {"hub"} and kcli.vms == {"hub"}
    assert host.volumes == {"hub_0.img"}
    assert host.files == {f"{POOL}/rhcos.iso"}
    assert not ctx.state_dir("sno-01").exists()
    assert (ctx.clusters_dir / "hub").is_dir()
    assert not ctx.shared_ignition().exists()
    assert not any(ctx.scratch_root.glob("kcli-sno-*"))
    assert (ctx.scratch_root / "kcli-hub.log").exists()

    destructive = len(kcli.calls), len(ssh_client.calls)
    again = cleanup.run()
    assert again.nothing_to_clean
    assert again.removed == []
    new_kcli = kcli.calls[destructive[0]:]
    assert all(c in ("get kube", "list vm") for c in new_kcli)
    assert capture.of(CleanupSummary)[-1].removed == 0


def test_nothing_deployed_means_enumeration_only(tmp_path, ssh_client, runner, libvirt_host):
    ctx = _ctx(tmp_path)
    kcli = FakeKcli(kubes={"hub"}, vms={"hub"})
    libvirt_host(volumes={"hub_0.img"}, files={f"{POOL}/rhcos.iso"})

    report = CleanupOrchestrator(ctx, kcli, runner).run()

    assert report.nothing_to_clean
    assert kcli.calls == ["get kube", "list vm"]
    for fragment in ("rm -rf", "vol-delete", "destroy", "undefine"):
        assert ssh_client.ran(fragment) == [], fragment


def test_unregistered_host_uses_virsh(tmp_path, ssh_client, runner, libvirt_host):
    ctx = _ctx(tmp_path)
    kcli = FakeKcli()
    host = libvirt_host(domains={"sno-03", "other"})

    report = CleanupOrchestrator(ctx, kcli, runner, registered=False).run()
    assert report.found == ["vm:sno-03"]
    assert "list vm" not in kcli.calls
    assert host.domains == {"other"}
    assert [c for c in ssh_client.ran("destroy") if "sno-03" in c]


def test_vm_delete_falls_back_to_virsh(tmp_path, ssh_client, runner, libvirt_host):
    ctx = _ctx(tmp_path)
    kcli = FakeKcli(vms={"sno-01"}, vm_delete_fails=True)
    libvirt_host()

    report = CleanupOrchestrator(ctx, kcli, runner).run()
    assert "vm:sno-01" in report.removed
    assert [c for c in ssh_client.ran("--remove-all-storage") if "sno-01" in c]
    # kcli still lists it, so it is reported as remaining
    assert report.remaining == ["vm:sno-01"]


def test_purge_instance_touches_only_that_name(tmp_path, ssh_client, runner, libvirt_host):
    ctx, kcli, host = _deployed(tmp_path, libvirt_host)
    removed = purge_instance("sno-02", ctx, kcli, runner)

    assert "kube:sno-02" in removed and "vm:sno-02" in removed
    assert kcli.kubes == {"sno-01", "hub"}
    assert host.volumes == {"sno-01_0.img", "hub_0.img"}
    assert f"{POOL}/sno-01-sno.iso" in host.files
    assert f"{POOL}/sno-02-sno.iso" not in host.files
    assert ctx.state_dir("sno-01").exists() and not ctx.state_dir("sno-02").exists()
    assert ctx.log_path("sno-01").exists() and not ctx.log_path("sno-02").exists()
    # shared ignition belongs to whichever install ran last
    assert ctx.shared_ignition().exists()


def test_dry_run_removes_nothing(tmp_path, ssh_client, runner, libvirt_host):
    ctx, kcli, host = _deployed(tmp_path, libvirt_host)
    dry = ExecutionContext(
        host=HOST, scratch_root=ctx.scratch_root, clusters_dir=ctx.clusters_dir, dry_run=True
    )
    report = CleanupOrchestrator(dry, kcli, runner).run()
    assert report.removed == []
    assert report.remaining
    assert kcli.kubes == {"sno-01", "sno-02", "hub"}
    assert ssh_client.ran("rm -rf") == []


def test_unremovable_local_file_is_reported_not_raised(tmp_path, runner, libvirt_host, monkeypatch):
    ctx, kcli, host = _deployed(tmp_path, libvirt_host)
    real_unlink = Path.unlink

    def unlink(self, missing_ok=False):
        if self.suffix == ".log":
            raise PermissionError(13, "Permission denied", str(self))
        return real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", unlink)
    report = CleanupOrchestrator(ctx, kcli, runner).run()

    log_label = f"local-file:{ctx.log_path('sno-01')}"
    assert log_label not in report.removed
    assert log_label in report.remaining
    assert f"local-file:{ctx.pid_path('sno-01')}" in report.removed
    assert kcli.kubes == {"hub"}


def test_still_present_lists_every_survivor(tmp_path, runner, libvirt_host, monkeypatch):
    ctx, kcli, host = _deployed(tmp_path, libvirt_host)
    monkeypatch.setattr(cleanup_mod.shutil, "rmtree", lambda *a, **kw: None)
    cleanup = CleanupOrchestrator(ctx, kcli, runner)

    cleanup.purge("sno-01")
    left = cleanup.still_present("sno-01")

    assert left == [f"local-dir:{ctx.state_dir('sno-01')}"]
    assert all("iso.ign" not in label for label in left)
