import io

import pytest

from snolab.utils.ssh_runner import SSHRunner


class _Chan:
    def __init__(self, rc):
        self._rc = rc

    def recv_exit_status(self):
        return self._rc


class _Buf:
    def __init__(self, data, rc):
        self._data = data.encode()
        self.channel = _Chan(rc)

    def read(self):
        return self._data


class _File(io.StringIO):
    def __init__(self, store, path):
        super().__init__()
        self._store = store
        self._path = path

    def __exit__(self, *exc):
        self._store[self._path] = self.getvalue()
        return super().__exit__(*exc)


class FakeSFTP:
    def __init__(self, files):
        self.files = files

    def open(self, path, mode="r"):
        return _File(self.files, path)

    def close(self):
        pass


class FakeSSHClient:
    """
    Canned paramiko client: the first registered fragment found in the
    command decides (out, err, rc). A response may be a callable taking
    the command, for hosts whose state changes while the test runs.
    """

    def __init__(self, default=("", "", 0)):
        self.responses = []
        self.default = default
        self.calls = []
        self.files = {}
        self.transport = None
        self.closed = False

    def on(self, fragment, out="", err="", rc=0):
        self.responses.append((fragment, (out, err, rc)))
        return self

    def on_call(self, fragment, fn):
        self.responses.append((fragment, fn))
        return self

    def exec_command(self, cmd, timeout=None):
        self.calls.append(cmd)
        for fragment, resp in self.responses:
            if fragment in cmd:
                out, err, rc = resp(cmd) if callable(resp) else resp
                break
        else:
            out, err, rc = self.default
        return None, _Buf(out, rc), _Buf(err, rc)

    def open_sftp(self):
        return FakeSFTP(self.files)

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True

    def ran(self, fragment):
        return [c for c in self.calls if fragment in c]


class FakeLibvirtHost:
    """Remote pool with volumes, loose files and domains, answering through FakeSSHClient."""

    pool = "/var/lib/libvirt/images"

    def __init__(self, client, volumes=(), files=(), domains=()):
        self.volumes = set(volumes)
        self.files = set(files)
        self.domains = set(domains)
        client.on_call("vol-list", self.vol_list)
        client.on_call("vol-delete", self.vol_delete)
        client.on_call("ls -1d", self.ls)
        client.on_call("rm -rf", self.rm)
        client.on_call("list --all --name", lambda cmd: ("\n".join(sorted(self.domains)) + "\n", "", 0))
        client.on_call("undefine", self.undefine)

    def vol_list(self, cmd):
        rows = [" Name            Path", "------------------------------------"]
        rows += [f" {v}  {self.pool}/{v}" for v in sorted(self.volumes)]
        return ("\n".join(rows) + "\n", "", 0)

    def vol_delete(self, cmd):
        name = cmd.split("vol-delete ")[1].split()[0].strip("'\"")
        self.volumes.discard(name)
        return ("", "", 0)

    def ls(self, cmd):
        prefix = cmd.split("ls -1d ")[1].split("*")[0]
        hits = sorted(f for f in self.files if f.startswith(prefix))
        return ("\n".join(hits) + "\n", "", 0) if hits else ("", "", 2)

    def rm(self, cmd):
        for f in list(self.files):
            if f in cmd:
                self.files.discard(f)
        return ("", "", 0)

    def undefine(self, cmd):
        for d in list(self.domains):
            if d in cmd:
                self.domains.discard(d)
        return ("", "", 0)


class Capture:
    def __init__(self):
        self.events = []

    def notify(self, ev):
        self.events.append(ev)

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]


@pytest.fixture
def ssh_client():
    return FakeSSHClient()


@pytest.fixture
def runner(ssh_client):
    return SSHRunner(ssh_client, label="test", is_root=True)


@pytest.fixture
def capture():
    return Capture()


@pytest.fixture
def libvirt_host(ssh_client):
    def make(**kw):
        return FakeLibvirtHost(ssh_client, **kw)
    return make
