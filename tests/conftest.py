import json
import os
import shutil
import subprocess
import time
from types import SimpleNamespace

import pytest

from offline_backup import backup, devices, eject, executil, health, recovery, repository, workflows, zfs

SERIAL = "ABC123"
DEVICE = "/dev/sdb"
POOL = f"zpool_{SERIAL}"


class RunRecorder:
    def __init__(self, responses=None, default=None):
        self.responses = list(responses or [])
        self.default = default or SimpleNamespace(rc=0, out="", err="", lines=[])
        self.calls = []

    def __call__(self, cmd, **_: object):
        self.calls.append(list(cmd))
        if self.responses:
            return self.responses.pop(0)
        return self.default


class FakeJob:
    def __init__(self, cmd, rc=0):
        self.cmd = list(cmd)
        self.rc = rc
        self.out_path = "/dev/null"
        self.err_path = "/dev/null"
        self.started = time.time()
        self.terminated = False

    def poll(self):
        return self.rc

    def terminate(self):
        self.terminated = True

    def read_output(self):
        err = "" if self.rc == 0 else "Fatal: unable to save snapshot"
        return "", err


class FakeHost:
    """In-memory stand-in for lsblk, udev, zpool/zfs, restic, smartctl, mount and udisksctl."""

    def __init__(self, root):
        self.root = str(root)
        self.devices = [{"name": "sdb", "path": DEVICE, "serial": SERIAL}]
        self.pools = {}
        self.datasets = {}
        self.snapshots = []
        self.calls = []
        self.powered_off = []
        self.extra_mounts = []
        self.sticky_mounts = False
        self.smart_rc = 0
        self.smart_text = "SMART overall-health self-assessment test result: PASSED\n"
        self.scrub_polls = 0
        self.backup_rc = 0
        self.entries = []
        self.listing = None
        self.corrupt_restore = False
        self.skip_restore = False
        self.jobs = []

    # ------------------------------------------------------------ helpers
    def commands(self, prefix):
        return [c for c in self.calls if c[: len(prefix)] == prefix]

    def mountpoint(self, dataset):
        return os.path.join(self.root, "mnt", dataset)

    def _result(self, rc=0, out="", err=""):
        return executil.Result(rc, out, err, 0.0)

    # ------------------------------------------------------------ run()
    def run(self, cmd, check=True, timeout=None, env=None):
        cmd = list(cmd)
        self.calls.append(cmd)
        res = self._dispatch(cmd)
        if check and res.rc != 0:
            raise subprocess.CalledProcessError(res.rc, cmd, res.out, res.err)
        return res

    def _dispatch(self, cmd):
        tool = cmd[0]
        handler = getattr(self, "_" + tool.replace("-", "_"), None)
        if handler is None:
            return self._result(127, err=f"{tool}: not simulated")
        return handler(cmd)

    def _lsblk(self, cmd):
        if "-J" in cmd:
            return self._result(out=json.dumps({"blockdevices": self.devices}))
        path = cmd[-1]
        return self._result(out=f"NAME MODEL SIZE VENDOR SERIAL\n{os.path.basename(path)} Portable SSD 1.8T Acme {SERIAL}\n")

    def _udevadm(self, cmd):
        return self._result(out=f"E: ID_SERIAL_SHORT={SERIAL}\nE: DEVNAME={cmd[-1].split('=', 1)[-1]}\n")

    def _umount(self, cmd):
        return self._result(32, err=f"umount: {cmd[-1]}: not mounted.")

    def _zpool(self, cmd):
        sub = cmd[1]
        if sub == "list" and "-H" in cmd:
            names = [name for name, pool in self.pools.items() if pool["imported"]]
            return self._result(out="".join(f"{n}\n" for n in names))
        if sub == "list":
            # only imported pools are visible to zpool list
            pool = self.pools.get(cmd[2])
            return self._result(0 if pool and pool["imported"] else 1, err="cannot open: no such pool")
        if sub == "create":
            pool, dev = cmd[-2], cmd[-1]
            self.pools[pool] = {"device": dev, "imported": True}
            # a new pool replaces whatever was on the device
            self.datasets = {ds: p for ds, p in self.datasets.items() if not ds.startswith(pool + "/")}
            self.snapshots = [s for s in self.snapshots if not s.startswith(pool + "/")]
            shutil.rmtree(os.path.join(self.root, "mnt", pool), ignore_errors=True)
            return self._result()
        if sub == "import" and len(cmd) == 2:
            exported = [name for name, pool in self.pools.items() if not pool["imported"]]
            if not exported:
                return self._result(1, err="no pools available to import")
            return self._result(out="".join(f"   pool: {n}\n     id: 1234567890\n  state: ONLINE\n" for n in exported))
        if sub == "import":
            if cmd[-1] not in self.pools:
                return self._result(1, err="cannot import: no such pool available")
            self.pools[cmd[-1]]["imported"] = True
            return self._result()
        if sub == "export":
            pool = cmd[-1]
            if pool not in self.pools or not self.pools[pool]["imported"]:
                return self._result(1, err="cannot open: no such pool")
            self.pools[pool]["imported"] = False
            return self._result()
        if sub == "scrub":
            return self._result()
        if sub == "status":
            if self.scrub_polls > 0:
                self.scrub_polls -= 1
                return self._result(out="  scan: scrub in progress since Tue Jan  2 15:00:00 2024\n")
            return self._result(out="  scan: scrub repaired 0B in 00:00:01 with 0 errors\n")
        if sub == "get":
            return self._result(out=f"NAME PROPERTY VALUE SOURCE\n{cmd[-1]} health ONLINE -\n")
        return self._result(1, err="unsupported zpool call")

    def _zfs(self, cmd):
        sub = cmd[1]
        if sub == "list":
            return self._result(0 if cmd[-1] in self.datasets else 1, err="dataset does not exist")
        if sub == "create":
            self.datasets[cmd[-1]] = {"mountpoint": self.mountpoint(cmd[-1])}
            os.makedirs(self.mountpoint(cmd[-1]), exist_ok=True)
            return self._result()
        if sub == "set":
            props = self.datasets[cmd[-1]]
            for assignment in cmd[2:-1]:
                key, value = assignment.split("=", 1)
                props[key] = value
            return self._result()
        if sub == "get" and cmd[2] == "all":
            props = self.datasets.get(cmd[-1], {})
            return self._result(out="".join(f"{cmd[-1]} {k} {v} local\n" for k, v in props.items()))
        if sub == "get" and cmd[-2] == "mountpoint":
            return self._result(out=self.datasets[cmd[-1]]["mountpoint"] + "\n")
        if sub == "get":
            props = self.datasets[cmd[-1]]
            names = cmd[-2].split(",")
            return self._result(out="".join(f"{n}\t{props.get(n, '-')}\n" for n in names))
        if sub == "snapshot":
            self.snapshots.append(cmd[-1])
            return self._result()
        return self._result(1, err="unsupported zfs call")

    def _mount(self, cmd):
        lines = []
        for name, pool in self.pools.items():
            if pool["imported"] or self.sticky_mounts:
                for ds, props in self.datasets.items():
                    if ds.startswith(name + "/"):
                        lines.append(f"{ds} on {props['mountpoint']} type zfs (rw,noatime,xattr,noacl)")
        lines.extend(self.extra_mounts)
        return self._result(out="".join(line + "\n" for line in lines))

    def _smartctl(self, cmd):
        return self._result(self.smart_rc, out=self.smart_text)

    def _udisksctl(self, cmd):
        self.powered_off.append(cmd[-1])
        return self._result()

    def _restic(self, cmd):
        repo = cmd[2]
        args = cmd[5:]
        if args[0] == "init":
            os.makedirs(repo, exist_ok=True)
            with open(os.path.join(repo, "config"), "w", encoding="utf-8") as fh:
                fh.write("{}")
            return self._result(out=f"created restic repository at {repo}\n")
        if args[:2] == ["ls", "latest"]:
            entries = self.listing if self.listing is not None else self.entries
            header = "snapshot 1a2b3c4d of [/data] at 2024-01-02 15:30:00.000000000 +0000 UTC):\n"
            return self._result(out=header + "".join(e + "\n" for e in entries))
        if args[:2] == ["restore", "latest"]:
            target = args[args.index("--target") + 1]
            include = args[args.index("--include") + 1]
            if self.skip_restore:
                return self._result()
            dest = os.path.join(target, include.lstrip("/"))
            os.makedirs(os.path.dirname(dest), exist_ok=True)
            shutil.copyfile(include, dest)
            if self.corrupt_restore:
                with open(dest, "ab") as fh:
                    fh.write(b"\x00bitrot")
            return self._result()
        return self._result(1, err="unsupported restic call")

    # ------------------------------------------------------------ spawn()
    def spawn(self, cmd, name="job", env=None):
        self.calls.append(list(cmd))
        if self.backup_rc == 0:
            self.entries = self._walk(cmd)
        job = FakeJob(cmd, rc=self.backup_rc)
        self.jobs.append(job)
        return job

    @staticmethod
    def _walk(cmd):
        source = cmd[cmd.index("backup") + 1]
        excludes = [cmd[i + 1] for i, part in enumerate(cmd) if part == "--exclude"]
        entries = []
        for dirpath, dirnames, filenames in os.walk(source):
            if any(dirpath == ex or dirpath.startswith(ex.rstrip("/") + "/") for ex in excludes):
                dirnames[:] = []
                continue
            entries.append(dirpath)
            entries.extend(os.path.join(dirpath, f) for f in sorted(filenames))
        return entries


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)


@pytest.fixture
def host(tmp_path, monkeypatch):
    fake = FakeHost(tmp_path / "host")
    for module in (devices, zfs, repository, health, eject, recovery):
        monkeypatch.setattr(module, "run", fake.run)
    for module in (devices, zfs):
        monkeypatch.setattr(module, "udev_settle", lambda: None)
    monkeypatch.setattr(backup, "spawn", fake.spawn)
    monkeypatch.setattr(workflows, "require_tools", lambda tools: {t: f"/usr/sbin/{t}" for t in tools})
    return fake


@pytest.fixture
def password_file(tmp_path):
    path = tmp_path / "restic.pass"
    path.write_text("s3cr3t\n", encoding="utf-8")
    return path


@pytest.fixture
def source_tree(tmp_path):
    root = tmp_path / "data"
    (root / "tmp").mkdir(parents=True)
    (root / "docs").mkdir()
    (root / "notes.txt").write_text("offline backups are the best backups\n", encoding="utf-8")
    (root / "docs" / "plan.md").write_text("# plan\n", encoding="utf-8")
    (root / "tmp" / "scratch.bin").write_bytes(os.urandom(64))
    return root


@pytest.fixture
def vars_file(tmp_path, password_file, source_tree):
    path = tmp_path / "vars.yaml"
    scratch = tmp_path / "scratch"
    path.write_text(
        "\n".join(
            [
                f"serial_number: {SERIAL}",
                "dataset_name: backup",
                f"restic_password_file: {password_file}",
                f"dir_to_backup: {source_tree}",
                "exclude_dirs:",
                f"  - {source_tree / 'tmp'}",
                f"scratch_root: {scratch}",
                "scrub_poll_seconds: 1",
                "backup_poll_seconds: 1",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return path
