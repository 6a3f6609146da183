import ast
import json
import os
import sys
import threading
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Set

import pytest

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "cryptarch").absolute()

from cryptarch import devices, executil, preflight  # noqa: E402
from cryptarch.config import InstallConfig  # noqa: E402


# -- line coverage for the cryptarch package ---------------------------------


def _statement_lines(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()
    text = source.splitlines()
    lines: Set[int] = set()
    for node in ast.walk(tree):
        if not isinstance(node, ast.stmt):
            continue
        line = text[node.lineno - 1].strip() if node.lineno <= len(text) else ""
        if line and not line.startswith("#"):
            lines.add(node.lineno)
    return lines


class _Coverage:
    def __init__(self, package_dir: Path):
        self.candidates: Dict[Path, Set[int]] = {
            p.absolute(): _statement_lines(p) for p in package_dir.rglob("*.py") if p.is_file()
        }
        self.hits: Dict[Path, Set[int]] = defaultdict(set)
        self.active = False
        self._prev = None
        self._prev_thread = None

    def _trace(self, frame, event, arg):
        if event == "line":
            path = Path(frame.f_code.co_filename)
            if path in self.candidates:
                self.hits[path].add(frame.f_lineno)
        return self._trace

    def start(self):
        if self.active:
            return
        self.active = True
        self.hits.clear()
        self._prev = sys.gettrace()
        self._prev_thread = threading.gettrace()
        sys.settrace(self._trace)
        threading.settrace(self._trace)

    def stop(self):
        if not self.active:
            return
        self.active = False
        sys.settrace(self._prev)
        threading.settrace(self._prev_thread)

    def report(self, write_line):
        total = covered_total = 0
        rows = []
        for path in sorted(self.candidates):
            stmts = self.candidates[path]
            if not stmts:
                continue
            covered = len(self.hits.get(path, set()) & stmts)
            total += len(stmts)
            covered_total += covered
            rows.append((path.relative_to(_ROOT_DIR), len(stmts), len(stmts) - covered, covered / len(stmts) * 100.0))
        if not rows:
            return
        header = f"{'Name':<50} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
        write_line("")
        write_line("Coverage summary for 'cryptarch':")
        write_line(header)
        write_line("-" * len(header))
        for name, stmts, miss, pct in rows:
            write_line(f"{str(name):<50} {stmts:>6} {miss:>6} {pct:>6.1f}%")
        write_line("-" * len(header))
        write_line(f"{'TOTAL':<50} {total:>6} {total - covered_total:>6} {covered_total / total * 100.0:>6.1f}%")


_COVERAGE = _Coverage(_PACKAGE_DIR)


def pytest_sessionstart(session):
    _COVERAGE.start()


def pytest_sessionfinish(session, exitstatus):
    _COVERAGE.stop()
    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    _COVERAGE.report(terminal.write_line if terminal else print)


# -- fake tool environment ---------------------------------------------------

MIB = 1024 * 1024
GIB = 1024 * MIB
LUKS_UUID = "3f1c2a9e-7d4b-4c1e-9a55-0b6e2f8d1c70"

DEFAULT_MKINITCPIO = (
    "# vim:set ft=sh\n"
    "MODULES=()\n"
    "BINARIES=()\n"
    "FILES=()\n"
    "#    HOOKS=(base)\n"
    "HOOKS=(base udev autodetect microcode modconf kms keyboard keymap consolefont block filesystems fsck)\n"
)
DEFAULT_GRUB = (
    "GRUB_DEFAULT=0\n"
    "GRUB_TIMEOUT=5\n"
    'GRUB_DISTRIBUTOR="Arch"\n'
    'GRUB_CMDLINE_LINUX_DEFAULT="loglevel=3 quiet"\n'
    'GRUB_CMDLINE_LINUX=""\n'
)
DEFAULT_LOCALE_GEN = "#  en_SG.UTF-8 UTF-8\n#en_US.UTF-8 UTF-8\n#en_US ISO-8859-1\n"


class FakeSystem:
    """Stands in for ``subprocess.run`` with a tiny model of one disk.

    Knows enough about sgdisk, cryptsetup, mount and the chroot tools to
    drive a whole pipeline run against a temporary target root.
    """

    def __init__(self, root: Path, disk: str = "/dev/test0", size: int = 20 * GIB):
        self.root = Path(root)
        self.disk = disk
        self.size = size
        self.partitions: list[dict] = []
        self.luks: Dict[str, str] = {}
        self.opened: Dict[str, str] = {}
        self.mounts: Dict[str, str] = {}
        self.formatted: Dict[str, str] = {}
        self.users: Set[str] = set()
        self.calls: list[list[str]] = []
        self.failures: Dict[str, list] = defaultdict(list)
        self.next_uuid = LUKS_UUID
        self.package_list = "base\nlinux\n"
        # what backs the running system
        self.host_root = "/dev/sda2"
        self.host_stack = {"/dev/sda2": [("sda2", "part"), ("sda", "disk")]}

    # helpers for tests
    def fail(self, tool: str, rc: int = 1, err: str = "boom", times: int = 1):
        self.failures[tool].extend([(rc, err)] * times)

    def ran(self, tool: str) -> list[list[str]]:
        return [c for c in self.calls if c and c[0] == tool]

    def chroot_calls(self) -> list[list[str]]:
        return [c[2:] for c in self.ran("arch-chroot")]

    def _part_path(self, n: int) -> str:
        return f"{self.disk}p{n}" if self.disk[-1].isdigit() else f"{self.disk}{n}"

    def __call__(self, cmd, **kwargs):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        tool = cmd[0]
        if self.failures.get(tool):
            rc, err = self.failures[tool].pop(0)
            return SimpleNamespace(returncode=rc, stdout="", stderr=err)
        handler = getattr(self, "_" + tool.replace(".", "_").replace("-", "_"), None)
        if handler is None:
            return self._ok()
        return handler(cmd)

    @staticmethod
    def _ok(out: str = "", rc: int = 0, err: str = ""):
        return SimpleNamespace(returncode=rc, stdout=out, stderr=err)

    def _blockdev(self, cmd):
        if "--getsize64" in cmd:
            return self._ok(f"{self.size}\n")
        if "--getss" in cmd:
            return self._ok("512\n")
        return self._ok()

    def _lsblk(self, cmd):
        if "-J" in cmd:
            children = [
                {"name": p["path"].rsplit("/", 1)[-1], "path": p["path"], "type": "part",
                 "size": p["size"], "partn": p["number"]}
                for p in self.partitions
            ]
            node = {"name": self.disk.rsplit("/", 1)[-1], "path": self.disk, "type": "disk",
                    "size": self.size, "partn": None, "children": children}
            return self._ok(json.dumps({"blockdevices": [node]}))
        if "TYPE" in cmd:
            return self._ok("disk\n" if cmd[-1] == self.disk else "part\n")
        if "-s" in cmd:
            stack = self.host_stack.get(cmd[-1], [])
            return self._ok("".join(f"{name} {kind}\n" for name, kind in stack))
        return self._ok()

    def _sgdisk(self, cmd):
        if "--zap-all" in cmd or "--clear" in cmd:
            self.partitions = []
            return self._ok()
        if "-n" in cmd:
            number, _start, end = cmd[cmd.index("-n") + 1].split(":")
            number = int(number)
            if end == "0":
                used = sum(p["size"] for p in self.partitions)
                size = self.size - 2 * MIB - used
            else:
                size = int(end.lstrip("+").rstrip("M")) * MIB
            self.partitions.append({"path": self._part_path(number), "number": number, "size": size})
        return self._ok()

    def _cryptsetup(self, cmd):
        if "isLuks" in cmd:
            return self._ok(rc=0 if cmd[-1] in self.luks else 1)
        if "luksFormat" in cmd:
            self.luks[cmd[-1]] = self.next_uuid
            return self._ok()
        if "luksUUID" in cmd:
            uuid = self.luks.get(cmd[-1])
            return self._ok(uuid + "\n") if uuid else self._ok(rc=1, err="not a LUKS device")
        if "status" in cmd:
            name = cmd[cmd.index("status") + 1]
            if name in self.opened:
                return self._ok(f"/dev/mapper/{name} is active.\n  type:    LUKS2\n  device:  {self.opened[name]}\n")
            return self._ok(f"/dev/mapper/{name} is inactive.\n", rc=4)
        if "open" in cmd:
            i = cmd.index("open")
            self.opened[cmd[i + 2]] = cmd[i + 1]
            return self._ok()
        if "close" in cmd:
            name = cmd[cmd.index("close") + 1]
            if self.opened.pop(name, None) is None:
                return self._ok(rc=4, err=f"Device {name} is not active.")
            return self._ok()
        return self._ok()

    def _blkid(self, cmd):
        uuid = self.luks.get(cmd[-1])
        if uuid is None and "TYPE=crypto_LUKS" not in cmd and cmd[-1] in self.formatted:
            uuid = "5e1f0c2a-0000-4000-8000-" + cmd[-1].rsplit("p", 1)[-1].zfill(12)
        return self._ok(uuid + "\n") if uuid else self._ok(rc=2)

    def _mkfs_fat(self, cmd):
        self.formatted[cmd[-1]] = "vfat"
        return self._ok()

    def _mkfs_ext4(self, cmd):
        self.formatted[cmd[-1]] = "ext4"
        return self._ok()

    def _mount(self, cmd):
        self.mounts[cmd[-1]] = cmd[-2]
        return self._ok()

    def _umount(self, cmd):
        if self.mounts.pop(cmd[-1], None) is None:
            return self._ok(rc=32, err=f"umount: {cmd[-1]}: not mounted.")
        return self._ok()

    def _findmnt(self, cmd):
        if "--mountpoint" in cmd:
            src = self.mounts.get(cmd[-1])
            return self._ok(src + "\n") if src else self._ok(rc=1)
        if cmd[-1] == "/":
            return self._ok(self.host_root + "\n")
        return self._ok(rc=1)

    def _write(self, rel: str, data: str):
        path = self.root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(data, encoding="utf-8")

    def _pacstrap(self, cmd):
        self._write("etc/mkinitcpio.conf", DEFAULT_MKINITCPIO)
        self._write("etc/default/grub", DEFAULT_GRUB)
        self._write("etc/locale.gen", DEFAULT_LOCALE_GEN)
        self._write("usr/share/zoneinfo/America/Montreal", "TZif2")
        self._write("boot/initramfs-linux.img", "stale")
        return self._ok()

    def _genfstab(self, cmd):
        return self._ok("UUID=aaaa / ext4 rw,relatime 0 1\nUUID=bbbb /boot ext4 rw 0 2\n")

    def _curl(self, cmd):
        if "-o" in cmd:
            dest = Path(cmd[cmd.index("-o") + 1])
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text("#!/bin/sh\necho second stage\n", encoding="utf-8")
            return self._ok()
        return self._ok(self.package_list)

    def _arch_chroot(self, cmd):
        inner = cmd[2:]
        name = inner[0]
        if name == "locale-gen":
            self._write("usr/lib/locale/locale-archive", "archive")
        elif name == "mkinitcpio":
            self._write("boot/initramfs-linux.img", "fresh image")
        elif name == "grub-mkconfig":
            grub = (self.root / "etc/default/grub").read_text(encoding="utf-8")
            self._write(inner[-1].lstrip("/"), "# generated\n" + grub)
        elif name == "id":
            return self._ok("1000\n") if inner[-1] in self.users else self._ok(rc=1, err="no such user")
        elif name == "useradd":
            self.users.add(inner[-1])
        return self._ok()


@pytest.fixture(autouse=True)
def isolated_base(tmp_path, monkeypatch):
    base = tmp_path / "base"
    monkeypatch.setenv("CRYPTARCH_BASE_PATH", str(base))
    monkeypatch.setattr(executil, "LOG_DIRS", [str(base / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    return base


@pytest.fixture
def fake_system(tmp_path, monkeypatch):
    system = FakeSystem(tmp_path / "mnt")
    monkeypatch.setattr(executil.subprocess, "run", system)
    monkeypatch.setattr(executil.time, "sleep", lambda _s: None)
    monkeypatch.setattr(devices, "_node_ready", lambda _path: True)
    monkeypatch.setattr(preflight, "is_block_device", lambda _path: True)
    return system


@pytest.fixture
def install_config(tmp_path):
    cpuinfo = tmp_path / "cpuinfo"
    cpuinfo.write_text("processor\t: 0\nvendor_id\t: GenuineIntel\nmodel name\t: Test CPU\n", encoding="utf-8")
    return InstallConfig(
        teardown=True,
        target_root=str(tmp_path / "mnt"),
        cpuinfo_path=str(cpuinfo),
        settle_timeout=2.0,
        poll_interval=0.01,
    )


@pytest.fixture
def passphrase_file(tmp_path):
    path = tmp_path / "passphrase"
    path.write_text("correct horse battery staple", encoding="utf-8")
    os.chmod(path, 0o600)
    return str(path)
