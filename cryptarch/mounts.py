"""Mount helpers for the target root tree."""
from __future__ import annotations

import os

from .errors import TeardownWarning, ToolInvocationError
from .executil import run, trace, udev_settle, wait_for
from .model import EncryptedVolume, MountEntry, MountPlan, PartitionTable


def build_plan(root: str, table: PartitionTable, volume: EncryptedVolume, esp_subpath: str = "boot/efi") -> MountPlan:
    return MountPlan(
        root=root,
        entries=[
            MountEntry(volume.root_device, "", "ext4"),
            MountEntry(table.boot.path, "boot", "ext4"),
            # Keep the ESP permissions tight.
            MountEntry(table.esp.path, esp_subpath, "vfat", ["umask=0077"]),
        ],
    )


def findmnt_source(target: str) -> str:
    r = run(["findmnt", "-n", "-o", "SOURCE", "--mountpoint", target], check=False, retry_on_timeout=True)
    return (r.out or "").strip() if r.rc == 0 else ""


def is_mounted(target: str) -> bool:
    return bool(findmnt_source(target))


def _same_device(a: str, b: str) -> bool:
    return os.path.realpath(a) == os.path.realpath(b)


def unmount(target: str) -> TeardownWarning | None:
    """Unmount ``target``; an already-unmounted target is only a warning."""

    if not is_mounted(target):
        return TeardownWarning(target, "already unmounted")
    res = run(["umount", target], check=False)
    if res.rc != 0:
        return TeardownWarning(target, (res.err or res.out or f"umount exited {res.rc}").strip())
    trace("mounts.unmounted", target=target)
    return None


class MountManager:
    """Mounts a :class:`MountPlan` in order and owns the matching unmounts."""

    def __init__(self, plan: MountPlan, timeout: float = 30.0, interval: float = 0.25):
        self.plan = plan
        self.timeout = timeout
        self.interval = interval
        self.obligations: list[str] = []

    @property
    def root(self) -> str:
        return self.plan.root

    def _mount(self, entry: MountEntry):
        target = self.plan.target(entry)
        current = findmnt_source(target)
        if current:
            if not _same_device(current, entry.source):
                raise ToolInvocationError(
                    1, ["mount", entry.source, target],
                    reason=f"{target} is already mounted from {current}, expected {entry.source}",
                )
            trace("mounts.adopted", source=entry.source, target=target)
            self.obligations.append(target)
            return

        os.makedirs(target, exist_ok=True)
        cmd = ["mount"]
        if entry.fstype:
            cmd += ["-t", entry.fstype]
        if entry.options:
            cmd += ["-o", ",".join(entry.options)]
        cmd += [entry.source, target]
        run(cmd, check=True)
        self.obligations.append(target)
        wait_for(lambda: is_mounted(target), what=f"mount of {target}", timeout=self.timeout, interval=self.interval)
        trace("mounts.mounted", source=entry.source, target=target)

    def mount_all(self):
        for entry in self.plan.entries:
            self._mount(entry)

    def adopt_mounted(self) -> list[str]:
        """Take over whatever part of the plan is still mounted, without mounting."""

        for entry in self.plan.entries:
            target = self.plan.target(entry)
            if target not in self.obligations and is_mounted(target):
                self.obligations.append(target)
        trace("mounts.adopted_existing", targets=list(self.obligations))
        return list(self.obligations)

    def unmount_all(self) -> list[TeardownWarning]:
        warnings: list[TeardownWarning] = []
        run(["sync"], check=False)
        while self.obligations:
            target = self.obligations.pop()
            w = unmount(target)
            if w is not None:
                warnings.append(w)
        udev_settle()
        return warnings
