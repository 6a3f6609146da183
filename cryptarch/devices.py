"""Block device probing (read-only)."""
from __future__ import annotations

import contextlib
import json
import os
import stat

from .errors import ToolInvocationError
from .executil import run, trace, udev_settle, wait_for
from .model import TargetDevice


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:  # noqa: PERF203 - surface unexpected stat failures
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def _node_ready(path: str) -> bool:
    return is_block_device(path)


def wait_for_block(path: str, timeout: float = 30.0, interval: float = 0.25) -> None:
    """Wait until ``path`` resolves to a block device node."""

    wait_for(lambda: _node_ready(path), what=f"block device {path}", timeout=timeout, interval=interval, settle=True)


def partition_path(device: str, index: int) -> str:
    # NVMe, MMC and loop devices need a ``p`` separator (``nvme0n1p1``),
    # while ``sda`` style names do not.
    base = device.rstrip("/") or device
    suffix = "p" if base[-1:].isdigit() else ""
    return f"{base}{suffix}{index}"


def disk_type(device: str) -> str:
    out = (run(["lsblk", "-dno", "TYPE", device], check=False, retry_on_timeout=True).out or "").strip()
    return out.splitlines()[0].strip() if out else ""


def target_device(path: str) -> TargetDevice:
    size = run(["blockdev", "--getsize64", path], check=True, retry_on_timeout=True).out.strip()
    sector = run(["blockdev", "--getss", path], check=False, retry_on_timeout=True).out.strip()
    try:
        size_bytes = int(size)
    except ValueError as exc:
        raise ToolInvocationError(0, ["blockdev", "--getsize64", path], size, reason=f"unexpected size {size!r} for {path}") from exc
    try:
        sector_size = int(sector) if sector else 512
    except ValueError:
        sector_size = 512
    return TargetDevice(path=path, size_bytes=size_bytes, sector_size=sector_size)


def list_partitions(device: str) -> list[dict]:
    """Return the kernel's view of ``device``'s partitions, sorted by number."""

    udev_settle()
    result = run(["lsblk", "-J", "-b", "-o", "NAME,PATH,TYPE,SIZE,PARTN", device], check=True, retry_on_timeout=True)
    try:
        payload = json.loads(result.out or "{}")
    except json.JSONDecodeError as exc:
        raise ToolInvocationError(0, ["lsblk", device], result.out, reason=f"failed to parse lsblk output for {device}: {exc}") from exc

    node = None
    for entry in payload.get("blockdevices") or []:
        if entry.get("path") == device or entry.get("name") == device.rsplit("/", 1)[-1]:
            node = entry
            break
    if node is None:
        raise ToolInvocationError(0, ["lsblk", device], result.out, reason=f"lsblk did not report device {device}")

    parts = []
    for child in node.get("children") or []:
        if child.get("type") != "part":
            continue
        path = child.get("path") or child.get("name") or ""
        if path and not path.startswith("/"):
            path = f"/dev/{path}"
        try:
            number = int(child.get("partn"))
        except (TypeError, ValueError):
            number = None
        try:
            size = int(child.get("size") or 0)
        except (TypeError, ValueError):
            size = 0
        parts.append({"path": path, "number": number, "size": size})
    parts.sort(key=lambda p: (p["number"] is None, p["number"] or 0, p["path"]))
    trace("devices.partitions", device=device, partitions=parts)
    return parts


def _device_realpath(dev: str) -> str:
    try:
        return os.path.realpath(dev)
    except OSError:
        return dev


def mountpoints(dev: str) -> list[str]:
    found: list[str] = []
    real = _device_realpath(dev)
    try:
        with open("/proc/self/mountinfo", "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.strip().split()
                if not parts:
                    continue
                with contextlib.suppress(ValueError):
                    dash = parts.index("-")
                    source_idx = dash + 2
                    if source_idx >= len(parts):
                        continue
                    if _device_realpath(parts[source_idx]) == real:
                        found.append(parts[4].replace("\\040", " "))
    except FileNotFoundError:
        return []
    except OSError as exc:  # noqa: PERF203 - diagnostic trace
        trace("devices.mountinfo_error", device=dev, error=str(exc))
    return found


def holders(dev: str) -> list[str]:
    name = os.path.basename(_device_realpath(dev))
    holders_dir = os.path.join("/sys/class/block", name, "holders")
    try:
        return sorted(os.listdir(holders_dir))
    except FileNotFoundError:
        return []
    except OSError as exc:  # noqa: PERF203 - diagnostic trace
        trace("devices.holders_error", device=dev, path=holders_dir, error=str(exc))
        return []


def is_read_only(dev: str) -> bool:
    name = os.path.basename(_device_realpath(dev))
    ro_path = os.path.join("/sys/class/block", name, "ro")
    try:
        with open(ro_path, "r", encoding="utf-8") as fh:
            return fh.read().strip() == "1"
    except OSError:
        return False


def busy_reasons(dev: str) -> list[str]:
    reasons: list[str] = []
    mounted = mountpoints(dev)
    if mounted:
        reasons.append(f"mounted at {', '.join(sorted(mounted))}")
    held = holders(dev)
    if held:
        reasons.append(f"held by {', '.join(held)}")
    return reasons


def backing_disks(source: str) -> list[str]:
    """Whole disks under ``source``, walking up through crypt, LVM and partitions."""

    r = run(["lsblk", "-s", "-l", "-n", "-o", "NAME,TYPE", source], check=False, retry_on_timeout=True)
    disks: list[str] = []
    for line in (r.out or "").splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[-1] == "disk" and fields[0] not in disks:
            disks.append(fields[0])
    return disks


def live_disks() -> list[str]:
    """Names of the disks backing the running system's ``/`` and ``/boot``."""

    found: list[str] = []
    for mountpoint in ("/", "/boot"):
        src = (run(["findmnt", "-no", "SOURCE", mountpoint], check=False, retry_on_timeout=True).out or "").strip()
        # btrfs subvolumes show up as /dev/sda2[/@]
        src = src.split("[", 1)[0]
        if not src:
            continue
        for disk in backing_disks(src) or [os.path.basename(src)]:
            if disk not in found:
                found.append(disk)
    return found
