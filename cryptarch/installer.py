"""Base system installation into the mounted target root."""
from __future__ import annotations

import os
from typing import Iterable, Optional

from .executil import run, trace, wait_for, warn
from .mounts import is_mounted

VENDORS = {
    "GenuineIntel": "intel",
    "AuthenticAMD": "amd",
}


def read_cpuinfo(path: str = "/proc/cpuinfo") -> str:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            return fh.read()
    except OSError as exc:
        warn("installer.cpuinfo_unreadable", path=path, error=str(exc))
        return ""


def cpu_vendor(cpuinfo: str) -> Optional[str]:
    for marker, vendor in VENDORS.items():
        if marker in (cpuinfo or ""):
            return vendor
    return None


def microcode_package(cpuinfo: str, config) -> Optional[str]:
    vendor = cpu_vendor(cpuinfo)
    if vendor == "intel":
        return config.intel_microcode
    if vendor == "amd":
        return config.amd_microcode
    first = next((l for l in (cpuinfo or "").splitlines() if l.startswith("vendor_id")), "")
    warn("installer.microcode_skipped", reason="unrecognised CPU vendor", vendor_line=first.strip())
    return None


def package_set(base: Iterable[str], cpuinfo: str, config) -> list[str]:
    packages: list[str] = []
    for pkg in base:
        if pkg and pkg not in packages:
            packages.append(pkg)
    ucode = microcode_package(cpuinfo, config)
    if ucode and ucode not in packages:
        packages.append(ucode)
    return packages


def install_base(root: str, packages: list[str], config):
    # pacstrap inspects the target's filesystems; make sure the mount is visible first
    wait_for(lambda: is_mounted(root), what=f"mount of {root}", timeout=config.settle_timeout,
             interval=config.poll_interval)
    trace("installer.pacstrap", root=root, packages=packages)
    run(["pacstrap", "-K", root, *packages], check=True, timeout=config.install_timeout)


def write_fstab(root: str) -> str:
    out = run(["genfstab", "-U", root], check=True).out
    path = os.path.join(root, "etc", "fstab")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    data = "# generated by cryptarch from the live mount layout\n" + out.rstrip() + "\n"
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    trace("installer.fstab", path=path)
    return path
