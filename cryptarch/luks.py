"""LUKS (+ optional LVM) lifecycle for the root partition."""

from __future__ import annotations

from .devices import busy_reasons, wait_for_block
from .errors import TeardownWarning, ToolInvocationError
from .executil import run, trace, udev_settle, warn
from .model import EncryptedVolume

BAD_PASSPHRASE_RC = 2
FORMAT_TIMEOUT = 360.0


def volume_for(partition: str, config) -> EncryptedVolume:
    return EncryptedVolume(
        backing=partition,
        mapped_name=config.mapped_name,
        cipher=config.cipher,
        key_size=config.key_size,
        hash=config.hash,
        pbkdf=config.pbkdf,
        iter_time_ms=config.iter_time_ms,
        lvm_vg=config.lvm_vg if config.lvm else None,
        lvm_lv=config.lvm_lv if config.lvm else None,
    )


def _key_args(passphrase_file: str | None) -> list[str]:
    return ["--key-file", passphrase_file] if passphrase_file else []


def is_open(name: str) -> bool:
    return run(["cryptsetup", "status", name], check=False, retry_on_timeout=True).rc == 0


def _open_backing(name: str) -> str:
    out = run(["cryptsetup", "status", name], check=False, retry_on_timeout=True).out or ""
    for line in out.splitlines():
        key, _, value = line.strip().partition(":")
        if key.strip() == "device":
            return value.strip()
    return ""


def format_luks(volume: EncryptedVolume, passphrase_file: str | None = None, attempts: int = 2):
    cmd = [
        "cryptsetup",
        "--type", "luks2",
        "--cipher", volume.cipher,
        "--key-size", str(volume.key_size),
        "--hash", volume.hash,
        "--pbkdf", volume.pbkdf,
        "--iter-time", str(volume.iter_time_ms),
        "--use-urandom",
    ]
    if passphrase_file:
        cmd += ["--batch-mode", *_key_args(passphrase_file)]
    else:
        cmd += ["--verify-passphrase"]
    cmd += ["luksFormat", volume.backing]

    for attempt in range(1, max(1, attempts) + 1):
        try:
            run(cmd, check=True, timeout=FORMAT_TIMEOUT if passphrase_file else None,
                interactive=not passphrase_file)
            break
        except ToolInvocationError as exc:
            reasons = busy_reasons(volume.backing)
            trace("luks.format_failed", device=volume.backing, attempt=attempt, rc=exc.returncode, busy=reasons)
            if reasons:
                exc.reason = f"luksFormat failed on {volume.backing}: device is busy ({'; '.join(reasons)})"
                raise
            # a timed-out format may still be writing the header
            if exc.returncode == 124 or attempt >= attempts:
                raise
            udev_settle()
    udev_settle()
    trace("luks.formatted", device=volume.backing)


def open_luks(volume: EncryptedVolume, passphrase_file: str | None = None, attempts: int = 3, timeout: float = 30.0):
    name = volume.mapped_name
    if is_open(name):
        backing = _open_backing(name)
        if backing and backing != volume.backing:
            raise ToolInvocationError(
                1, ["cryptsetup", "status", name],
                reason=f"/dev/mapper/{name} is already open on {backing}, not {volume.backing}",
            )
        trace("luks.already_open", name=name, device=volume.backing)
        return

    cmd = ["cryptsetup", "open", volume.backing, name, *_key_args(passphrase_file)]
    last = None
    for attempt in range(1, max(1, attempts) + 1):
        res = run(cmd, check=False, timeout=120.0 if passphrase_file else None, interactive=not passphrase_file)
        if res.rc == 0:
            wait_for_block(volume.mapper_path, timeout=timeout)
            trace("luks.opened", name=name, device=volume.backing, attempts=attempt)
            return
        last = res
        if res.rc != BAD_PASSPHRASE_RC:
            raise ToolInvocationError(res.rc, cmd, res.out, res.err)
        warn("luks.bad_passphrase", name=name, attempt=attempt, attempts=attempts)
    raise ToolInvocationError(
        last.rc, cmd, last.out, last.err,
        reason=f"could not unlock {volume.backing} after {attempts} attempt(s)",
    )


def _blkid_luks_uuid(partition: str) -> str:
    r = run(["blkid", "-t", "TYPE=crypto_LUKS", "-s", "UUID", "-o", "value", partition],
            check=False, retry_on_timeout=True)
    return (r.out or "").strip() if r.rc == 0 else ""


def query_uuid(partition: str) -> str:
    """Read the LUKS header UUID from the live device."""

    res = run(["cryptsetup", "luksUUID", partition], check=False, retry_on_timeout=True)
    value = (res.out or "").strip() if res.rc == 0 else ""
    if not value:
        value = _blkid_luks_uuid(partition)
    if not value:
        raise ToolInvocationError(res.rc or 1, ["cryptsetup", "luksUUID", partition],
                                  reason=f"could not read LUKS UUID of {partition}")
    return value


def make_vg_lv(volume: EncryptedVolume, size: str = "100%FREE", timeout: float = 30.0):
    run(["pvcreate", "-ff", "-y", volume.mapper_path], check=True, timeout=60.0)
    run(["vgcreate", volume.lvm_vg, volume.mapper_path], check=True, timeout=60.0)
    run(["lvcreate", "-n", volume.lvm_lv, "-l", size, volume.lvm_vg], check=True, timeout=60.0)
    udev_settle()
    wait_for_block(volume.root_device, timeout=timeout)


def activate_vg(volume: EncryptedVolume, timeout: float = 30.0):
    """Activate logical volumes for the volume group if LVM is in use."""

    if not volume.lvm_vg:
        return
    run(["vgchange", "-ay", volume.lvm_vg], check=True, timeout=60.0)
    udev_settle()
    wait_for_block(volume.root_device, timeout=timeout)


def deactivate_vg(volume: EncryptedVolume) -> TeardownWarning | None:
    if not volume.lvm_vg:
        return None
    res = run(["vgchange", "-an", volume.lvm_vg], check=False, timeout=60.0)
    udev_settle()
    if res.rc != 0:
        return TeardownWarning(volume.lvm_vg, (res.err or res.out or f"vgchange exited {res.rc}").strip())
    return None


def close_luks(name: str) -> TeardownWarning | None:
    if not is_open(name):
        return TeardownWarning(f"/dev/mapper/{name}", "already closed")
    res = run(["cryptsetup", "close", name], check=False, timeout=60.0)
    udev_settle()
    if res.rc != 0:
        return TeardownWarning(f"/dev/mapper/{name}", (res.err or res.out or f"cryptsetup exited {res.rc}").strip())
    trace("luks.closed", name=name)
    return None
