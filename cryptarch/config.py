"""Install configuration passed into the pipeline controller."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

from .errors import ValidationError

CORE_PACKAGES = (
    "base", "base-devel", "linux", "linux-lts", "linux-firmware", "grub",
    "efibootmgr", "networkmanager", "openssh", "gnupg", "neovim", "git",
    "htop", "chrony", "curl", "wget",
)

INITRAMFS_HOOKS = (
    "base", "udev", "autodetect", "microcode", "modconf", "kms", "keyboard",
    "keymap", "consolefont", "block", "encrypt", "filesystems", "fsck",
)

RESERVED_USERNAMES = (
    "root", "bin", "daemon", "mail", "ftp", "http", "nobody", "dbus", "uuidd",
    "dhcpcd", "dnsmasq", "git", "polkitd", "rtkit", "avahi", "colord", "tss",
    "systemd-coredump", "systemd-journal-remote", "systemd-network",
    "systemd-oom", "systemd-resolve", "systemd-timesync", "chrony", "sshd",
    "wheel", "adm", "sys", "tty", "disk", "lp", "kmem", "users", "utmp",
)


@dataclass
class InstallConfig:
    # None means "not chosen"; the controller refuses to run until it is set.
    teardown: Optional[bool] = None

    username: str = "archuser"
    timezone: str = "America/Montreal"
    locale: str = "en_US.UTF-8"
    core_packages: list[str] = field(default_factory=lambda: list(CORE_PACKAGES))
    package_list_url: Optional[str] = None
    daemons: list[str] = field(default_factory=lambda: ["chronyd", "NetworkManager"])
    admin_group: str = "wheel"
    reserved_usernames: list[str] = field(default_factory=lambda: list(RESERVED_USERNAMES))

    install_second_stage: bool = False
    post_install_script_url: str = (
        "https://raw.githubusercontent.com/pleskunov/infra/refs/heads/main/post-install.sh"
    )

    target_root: str = "/mnt"
    esp_mib: int = 500
    boot_mib: int = 2048
    esp_subpath: str = "boot/efi"
    partition_tool: str = "sgdisk"

    mapped_name: str = "cryptroot"
    cipher: str = "aes-xts-plain64"
    key_size: int = 512
    hash: str = "sha512"
    pbkdf: str = "argon2id"
    iter_time_ms: int = 4000
    lvm: bool = False
    lvm_vg: str = "cryptvg"
    lvm_lv: str = "root"

    initramfs_hooks: list[str] = field(default_factory=lambda: list(INITRAMFS_HOOKS))
    bootloader_id: str = "GRUB"
    grub_target: str = "x86_64-efi"
    chroot_tool: str = "arch-chroot"
    cpuinfo_path: str = "/proc/cpuinfo"
    intel_microcode: str = "intel-ucode"
    amd_microcode: str = "amd-ucode"

    open_attempts: int = 3
    format_attempts: int = 2
    install_attempts: int = 3
    fetch_attempts: int = 3
    settle_timeout: float = 30.0
    poll_interval: float = 0.25
    install_timeout: Optional[float] = None

    @property
    def hooks(self) -> list[str]:
        hooks = list(self.initramfs_hooks)
        if self.lvm and "lvm2" not in hooks:
            pos = hooks.index("encrypt") + 1 if "encrypt" in hooks else len(hooks)
            hooks.insert(pos, "lvm2")
        return hooks


def config_from_dict(data: Dict[str, Any], base: Optional[InstallConfig] = None) -> InstallConfig:
    cfg = base or InstallConfig()
    known = {f.name for f in fields(InstallConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError("config", f"unknown keys: {', '.join(unknown)}")
    for key, value in data.items():
        setattr(cfg, key, value)
    if cfg.partition_tool not in ("sgdisk", "parted"):
        raise ValidationError("config", f"partition_tool must be sgdisk or parted, got {cfg.partition_tool!r}")
    return cfg


def load_config(path: Optional[str], base: Optional[InstallConfig] = None) -> InstallConfig:
    if not path:
        return config_from_dict({}, base)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ValidationError("config", f"{path} not found") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError("config", f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("config", f"{path} must contain a JSON object")
    return config_from_dict(data, base)
