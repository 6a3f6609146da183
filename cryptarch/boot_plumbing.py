"""Write GRUB kernel parameters and menu entries, install and configure GRUB."""
import os
import re
import shutil
import time

from .chroot import in_target
from .errors import CryptarchError
from .executil import trace, wait_for
from .model import EncryptedVolume

GRUB_DEFAULTS = "etc/default/grub"
CUSTOM_MENU = "etc/grub.d/40_custom"
GRUB_CFG = "boot/grub/grub.cfg"
GRUB_TIMEOUT = 600

MENU_MARKER = "### cryptarch power entries"
MENU_ENTRIES = (
    f"{MENU_MARKER}\n"
    'menuentry "System shutdown" {\n'
    '\techo "System shutting down..."\n'
    "\thalt\n"
    "}\n"
    "\n"
    'menuentry "System restart" {\n'
    '\techo "System rebooting..."\n'
    "\treboot\n"
    "}\n"
)
CUSTOM_MENU_HEADER = "#!/bin/sh\nexec tail -n +3 $0\n"


def target_path(root: str, rel: str) -> str:
    return os.path.join(root, rel.lstrip("/"))


def backup_once(path: str) -> str | None:
    """Copy ``path`` to ``path.bak`` unless a backup already exists."""
    if not os.path.exists(path):
        return None
    bak = path + ".bak"
    if not os.path.exists(bak):
        shutil.copy2(path, bak)
        trace("boot.backup", path=path, backup=bak)
    return bak


def read_text(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()
    except FileNotFoundError:
        return ""


def write_text(path: str, data: str) -> bool:
    """Write ``data`` if it differs from what is on disk. Returns True on change."""
    if read_text(path) == data and os.path.exists(path):
        return False
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    return True


def replace_active_line(text: str, key: str, new_line: str) -> str:
    """Comment out active ``KEY=`` lines and put ``new_line`` right after the first.

    Running it again on its own output returns the text unchanged.
    """
    out: list[str] = []
    inserted = False
    for line in text.splitlines():
        if line.startswith(f"{key}="):
            if line == new_line and not inserted:
                out.append(line)
                inserted = True
                continue
            out.append("#" + line)
            if not inserted:
                out.append(new_line)
                inserted = True
            continue
        out.append(line)
    if not inserted:
        commented = [i for i, l in enumerate(out) if re.match(rf"#\s*{re.escape(key)}=", l)]
        if commented:
            out.insert(commented[-1] + 1, new_line)
        else:
            out.append(new_line)
    return "\n".join(out).rstrip("\n") + "\n"


def kernel_cmdline(luks_uuid: str, volume: EncryptedVolume) -> str:
    return f"cryptdevice=UUID={luks_uuid}:{volume.mapped_name} root={volume.root_device}"


def write_grub_cmdline(root: str, luks_uuid: str, volume: EncryptedVolume) -> str:
    path = target_path(root, GRUB_DEFAULTS)
    backup_once(path)
    line = f'GRUB_CMDLINE_LINUX="{kernel_cmdline(luks_uuid, volume)}"'
    changed = write_text(path, replace_active_line(read_text(path), "GRUB_CMDLINE_LINUX", line))
    trace("boot.cmdline", path=path, uuid=luks_uuid, changed=changed)
    return path


def assert_cmdline_uuid(root: str, luks_uuid: str, volume: EncryptedVolume):
    txt = read_text(target_path(root, GRUB_DEFAULTS))
    active = [l for l in txt.splitlines() if l.startswith("GRUB_CMDLINE_LINUX=")]
    if len(active) != 1:
        raise CryptarchError(f"{GRUB_DEFAULTS}: expected one active GRUB_CMDLINE_LINUX line, found {len(active)}")
    if f"cryptdevice=UUID={luks_uuid}:{volume.mapped_name}" not in active[0]:
        raise CryptarchError(f"{GRUB_DEFAULTS}: cryptdevice UUID mismatch")
    if f"root={volume.root_device}" not in active[0]:
        raise CryptarchError(f"{GRUB_DEFAULTS}: missing root={volume.root_device}")


def write_menu_entries(root: str) -> str:
    path = target_path(root, CUSTOM_MENU)
    backup_once(path)
    current = read_text(path)
    if MENU_MARKER in current:
        return path
    if not current.strip():
        current = CUSTOM_MENU_HEADER
    data = current.rstrip("\n") + "\n\n" + MENU_ENTRIES
    write_text(path, data)
    # grub-mkconfig only runs executable snippets
    os.chmod(path, 0o755)
    trace("boot.menu_entries", path=path)
    return path


def install_grub(root: str, config):
    in_target(
        root,
        [
            "grub-install",
            f"--target={config.grub_target}",
            f"--efi-directory=/{config.esp_subpath.strip('/')}",
            f"--bootloader-id={config.bootloader_id}",
        ],
        tool=config.chroot_tool,
        timeout=GRUB_TIMEOUT,
    )


def _fresh(path: str, since: float) -> bool:
    try:
        return os.path.getsize(path) > 0 and os.path.getmtime(path) >= since
    except OSError:
        return False


def generate_config(root: str, config) -> str:
    cfg = target_path(root, GRUB_CFG)
    started = time.time() - 1
    in_target(root, ["grub-mkconfig", "-o", "/" + GRUB_CFG], tool=config.chroot_tool, timeout=GRUB_TIMEOUT)
    wait_for(lambda: _fresh(cfg, started), what=f"/{GRUB_CFG}", timeout=config.settle_timeout,
             interval=config.poll_interval)
    return cfg
