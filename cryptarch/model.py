from __future__ import annotations

import enum
import os
from dataclasses import asdict, dataclass, field
from typing import Optional

from .errors import PartitionLayoutError

MIB = 1024 * 1024
# 1 MiB lead-in for alignment plus the backup GPT at the end of the disk.
GPT_OVERHEAD_MIB = 2
EFI_SYSTEM = "ef00"
LINUX_FS = "8300"
LINUX_LUKS = "8309"


class Stage(str, enum.Enum):
    VALIDATE = "validate"
    PARTITION = "partition"
    ENCRYPT = "encrypt"
    FORMAT = "format"
    MOUNT = "mount"
    INSTALL = "install"
    CONFIGURE = "configure"
    TEARDOWN = "teardown"


STAGE_ORDER = tuple(Stage)


@dataclass
class TargetDevice:
    path: str
    size_bytes: int
    sector_size: int = 512

    @property
    def size_mib(self) -> int:
        return self.size_bytes // MIB


@dataclass
class PartitionSpec:
    index: int
    role: str
    size_mib: Optional[int]
    type_code: str = LINUX_FS

    @property
    def is_remainder(self) -> bool:
        return self.size_mib is None


@dataclass
class PartitionPlan:
    entries: list[PartitionSpec]

    ROLES = ("esp", "boot", "root")

    @classmethod
    def default(cls, esp_mib: int = 500, boot_mib: int = 2048) -> "PartitionPlan":
        return cls([
            PartitionSpec(1, "esp", esp_mib, EFI_SYSTEM),
            PartitionSpec(2, "boot", boot_mib, LINUX_FS),
            PartitionSpec(3, "root", None, LINUX_LUKS),
        ])

    def fixed_mib(self) -> int:
        return sum(e.size_mib or 0 for e in self.entries)

    def validate(self, device: TargetDevice | None = None) -> None:
        if len(self.entries) != 3:
            raise PartitionLayoutError(f"plan must have exactly 3 entries, got {len(self.entries)}")
        roles = tuple(e.role for e in self.entries)
        if roles != self.ROLES:
            raise PartitionLayoutError(f"plan roles must be {self.ROLES}, got {roles}")
        indexes = [e.index for e in self.entries]
        if indexes != [1, 2, 3]:
            raise PartitionLayoutError(f"plan indexes must be 1, 2, 3; got {indexes}")
        for e in self.entries[:-1]:
            if e.is_remainder:
                raise PartitionLayoutError(f"only the last partition may take the remainder ({e.role})")
            if e.size_mib <= 0:
                raise PartitionLayoutError(f"partition {e.role} must have a positive size")
        efi = [e.role for e in self.entries if e.type_code.lower() == EFI_SYSTEM]
        if efi != ["esp"]:
            raise PartitionLayoutError(f"exactly the first partition must carry the EFI type, got {efi}")
        if device is not None:
            needed = self.fixed_mib() + GPT_OVERHEAD_MIB
            last = self.entries[-1]
            if last.is_remainder:
                needed += 1
            if needed > device.size_mib:
                raise PartitionLayoutError(
                    f"plan needs {needed} MiB but {device.path} has {device.size_mib} MiB"
                )


@dataclass
class Partition:
    role: str
    index: int
    path: str
    size_bytes: int = 0


@dataclass
class PartitionTable:
    device: str
    partitions: list[Partition]

    def by_role(self, role: str) -> Partition:
        for p in self.partitions:
            if p.role == role:
                return p
        raise KeyError(role)

    @property
    def esp(self) -> Partition:
        return self.by_role("esp")

    @property
    def boot(self) -> Partition:
        return self.by_role("boot")

    @property
    def root(self) -> Partition:
        return self.by_role("root")

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PartitionTable":
        return cls(
            device=data["device"],
            partitions=[Partition(**p) for p in data.get("partitions") or []],
        )


@dataclass
class EncryptedVolume:
    backing: str
    mapped_name: str = "cryptroot"
    cipher: str = "aes-xts-plain64"
    key_size: int = 512
    hash: str = "sha512"
    pbkdf: str = "argon2id"
    iter_time_ms: int = 4000
    uuid: Optional[str] = None
    lvm_vg: Optional[str] = None
    lvm_lv: Optional[str] = None

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapped_name}"

    @property
    def root_device(self) -> str:
        if self.lvm_vg and self.lvm_lv:
            # device-mapper escapes literal dashes as double dashes
            vg = self.lvm_vg.replace("-", "--")
            lv = self.lvm_lv.replace("-", "--")
            return f"/dev/mapper/{vg}-{lv}"
        return self.mapper_path


@dataclass
class MountEntry:
    source: str
    subpath: str
    fstype: Optional[str] = None
    options: list[str] = field(default_factory=list)


@dataclass
class MountPlan:
    root: str
    entries: list[MountEntry]

    def __post_init__(self):
        if not self.entries or self.entries[0].subpath.strip("/") != "":
            raise ValueError("mount plan must start with the target root")
        subs = [e.subpath.strip("/") for e in self.entries]
        for i, sub in enumerate(subs[1:], start=1):
            if not sub or sub in subs[:i]:
                raise ValueError(f"duplicate or empty mount subpath {self.entries[i].subpath!r}")
            for later in subs[i + 1:]:
                if sub.startswith(later + "/"):
                    raise ValueError(f"{sub!r} is listed before its parent mount {later!r}")

    def target(self, entry: MountEntry) -> str:
        sub = entry.subpath.strip("/")
        return os.path.join(self.root, sub) if sub else self.root


@dataclass
class StageResult:
    stage: Stage
    outcome: str
    detail: str = ""
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome in ("success", "skipped")
