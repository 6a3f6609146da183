"""GPT layout application & verification."""
from __future__ import annotations

from .devices import list_partitions, partition_path, wait_for_block
from .errors import PartitionLayoutError, ToolInvocationError
from .executil import run, trace, udev_settle
from .model import MIB, Partition, PartitionPlan, PartitionTable, TargetDevice

SIZE_TOLERANCE = 4 * MIB


def reread(device: str):
    # Multiple methods to convince kernel to reread partition table
    run(["blockdev", "--rereadpt", device], check=False)
    run(["partprobe", device], check=False)
    run(["partx", "-u", device], check=False)
    udev_settle()


def wipe_existing(device: str, existing: list[dict]):
    for part in existing:
        run(["wipefs", "-a", part["path"]], check=False)
    run(["wipefs", "-a", device], check=True, timeout=120.0)
    udev_settle()


def _create_with_sgdisk(device: str, plan: PartitionPlan):
    run(["sgdisk", "--zap-all", device], check=True, timeout=60.0)
    run(["sgdisk", "--clear", device], check=True, timeout=60.0)
    for e in plan.entries:
        end = "0" if e.is_remainder else f"+{e.size_mib}M"
        run(
            ["sgdisk", "-n", f"{e.index}:0:{end}", "-t", f"{e.index}:{e.type_code}", "-c", f"{e.index}:{e.role}", device],
            check=True,
            timeout=60.0,
        )


def _create_with_parted(device: str, plan: PartitionPlan):
    # parted sizes in MiB; leave 1MiB at start for alignment
    run(["parted", "-s", device, "mklabel", "gpt"], check=True)
    start = 1
    for e in plan.entries:
        fs = "fat32" if e.role == "esp" else "ext4"
        if e.is_remainder:
            end = "100%"
        else:
            end = f"{start + e.size_mib}MiB"
        run(["parted", "-s", device, "mkpart", e.role, fs, f"{start}MiB", end], check=True)
        if not e.is_remainder:
            start += e.size_mib
    run(["parted", "-s", device, "set", "1", "esp", "on"], check=True)


BACKENDS = {
    "sgdisk": _create_with_sgdisk,
    "parted": _create_with_parted,
}


def _size_mismatches(plan: PartitionPlan, table: PartitionTable) -> list[str]:
    problems: list[str] = []
    for spec, part in zip(plan.entries, table.partitions):
        if spec.is_remainder:
            if part.size_bytes <= 0:
                problems.append(f"{part.path} ({spec.role}) is empty")
            continue
        expected = spec.size_mib * MIB
        if abs(part.size_bytes - expected) > SIZE_TOLERANCE:
            problems.append(f"{part.path} ({spec.role}) is {part.size_bytes} bytes, expected ~{expected}")
    return problems


def resolve_table(device: str, plan: PartitionPlan, timeout: float = 30.0) -> PartitionTable:
    """Map each plan entry to the partition created for it.

    Partitions are identified by the number they were created with, never by
    their position in a listing.
    """

    expected = [partition_path(device, e.index) for e in plan.entries]
    for path in expected:
        wait_for_block(path, timeout=timeout)

    observed = {p["number"]: p for p in list_partitions(device)}
    if len(observed) != len(plan.entries):
        raise PartitionLayoutError(
            f"expected {len(plan.entries)} partitions on {device}, kernel reports {len(observed)}"
        )

    partitions: list[Partition] = []
    for spec, path in zip(plan.entries, expected):
        found = observed.get(spec.index)
        if found is None:
            raise PartitionLayoutError(f"partition {spec.index} ({spec.role}) missing on {device}")
        if found["path"] and found["path"] != path:
            raise PartitionLayoutError(f"partition {spec.index} resolved to {found['path']}, expected {path}")
        partitions.append(Partition(role=spec.role, index=spec.index, path=path, size_bytes=found["size"]))

    table = PartitionTable(device=device, partitions=partitions)
    problems = _size_mismatches(plan, table)
    if problems:
        raise PartitionLayoutError("; ".join(problems))
    return table


def apply_plan(
    device: TargetDevice,
    plan: PartitionPlan,
    backend: str = "sgdisk",
    force: bool = False,
    timeout: float = 30.0,
) -> PartitionTable:
    plan.validate(device)
    create = BACKENDS.get(backend)
    if create is None:
        raise PartitionLayoutError(f"unknown partitioning backend {backend!r}")

    existing = list_partitions(device.path)
    if existing:
        if not force:
            raise PartitionLayoutError(
                f"{device.path} already has {len(existing)} partition(s); refusing without force"
            )
        trace("partitioning.wipe_existing", device=device.path, partitions=existing)
        wipe_existing(device.path, existing)

    trace("partitioning.create", device=device.path, backend=backend,
          plan=[(e.index, e.role, e.size_mib, e.type_code) for e in plan.entries])
    create(device.path, plan)
    reread(device.path)
    table = resolve_table(device.path, plan, timeout=timeout)
    trace("partitioning.done", device=device.path, table=table.to_dict())
    return table


def table_mismatches(table: PartitionTable) -> list[str]:
    """Compare a recorded table with what the kernel reports now."""

    try:
        observed = {p["number"]: p for p in list_partitions(table.device)}
    except ToolInvocationError as exc:
        return [str(exc)]
    problems: list[str] = []
    if len(observed) != len(table.partitions):
        problems.append(f"{table.device} has {len(observed)} partitions, recorded {len(table.partitions)}")
    for part in table.partitions:
        found = observed.get(part.index)
        if found is None:
            problems.append(f"partition {part.index} ({part.role}) is gone")
        elif found["path"] and found["path"] != part.path:
            problems.append(f"partition {part.index} is now {found['path']}, recorded {part.path}")
        elif part.size_bytes and found["size"] != part.size_bytes:
            problems.append(f"partition {part.index} is {found['size']} bytes, recorded {part.size_bytes}")
    return problems
