"""
PartVault partition table model.

Parses and serializes `sfdisk -d` style GPT dumps and computes the derived
layouts used when restoring onto a different disk.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import TYPE_CHECKING

from partvault.core.errors import (
    InsufficientSpaceError,
    MalformedTableError,
    OutOfBudgetError,
    TableWriteError,
)
from partvault.core.logging import get_logger
from partvault.core.models import (
    LINUX_DATA_TYPE_GUID,
    LabelKind,
    PartitionEntry,
    PartitionTable,
    gpt_trailer_sectors,
    normalize_guid,
    partition_node,
)

if TYPE_CHECKING:
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)

HEADER_KEYS = frozenset(
    {"label", "label-id", "device", "unit", "first-lba", "last-lba", "sector-size", "table-length"}
)
FIELD_PATTERN = re.compile(r'([A-Za-z][\w-]*)\s*=\s*("(?:[^"\\]|\\.)*"|[^,]*)')
NODE_INDEX_PATTERN = re.compile(r"(\d+)$")
REQUIRED_FIELDS = ("start", "size", "uuid")


def parse_fields(text: str) -> dict[str, str]:
    """Split `key=value, key="quoted, value"` pairs from a dump entry line."""
    fields: dict[str, str] = {}
    for match in FIELD_PATTERN.finditer(text):
        key, value = match.groups()
        value = value.strip()
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            value = value[1:-1].replace('\\"', '"')
        fields[key.lower()] = value
    return fields


def _parse_entry(node: str, fields: dict[str, str]) -> PartitionEntry | None:
    if any(key not in fields for key in REQUIRED_FIELDS):
        return None
    index_match = NODE_INDEX_PATTERN.search(node)
    if index_match is None:
        return None
    try:
        start = int(fields["start"])
        size = int(fields["size"])
    except ValueError:
        return None
    return PartitionEntry(
        index=int(index_match.group(1)),
        start_sector=start,
        size_sectors=size,
        # Scripts without a type get the Linux filesystem data type
        type_guid=normalize_guid(fields.get("type") or LINUX_DATA_TYPE_GUID),
        partition_uuid=normalize_guid(fields["uuid"]),
        name=fields.get("name") or None,
    )


def parse(raw_dump: str, total_sectors: int | None = None) -> PartitionTable:
    """
    Parse a GPT table dump into a PartitionTable.

    When total_sectors is not given it is derived from the dump's
    last-lba plus the secondary GPT trailer.
    """
    header: dict[str, str] = {}
    entries: list[PartitionEntry] = []

    for raw_line in raw_dump.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue

        key, rest = line.split(":", 1)
        key = key.strip()
        if key.lower() in HEADER_KEYS:
            header[key.lower()] = rest.strip()
            continue

        entry = _parse_entry(key, parse_fields(rest))
        if entry is None:
            logger.debug("Ignoring unrecognised table line", line=line)
            continue
        entries.append(entry)

    if not entries:
        raise MalformedTableError("No partition lines match the expected entry grammar")

    label = header.get("label", "").lower()
    if label != LabelKind.GPT.value:
        raise MalformedTableError(f"Unsupported partition table label: {label or 'missing'}")
    if "label-id" not in header:
        raise MalformedTableError("Table dump has no label-id (disk GUID)")

    unit = header.get("unit", "sectors")
    if unit != "sectors":
        raise MalformedTableError(f"Unsupported unit: {unit}")

    try:
        sector_size = int(header.get("sector-size", "512"))
        first_lba = int(header.get("first-lba", "34"))
        if total_sectors is None:
            if "last-lba" in header:
                total_sectors = int(header["last-lba"]) + gpt_trailer_sectors(sector_size) + 1
            else:
                total_sectors = (
                    max(e.end_sector for e in entries) + gpt_trailer_sectors(sector_size)
                )
    except ValueError as e:
        raise MalformedTableError(f"Invalid numeric header value: {e}") from e

    table = PartitionTable(
        disk_guid=normalize_guid(header["label-id"]),
        total_sectors=total_sectors,
        entries=tuple(sorted(entries, key=lambda e: e.index)),
        sector_size=sector_size,
        first_lba=first_lba,
        device=header.get("device"),
    )
    table.validate()
    return table


def serialize(table: PartitionTable, device: str | None = None) -> str:
    """Serialize a PartitionTable into a dump sfdisk accepts as a script."""
    device = device or table.device or "/dev/disk"
    lines = [
        f"label: {table.label_kind.value}",
        f"label-id: {table.disk_guid}",
        f"device: {device}",
        "unit: sectors",
        f"first-lba: {table.first_lba}",
        f"last-lba: {table.last_lba}",
        f"sector-size: {table.sector_size}",
        "",
    ]

    for entry in table.entries:
        fields = [
            f"start={entry.start_sector:>12}",
            f"size={entry.size_sectors:>12}",
            f"type={entry.type_guid}",
            f"uuid={entry.partition_uuid}",
        ]
        if entry.name:
            escaped = entry.name.replace('"', '\\"')
            fields.append(f'name="{escaped}"')
        lines.append(f"{partition_node(device, entry.index)} : {', '.join(fields)}")

    return "\n".join(lines) + "\n"


def compute_compact_layout(
    table: PartitionTable,
    size_overrides: dict[int, int] | None = None,
    first_usable_lba: int | None = None,
    target_total_sectors: int | None = None,
) -> PartitionTable:
    """
    Lay out entries back to back in index order.

    Indices, type GUIDs and partition UUIDs are preserved; only start and
    size change. The result is sized for the target disk.
    """
    size_overrides = size_overrides or {}
    start = table.first_lba if first_usable_lba is None else first_usable_lba
    total = table.total_sectors if target_total_sectors is None else target_total_sectors

    unknown = set(size_overrides) - set(table.indices)
    if unknown:
        raise KeyError(f"Size overrides for unknown partitions: {sorted(unknown)}")

    planned: list[PartitionEntry] = []
    cursor = start
    for entry in table.entries:
        size = size_overrides.get(entry.index, entry.size_sectors)
        if size <= 0:
            raise InsufficientSpaceError(f"Partition {entry.index} would have no sectors")
        planned.append(replace(entry, start_sector=cursor, size_sectors=size))
        cursor += size

    result = replace(
        table,
        entries=tuple(planned),
        total_sectors=total,
        first_lba=min(table.first_lba, start),
    )
    if cursor > result.last_lba + 1:
        raise InsufficientSpaceError(
            f"Compact layout needs {cursor} sectors but the target's last usable "
            f"sector is {result.last_lba}"
        )
    return result


def compute_enlargement(
    table: PartitionTable,
    target_index: int,
    extra_sectors: int,
    free_budget_sectors: int,
) -> PartitionTable:
    """
    Grow one entry by extra_sectors without moving any other entry.

    Only the last entry of the layout, or one already followed by enough
    free sectors, may grow.
    """
    target = table.entry(target_index)
    if target is None:
        raise KeyError(f"Partition {target_index} not in table")
    if extra_sectors < 0:
        raise ValueError("extra_sectors must not be negative")
    if extra_sectors > free_budget_sectors:
        raise OutOfBudgetError(
            f"Partition {target_index} cannot grow by {extra_sectors} sectors; "
            f"only {free_budget_sectors} are available"
        )

    trailing = table.free_sectors_after(target_index)
    if extra_sectors > trailing:
        where = "at the end of the disk" if table.is_last(target_index) else "before the next partition"
        raise OutOfBudgetError(
            f"Partition {target_index} has {trailing} free sectors {where}, "
            f"{extra_sectors} requested"
        )

    grown = replace(target, size_sectors=target.size_sectors + extra_sectors)
    entries = tuple(grown if e.index == target_index else e for e in table.entries)
    return replace(table, entries=entries)


def apply(table: PartitionTable, target_device: str, platform: PlatformBackend) -> None:
    """Write a table to a device, raising TableWriteError on any failure."""
    script = serialize(table, device=target_device)
    logger.info(
        "Writing partition table",
        device=target_device,
        partitions=len(table.entries),
        disk_guid=table.disk_guid,
    )
    result = platform.write_table(target_device, script)
    if not result.success:
        raise TableWriteError(
            f"Partition table write to {target_device} failed",
            diagnostic=result.stderr or result.stdout,
        )


def apply_identity(
    table: PartitionTable,
    target_device: str,
    platform: PlatformBackend,
    indices: list[int] | None = None,
) -> None:
    """Re-assert the disk GUID and per-partition type GUID/UUID explicitly."""
    result = platform.set_disk_guid(target_device, table.disk_guid)
    if not result.success:
        raise TableWriteError(
            f"Could not set disk GUID on {target_device}",
            diagnostic=result.stderr,
        )

    for entry in table.entries:
        if indices is not None and entry.index not in indices:
            continue
        result = platform.set_partition_identity(
            target_device, entry.index, entry.type_guid, entry.partition_uuid
        )
        if not result.success:
            raise TableWriteError(
                f"Could not set identity of partition {entry.index} on {target_device}",
                diagnostic=result.stderr,
            )
    logger.debug("Identity fields re-asserted", device=target_device)
