"""
PartVault data models.

Defines the partition table snapshot, operation requests, and the
events and summaries reported back to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from partvault.core.errors import MalformedTableError

GPT_ENTRY_ARRAY_BYTES = 16384
LINUX_DATA_TYPE_GUID = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"


class FileSystemKind(Enum):
    """Filesystem kinds the engine distinguishes between."""

    EXT4 = "ext4"
    NTFS = "ntfs"
    APFS = "apfs"
    HFSPLUS = "hfsplus"
    UNKNOWN = "unknown"

    @classmethod
    def from_string(cls, value: str | None) -> FileSystemKind:
        """Create FileSystemKind from a blkid/lsblk FSTYPE value."""
        if not value:
            return cls.UNKNOWN
        value_lower = value.lower().strip()
        for kind in cls:
            if kind.value == value_lower:
                return kind
        aliases = {
            "hfs+": cls.HFSPLUS,
            "hfsp": cls.HFSPLUS,
            "ntfs3": cls.NTFS,
            "ntfs-3g": cls.NTFS,
        }
        return aliases.get(value_lower, cls.UNKNOWN)

    @property
    def supports_resize(self) -> bool:
        """Whether the filesystem can be grown after a restore."""
        return self in (FileSystemKind.EXT4, FileSystemKind.NTFS)


class LabelKind(Enum):
    """Partition table label type."""

    GPT = "gpt"


class OperationMode(Enum):
    """Top-level operation requested by the caller."""

    CLONE = "clone"
    ARCHIVE = "archive"
    RESTORE = "restore"

    @property
    def is_destructive(self) -> bool:
        return self in (OperationMode.CLONE, OperationMode.RESTORE)


class LayoutPolicy(Enum):
    """How the restore target's table is planned."""

    VERBATIM = "verbatim"
    COMPACT = "compact"
    COMPACT_WITH_ENLARGEMENT = "compact_with_enlargement"


class PartitionState(Enum):
    """Per-partition archive state."""

    PENDING = auto()
    IMAGING = auto()
    COMPRESSING = auto()
    DONE = auto()
    FAILED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (PartitionState.DONE, PartitionState.FAILED)


class RestorePhase(Enum):
    """Restore phases in execution order."""

    EXTRACT = 1
    TABLE_PLAN = 2
    TABLE_APPLY = 3
    PER_PARTITION_RESTORE = 4
    IDENTITY_FIXUP = 5
    POST_CHECK = 6
    DONE = 7


class EventKind(Enum):
    """Kinds of per-partition events."""

    START = "start"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


def normalize_guid(value: str) -> str:
    """Normalize a GUID string for comparison and storage."""
    return value.strip().strip('"').upper()


def partition_node(device: str, index: int) -> str:
    """Build the kernel node name for a partition (sda -> sda1, nvme0n1 -> nvme0n1p1)."""
    separator = "p" if device[-1:].isdigit() else ""
    return f"{device}{separator}{index}"


def is_partition_of(node: str, device: str) -> bool:
    """Whether node names a partition of device (sdb -> sdb2, nvme0n1 -> nvme0n1p2, never nvme0n10)."""
    prefix = partition_node(device, 0)[:-1]
    suffix = node[len(prefix):]
    return node.startswith(prefix) and suffix.isdigit() and not suffix.startswith("0")


def gpt_trailer_sectors(sector_size: int) -> int:
    """Sectors used at the end of the disk by the secondary GPT header and entries."""
    return 1 + -(-GPT_ENTRY_ARRAY_BYTES // sector_size)


@dataclass(frozen=True)
class PartitionEntry:
    """A single GPT partition, identified by its 1-based index."""

    index: int
    start_sector: int
    size_sectors: int
    type_guid: str
    partition_uuid: str
    filesystem_kind: FileSystemKind = field(default=FileSystemKind.UNKNOWN, compare=False)
    name: str | None = None

    @property
    def end_sector(self) -> int:
        """First sector after the partition."""
        return self.start_sector + self.size_sectors

    def size_bytes(self, sector_size: int) -> int:
        return self.size_sectors * sector_size

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start_sector": self.start_sector,
            "size_sectors": self.size_sectors,
            "type_guid": self.type_guid,
            "partition_uuid": self.partition_uuid,
            "filesystem_kind": self.filesystem_kind.value,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionEntry:
        return cls(
            index=int(data["index"]),
            start_sector=int(data["start_sector"]),
            size_sectors=int(data["size_sectors"]),
            type_guid=normalize_guid(data["type_guid"]),
            partition_uuid=normalize_guid(data["partition_uuid"]),
            filesystem_kind=FileSystemKind.from_string(data.get("filesystem_kind")),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class PartitionTable:
    """In-memory snapshot of a GPT disk layout."""

    disk_guid: str
    total_sectors: int
    entries: tuple[PartitionEntry, ...] = ()
    sector_size: int = 512
    first_lba: int = 34
    label_kind: LabelKind = LabelKind.GPT
    device: str | None = field(default=None, compare=False)

    @property
    def last_lba(self) -> int:
        """Last usable LBA for partition data."""
        return self.total_sectors - gpt_trailer_sectors(self.sector_size) - 1

    @property
    def size_bytes(self) -> int:
        return self.total_sectors * self.sector_size

    @property
    def indices(self) -> list[int]:
        return [entry.index for entry in self.entries]

    def entry(self, index: int) -> PartitionEntry | None:
        """Get an entry by partition index."""
        for entry in self.entries:
            if entry.index == index:
                return entry
        return None

    def used_end_sector(self) -> int:
        """First sector after the highest-placed partition."""
        return max((entry.end_sector for entry in self.entries), default=self.first_lba)

    def free_sectors_after(self, index: int) -> int:
        """Unallocated sectors between an entry and the next partition (or the usable end)."""
        target = self.entry(index)
        if target is None:
            raise KeyError(f"Partition {index} not in table")
        following = [e.start_sector for e in self.entries if e.start_sector >= target.end_sector]
        limit = min(following, default=self.last_lba + 1)
        return max(0, limit - target.end_sector)

    def is_last(self, index: int) -> bool:
        """Whether the entry sits at the highest sector range of the disk."""
        target = self.entry(index)
        if target is None:
            return False
        return all(e.start_sector < target.start_sector for e in self.entries if e is not target)

    def validate(self) -> None:
        """Check the table invariants, raising MalformedTableError on violation."""
        previous_index = 0
        for entry in self.entries:
            if entry.index <= previous_index:
                raise MalformedTableError(
                    f"Partition entries are not sorted by index at {entry.index}"
                )
            previous_index = entry.index
            if entry.size_sectors <= 0:
                raise MalformedTableError(f"Partition {entry.index} has no sectors")
            if entry.start_sector < 0 or entry.end_sector > self.total_sectors:
                raise MalformedTableError(
                    f"Partition {entry.index} lies outside the disk "
                    f"({entry.start_sector}+{entry.size_sectors} > {self.total_sectors})"
                )

        by_start = sorted(self.entries, key=lambda e: e.start_sector)
        for left, right in zip(by_start, by_start[1:]):
            if right.start_sector < left.end_sector:
                raise MalformedTableError(
                    f"Partitions {left.index} and {right.index} overlap"
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "label_kind": self.label_kind.value,
            "disk_guid": self.disk_guid,
            "sector_size": self.sector_size,
            "total_sectors": self.total_sectors,
            "first_lba": self.first_lba,
            "device": self.device,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionTable:
        if not isinstance(data, dict):
            raise MalformedTableError(f"Invalid table snapshot: expected an object, got {type(data).__name__}")
        try:
            label_kind = LabelKind(data.get("label_kind", "gpt"))
            table = cls(
                disk_guid=normalize_guid(data["disk_guid"]),
                total_sectors=int(data["total_sectors"]),
                entries=tuple(PartitionEntry.from_dict(e) for e in data.get("entries", [])),
                sector_size=int(data.get("sector_size", 512)),
                first_lba=int(data.get("first_lba", 34)),
                label_kind=label_kind,
                device=data.get("device"),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedTableError(f"Invalid table snapshot: {e}") from e
        table.validate()
        return table


@dataclass
class DiskInfo:
    """A whole disk as reported by the platform inventory."""

    device_path: str
    size_bytes: int
    model: str = "Unknown"
    label_kind: str | None = None
    is_system_disk: bool = False
    partition_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_path": self.device_path,
            "size_bytes": self.size_bytes,
            "model": self.model,
            "label_kind": self.label_kind,
            "is_system_disk": self.is_system_disk,
            "partition_count": self.partition_count,
        }


@dataclass(frozen=True)
class OperationRequest:
    """
    A single validated request from the caller.

    For archive the source is a device and the target an archive path; for
    restore the source is an archive path and the target a device; clone uses
    devices on both sides.
    """

    mode: OperationMode
    source: str
    target: str
    partial_restore_selection: frozenset[int] = frozenset()
    layout_policy: LayoutPolicy = LayoutPolicy.VERBATIM
    confirmed_destructive: bool = False
    allow_live_source: bool = False
    size_deltas: dict[int, int] = field(default_factory=dict)
    compression: str | None = None
    scratch_dir: str | None = None
    shrink_source: bool = False
    regrow_source: bool = True

    @property
    def is_partial(self) -> bool:
        return bool(self.partial_restore_selection)

    def validate(self) -> list[str]:
        """Return a list of request errors (empty if valid)."""
        errors: list[str] = []
        if not self.source:
            errors.append("Source is required")
        if not self.target:
            errors.append("Target is required")
        if self.source and self.source == self.target:
            errors.append("Source and target must differ")
        if self.mode.is_destructive and not self.confirmed_destructive:
            errors.append(f"{self.mode.value} overwrites {self.target} and must be confirmed")
        if self.partial_restore_selection and self.mode != OperationMode.RESTORE:
            errors.append("Partition selection only applies to restore")
        if any(index < 1 for index in self.partial_restore_selection):
            errors.append("Partition indices are 1-based")
        if self.size_deltas and self.layout_policy != LayoutPolicy.COMPACT_WITH_ENLARGEMENT:
            errors.append("Size deltas require the compact_with_enlargement layout")
        if any(extra < 0 for extra in self.size_deltas.values()):
            errors.append("Size deltas cannot shrink partitions")
        if self.shrink_source and self.mode == OperationMode.RESTORE:
            errors.append("Only the source disk of an archive or clone can be shrunk")
        return errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "source": self.source,
            "target": self.target,
            "partial_restore_selection": sorted(self.partial_restore_selection),
            "layout_policy": self.layout_policy.value,
            "confirmed_destructive": self.confirmed_destructive,
            "allow_live_source": self.allow_live_source,
            "size_deltas": {str(k): v for k, v in self.size_deltas.items()},
            "compression": self.compression,
            "shrink_source": self.shrink_source,
            "regrow_source": self.regrow_source,
        }


@dataclass(frozen=True)
class PartitionEvent:
    """Per-partition progress event delivered to the caller."""

    kind: EventKind
    index: int
    backend: str | None = None
    bytes: int = 0
    message: str = ""


@dataclass
class OperationSummary:
    """Final outcome of an operation, also attached to fatal errors."""

    mode: OperationMode
    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    warnings: list[str] = field(default_factory=list)
    fatal_error: str | None = None
    fatal_phase: str | None = None
    scratch_dir: str | None = None
    scratch_retained: bool = False
    archive_path: str | None = None

    @property
    def success(self) -> bool:
        return self.fatal_error is None and not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "elapsed_seconds": self.elapsed_seconds,
            "warnings": self.warnings,
            "fatal_error": self.fatal_error,
            "fatal_phase": self.fatal_phase,
            "scratch_dir": self.scratch_dir,
            "scratch_retained": self.scratch_retained,
            "archive_path": self.archive_path,
        }
