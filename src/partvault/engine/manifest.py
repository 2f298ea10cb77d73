"""
Archive manifest.

The manifest is the per-partition outcome ledger written during archive
and read back during restore. It is stored as a tab-separated table so it
stays readable with standard shell tools.
"""

from __future__ import annotations

import os
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from partvault.core.errors import CorruptArchiveError
from partvault.core.models import FileSystemKind
from partvault.engine.capabilities import Backend, BackendMode
from partvault.engine.codecs import Codec

MANIFEST_COLUMNS = ("index", "filesystem_kind", "backend", "mode", "status", "byte_size", "payload", "note")


class EntryStatus(Enum):
    """Outcome of imaging one partition."""

    OK = "ok"
    FAILED = "failed"


def payload_filename(index: int, backend: Backend, codec: Codec) -> str:
    """Deterministic payload name for a partition, e.g. part-2.partclone.ext4.img.zst."""
    return f"part-{index}.{backend.name}.img{codec.suffix}"


def _clean(text: str | None) -> str:
    if not text:
        return ""
    return " ".join(text.split())


@dataclass(frozen=True)
class ManifestEntry:
    """Outcome of archiving one partition."""

    partition_index: int
    filesystem_kind: FileSystemKind
    backend_used: str
    backend_mode: BackendMode
    status: EntryStatus
    payload_filename: str | None = None
    byte_size: int = 0
    note: str | None = None

    @property
    def is_ok(self) -> bool:
        return self.status == EntryStatus.OK

    @property
    def backend_family(self) -> str:
        if self.backend_mode == BackendMode.RAW:
            return "raw"
        return self.backend_used.split(".", 1)[0]

    def to_row(self) -> str:
        return "\t".join(
            [
                str(self.partition_index),
                self.filesystem_kind.value,
                self.backend_used,
                self.backend_mode.value,
                self.status.value,
                str(self.byte_size),
                self.payload_filename or "-",
                _clean(self.note) or "-",
            ]
        )

    @classmethod
    def from_row(cls, row: str) -> ManifestEntry:
        columns = row.rstrip("\n").split("\t")
        if len(columns) != len(MANIFEST_COLUMNS):
            raise ValueError(f"expected {len(MANIFEST_COLUMNS)} columns, got {len(columns)}")
        index, kind, backend, mode, status, size, payload, note = columns
        return cls(
            partition_index=int(index),
            filesystem_kind=FileSystemKind.from_string(kind),
            backend_used=backend,
            backend_mode=BackendMode(mode),
            status=EntryStatus(status),
            byte_size=int(size),
            payload_filename=None if payload == "-" else payload,
            note=None if note == "-" else note,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_index": self.partition_index,
            "filesystem_kind": self.filesystem_kind.value,
            "backend_used": self.backend_used,
            "backend_mode": self.backend_mode.value,
            "status": self.status.value,
            "payload_filename": self.payload_filename,
            "byte_size": self.byte_size,
            "note": self.note,
        }


class Manifest:
    """Ordered, append-only list of manifest entries with unique indices."""

    def __init__(self, entries: list[ManifestEntry] | None = None) -> None:
        self._entries: list[ManifestEntry] = []
        for entry in entries or []:
            self.append(entry)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self._entries)

    @property
    def entries(self) -> list[ManifestEntry]:
        return list(self._entries)

    def append(self, entry: ManifestEntry) -> None:
        if self.get(entry.partition_index) is not None:
            raise ValueError(f"Partition {entry.partition_index} is already in the manifest")
        self._entries.append(entry)

    def get(self, index: int) -> ManifestEntry | None:
        for entry in self._entries:
            if entry.partition_index == index:
                return entry
        return None

    def successful(self) -> list[ManifestEntry]:
        return [e for e in self._entries if e.is_ok]

    def failed(self) -> list[ManifestEntry]:
        return [e for e in self._entries if not e.is_ok]

    @property
    def is_restorable(self) -> bool:
        """An archive with no successful entry cannot be restored."""
        return bool(self.successful())

    @property
    def total_bytes(self) -> int:
        return sum(e.byte_size for e in self._entries if e.is_ok)

    def to_tsv(self) -> str:
        lines = ["\t".join(MANIFEST_COLUMNS)]
        lines.extend(entry.to_row() for entry in self._entries)
        return "\n".join(lines) + "\n"

    @classmethod
    def from_tsv(cls, text: str) -> Manifest:
        """Parse a manifest, raising CorruptArchiveError when unreadable or empty."""
        rows = [line for line in text.splitlines() if line.strip()]
        if rows and rows[0].split("\t")[0] == MANIFEST_COLUMNS[0]:
            rows = rows[1:]
        if not rows:
            raise CorruptArchiveError("Manifest is empty")

        manifest = cls()
        for number, row in enumerate(rows, 2):
            try:
                manifest.append(ManifestEntry.from_row(row))
            except ValueError as e:
                raise CorruptArchiveError(f"Manifest line {number} is invalid: {e}") from e
        return manifest

    def save(self, path: Path) -> None:
        """Write the manifest atomically."""
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(self.to_tsv())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    @classmethod
    def load(cls, path: Path) -> Manifest:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptArchiveError(f"Manifest is unreadable: {e}") from e
        return cls.from_tsv(text)
