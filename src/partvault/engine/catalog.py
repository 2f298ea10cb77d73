"""
Archive bundle, scratch areas and resumable restore state.

A bundle is one uncompressed tar file holding the table snapshot, the
manifest and one already-compressed payload per successful partition.
"""

from __future__ import annotations

import json
import os
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import psutil
from pydantic import BaseModel, Field, ValidationError

from partvault.core.errors import (
    CorruptArchiveError,
    MalformedTableError,
    PackagingError,
    PartVaultError,
)
from partvault.core.logging import get_logger
from partvault.core.models import PartitionTable, RestorePhase
from partvault.core.table import serialize
from partvault.engine.manifest import Manifest

logger = get_logger(__name__)

TABLE_SNAPSHOT = "partition-table.json"
TABLE_DUMP = "partition-table.sfdisk"
MANIFEST_FILE = "manifest.tsv"
PLANNED_TABLE = "planned-table.json"
RESUME_STATE = "resume-state.json"
LEASE_FILE = ".lease"


@dataclass
class ScratchArea:
    """A working directory leased by exactly one operation."""

    path: Path
    retained: bool = False

    @classmethod
    def lease(cls, base_dir: Path, prefix: str) -> ScratchArea:
        base_dir.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir))
        area = cls(path=path)
        area._write_lease()
        logger.debug("Scratch area leased", path=str(path))
        return area

    @classmethod
    def adopt(cls, path: Path) -> ScratchArea:
        """Take over a retained scratch area, refusing one held by a live process."""
        if not path.is_dir():
            raise PartVaultError(f"Scratch area {path} does not exist")
        lease = path / LEASE_FILE
        if lease.exists():
            try:
                holder = int(lease.read_text().strip())
            except ValueError:
                holder = None
            if holder and holder != os.getpid() and psutil.pid_exists(holder):
                raise PartVaultError(f"Scratch area {path} is in use by process {holder}")
        area = cls(path=path)
        area._write_lease()
        return area

    def _write_lease(self) -> None:
        (self.path / LEASE_FILE).write_text(str(os.getpid()))

    def release(self, retain: bool) -> None:
        """Delete the area, or keep it (without the lease) for a later retry."""
        if retain:
            (self.path / LEASE_FILE).unlink(missing_ok=True)
            self.retained = True
            logger.warning("Scratch area retained for recovery", path=str(self.path))
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug("Scratch area removed", path=str(self.path))


def write_table_snapshot(directory: Path, table: PartitionTable, name: str = TABLE_SNAPSHOT) -> None:
    """Persist the table as JSON (with filesystem kinds) and as an sfdisk script."""
    with open(directory / name, "w", encoding="utf-8") as f:
        json.dump(table.to_dict(), f, indent=2)
    if name == TABLE_SNAPSHOT:
        (directory / TABLE_DUMP).write_text(serialize(table), encoding="utf-8")


def read_table_snapshot(directory: Path, name: str = TABLE_SNAPSHOT) -> PartitionTable:
    try:
        with open(directory / name, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CorruptArchiveError(f"Partition table snapshot is unreadable: {e}") from e
    try:
        return PartitionTable.from_dict(data)
    except MalformedTableError as e:
        raise CorruptArchiveError(f"Partition table snapshot is invalid: {e.message}") from e


def write_bundle(scratch_dir: Path, archive_path: Path, manifest: Manifest) -> int:
    """
    Bundle snapshot, manifest and payloads into one tar file.

    The archive is written under a temporary name and renamed into place.
    Returns the archive size in bytes.
    """
    members = [TABLE_SNAPSHOT, TABLE_DUMP, MANIFEST_FILE]
    members += [e.payload_filename for e in manifest.successful() if e.payload_filename]

    missing = [name for name in members if not (scratch_dir / name).exists()]
    if missing:
        raise PackagingError(
            f"Cannot bundle archive, missing files: {', '.join(missing)}",
            retained_path=scratch_dir,
        )

    tmp_path = archive_path.with_name(f".{archive_path.name}.partial")
    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(tmp_path, "w", format=tarfile.PAX_FORMAT) as tar:
            for name in members:
                tar.add(scratch_dir / name, arcname=name, recursive=False)
        os.replace(tmp_path, archive_path)
    except (OSError, tarfile.TarError) as e:
        tmp_path.unlink(missing_ok=True)
        raise PackagingError(
            f"Bundling {archive_path} failed",
            retained_path=scratch_dir,
            diagnostic=str(e),
        ) from e

    size = archive_path.stat().st_size
    logger.info("Archive bundled", archive=str(archive_path), members=len(members), size_bytes=size)
    return size


def extract_bundle(archive_path: Path, scratch_dir: Path) -> tuple[PartitionTable, Manifest]:
    """Unpack a bundle and load its table snapshot and manifest."""
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            tar.extractall(scratch_dir, filter="data")
    except (OSError, tarfile.TarError) as e:
        raise CorruptArchiveError(f"Cannot extract {archive_path}", diagnostic=str(e)) from e

    manifest_path = scratch_dir / MANIFEST_FILE
    if not manifest_path.exists():
        raise CorruptArchiveError(f"{archive_path} has no manifest")
    manifest = Manifest.load(manifest_path)
    table = read_table_snapshot(scratch_dir)
    return table, manifest


class ResumeState(BaseModel):
    """Restore progress persisted in the scratch area so a retry can pick up later phases."""

    archive_path: str
    target: str
    layout_policy: str
    selection: list[int] = Field(default_factory=list)
    phase_reached: str = RestorePhase.EXTRACT.name
    table_applied: bool = False
    enlarged_indices: list[int] = Field(default_factory=list)
    completed_indices: list[int] = Field(default_factory=list)
    failed_indices: list[int] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def phase(self) -> RestorePhase:
        return RestorePhase[self.phase_reached]

    def advance(self, phase: RestorePhase) -> None:
        if phase.value > self.phase.value:
            self.phase_reached = phase.name

    def mark_completed(self, index: int) -> None:
        if index not in self.completed_indices:
            self.completed_indices.append(index)
        if index in self.failed_indices:
            self.failed_indices.remove(index)

    def mark_failed(self, index: int) -> None:
        if index not in self.failed_indices:
            self.failed_indices.append(index)

    def save(self, scratch_dir: Path) -> None:
        self.updated_at = datetime.now()
        tmp_path = scratch_dir / f"{RESUME_STATE}.tmp"
        tmp_path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp_path, scratch_dir / RESUME_STATE)

    @classmethod
    def load(cls, scratch_dir: Path) -> ResumeState:
        path = scratch_dir / RESUME_STATE
        try:
            return cls.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise PartVaultError(f"No usable restore state in {scratch_dir}: {e}") from e
