"""
PartVault capability registry.

Maps a filesystem kind and mount state to the ordered list of imaging
backends usable on this host. Tool availability is probed once when the
registry is built, so resolution within one run is deterministic.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Union

from partvault.core.errors import BackendMismatchError
from partvault.core.logging import get_logger
from partvault.core.models import FileSystemKind

logger = get_logger(__name__)


class BackendMode(Enum):
    """Imaging strategy of a backend."""

    USED_BLOCK = "used-block"
    RAW = "raw"


@dataclass(frozen=True)
class UsedBlockBackend:
    """A filesystem-aware tool that images only allocated blocks."""

    name: str
    filesystem_kind: FileSystemKind
    tool: str
    family: str
    save_args: tuple[str, ...]
    restore_args: tuple[str, ...]
    mount_compatible: bool = False
    available: bool = True

    mode: ClassVar[BackendMode] = BackendMode.USED_BLOCK

    def save_command(self, node: str) -> list[str]:
        """Command streaming the filesystem image of `node` to stdout."""
        return [self.tool, *(arg.format(node=node) for arg in self.save_args)]

    def restore_command(self, node: str) -> list[str]:
        """Command reading an image from stdin and writing it to `node`."""
        return [self.tool, *(arg.format(node=node) for arg in self.restore_args)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "filesystem_kind": self.filesystem_kind.value,
            "mode": self.mode.value,
            "family": self.family,
            "tool": self.tool,
            "mount_compatible": self.mount_compatible,
            "available": self.available,
        }


@dataclass(frozen=True)
class RawBackend:
    """Byte-for-byte device copy with a configurable block size."""

    block_size_bytes: int = 16 * 1024 * 1024
    tool: str = "dd"
    name: str = "raw"
    family: str = "raw"
    mount_compatible: bool = True
    available: bool = True

    mode: ClassVar[BackendMode] = BackendMode.RAW

    def save_command(self, node: str) -> list[str]:
        return [self.tool, f"if={node}", f"bs={self.block_size_bytes}", "status=none"]

    def restore_command(self, node: str) -> list[str]:
        return [
            self.tool,
            f"of={node}",
            f"bs={self.block_size_bytes}",
            "iflag=fullblock",
            "conv=notrunc,fsync",
            "status=none",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "filesystem_kind": None,
            "mode": self.mode.value,
            "family": self.family,
            "tool": self.tool,
            "mount_compatible": self.mount_compatible,
            "available": self.available,
            "block_size_bytes": self.block_size_bytes,
        }


Backend = Union[UsedBlockBackend, RawBackend]

PARTCLONE_SAVE = ("-c", "-s", "{node}", "-o", "-", "-q")
PARTCLONE_RESTORE = ("-r", "-s", "-", "-o", "{node}", "-q")


@dataclass(frozen=True)
class CatalogEntry:
    """Static description of a used-block tool before probing."""

    name: str
    filesystem_kind: FileSystemKind
    family: str
    save_args: tuple[str, ...]
    restore_args: tuple[str, ...]
    mount_compatible: bool = False
    tool: str | None = None

    @property
    def executable(self) -> str:
        return self.tool or self.name


DEFAULT_CATALOG: tuple[CatalogEntry, ...] = (
    CatalogEntry("partclone.ext4", FileSystemKind.EXT4, "partclone", PARTCLONE_SAVE, PARTCLONE_RESTORE),
    CatalogEntry("partclone.ntfs", FileSystemKind.NTFS, "partclone", PARTCLONE_SAVE, PARTCLONE_RESTORE),
    CatalogEntry(
        "ntfsclone",
        FileSystemKind.NTFS,
        "ntfsclone",
        ("--save-image", "--output", "-", "{node}"),
        ("--restore-image", "--overwrite", "{node}", "-"),
    ),
    CatalogEntry("partclone.apfs", FileSystemKind.APFS, "partclone", PARTCLONE_SAVE, PARTCLONE_RESTORE),
    CatalogEntry("partclone.hfsp", FileSystemKind.HFSPLUS, "partclone", PARTCLONE_SAVE, PARTCLONE_RESTORE),
)


def ensure_compatible(recorded_mode: BackendMode, recorded_family: str, backend: Backend) -> None:
    """Refuse to restore a payload with a backend family it was not produced by."""
    if backend.mode != recorded_mode or (
        recorded_mode == BackendMode.USED_BLOCK and backend.family != recorded_family
    ):
        raise BackendMismatchError(
            f"Payload was written by a {recorded_mode.value} {recorded_family} backend "
            f"and cannot be restored with {backend.name} ({backend.mode.value})"
        )


@dataclass
class CapabilityRegistry:
    """Ordered backend lists per filesystem kind, from a one-time probe."""

    used_block: list[UsedBlockBackend] = field(default_factory=list)
    raw: RawBackend = field(default_factory=RawBackend)

    @classmethod
    def probe(
        cls,
        raw_block_size_bytes: int = 16 * 1024 * 1024,
        catalog: Iterable[CatalogEntry] = DEFAULT_CATALOG,
        which: Callable[[str], str | None] = shutil.which,
    ) -> CapabilityRegistry:
        """Build a registry by checking which tools are installed."""
        backends = [
            UsedBlockBackend(
                name=entry.name,
                filesystem_kind=entry.filesystem_kind,
                tool=entry.executable,
                family=entry.family,
                save_args=entry.save_args,
                restore_args=entry.restore_args,
                mount_compatible=entry.mount_compatible,
                available=which(entry.executable) is not None,
            )
            for entry in catalog
        ]
        raw = RawBackend(
            block_size_bytes=raw_block_size_bytes,
            available=which(RawBackend.tool) is not None,
        )
        registry = cls(used_block=backends, raw=raw)
        logger.info(
            "Capabilities probed",
            available=[b.name for b in backends if b.available],
            missing=[b.name for b in backends if not b.available],
        )
        return registry

    def resolve(self, filesystem_kind: FileSystemKind, is_mounted: bool) -> list[Backend]:
        """Usable backends for a partition, most preferred first; raw is always last."""
        candidates: list[Backend] = [
            backend
            for backend in self.used_block
            if backend.filesystem_kind == filesystem_kind
            and backend.available
            and (backend.mount_compatible or not is_mounted)
        ]
        candidates.append(self.raw)
        return candidates

    def get(self, name: str) -> Backend | None:
        if name == self.raw.name:
            return self.raw
        for backend in self.used_block:
            if backend.name == name:
                return backend
        return None

    def for_restore(
        self,
        backend_name: str,
        mode: BackendMode,
        filesystem_kind: FileSystemKind,
    ) -> Backend:
        """
        Pick the inverse of the backend a payload was archived with.

        Prefers the exact tool, then any available tool of the same family
        for the same filesystem kind. Never falls back to raw for a
        used-block payload.
        """
        if mode == BackendMode.RAW:
            return self.raw

        recorded = self.get(backend_name)
        family = recorded.family if recorded is not None else backend_name.split(".", 1)[0]
        if isinstance(recorded, UsedBlockBackend) and recorded.available:
            return recorded

        for backend in self.used_block:
            if (
                backend.available
                and backend.family == family
                and backend.filesystem_kind == filesystem_kind
            ):
                return backend

        raise BackendMismatchError(
            f"No {family} backend for {filesystem_kind.value} is available; "
            f"a used-block image from {backend_name} cannot be restored as raw bytes"
        )

    def describe(self) -> list[dict[str, Any]]:
        return [backend.to_dict() for backend in self.used_block] + [self.raw.to_dict()]
