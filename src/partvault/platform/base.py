"""
PartVault Platform Backend Base.

Defines the OS boundary the engine talks to: reading tables and device
facts, writing tables and identity fields, and small filesystem helpers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from partvault.core.models import DiskInfo, FileSystemKind, PartitionTable


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def command_text(self) -> str:
        return self.command if isinstance(self.command, str) else " ".join(self.command)

    def __repr__(self) -> str:
        return f"CommandResult(rc={self.returncode}, cmd='{self.command_text[:50]}...')"


class PlatformBackend(ABC):
    """Abstract base class for platform-specific device access."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Platform name (e.g., 'linux')."""

    @property
    @abstractmethod
    def requires_admin(self) -> bool:
        """Whether root privileges are required for device access."""

    @abstractmethod
    def is_admin(self) -> bool:
        """Check if running with admin privileges."""

    @abstractmethod
    def run_command(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run a system command, never raising for a non-zero exit."""

    # ==================== Inspection ====================

    @abstractmethod
    def list_disks(self) -> list[DiskInfo]:
        """List whole disks."""

    @abstractmethod
    def read_table(self, device: str) -> PartitionTable:
        """Read the live partition table, including filesystem kinds."""

    @abstractmethod
    def device_size_bytes(self, device: str) -> int:
        """Size of a block device in bytes."""

    @abstractmethod
    def partition_node(self, device: str, index: int) -> str:
        """Device node of partition `index` on `device`."""

    @abstractmethod
    def get_mounted_devices(self) -> dict[str, str]:
        """Map of mounted device node to mountpoint."""

    def is_mounted(self, node: str) -> bool:
        return node in self.get_mounted_devices()

    @abstractmethod
    def root_disk(self) -> str | None:
        """Whole disk that hosts the running root filesystem, if known."""

    @abstractmethod
    def filesystem_used_bytes(self, node: str, kind: FileSystemKind) -> int | None:
        """Used bytes reported by the filesystem, or None when not exposed."""

    # ==================== Table writes ====================

    @abstractmethod
    def write_table(self, device: str, script: str) -> CommandResult:
        """Apply a declarative table script to a device."""

    @abstractmethod
    def set_disk_guid(self, device: str, disk_guid: str) -> CommandResult:
        """Override the disk GUID."""

    @abstractmethod
    def set_partition_identity(
        self, device: str, index: int, type_guid: str, partition_uuid: str
    ) -> CommandResult:
        """Override one partition's type GUID and UUID."""

    @abstractmethod
    def repair_backup_header(self, device: str) -> CommandResult:
        """Relocate and verify the secondary GPT header."""

    @abstractmethod
    def reread_table(self, device: str) -> CommandResult:
        """Ask the kernel to re-read the table and wait for device nodes."""

    # ==================== Maintenance ====================

    @abstractmethod
    def unmount_device(self, device: str) -> list[str]:
        """Unmount every mounted partition of a disk. Returns unmounted nodes."""

    @abstractmethod
    def grow_filesystem(self, node: str, kind: FileSystemKind) -> CommandResult:
        """Grow a filesystem to fill its partition."""

    @abstractmethod
    def shrink_filesystem(self, node: str, kind: FileSystemKind) -> CommandResult:
        """Shrink a filesystem to its minimum size, leaving the partition as is."""

    @abstractmethod
    def set_reserved_blocks(self, node: str, percent: int) -> CommandResult:
        """Set the share of an ext4 filesystem reserved for root."""
