"""
Source filesystem shrinking.

Before an archive or clone the ext4 and NTFS filesystems of the source can
be shrunk to their minimum, so raw images carry as little stale data as
possible; afterwards they are grown back to fill their partitions, and
the copies on a clone target are grown to fill theirs.
Partition boundaries are never changed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from partvault.core.logging import get_logger
from partvault.core.models import FileSystemKind, PartitionTable

if TYPE_CHECKING:
    from partvault.core.job import JobContext
    from partvault.core.safety import SafetyManager
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)


class SourceResizer:
    """Shrinks a source disk's filesystems and grows them back later."""

    def __init__(self, platform: PlatformBackend, safety: SafetyManager, context: JobContext) -> None:
        self.platform = platform
        self.safety = safety
        self.context = context
        self.shrunk: list[tuple[int, str, FileSystemKind]] = []

    def shrink(self, device: str, table: PartitionTable) -> list[str]:
        """
        Shrink every resizable filesystem on the device.

        Raises LiveSourceError for the disk of the running system. A
        filesystem that cannot be shrunk is left as it is with a warning.
        Returns the nodes that were shrunk.
        """
        self.safety.guard_mutation(device)

        for entry in table.entries:
            kind = entry.filesystem_kind
            if not kind.supports_resize:
                continue
            node = self.platform.partition_node(device, entry.index)
            if self.platform.is_mounted(node):
                logger.info("Unmounting before shrink", node=node)
                self.platform.unmount_device(node)

            result = self.platform.shrink_filesystem(node, kind)
            if not result.success:
                self.context.add_warning(
                    f"Partition {entry.index}: shrinking {kind.value} failed: {result.stderr.strip()}"
                )
                continue
            self.shrunk.append((entry.index, node, kind))
            logger.info("Filesystem shrunk", partition=entry.index, node=node, filesystem=kind.value)

        return [node for _, node, _ in self.shrunk]

    def grow_copies(self, target: str, reserved_percent: int | None = None) -> None:
        """Grow the clone target's copies of the shrunk filesystems to fill their partitions."""
        for index, _, kind in self.shrunk:
            node = self.platform.partition_node(target, index)
            result = self.platform.grow_filesystem(node, kind)
            if not result.success:
                self.context.add_warning(
                    f"Partition {index}: growing {kind.value} on {target} failed: {result.stderr.strip()}"
                )
                continue
            logger.info("Target filesystem grown", partition=index, node=node, filesystem=kind.value)
            if kind == FileSystemKind.EXT4 and reserved_percent is not None:
                set_reserved(self.platform, self.context, node, reserved_percent)

    def regrow(self) -> None:
        """Grow every shrunk source filesystem back to its partition size."""
        for _, node, kind in self.shrunk:
            result = self.platform.grow_filesystem(node, kind)
            if result.success:
                logger.info("Filesystem grown back", node=node, filesystem=kind.value)
            else:
                self.context.add_warning(f"Growing {node} back failed: {result.stderr.strip()}")
        self.shrunk = []


def set_reserved(platform: PlatformBackend, context: JobContext, node: str, percent: int) -> None:
    """Set the ext4 root reserve of a grown filesystem, warning on failure."""
    result = platform.set_reserved_blocks(node, percent)
    if result.success:
        logger.info("Reserved blocks set", node=node, percent=percent)
    else:
        context.add_warning(f"Setting reserved blocks on {node} failed: {result.stderr.strip()}")
