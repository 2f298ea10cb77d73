"""
Tests for partvault.engine.resize module.
"""

import pytest

from partvault.core.config import SafetyConfig
from partvault.core.errors import LiveSourceError
from partvault.core.job import JobContext
from partvault.core.models import FileSystemKind, PartitionTable, partition_node
from partvault.core.safety import SafetyManager
from partvault.engine.resize import SourceResizer, set_reserved


@pytest.fixture
def source(fake_platform, sample_table: PartitionTable) -> str:
    return fake_platform.add_disk("srcdisk", sample_table)


@pytest.fixture
def resizer(fake_platform) -> SourceResizer:
    return SourceResizer(fake_platform, SafetyManager(SafetyConfig(), fake_platform), JobContext())


class TestShrink:
    """Tests for shrinking a source disk."""

    def test_shrinks_resizable_filesystems_only(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        nodes = resizer.shrink(source, sample_table)

        assert nodes == [partition_node(source, 2), partition_node(source, 3)]
        assert fake_platform.called("shrink_filesystem") == [
            ("shrink_filesystem", partition_node(source, 2), FileSystemKind.EXT4),
            ("shrink_filesystem", partition_node(source, 3), FileSystemKind.NTFS),
        ]
        assert resizer.context.get_warnings() == []

    def test_unmounts_mounted_partition_first(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        node = partition_node(source, 2)
        fake_platform.mounted[node] = "/mnt/root"

        resizer.shrink(source, sample_table)

        assert ("unmount_device", node) in fake_platform.calls
        assert fake_platform.calls.index(("unmount_device", node)) < fake_platform.calls.index(
            ("shrink_filesystem", node, FileSystemKind.EXT4)
        )
        assert node not in fake_platform.mounted

    def test_failure_becomes_warning(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        fake_platform.fail.add("shrink_filesystem")

        nodes = resizer.shrink(source, sample_table)

        assert nodes == []
        assert resizer.shrunk == []
        warnings = resizer.context.get_warnings()
        assert len(warnings) == 2
        assert "Partition 2: shrinking ext4 failed" in warnings[0]

    def test_live_disk_refused(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        fake_platform.root_device = source

        with pytest.raises(LiveSourceError):
            resizer.shrink(source, sample_table)

        assert fake_platform.called("shrink_filesystem") == []

    def test_live_disk_refused_without_protection(
        self, fake_platform, source: str, sample_table: PartitionTable
    ) -> None:
        fake_platform.root_device = source
        safety = SafetyManager(SafetyConfig(live_source_protection=False), fake_platform)
        resizer = SourceResizer(fake_platform, safety, JobContext())

        with pytest.raises(LiveSourceError):
            resizer.shrink(source, sample_table)


class TestGrow:
    """Tests for growing shrunk filesystems."""

    def test_regrow_source(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        resizer.shrink(source, sample_table)

        resizer.regrow()

        assert fake_platform.called("grow_filesystem") == [
            ("grow_filesystem", partition_node(source, 2), FileSystemKind.EXT4),
            ("grow_filesystem", partition_node(source, 3), FileSystemKind.NTFS),
        ]
        assert resizer.shrunk == []

    def test_regrow_failure_becomes_warning(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        resizer.shrink(source, sample_table)
        fake_platform.fail.add("grow_filesystem")

        resizer.regrow()

        warnings = resizer.context.get_warnings()
        assert any(w.startswith(f"Growing {partition_node(source, 2)} back failed") for w in warnings)

    def test_grow_copies_on_target(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        target = fake_platform.add_disk("dstdisk", total_sectors=sample_table.total_sectors)
        resizer.shrink(source, sample_table)

        resizer.grow_copies(target, reserved_percent=1)

        grown = [call[1] for call in fake_platform.called("grow_filesystem")]
        assert grown == [partition_node(target, 2), partition_node(target, 3)]
        # Only ext4 carries a root reserve
        assert fake_platform.called("set_reserved_blocks") == [
            ("set_reserved_blocks", partition_node(target, 2), 1)
        ]
        assert len(resizer.shrunk) == 2

    def test_grow_copies_without_reserve(
        self, fake_platform, resizer: SourceResizer, source: str, sample_table: PartitionTable
    ) -> None:
        target = fake_platform.add_disk("dstdisk", total_sectors=sample_table.total_sectors)
        resizer.shrink(source, sample_table)

        resizer.grow_copies(target)

        assert fake_platform.called("set_reserved_blocks") == []

    def test_set_reserved_failure_becomes_warning(self, fake_platform) -> None:
        context = JobContext()
        fake_platform.fail.add("set_reserved_blocks")

        set_reserved(fake_platform, context, "/dev/sdb2", 1)

        assert context.get_warnings() == ["Setting reserved blocks on /dev/sdb2 failed: set_reserved_blocks failed"]
