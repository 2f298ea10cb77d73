"""
Pytest configuration and fixtures for PartVault tests.
"""

import sys
import tempfile
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Generator

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from partvault.core.config import PartVaultConfig  # noqa: E402
from partvault.core.errors import MalformedTableError  # noqa: E402
from partvault.core.models import (  # noqa: E402
    DiskInfo,
    FileSystemKind,
    PartitionEntry,
    PartitionTable,
    partition_node,
)
from partvault.core.table import parse  # noqa: E402
from partvault.engine.capabilities import (  # noqa: E402
    CapabilityRegistry,
    RawBackend,
    UsedBlockBackend,
)
from partvault.platform.base import CommandResult, PlatformBackend  # noqa: E402

SECTOR = 512

DISK_GUID = "3E4F6A2B-8C1D-4E5F-9A0B-1C2D3E4F5A6B"
EFI_TYPE = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
LINUX_TYPE = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"
BASIC_DATA_TYPE = "EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"

# Stand-ins for a used-block imaging tool: the image is the node's bytes behind a header
FAKE_SAVE = (
    "import shutil, sys; sys.stdout.buffer.write(b'IMG:'); "
    "shutil.copyfileobj(open(sys.argv[1], 'rb'), sys.stdout.buffer)"
)
FAKE_RESTORE = (
    "import sys; data = sys.stdin.buffer.read(); "
    "sys.exit(3) if data[:4] != b'IMG:' else open(sys.argv[1], 'wb').write(data[4:])"
)
FAKE_FAIL = "import sys; sys.stdin.close(); sys.stderr.write('device busy'); sys.exit(1)"


def fake_backend(
    kind: FileSystemKind,
    save: str = FAKE_SAVE,
    restore: str = FAKE_RESTORE,
    available: bool = True,
) -> UsedBlockBackend:
    """A used-block backend running small python programs."""
    return UsedBlockBackend(
        name=f"fakeclone.{kind.value}",
        filesystem_kind=kind,
        tool=sys.executable,
        family="fakeclone",
        save_args=("-c", save, "{node}"),
        restore_args=("-c", restore, "{node}"),
        available=available,
    )


def pattern_bytes(index: int, size: int) -> bytes:
    """Deterministic, non-uniform partition contents."""
    chunk = f"partition-{index}:".encode() + bytes(range(256))
    return (chunk * (size // len(chunk) + 1))[:size]


class FakePlatform(PlatformBackend):
    """
    In-memory platform whose disks and partition nodes are regular files.

    Tables live in a dict keyed by device path; table writes parse the
    script exactly as the real partitioning tool would receive it, and
    every mutating call is recorded in `calls`.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.tables: dict[str, PartitionTable] = {}
        self.sizes: dict[str, int] = {}
        self.mounted: dict[str, str] = {}
        self.used_bytes: dict[str, int] = {}
        self.root_device: str | None = None
        self.calls: list[tuple] = []
        self.fail: set[str] = set()

    @property
    def name(self) -> str:
        return "fake"

    @property
    def requires_admin(self) -> bool:
        return False

    def is_admin(self) -> bool:
        return True

    def run_command(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        self.calls.append(("run_command", tuple(command)))
        return self._result("run_command")

    def _result(self, call: str) -> CommandResult:
        if call in self.fail:
            return CommandResult(1, "", f"{call} failed", [call])
        return CommandResult(0, "", "", [call])

    # ==================== Test helpers ====================

    def add_disk(self, name: str, table: PartitionTable | None = None, total_sectors: int | None = None) -> str:
        """Create a disk file; with a table, also register it as the disk's live table."""
        device = str(self.root / name)
        sectors = total_sectors if total_sectors is not None else table.total_sectors
        with open(device, "wb") as f:
            f.truncate(sectors * SECTOR)
        self.sizes[device] = sectors * SECTOR
        if table is not None:
            self.tables[device] = replace(table, device=device)
        return device

    def fill_partitions(self, device: str, zero: bool = False) -> dict[int, bytes]:
        """Write every partition node of a disk; returns the bytes written."""
        contents: dict[int, bytes] = {}
        for entry in self.tables[device].entries:
            size = entry.size_bytes(SECTOR)
            data = bytes(size) if zero else pattern_bytes(entry.index, size)
            Path(self.partition_node(device, entry.index)).write_bytes(data)
            contents[entry.index] = data
        return contents

    def read_node(self, device: str, index: int) -> bytes:
        return Path(self.partition_node(device, index)).read_bytes()

    def called(self, name: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == name]

    # ==================== Inspection ====================

    def list_disks(self) -> list[DiskInfo]:
        return [
            DiskInfo(
                device_path=device,
                size_bytes=size,
                label_kind="gpt" if device in self.tables else None,
                is_system_disk=device == self.root_device,
                partition_count=len(self.tables[device].entries) if device in self.tables else 0,
            )
            for device, size in self.sizes.items()
        ]

    def read_table(self, device: str) -> PartitionTable:
        if device not in self.tables:
            raise MalformedTableError(f"{device} has no GPT table")
        return self.tables[device]

    def device_size_bytes(self, device: str) -> int:
        return self.sizes.get(device, 0)

    def partition_node(self, device: str, index: int) -> str:
        return partition_node(device, index)

    def get_mounted_devices(self) -> dict[str, str]:
        return dict(self.mounted)

    def root_disk(self) -> str | None:
        return self.root_device

    def filesystem_used_bytes(self, node: str, kind: FileSystemKind) -> int | None:
        return self.used_bytes.get(node)

    # ==================== Table writes ====================

    def write_table(self, device: str, script: str) -> CommandResult:
        self.calls.append(("write_table", device, script))
        result = self._result("write_table")
        if result.success:
            self.tables[device] = parse(script)
        return result

    def set_disk_guid(self, device: str, disk_guid: str) -> CommandResult:
        self.calls.append(("set_disk_guid", device, disk_guid))
        result = self._result("set_disk_guid")
        if result.success and device in self.tables:
            self.tables[device] = replace(self.tables[device], disk_guid=disk_guid)
        return result

    def set_partition_identity(
        self, device: str, index: int, type_guid: str, partition_uuid: str
    ) -> CommandResult:
        self.calls.append(("set_partition_identity", device, index, type_guid, partition_uuid))
        result = self._result("set_partition_identity")
        if result.success and device in self.tables:
            table = self.tables[device]
            entries = tuple(
                replace(e, type_guid=type_guid, partition_uuid=partition_uuid) if e.index == index else e
                for e in table.entries
            )
            self.tables[device] = replace(table, entries=entries)
        return result

    def repair_backup_header(self, device: str) -> CommandResult:
        self.calls.append(("repair_backup_header", device))
        return self._result("repair_backup_header")

    def reread_table(self, device: str) -> CommandResult:
        self.calls.append(("reread_table", device))
        return self._result("reread_table")

    # ==================== Maintenance ====================

    def unmount_device(self, device: str) -> list[str]:
        self.calls.append(("unmount_device", device))
        nodes = [node for node in self.mounted if node.startswith(device)]
        for node in nodes:
            del self.mounted[node]
        return nodes

    def grow_filesystem(self, node: str, kind: FileSystemKind) -> CommandResult:
        self.calls.append(("grow_filesystem", node, kind))
        return self._result("grow_filesystem")

    def shrink_filesystem(self, node: str, kind: FileSystemKind) -> CommandResult:
        self.calls.append(("shrink_filesystem", node, kind))
        return self._result("shrink_filesystem")

    def set_reserved_blocks(self, node: str, percent: int) -> CommandResult:
        self.calls.append(("set_reserved_blocks", node, percent))
        return self._result("set_reserved_blocks")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_config() -> Generator[PartVaultConfig, None, None]:
    """Create a sample configuration for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        config = PartVaultConfig(
            session_directory=Path(tmpdir) / "sessions",
        )
        config.logging.log_directory = Path(tmpdir) / "logs"
        config.logging.console_enabled = False
        config.archive.compression = "none"
        config.archive.raw_block_size_mb = 1
        config.archive.progress_interval_seconds = 0.1
        config.ensure_directories()
        yield config


@pytest.fixture
def sample_table() -> PartitionTable:
    """A 16384-sector disk with gaps between an ESP, an ext4 root and an NTFS data partition."""
    return PartitionTable(
        disk_guid=DISK_GUID,
        total_sectors=16384,
        entries=(
            PartitionEntry(
                index=1,
                start_sector=2048,
                size_sectors=64,
                type_guid=EFI_TYPE,
                partition_uuid="11111111-2222-4333-8444-555555555501",
                filesystem_kind=FileSystemKind.UNKNOWN,
                name="EFI System",
            ),
            PartitionEntry(
                index=2,
                start_sector=4096,
                size_sectors=128,
                type_guid=LINUX_TYPE,
                partition_uuid="11111111-2222-4333-8444-555555555502",
                filesystem_kind=FileSystemKind.EXT4,
                name="root",
            ),
            PartitionEntry(
                index=3,
                start_sector=8192,
                size_sectors=256,
                type_guid=BASIC_DATA_TYPE,
                partition_uuid="11111111-2222-4333-8444-555555555503",
                filesystem_kind=FileSystemKind.NTFS,
                name="data",
            ),
        ),
    )


@pytest.fixture
def fake_platform(temp_dir: Path) -> FakePlatform:
    return FakePlatform(temp_dir / "devices")


@pytest.fixture
def make_registry() -> Callable[..., CapabilityRegistry]:
    """
    Build a registry of fake used-block backends for ext4 and ntfs plus dd.

    `failing_save`/`failing_restore` make a kind's tool exit 1, `missing`
    marks it unavailable.
    """

    def build(
        failing_save: set[FileSystemKind] | None = None,
        failing_restore: set[FileSystemKind] | None = None,
        missing: set[FileSystemKind] | None = None,
        raw_tool: str = "dd",
    ) -> CapabilityRegistry:
        backends = []
        for kind in (FileSystemKind.EXT4, FileSystemKind.NTFS):
            backends.append(
                fake_backend(
                    kind,
                    save=FAKE_FAIL if kind in (failing_save or set()) else FAKE_SAVE,
                    restore=FAKE_FAIL if kind in (failing_restore or set()) else FAKE_RESTORE,
                    available=kind not in (missing or set()),
                )
            )
        return CapabilityRegistry(used_block=backends, raw=RawBackend(block_size_bytes=4096, tool=raw_tool))

    return build


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")

