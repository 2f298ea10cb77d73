"""
Tests for partvault.core.table module.
"""

from dataclasses import replace
from unittest.mock import Mock

import pytest

from partvault.core import table as table_ops
from partvault.core.errors import (
    InsufficientSpaceError,
    MalformedTableError,
    OutOfBudgetError,
    TableWriteError,
)
from partvault.core.models import LINUX_DATA_TYPE_GUID, PartitionEntry, PartitionTable
from partvault.platform.base import CommandResult

SFDISK_DUMP = """label: gpt
label-id: 9B2F6C1E-34A5-4D8E-9F10-2A3B4C5D6E7F
device: /dev/sdb
unit: sectors
first-lba: 34
last-lba: 62914526
sector-size: 512

/dev/sdb1 : start=        2048, size=     1048576, type=C12A7328-F81F-11D2-BA4B-00A0C93EC93B, uuid=0D0A7B9C-1E2F-4A3B-8C4D-5E6F7A8B9C01, name="EFI System Partition"
/dev/sdb2 : start=     1050624, size=    20971520, type=0FC63DAF-8483-4772-8E79-3D69D8477DE4, uuid=0D0A7B9C-1E2F-4A3B-8C4D-5E6F7A8B9C02, name="root, main"
/dev/sdb3 : start=    22022144, size=    40892383, type=ebd0a0a2-b9e5-4433-87c0-68b6b72699c7, uuid=0d0a7b9c-1e2f-4a3b-8c4d-5e6f7a8b9c03, attrs="GUID:63"
"""


def ok() -> CommandResult:
    return CommandResult(0, "", "", ["tool"])


class TestParse:
    """Tests for parsing table dumps."""

    def test_parse_sfdisk_dump(self) -> None:
        table = table_ops.parse(SFDISK_DUMP)

        assert table.disk_guid == "9B2F6C1E-34A5-4D8E-9F10-2A3B4C5D6E7F"
        assert table.sector_size == 512
        assert table.first_lba == 34
        assert table.last_lba == 62914526
        assert table.total_sectors == 62914560
        assert table.indices == [1, 2, 3]
        assert table.device == "/dev/sdb"

    def test_quoted_names_and_guid_case(self) -> None:
        table = table_ops.parse(SFDISK_DUMP)

        assert table.entry(1).name == "EFI System Partition"
        assert table.entry(2).name == "root, main"
        assert table.entry(3).type_guid == "EBD0A0A2-B9E5-4433-87C0-68B6B72699C7"
        assert table.entry(3).partition_uuid == "0D0A7B9C-1E2F-4A3B-8C4D-5E6F7A8B9C03"

    def test_no_partition_lines(self) -> None:
        dump = "label: gpt\nlabel-id: ABC\nunit: sectors\n"
        with pytest.raises(MalformedTableError, match="entry grammar"):
            table_ops.parse(dump)

    def test_rejects_dos_label(self) -> None:
        dump = SFDISK_DUMP.replace("label: gpt", "label: dos")
        with pytest.raises(MalformedTableError, match="dos"):
            table_ops.parse(dump)

    def test_requires_disk_guid(self) -> None:
        dump = "\n".join(line for line in SFDISK_DUMP.splitlines() if not line.startswith("label-id"))
        with pytest.raises(MalformedTableError, match="label-id"):
            table_ops.parse(dump)

    def test_overlapping_entries_rejected(self) -> None:
        dump = SFDISK_DUMP.replace("start=     1050624", "start=     1000000")
        with pytest.raises(MalformedTableError, match="overlap"):
            table_ops.parse(dump)

    def test_missing_type_defaults_to_linux_data(self) -> None:
        dump = (
            "label: gpt\nlabel-id: ABC\nunit: sectors\nlast-lba: 4062\n\n"
            "/dev/vda1 : start=2048, size=1024, uuid=AAAA\n"
        )
        table = table_ops.parse(dump)
        assert table.entry(1).type_guid == LINUX_DATA_TYPE_GUID

    def test_explicit_total_sectors(self) -> None:
        table = table_ops.parse(SFDISK_DUMP, total_sectors=70000000)
        assert table.total_sectors == 70000000


class TestSerialize:
    """Tests for serializing tables back to dumps."""

    def test_round_trip(self, sample_table: PartitionTable) -> None:
        assert table_ops.parse(table_ops.serialize(sample_table)) == sample_table

    def test_round_trip_of_parsed_dump(self) -> None:
        table = table_ops.parse(SFDISK_DUMP)
        assert table_ops.parse(table_ops.serialize(table)) == table

    def test_round_trip_4k_sectors(self, sample_table: PartitionTable) -> None:
        table = replace(sample_table, sector_size=4096)
        assert table_ops.parse(table_ops.serialize(table)) == table

    def test_names_with_quotes_are_escaped(self, sample_table: PartitionTable) -> None:
        entries = (replace(sample_table.entries[0], name='say "hi"'),) + sample_table.entries[1:]
        table = replace(sample_table, entries=entries)
        assert table_ops.parse(table_ops.serialize(table)).entry(1).name == 'say "hi"'

    def test_serialize_uses_target_device_nodes(self, sample_table: PartitionTable) -> None:
        script = table_ops.serialize(sample_table, device="/dev/nvme0n1")
        assert "device: /dev/nvme0n1" in script
        assert "/dev/nvme0n1p3 :" in script
        assert f"label-id: {sample_table.disk_guid}" in script


class TestCompactLayout:
    """Tests for compute_compact_layout."""

    def test_entries_become_contiguous(self, sample_table: PartitionTable) -> None:
        planned = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)

        starts = [e.start_sector for e in planned.entries]
        assert starts == [2048, 2048 + 64, 2048 + 64 + 128]
        planned.validate()

    def test_identity_fields_preserved(self, sample_table: PartitionTable) -> None:
        planned = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)

        assert planned.disk_guid == sample_table.disk_guid
        for before, after in zip(sample_table.entries, planned.entries):
            assert after.index == before.index
            assert after.type_guid == before.type_guid
            assert after.partition_uuid == before.partition_uuid
            assert after.size_sectors == before.size_sectors

    def test_consumed_sectors(self, sample_table: PartitionTable) -> None:
        planned = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)
        consumed = sum(e.size_sectors for e in sample_table.entries) + 2048
        assert planned.used_end_sector() == consumed

    def test_size_overrides(self, sample_table: PartitionTable) -> None:
        planned = table_ops.compute_compact_layout(
            sample_table, size_overrides={2: 512}, first_usable_lba=2048
        )
        assert planned.entry(2).size_sectors == 512
        assert planned.entry(3).start_sector == 2048 + 64 + 512

    def test_sized_for_target(self, sample_table: PartitionTable) -> None:
        planned = table_ops.compute_compact_layout(
            sample_table, first_usable_lba=2048, target_total_sectors=4096
        )
        assert planned.total_sectors == 4096

    def test_target_too_small(self, sample_table: PartitionTable) -> None:
        with pytest.raises(InsufficientSpaceError):
            table_ops.compute_compact_layout(
                sample_table, first_usable_lba=2048, target_total_sectors=2400
            )

    def test_unknown_override(self, sample_table: PartitionTable) -> None:
        with pytest.raises(KeyError):
            table_ops.compute_compact_layout(sample_table, size_overrides={9: 10})


class TestEnlargement:
    """Tests for compute_enlargement."""

    def test_grows_only_target(self, sample_table: PartitionTable) -> None:
        compact = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)
        budget = compact.last_lba + 1 - compact.used_end_sector()

        grown = table_ops.compute_enlargement(compact, 3, 1000, budget)

        assert grown.entry(3).size_sectors == compact.entry(3).size_sectors + 1000
        assert grown.entry(3).start_sector == compact.entry(3).start_sector
        assert grown.entry(1) == compact.entry(1)
        assert grown.entry(2) == compact.entry(2)
        assert grown.entry(1).start_sector == compact.entry(1).start_sector
        assert grown.entry(2).size_sectors == compact.entry(2).size_sectors

    def test_fill_to_end(self, sample_table: PartitionTable) -> None:
        compact = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)
        free = compact.free_sectors_after(3)

        grown = table_ops.compute_enlargement(compact, 3, free, free)

        assert grown.entry(3).end_sector == grown.last_lba + 1
        grown.validate()

    def test_exceeds_budget(self, sample_table: PartitionTable) -> None:
        compact = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)
        with pytest.raises(OutOfBudgetError):
            table_ops.compute_enlargement(compact, 3, 500, 100)

    def test_inner_partition_without_gap_refused(self, sample_table: PartitionTable) -> None:
        compact = table_ops.compute_compact_layout(sample_table, first_usable_lba=2048)
        with pytest.raises(OutOfBudgetError, match="before the next partition"):
            table_ops.compute_enlargement(compact, 2, 10, 10000)

    def test_inner_partition_with_trailing_gap(self, sample_table: PartitionTable) -> None:
        grown = table_ops.compute_enlargement(sample_table, 1, 100, 100)
        assert grown.entry(1).size_sectors == 164
        assert grown.entry(2) == sample_table.entry(2)

    def test_unknown_index(self, sample_table: PartitionTable) -> None:
        with pytest.raises(KeyError):
            table_ops.compute_enlargement(sample_table, 9, 1, 1)


class TestApply:
    """Tests for writing tables through the platform."""

    def test_apply_sends_script(self, sample_table: PartitionTable) -> None:
        platform = Mock()
        platform.write_table.return_value = ok()

        table_ops.apply(sample_table, "/dev/sdc", platform)

        device, script = platform.write_table.call_args.args
        assert device == "/dev/sdc"
        assert table_ops.parse(script) == sample_table

    def test_apply_failure_raises_with_diagnostic(self, sample_table: PartitionTable) -> None:
        platform = Mock()
        platform.write_table.return_value = CommandResult(1, "", "sfdisk: device busy", ["sfdisk"])

        with pytest.raises(TableWriteError) as exc_info:
            table_ops.apply(sample_table, "/dev/sdc", platform)
        assert exc_info.value.diagnostic == "sfdisk: device busy"

    def test_apply_identity(self, sample_table: PartitionTable) -> None:
        platform = Mock()
        platform.set_disk_guid.return_value = ok()
        platform.set_partition_identity.return_value = ok()

        table_ops.apply_identity(sample_table, "/dev/sdc", platform)

        platform.set_disk_guid.assert_called_once_with("/dev/sdc", sample_table.disk_guid)
        assert platform.set_partition_identity.call_count == 3
        entry = sample_table.entry(2)
        platform.set_partition_identity.assert_any_call(
            "/dev/sdc", 2, entry.type_guid, entry.partition_uuid
        )

    def test_apply_identity_subset(self, sample_table: PartitionTable) -> None:
        platform = Mock()
        platform.set_disk_guid.return_value = ok()
        platform.set_partition_identity.return_value = ok()

        table_ops.apply_identity(sample_table, "/dev/sdc", platform, indices=[3])

        assert platform.set_partition_identity.call_count == 1

    def test_apply_identity_failure(self, sample_table: PartitionTable) -> None:
        platform = Mock()
        platform.set_disk_guid.return_value = ok()
        platform.set_partition_identity.return_value = CommandResult(2, "", "bad uuid", ["sgdisk"])

        with pytest.raises(TableWriteError, match="partition 1"):
            table_ops.apply_identity(sample_table, "/dev/sdc", platform)


def test_parse_ignores_unrelated_lines() -> None:
    dump = "# comment\n" + SFDISK_DUMP + "garbage line without colon\n"
    assert table_ops.parse(dump).indices == [1, 2, 3]


def test_entry_size_bytes() -> None:
    entry = PartitionEntry(1, 2048, 8, "T", "U")
    assert entry.size_bytes(512) == 4096
    assert entry.end_sector == 2056
