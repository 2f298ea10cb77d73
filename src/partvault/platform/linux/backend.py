"""
Linux Platform Backend Implementation.

Reads and writes GPT tables with util-linux and gdisk tools and queries
filesystem usage with the e2fsprogs and ntfs-3g utilities.
"""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from dataclasses import replace
from pathlib import Path

from partvault.core.errors import MalformedTableError
from partvault.core.logging import get_logger
from partvault.core.models import DiskInfo, FileSystemKind, PartitionTable, is_partition_of, partition_node
from partvault.core.table import parse
from partvault.platform.base import CommandResult, PlatformBackend
from partvault.platform.linux.parsers import (
    build_disk_info,
    filesystem_kinds_from_lsblk,
    parse_blkid_output,
    parse_findmnt_json,
    parse_lsblk_json,
    parse_ntfsresize_min_bytes,
    parse_proc_mounts,
    parse_tune2fs_used_bytes,
)

logger = get_logger(__name__)


class LinuxBackend(PlatformBackend):
    """Linux implementation of device access."""

    # Tool paths (can be overridden for testing)
    LSBLK = "lsblk"
    BLKID = "blkid"
    BLOCKDEV = "blockdev"
    SFDISK = "sfdisk"
    SGDISK = "sgdisk"
    FINDMNT = "findmnt"
    UMOUNT = "umount"
    PARTPROBE = "partprobe"
    UDEVADM = "udevadm"

    # Filesystem tools
    TUNE2FS = "tune2fs"
    E2FSCK = "e2fsck"
    RESIZE2FS = "resize2fs"
    NTFSRESIZE = "ntfsresize"

    PROC_MOUNTS = Path("/proc/mounts")

    @property
    def name(self) -> str:
        return "linux"

    @property
    def requires_admin(self) -> bool:
        return True

    def is_admin(self) -> bool:
        return os.geteuid() == 0

    def _check_tool(self, tool: str) -> bool:
        return shutil.which(tool) is not None

    def run_command(
        self,
        command: list[str],
        timeout: int = 300,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        """Run a system command."""
        logger.debug("Running command", command=command)
        start_time = time.time()

        try:
            result = subprocess.run(
                command,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=f"Command timed out after {timeout}s",
                command=command,
                duration_seconds=timeout,
            )
        except OSError as e:
            return CommandResult(
                returncode=-1,
                stdout="",
                stderr=str(e),
                command=command,
                duration_seconds=time.time() - start_time,
            )

        if check and result.returncode != 0:
            logger.warning(
                "Command failed",
                command=command,
                returncode=result.returncode,
                stderr=result.stderr[:500] if result.stderr else "",
            )

        return CommandResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            command=command,
            duration_seconds=time.time() - start_time,
        )

    # ==================== Inspection ====================

    def list_disks(self) -> list[DiskInfo]:
        result = self.run_command(
            [self.LSBLK, "-J", "-b", "-o", "PATH,SIZE,TYPE,MODEL,PTTYPE,FSTYPE"],
            check=False,
        )
        if not result.success:
            logger.warning("lsblk failed", stderr=result.stderr)
            return []

        system_disk = self.root_disk()
        return [
            build_disk_info(block, system_disk)
            for block in parse_lsblk_json(result.stdout)
            if block.get("type") == "disk"
        ]

    def read_table(self, device: str) -> PartitionTable:
        """Read the GPT of a device with `sfdisk -d` and annotate filesystem kinds."""
        dump = self.run_command([self.SFDISK, "-d", device], check=False)
        if not dump.success:
            raise MalformedTableError(
                f"Could not read partition table of {device}",
                diagnostic=dump.stderr,
            )

        table = parse(dump.stdout)
        size_bytes = self.device_size_bytes(device)
        if size_bytes:
            table = replace(table, total_sectors=size_bytes // table.sector_size)

        kinds = self._filesystem_kinds(device)
        entries = tuple(
            replace(
                entry,
                filesystem_kind=kinds.get(
                    self.partition_node(device, entry.index), FileSystemKind.UNKNOWN
                ),
            )
            for entry in table.entries
        )
        return replace(table, entries=entries, device=device)

    def _filesystem_kinds(self, device: str) -> dict[str, FileSystemKind]:
        lsblk = self.run_command(
            [self.LSBLK, "-J", "-b", "-o", "PATH,TYPE,FSTYPE", device], check=False
        )
        blocks = parse_lsblk_json(lsblk.stdout) if lsblk.success else []
        blkid = self.run_command([self.BLKID], check=False)
        blkid_info = parse_blkid_output(blkid.stdout) if blkid.success else {}
        return filesystem_kinds_from_lsblk(blocks, blkid_info)

    def device_size_bytes(self, device: str) -> int:
        result = self.run_command([self.BLOCKDEV, "--getsize64", device], check=False)
        if result.success:
            try:
                return int(result.stdout.strip())
            except ValueError:
                logger.warning("Unexpected blockdev output", output=result.stdout[:100])
        path = Path(device)
        if path.is_file():
            return path.stat().st_size
        return 0

    def partition_node(self, device: str, index: int) -> str:
        return partition_node(device, index)

    def get_mounted_devices(self) -> dict[str, str]:
        result = self.run_command([self.FINDMNT, "-J"], check=False)
        if result.success:
            return parse_findmnt_json(result.stdout)
        try:
            return parse_proc_mounts(self.PROC_MOUNTS.read_text())
        except OSError:
            return {}

    def root_disk(self) -> str | None:
        """Resolve the whole disk behind `/` (findmnt, then lsblk PKNAME)."""
        source = self.run_command([self.FINDMNT, "-no", "SOURCE", "/"], check=False)
        root_source = source.stdout.strip().split("[", 1)[0] if source.success else ""
        if not root_source.startswith("/dev/"):
            return None

        parent = self.run_command([self.LSBLK, "-no", "PKNAME", root_source], check=False)
        names = [line.strip() for line in parent.stdout.splitlines() if line.strip()]
        if parent.success and names:
            return f"/dev/{names[0]}"
        return root_source

    def filesystem_used_bytes(self, node: str, kind: FileSystemKind) -> int | None:
        if kind == FileSystemKind.EXT4 and self._check_tool(self.TUNE2FS):
            result = self.run_command([self.TUNE2FS, "-l", node], check=False)
            return parse_tune2fs_used_bytes(result.stdout) if result.success else None

        if kind == FileSystemKind.NTFS and self._check_tool(self.NTFSRESIZE):
            result = self.run_command([self.NTFSRESIZE, "-i", "-f", node], check=False)
            return parse_ntfsresize_min_bytes(result.stdout + result.stderr)

        return None

    # ==================== Table writes ====================

    def write_table(self, device: str, script: str) -> CommandResult:
        return self.run_command([self.SFDISK, "--force", "--no-reread", device], input_text=script)

    def set_disk_guid(self, device: str, disk_guid: str) -> CommandResult:
        if self._check_tool(self.SGDISK):
            return self.run_command([self.SGDISK, "-U", disk_guid, device])
        return self.run_command([self.SFDISK, "--disk-id", device, disk_guid])

    def set_partition_identity(
        self, device: str, index: int, type_guid: str, partition_uuid: str
    ) -> CommandResult:
        if self._check_tool(self.SGDISK):
            return self.run_command(
                [
                    self.SGDISK,
                    "-t",
                    f"{index}:{type_guid}",
                    "-u",
                    f"{index}:{partition_uuid}",
                    device,
                ]
            )

        result = self.run_command([self.SFDISK, "--part-type", device, str(index), type_guid])
        if not result.success:
            return result
        return self.run_command(
            [self.SFDISK, "--part-uuid", device, str(index), partition_uuid]
        )

    def repair_backup_header(self, device: str) -> CommandResult:
        if not self._check_tool(self.SGDISK):
            return CommandResult(127, "", f"{self.SGDISK} not found", [self.SGDISK, "-e", device])

        result = self.run_command([self.SGDISK, "-e", device])
        if result.success:
            verify = self.run_command([self.SGDISK, "-v", device], check=False)
            logger.info(
                "GPT backup header relocated",
                device=device,
                verified=verify.success,
            )
        return result

    def reread_table(self, device: str) -> CommandResult:
        if self._check_tool(self.PARTPROBE):
            result = self.run_command([self.PARTPROBE, device], check=False)
        else:
            result = self.run_command([self.BLOCKDEV, "--rereadpt", device], check=False)

        if self._check_tool(self.UDEVADM):
            self.run_command([self.UDEVADM, "settle"], timeout=60, check=False)
        return result

    # ==================== Maintenance ====================

    def unmount_device(self, device: str) -> list[str]:
        unmounted: list[str] = []
        for node in sorted(self.get_mounted_devices()):
            if node == device or is_partition_of(node, device):
                result = self.run_command([self.UMOUNT, node])
                if result.success:
                    unmounted.append(node)
        return unmounted

    def _check_ext4(self, node: str) -> CommandResult:
        fsck = self.run_command([self.E2FSCK, "-f", "-y", node], timeout=3600, check=False)
        # e2fsck exits 1 when it corrected errors
        if fsck.returncode == 1:
            return CommandResult(0, fsck.stdout, fsck.stderr, fsck.command)
        return fsck

    def grow_filesystem(self, node: str, kind: FileSystemKind) -> CommandResult:
        if kind == FileSystemKind.EXT4:
            fsck = self._check_ext4(node)
            if not fsck.success:
                return fsck
            return self.run_command([self.RESIZE2FS, node], timeout=3600)

        if kind == FileSystemKind.NTFS:
            return self.run_command(
                [self.NTFSRESIZE, "-f", node], timeout=3600, input_text="y\n"
            )

        return CommandResult(
            returncode=1,
            stdout="",
            stderr=f"Growing {kind.value} filesystems is not supported",
            command=["grow", node],
        )

    def shrink_filesystem(self, node: str, kind: FileSystemKind) -> CommandResult:
        if kind == FileSystemKind.EXT4:
            fsck = self._check_ext4(node)
            if not fsck.success:
                return fsck
            return self.run_command([self.RESIZE2FS, "-M", node], timeout=3600)

        if kind == FileSystemKind.NTFS:
            minimum = self.filesystem_used_bytes(node, kind)
            if minimum is None:
                return CommandResult(
                    returncode=1,
                    stdout="",
                    stderr=f"Could not determine the minimum size of {node}",
                    command=[self.NTFSRESIZE, "-i", "-f", node],
                )
            return self.run_command(
                [self.NTFSRESIZE, "-f", "-s", str(minimum), node], timeout=3600, input_text="y\n"
            )

        return CommandResult(
            returncode=1,
            stdout="",
            stderr=f"Shrinking {kind.value} filesystems is not supported",
            command=["shrink", node],
        )

    def set_reserved_blocks(self, node: str, percent: int) -> CommandResult:
        return self.run_command([self.TUNE2FS, "-m", str(percent), node])
