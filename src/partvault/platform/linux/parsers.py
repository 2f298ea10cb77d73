"""
Linux output parsers.

Parsers for lsblk, blkid, findmnt, tune2fs and ntfsresize output.
"""

from __future__ import annotations

import json
import re
from typing import Any

from partvault.core.models import DiskInfo, FileSystemKind

TUNE2FS_FIELD = re.compile(r"^(Block count|Free blocks|Block size):\s*(\d+)\s*$", re.MULTILINE)
NTFS_RESIZE_AT = re.compile(r"resize at (\d+) bytes", re.IGNORECASE)
NTFS_MINIMUM = re.compile(r"minim\w*.*?(\d+)\s+bytes", re.IGNORECASE)


def parse_lsblk_json(output: str) -> list[dict[str, Any]]:
    """Parse JSON output from lsblk."""
    try:
        data = json.loads(output)
        return data.get("blockdevices", [])
    except json.JSONDecodeError:
        return []


def parse_blkid_output(output: str) -> dict[str, dict[str, str]]:
    """
    Parse blkid output.

    Example input:
    /dev/sda1: UUID="xxxx" TYPE="ext4" PARTUUID="xxxx"
    """
    result: dict[str, dict[str, str]] = {}

    for line in output.strip().split("\n"):
        if not line or ":" not in line:
            continue

        device, rest = line.split(":", 1)
        attrs: dict[str, str] = {}
        for match in re.finditer(r'(\w+)="([^"]*)"', rest):
            key, value = match.groups()
            attrs[key.upper()] = value

        result[device.strip()] = attrs

    return result


def _as_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _device_path(block: dict[str, Any]) -> str:
    path = block.get("path") or block.get("name") or ""
    if not path.startswith("/dev/"):
        path = f"/dev/{path}"
    return path


def filesystem_kinds_from_lsblk(
    blocks: list[dict[str, Any]],
    blkid_info: dict[str, dict[str, str]] | None = None,
) -> dict[str, FileSystemKind]:
    """Map every partition node in an lsblk tree to its filesystem kind."""
    blkid_info = blkid_info or {}
    kinds: dict[str, FileSystemKind] = {}

    def visit(block: dict[str, Any]) -> None:
        path = _device_path(block)
        if block.get("type") in ("part", "partition"):
            fstype = block.get("fstype") or blkid_info.get(path, {}).get("TYPE")
            kinds[path] = FileSystemKind.from_string(fstype)
        for child in block.get("children", []):
            visit(child)

    for block in blocks:
        visit(block)
    return kinds


def build_disk_info(block: dict[str, Any], system_disk: str | None) -> DiskInfo:
    """Build a DiskInfo from an lsblk disk entry."""
    device_path = _device_path(block)
    model = block.get("model")
    children = [c for c in block.get("children", []) if c.get("type") in ("part", "partition")]
    return DiskInfo(
        device_path=device_path,
        size_bytes=_as_int(block.get("size", 0)),
        model=model.strip() if model else "Unknown",
        label_kind=block.get("pttype"),
        is_system_disk=device_path == system_disk,
        partition_count=len(children),
    )


def parse_findmnt_json(output: str) -> dict[str, str]:
    """Parse findmnt JSON output to get mount mapping."""
    result: dict[str, str] = {}
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        return result

    def process_fs(fs: dict[str, Any]) -> None:
        source = fs.get("source", "")
        target = fs.get("target", "")
        if source and target and source.startswith("/dev/"):
            # btrfs subvolumes report "/dev/sda2[/@home]"
            result.setdefault(source.split("[", 1)[0], target)
        for child in fs.get("children", []):
            process_fs(child)

    for fs in data.get("filesystems", []):
        process_fs(fs)

    return result


def parse_proc_mounts(text: str) -> dict[str, str]:
    """Parse the contents of /proc/mounts."""
    result: dict[str, str] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0].startswith("/dev/"):
            result.setdefault(parts[0], parts[1])
    return result


def parse_tune2fs_used_bytes(output: str) -> int | None:
    """Used bytes of an ext filesystem: (block count - free blocks) * block size."""
    fields = {key: int(value) for key, value in TUNE2FS_FIELD.findall(output)}
    try:
        return (fields["Block count"] - fields["Free blocks"]) * fields["Block size"]
    except KeyError:
        return None


def parse_ntfsresize_min_bytes(output: str) -> int | None:
    """Smallest size ntfsresize reports the volume could shrink to."""
    match = NTFS_RESIZE_AT.search(output) or NTFS_MINIMUM.search(output)
    if match is None:
        return None
    return int(match.group(1))
