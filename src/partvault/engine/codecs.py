"""
Compression codecs.

Every codec is a symmetric stream transform run as an external process;
the identity codec adds no stage at all.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass

from partvault.core.errors import PartVaultError

AUTO_PREFERENCE = ("zstd", "pigz", "gzip")


@dataclass(frozen=True)
class Codec:
    """A compressor/decompressor pair."""

    name: str
    suffix: str
    tool: str | None
    max_level: int = 9

    @property
    def is_identity(self) -> bool:
        return self.tool is None

    def compress_command(self, level: int = 3) -> list[str] | None:
        if self.tool is None:
            return None
        level = max(1, min(level, self.max_level))
        command = [self.tool, "-c", f"-{level}"]
        if self.name == "zstd":
            command += ["-T0", "-q"]
        return command

    def decompress_command(self) -> list[str] | None:
        if self.tool is None:
            return None
        return [self.tool, "-d", "-c"]


CODECS: dict[str, Codec] = {
    "zstd": Codec("zstd", ".zst", "zstd", max_level=19),
    "pigz": Codec("pigz", ".gz", "pigz"),
    "gzip": Codec("gzip", ".gz", "gzip"),
    "lz4": Codec("lz4", ".lz4", "lz4", max_level=12),
    "none": Codec("none", "", None),
}


def select_codec(
    preferred: str | None = "auto",
    which: Callable[[str], str | None] = shutil.which,
) -> Codec:
    """Resolve the configured compression to an installed codec."""
    if preferred in (None, "auto"):
        for name in AUTO_PREFERENCE:
            if which(CODECS[name].tool or name):
                return CODECS[name]
        return CODECS["none"]

    codec = CODECS.get(preferred)
    if codec is None:
        raise PartVaultError(f"Unknown compression: {preferred}")
    if codec.tool is not None and which(codec.tool) is None:
        raise PartVaultError(f"Compressor {codec.tool} is not installed")
    return codec


def codec_for_payload(
    filename: str,
    which: Callable[[str], str | None] = shutil.which,
) -> Codec:
    """Pick the decompressor for a payload by its suffix."""
    if filename.endswith(".zst"):
        return CODECS["zstd"]
    if filename.endswith(".lz4"):
        return CODECS["lz4"]
    if filename.endswith(".gz"):
        return CODECS["pigz"] if which("pigz") else CODECS["gzip"]
    return CODECS["none"]
