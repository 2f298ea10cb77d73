"""
PartVault Platform Abstraction Layer.

Provides the platform-specific implementation of the device boundary.
"""

from __future__ import annotations

import platform

from partvault.platform.base import CommandResult, PlatformBackend


def get_platform_backend() -> PlatformBackend:
    """Get the appropriate platform backend for the current OS."""
    system = platform.system().lower()

    if system == "linux":
        from partvault.platform.linux import LinuxBackend

        return LinuxBackend()
    raise RuntimeError(f"Unsupported platform: {system}")


def get_platform_name() -> str:
    """Get the current platform name."""
    return platform.system().lower()


__all__ = [
    "CommandResult",
    "PlatformBackend",
    "get_platform_backend",
    "get_platform_name",
]
