"""
PartVault Linux Platform Backend.

Implements device access using standard Linux tools:
- sfdisk for table dumps and table writes
- sgdisk for GUID overrides and GPT backup header repair
- lsblk, blkid, findmnt for inventory and mount state
- tune2fs, ntfsresize for used-space estimation
"""

from partvault.platform.linux.backend import LinuxBackend

__all__ = ["LinuxBackend"]
