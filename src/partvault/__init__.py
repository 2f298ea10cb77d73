"""
PartVault - disk archive, restore and clone engine.

Images every partition of a GPT disk with the best available backend,
bundles the images with the partition table and a manifest, and restores
them verbatim, compacted or enlarged while keeping the disk GUID and every
partition's type GUID and UUID intact.
"""

__version__ = "1.0.0"
__author__ = "PartVault Team"

from partvault.core.config import PartVaultConfig
from partvault.core.session import Session

__all__ = ["PartVaultConfig", "Session", "__version__"]
