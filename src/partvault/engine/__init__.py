"""
PartVault Engine.

Capability registry, streaming pipelines, manifest and archive bundle,
and the archive, restore and clone orchestrators.
"""

from partvault.engine.archive import ArchiveOrchestrator
from partvault.engine.capabilities import Backend, CapabilityRegistry, RawBackend, UsedBlockBackend
from partvault.engine.clone import CloneOrchestrator
from partvault.engine.manifest import Manifest, ManifestEntry
from partvault.engine.restore import RestoreOrchestrator

__all__ = [
    "ArchiveOrchestrator",
    "Backend",
    "CapabilityRegistry",
    "CloneOrchestrator",
    "Manifest",
    "ManifestEntry",
    "RawBackend",
    "RestoreOrchestrator",
    "UsedBlockBackend",
]
