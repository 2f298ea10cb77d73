"""
PartVault operation jobs.

Wraps the orchestrators in `Job` objects so the runner can track their
status, cancel them and collect their summaries.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from partvault.core.job import Job, JobContext
from partvault.core.models import OperationMode, OperationRequest, OperationSummary
from partvault.core.safety import PreflightReport, SafetyManager
from partvault.engine.archive import ArchiveOrchestrator
from partvault.engine.catalog import ResumeState
from partvault.engine.clone import CloneOrchestrator
from partvault.engine.restore import RestoreOrchestrator

if TYPE_CHECKING:
    from partvault.core.config import PartVaultConfig
    from partvault.engine.capabilities import CapabilityRegistry
    from partvault.platform.base import PlatformBackend


class OperationJob(Job[OperationSummary]):
    """Base for jobs driven by an OperationRequest."""

    mode: OperationMode

    def __init__(
        self,
        request: OperationRequest,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        safety: SafetyManager,
    ) -> None:
        super().__init__(
            name=request.mode.value,
            description=f"{request.mode.value.capitalize()} {request.source} to {request.target}",
        )
        self.request = request
        self.platform = platform
        self.registry = registry
        self.config = config
        self.safety = safety
        self.preflight_report: PreflightReport | None = None

    def validate(self) -> list[str]:
        errors = self.request.validate()
        if self.request.mode != self.mode:
            errors.append(f"{type(self).__name__} cannot run a {self.request.mode.value} request")
        return errors

    def run_preflight(self, context: JobContext) -> None:
        """Run the safety checks, raising when one vetoes the request."""
        context.update_progress(stage="PREFLIGHT", message="Running preflight checks")
        self.preflight_report = self.safety.enforce(self.request)
        for warning in self.preflight_report.warnings:
            context.add_warning(warning)


class ArchiveJob(OperationJob):
    """Archive every partition of a disk into a single bundle."""

    mode = OperationMode.ARCHIVE

    def execute(self, context: JobContext) -> OperationSummary:
        self.run_preflight(context)
        orchestrator = ArchiveOrchestrator(
            self.request, self.platform, self.registry, self.config, context, safety=self.safety
        )
        return orchestrator.run()

    def get_plan(self) -> str:
        compression = self.request.compression or self.config.archive.compression
        if self.request.shrink_source:
            access = "ext4 and NTFS filesystems on the source are shrunk to their minimum first"
            if self.request.regrow_source:
                access += " and grown back afterwards"
        else:
            access = "The source disk is only read"
        return f"""Archive Disk
============
Source: {self.request.source}
Archive: {self.request.target}
Compression: {compression}

Steps:
1. Read the partition table of {self.request.source}
2. Image each partition with the best available backend
3. Compress each image into the scratch area
4. Record each outcome in the manifest
5. Bundle table, manifest and images into {Path(self.request.target).name}

{access}."""


class RestoreJob(OperationJob):
    """Restore an archive onto a disk, or selected partitions of it."""

    mode = OperationMode.RESTORE

    def execute(self, context: JobContext) -> OperationSummary:
        self.run_preflight(context)
        orchestrator = RestoreOrchestrator(
            self.request, self.platform, self.registry, self.config, self.safety, context
        )
        return orchestrator.run()

    def get_plan(self) -> str:
        if self.request.is_partial:
            selection = ", ".join(str(i) for i in sorted(self.request.partial_restore_selection))
            steps = f"""1. Extract the archive
2. Match partitions {selection} against the existing table of {self.request.target}
3. Restore the selected partitions

The partition table of {self.request.target} is left untouched."""
        else:
            steps = f"""1. Extract the archive
2. Plan a {self.request.layout_policy.value} layout for {self.request.target}
3. Write the partition table and identity fields
4. Restore every archived partition
5. Re-apply disk and partition GUIDs
6. Repair the backup GPT header

⚠️ WARNING: This will DESTROY all data on {self.request.target}!"""

        return f"""Restore Archive
===============
Archive: {self.request.source}
Target: {self.request.target}
Layout: {self.request.layout_policy.value}

Steps:
{steps}"""


class CloneJob(OperationJob):
    """Clone one disk onto another."""

    mode = OperationMode.CLONE

    def execute(self, context: JobContext) -> OperationSummary:
        self.run_preflight(context)
        orchestrator = CloneOrchestrator(
            self.request, self.platform, self.registry, self.config, self.safety, context
        )
        return orchestrator.run()

    def get_plan(self) -> str:
        steps = [
            "Verify the target is at least as large as the source",
            "Unmount the target's partitions",
        ]
        if self.request.shrink_source:
            steps.append(f"Shrink ext4 and NTFS filesystems on {self.request.source}")
        steps += ["Copy all data block-by-block", "Relocate the backup GPT header"]
        if self.request.shrink_source:
            steps.append("Grow the copied filesystems to fill their partitions")
            if self.request.regrow_source:
                steps.append(f"Grow the filesystems on {self.request.source} back")
        listing = "\n".join(f"{n}. {step}" for n, step in enumerate(steps, start=1))
        return f"""Clone Disk
==========
Source: {self.request.source}
Target: {self.request.target}

Steps:
{listing}

⚠️ WARNING: This will DESTROY all data on {self.request.target}!"""


class ResumeRestoreJob(Job[OperationSummary]):
    """Retry a failed restore from its retained scratch area."""

    def __init__(
        self,
        scratch_dir: Path,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        safety: SafetyManager,
    ) -> None:
        super().__init__(name="resume", description=f"Resume restore from {scratch_dir}")
        self.scratch_dir = Path(scratch_dir)
        self.platform = platform
        self.registry = registry
        self.config = config
        self.safety = safety

    def validate(self) -> list[str]:
        if not self.scratch_dir.is_dir():
            return [f"Scratch area {self.scratch_dir} does not exist"]
        return []

    def execute(self, context: JobContext) -> OperationSummary:
        return RestoreOrchestrator.resume(
            self.scratch_dir, self.platform, self.registry, self.config, self.safety, context
        )

    def get_plan(self) -> str:
        state = ResumeState.load(self.scratch_dir)
        pending = "table already written" if state.table_applied else "table not yet written"
        return f"""Resume Restore
==============
Scratch: {self.scratch_dir}
Archive: {state.archive_path}
Target: {state.target}
Last phase: {state.phase_reached} ({pending})
Completed partitions: {", ".join(str(i) for i in state.completed_indices) or "(none)"}"""


JOB_TYPES: dict[OperationMode, type[OperationJob]] = {
    OperationMode.ARCHIVE: ArchiveJob,
    OperationMode.RESTORE: RestoreJob,
    OperationMode.CLONE: CloneJob,
}


def build_job(
    request: OperationRequest,
    platform: PlatformBackend,
    registry: CapabilityRegistry,
    config: PartVaultConfig,
    safety: SafetyManager,
) -> OperationJob:
    """Create the job for a request's mode."""
    return JOB_TYPES[request.mode](request, platform, registry, config, safety)
