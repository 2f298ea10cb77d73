"""
Restore Orchestrator.

Materializes a target disk from an archive bundle:

    EXTRACT -> TABLE_PLAN -> TABLE_APPLY -> PER_PARTITION_RESTORE
            -> IDENTITY_FIXUP -> POST_CHECK

Progress is persisted in the scratch area after every step, so a failed
restore can be retried with `RestoreOrchestrator.resume` without
re-extracting the archive or writing the table a second time.
"""

from __future__ import annotations

import time
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

from partvault.core import table as table_ops
from partvault.core.errors import (
    BackendMismatchError,
    InsufficientSpaceError,
    LayoutError,
    PartVaultError,
    StageFailedError,
    StorageError,
    TableWriteError,
)
from partvault.core.job import JobCancelledException, JobContext
from partvault.core.logging import OperationLogger, get_logger
from partvault.core.models import (
    EventKind,
    FileSystemKind,
    LayoutPolicy,
    OperationMode,
    OperationRequest,
    OperationSummary,
    PartitionEvent,
    PartitionTable,
    RestorePhase,
    gpt_trailer_sectors,
)
from partvault.engine.capabilities import CapabilityRegistry, ensure_compatible
from partvault.engine.catalog import (
    MANIFEST_FILE,
    PLANNED_TABLE,
    ResumeState,
    ScratchArea,
    extract_bundle,
    read_table_snapshot,
    write_table_snapshot,
)
from partvault.engine.codecs import codec_for_payload
from partvault.engine.manifest import Manifest, ManifestEntry
from partvault.engine.pipeline import Pipeline, Stage
from partvault.engine.resize import set_reserved

if TYPE_CHECKING:
    from partvault.core.config import PartVaultConfig
    from partvault.core.safety import SafetyManager
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)


class RestoreOrchestrator:
    """Restores an archive bundle onto a target device."""

    def __init__(
        self,
        request: OperationRequest,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        safety: SafetyManager | None = None,
        context: JobContext | None = None,
    ) -> None:
        self.request = request
        self.platform = platform
        self.registry = registry
        self.config = config
        self.safety = safety
        self.context = context or JobContext()
        self.archive_path = Path(request.source).expanduser().resolve()
        self.target = request.target
        self.summary = OperationSummary(mode=OperationMode.RESTORE, archive_path=str(self.archive_path))
        self.phase = RestorePhase.EXTRACT
        self.phases_run: list[RestorePhase] = []
        self.state: ResumeState | None = None
        self.table: PartitionTable | None = None
        self.planned: PartitionTable | None = None
        self.manifest: Manifest | None = None
        self._selected: set[int] = set()
        self._scratch: ScratchArea | None = None
        self._started = 0.0

    @property
    def scratch_path(self) -> Path:
        if self._scratch is None:
            raise RuntimeError("Scratch area has not been leased")
        return self._scratch.path

    # ==================== Entry points ====================

    def run(self) -> OperationSummary:
        """Run every phase from EXTRACT."""
        base = self.request.scratch_dir or self.config.restore.scratch_directory
        scratch_base = Path(base) if base else self.archive_path.parent
        self._started = time.monotonic()
        self._scratch = ScratchArea.lease(scratch_base, f".{self.archive_path.name}.restore-")
        self.state = ResumeState(
            archive_path=str(self.archive_path),
            target=self.target,
            layout_policy=self.request.layout_policy.value,
            selection=sorted(self.request.partial_restore_selection),
        )
        return self._execute(resuming=False)

    @classmethod
    def resume(
        cls,
        scratch_dir: Path,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        safety: SafetyManager | None = None,
        context: JobContext | None = None,
    ) -> OperationSummary:
        """Retry a failed restore from its retained scratch area."""
        return cls.for_resume(scratch_dir, platform, registry, config, safety, context).run_resumed()

    @classmethod
    def for_resume(
        cls,
        scratch_dir: Path,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        safety: SafetyManager | None = None,
        context: JobContext | None = None,
    ) -> RestoreOrchestrator:
        scratch = ScratchArea.adopt(Path(scratch_dir))
        state = ResumeState.load(scratch.path)
        request = OperationRequest(
            mode=OperationMode.RESTORE,
            source=state.archive_path,
            target=state.target,
            partial_restore_selection=frozenset(state.selection),
            layout_policy=LayoutPolicy(state.layout_policy),
            confirmed_destructive=True,
            scratch_dir=str(scratch.path.parent),
        )
        orchestrator = cls(request, platform, registry, config, safety, context)
        orchestrator._scratch = scratch
        orchestrator.state = state
        return orchestrator

    def run_resumed(self) -> OperationSummary:
        if self._scratch is None or self.state is None:
            raise RuntimeError("Orchestrator was not prepared for resume")
        self._started = time.monotonic()
        logger.info(
            "Resuming restore",
            scratch=str(self.scratch_path),
            phase_reached=self.state.phase_reached,
            completed=self.state.completed_indices,
        )
        return self._execute(resuming=True)

    # ==================== Phase driver ====================

    def _enter(self, phase: RestorePhase) -> None:
        self.phase = phase
        self.phases_run.append(phase)
        self.context.update_progress(
            stage=phase.name,
            current=phase.value - 1,
            total=len(RestorePhase) - 1,
            message=phase.name.replace("_", " ").lower(),
        )

    def _save_state(self, phase: RestorePhase | None = None) -> None:
        state = self.state
        if state is None:
            return
        if phase is not None:
            state.advance(phase)
        state.save(self.scratch_path)

    def _execute(self, resuming: bool) -> OperationSummary:
        state = self.state
        if state is None:
            raise RuntimeError("Restore state is missing")
        self.summary.scratch_dir = str(self.scratch_path)
        partial = self.request.is_partial

        try:
            self._enter(RestorePhase.EXTRACT)
            with OperationLogger("extract", logger, archive=str(self.archive_path)):
                if resuming:
                    self.table = read_table_snapshot(self.scratch_path)
                    self.manifest = Manifest.load(self.scratch_path / MANIFEST_FILE)
                else:
                    self.table, self.manifest = extract_bundle(self.archive_path, self.scratch_path)
            self._save_state(RestorePhase.EXTRACT)

            if state.table_applied:
                self.planned = read_table_snapshot(self.scratch_path, PLANNED_TABLE)
            else:
                self._enter(RestorePhase.TABLE_PLAN)
                with OperationLogger("table plan", logger, policy=self.request.layout_policy.value):
                    self._plan()
                self._save_state(RestorePhase.TABLE_PLAN)

                if not partial:
                    self._enter(RestorePhase.TABLE_APPLY)
                    with OperationLogger("table apply", logger, device=self.target):
                        self._apply_table()
                    self._save_state(RestorePhase.TABLE_APPLY)

            self._enter(RestorePhase.PER_PARTITION_RESTORE)
            with OperationLogger("partition restore", logger, device=self.target):
                self._restore_partitions()
            self._save_state(RestorePhase.PER_PARTITION_RESTORE)

            if not partial:
                self._enter(RestorePhase.IDENTITY_FIXUP)
                with OperationLogger("identity fixup", logger, device=self.target):
                    self._fix_identity()
                self._save_state(RestorePhase.IDENTITY_FIXUP)

                self._enter(RestorePhase.POST_CHECK)
                with OperationLogger("post check", logger, device=self.target):
                    self._post_check()
                self._save_state(RestorePhase.POST_CHECK)

        except JobCancelledException as e:
            self._save_state()
            self._finish(retain=True)
            e.summary = self.summary
            raise
        except OSError as e:
            error = StorageError(
                f"Restore I/O failed during {self.phase.name.lower()}",
                diagnostic=str(e),
            )
            self._fail(error)
            raise error from e
        except PartVaultError as e:
            self._fail(e)
            raise

        self._save_state(RestorePhase.DONE)
        retain = bool(self.summary.failed) and self.config.restore.retain_scratch_on_failure
        self._finish(retain=retain)
        logger.info(
            "Restore finished",
            device=self.target,
            succeeded=self.summary.succeeded,
            failed=self.summary.failed,
            skipped=self.summary.skipped,
            scratch_retained=self.summary.scratch_retained,
            elapsed_seconds=self.summary.elapsed_seconds,
        )
        return self.summary

    def _fail(self, error: PartVaultError) -> None:
        error.phase = error.phase or self.phase.name
        self.summary.fatal_error = error.message
        self.summary.fatal_phase = error.phase
        # Nothing worth keeping if the bundle itself could not be read
        retain = self.phase != RestorePhase.EXTRACT and self.config.restore.retain_scratch_on_failure
        if retain:
            try:
                self._save_state()
            except OSError as e:
                logger.warning("Could not persist resume state", scratch=str(self.scratch_path), error=str(e))
        self._finish(retain=retain)
        error.summary = self.summary

    def _finish(self, retain: bool) -> None:
        self.summary.warnings = self.context.get_warnings()
        self.summary.elapsed_seconds = time.monotonic() - self._started
        if self._scratch is not None:
            self._scratch.release(retain=retain)
            self.summary.scratch_retained = self._scratch.retained

    # ==================== TABLE_PLAN ====================

    def _plan(self) -> None:
        table = self._require_table()
        manifest = self._require_manifest()

        if self.request.is_partial:
            self._plan_partial(manifest)
            return

        target_sectors = self.platform.device_size_bytes(self.target) // table.sector_size
        policy = self.request.layout_policy

        if policy == LayoutPolicy.VERBATIM:
            planned = replace(table, total_sectors=target_sectors, device=self.target)
            if table.used_end_sector() > planned.last_lba + 1:
                raise InsufficientSpaceError(
                    f"{self.target} has {target_sectors} sectors; the archived layout "
                    f"needs {table.used_end_sector() + gpt_trailer_sectors(table.sector_size)}"
                )
        else:
            first_usable = max(table.first_lba, self.config.restore.compact_start_lba)
            planned = table_ops.compute_compact_layout(
                table,
                first_usable_lba=first_usable,
                target_total_sectors=target_sectors,
            )
            if policy == LayoutPolicy.COMPACT_WITH_ENLARGEMENT:
                planned = self._plan_enlargement(planned)
            planned = replace(planned, device=self.target)

        planned.validate()
        self.planned = planned
        write_table_snapshot(self.scratch_path, planned, PLANNED_TABLE)
        logger.info(
            "Layout planned",
            policy=policy.value,
            target_sectors=target_sectors,
            used_end=planned.used_end_sector(),
            enlarged=self.state.enlarged_indices if self.state else [],
        )

    def _plan_partial(self, manifest: Manifest) -> None:
        """Partial restore trusts the target's existing table and never rewrites it."""
        existing = self.platform.read_table(self.target)
        selected: set[int] = set()

        for index in sorted(self.request.partial_restore_selection):
            entry = manifest.get(index)
            if entry is None:
                self.context.add_warning(f"Partition {index} is not in the archive; skipped")
            elif not entry.is_ok:
                self.context.add_warning(f"Partition {index} failed during archive; skipped")
            elif existing.entry(index) is None:
                self.context.add_warning(f"{self.target} has no partition {index}; skipped")
            elif self.platform.is_mounted(self.platform.partition_node(self.target, index)):
                self.context.add_warning(f"Partition {index} of {self.target} is mounted; skipped")
            else:
                selected.add(index)
                continue
            self._skip(index, "not restorable on target")

        self._selected = selected
        self.planned = existing

    def _plan_enlargement(self, planned: PartitionTable) -> PartitionTable:
        """Grow resizable partitions into the free space left by the compact layout."""
        deltas = self.request.size_deltas
        grown: list[int] = []

        if not deltas:
            # Without explicit deltas the last partition takes all remaining space
            last = max(planned.entries, key=lambda e: e.start_sector, default=None)
            if last is None or not last.filesystem_kind.supports_resize:
                self.context.add_warning("Last partition cannot be resized; layout left compact")
                return planned
            deltas = {last.index: planned.free_sectors_after(last.index) * planned.sector_size}

        for index in sorted(deltas):
            entry = planned.entry(index)
            if entry is None:
                raise LayoutError(f"Cannot enlarge partition {index}: not in the archive")
            if not entry.filesystem_kind.supports_resize:
                raise LayoutError(
                    f"Cannot enlarge partition {index}: {entry.filesystem_kind.value} "
                    "cannot be grown after restore"
                )
            extra_sectors = deltas[index] // planned.sector_size
            if extra_sectors == 0:
                continue
            budget = planned.last_lba + 1 - planned.used_end_sector()
            planned = table_ops.compute_enlargement(planned, index, extra_sectors, budget)
            grown.append(index)

        if self.state is not None:
            self.state.enlarged_indices = grown
        return planned

    # ==================== TABLE_APPLY ====================

    def _apply_table(self) -> None:
        planned = self._require_planned()
        if self.safety is not None:
            self.safety.guard_mutation(self.target)

        unmounted = self.platform.unmount_device(self.target)
        if unmounted:
            logger.info("Unmounted target partitions", nodes=unmounted)

        table_ops.apply(planned, self.target, self.platform)
        if self.state is not None:
            # Persisted at once so a retry can never write the table twice
            self.state.table_applied = True
            self._save_state(RestorePhase.TABLE_APPLY)

        table_ops.apply_identity(planned, self.target, self.platform)
        self._reread()

    def _reread(self) -> None:
        result = self.platform.reread_table(self.target)
        if not result.success:
            raise TableWriteError(
                f"Kernel did not re-read the table of {self.target}",
                diagnostic=result.stderr,
            )

    # ==================== PER_PARTITION_RESTORE ====================

    def _restore_partitions(self) -> None:
        manifest = self._require_manifest()
        state = self.state
        partial = self.request.is_partial
        entries = list(manifest)
        self.context.update_progress(bytes_total=sum(e.byte_size for e in entries if e.is_ok))

        for entry in entries:
            index = entry.partition_index
            if state is not None and index in state.completed_indices:
                self.summary.succeeded.append(index)
                continue
            if partial and index not in self._selected:
                if index not in self.request.partial_restore_selection:
                    self._skip(index, "not selected")
                continue
            if not entry.is_ok:
                self._skip(index, "failed during archive", backend=entry.backend_used)
                continue

            try:
                self.context.check_cancelled()
                restored = self._restore_partition(entry)
            except JobCancelledException:
                self.summary.failed.append(index)
                if state is not None:
                    state.mark_failed(index)
                self.context.emit(PartitionEvent(EventKind.FAILED, index, entry.backend_used, message="cancelled"))
                raise
            if restored:
                self.summary.succeeded.append(index)
                if state is not None:
                    state.mark_completed(index)
            else:
                self.summary.failed.append(index)
                if state is not None:
                    state.mark_failed(index)
            self._save_state()

    def _restore_partition(self, entry: ManifestEntry) -> bool:
        index = entry.partition_index
        node = self.platform.partition_node(self.target, index)
        log = logger.bind(partition=index, node=node, backend=entry.backend_used)
        self.context.emit(PartitionEvent(EventKind.START, index, entry.backend_used, message=node))

        try:
            backend = self.registry.for_restore(entry.backend_used, entry.backend_mode, entry.filesystem_kind)
            ensure_compatible(entry.backend_mode, entry.backend_family, backend)
        except BackendMismatchError as e:
            return self._partition_failed(index, entry.backend_used, str(e))

        payload = self.scratch_path / (entry.payload_filename or "")
        if not entry.payload_filename or not payload.is_file():
            return self._partition_failed(index, backend.name, f"payload {entry.payload_filename} is missing")

        codec = codec_for_payload(payload.name)
        stages = []
        decompress = codec.decompress_command()
        if decompress is not None:
            stages.append(Stage.of(codec.name, decompress))
        stages.append(Stage.of(backend.name, backend.restore_command(node)))

        log.info("Restoring partition", payload=payload.name, codec=codec.name)
        pipeline = Pipeline(
            stages=stages,
            source=payload,
            cancel_event=self.context.cancel_event,
            progress_interval=self.config.archive.progress_interval_seconds,
            on_progress=lambda bytes_in, bytes_out: self.context.update_progress(bytes_processed=bytes_in),
        )
        result = pipeline.run()
        if not result.success:
            error = StageFailedError(
                f"Restoring partition {index} failed in {result.first_failure}",
                returncodes={s.name: rc for s, rc in zip(result.stages, result.returncodes) if rc is not None},
                diagnostic=result.diagnostic,
            )
            return self._partition_failed(index, backend.name, str(error))

        if self.state is not None and index in self.state.enlarged_indices:
            self._grow(index, node, entry)

        log.info("Partition restored", bytes_in=result.bytes_in, duration_seconds=result.duration_seconds)
        self.context.emit(PartitionEvent(EventKind.DONE, index, backend.name, bytes=result.bytes_in))
        return True

    def _grow(self, index: int, node: str, entry: ManifestEntry) -> None:
        if not self.config.restore.grow_filesystems or not entry.filesystem_kind.supports_resize:
            return
        result = self.platform.grow_filesystem(node, entry.filesystem_kind)
        if not result.success:
            self.context.add_warning(
                f"Partition {index}: growing {entry.filesystem_kind.value} failed: {result.stderr.strip()}"
            )
            return
        logger.info("Filesystem grown", partition=index, node=node)
        reserved = self.config.restore.ext4_reserved_percent
        if entry.filesystem_kind == FileSystemKind.EXT4 and reserved is not None:
            set_reserved(self.platform, self.context, node, reserved)

    def _partition_failed(self, index: int, backend: str, message: str) -> bool:
        self.context.add_warning(f"Partition {index}: {message}")
        self.context.emit(PartitionEvent(EventKind.FAILED, index, backend, message=message))
        return False

    def _skip(self, index: int, reason: str, backend: str | None = None) -> None:
        if index not in self.summary.skipped:
            self.summary.skipped.append(index)
        self.context.emit(PartitionEvent(EventKind.SKIPPED, index, backend, message=reason))

    # ==================== IDENTITY_FIXUP / POST_CHECK ====================

    def _fix_identity(self) -> None:
        planned = self._require_planned()
        table_ops.apply_identity(planned, self.target, self.platform)

    def _post_check(self) -> None:
        result = self.platform.repair_backup_header(self.target)
        if not result.success:
            self.context.add_warning(
                f"Backup GPT header on {self.target} could not be verified: {result.stderr.strip()}"
            )
        reread = self.platform.reread_table(self.target)
        if not reread.success:
            self.context.add_warning(f"Kernel did not re-read {self.target}: {reread.stderr.strip()}")

    # ==================== Helpers ====================

    def _require_table(self) -> PartitionTable:
        if self.table is None:
            raise RuntimeError("Archive has not been extracted")
        return self.table

    def _require_manifest(self) -> Manifest:
        if self.manifest is None:
            raise RuntimeError("Archive has not been extracted")
        return self.manifest

    def _require_planned(self) -> PartitionTable:
        if self.planned is None:
            raise RuntimeError("No table has been planned")
        return self.planned
