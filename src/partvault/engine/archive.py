"""
Archive Orchestrator.

Images every partition of a source disk into its own compressed payload,
records each outcome in the manifest, and bundles the table snapshot,
manifest and payloads into a single archive file.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import TYPE_CHECKING

from partvault.core.errors import PackagingError, PartVaultError, StageFailedError
from partvault.core.job import JobCancelledException, JobContext
from partvault.core.logging import OperationLogger, get_logger
from partvault.core.models import (
    EventKind,
    OperationMode,
    OperationRequest,
    OperationSummary,
    PartitionEntry,
    PartitionEvent,
    PartitionState,
    PartitionTable,
)
from partvault.core.safety import SafetyManager
from partvault.engine.capabilities import Backend, CapabilityRegistry
from partvault.engine.catalog import MANIFEST_FILE, ScratchArea, write_bundle, write_table_snapshot
from partvault.engine.codecs import Codec, select_codec
from partvault.engine.manifest import EntryStatus, Manifest, ManifestEntry, payload_filename
from partvault.engine.pipeline import Pipeline, Stage
from partvault.engine.resize import SourceResizer

if TYPE_CHECKING:
    from partvault.core.config import PartVaultConfig
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)


class ArchiveOrchestrator:
    """Produces an archive bundle from a source device."""

    def __init__(
        self,
        request: OperationRequest,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        context: JobContext | None = None,
        safety: SafetyManager | None = None,
    ) -> None:
        self.request = request
        self.platform = platform
        self.registry = registry
        self.config = config
        self.context = context or JobContext()
        self.resizer = SourceResizer(platform, safety or SafetyManager(config.safety, platform), self.context)
        self.archive_path = Path(request.target).expanduser().resolve()
        self.states: dict[int, PartitionState] = {}
        self.manifest = Manifest()
        self.summary = OperationSummary(mode=OperationMode.ARCHIVE, archive_path=str(self.archive_path))
        self._scratch: ScratchArea | None = None
        self._started = 0.0
        self._bytes_done = 0

    def _scratch_base(self) -> Path:
        configured = self.request.scratch_dir or self.config.archive.scratch_directory
        return Path(configured) if configured else self.archive_path.parent

    @property
    def scratch_path(self) -> Path:
        if self._scratch is None:
            raise RuntimeError("Scratch area has not been leased")
        return self._scratch.path

    def run(self) -> OperationSummary:
        """Archive the source. Per-partition failures are recorded, not raised."""
        self._started = time.monotonic()
        source = self.request.source
        phase = "ENUMERATE"

        try:
            with OperationLogger("enumerate", logger, device=source):
                self.context.update_progress(stage=phase, message=f"Reading partition table of {source}")
                table = self.platform.read_table(source)

            if self.request.shrink_source:
                phase = "SHRINK"
                with OperationLogger("source shrink", logger, device=source):
                    self.context.update_progress(stage=phase, message=f"Shrinking filesystems on {source}")
                    self.resizer.shrink(source, table)

            phase = "PREPARE"
            codec = select_codec(self.request.compression or self.config.archive.compression)
            self._scratch = ScratchArea.lease(self._scratch_base(), f".{self.archive_path.name}.scratch-")
            self.summary.scratch_dir = str(self._scratch.path)
            write_table_snapshot(self._scratch.path, table)

            phase = "IMAGE"
            with OperationLogger("imaging", logger, device=source, codec=codec.name):
                self._image_all(table, codec)

            phase = "BUNDLE"
            if not self.manifest.is_restorable:
                raise PackagingError(
                    "No partition was archived successfully",
                    retained_path=self._scratch.path,
                )
            with OperationLogger("bundling", logger, archive=str(self.archive_path)):
                self.context.update_progress(stage=phase, message=f"Writing {self.archive_path.name}")
                write_bundle(self._scratch.path, self.archive_path, self.manifest)

        except JobCancelledException as e:
            self._finish(retain=True)
            e.summary = self.summary
            raise
        except OSError as e:
            error = PackagingError(
                f"Archive I/O failed during {phase.lower()}",
                retained_path=self._scratch.path if self._scratch else None,
                diagnostic=str(e),
            )
            self._fail(error, phase)
            raise error from e
        except PartVaultError as e:
            self._fail(e, phase)
            raise

        self._finish(retain=False)
        logger.info(
            "Archive finished",
            archive=str(self.archive_path),
            succeeded=self.summary.succeeded,
            failed=self.summary.failed,
            elapsed_seconds=self.summary.elapsed_seconds,
        )
        return self.summary

    def _fail(self, error: PartVaultError, phase: str) -> None:
        error.phase = error.phase or phase
        self.summary.fatal_error = error.message
        self.summary.fatal_phase = error.phase
        self._finish(retain=True)
        error.summary = self.summary

    def _finish(self, retain: bool) -> None:
        if self.resizer.shrunk and self.request.regrow_source:
            self.context.update_progress(stage="REGROW", message=f"Growing filesystems on {self.request.source}")
            self.resizer.regrow()
        self.summary.warnings = self.context.get_warnings()
        self.summary.elapsed_seconds = time.monotonic() - self._started
        if self._scratch is not None:
            self._scratch.release(retain=retain)
            self.summary.scratch_retained = self._scratch.retained

    def _image_all(self, table: PartitionTable, codec: Codec) -> None:
        mounted = self.platform.get_mounted_devices()
        total_bytes = sum(entry.size_bytes(table.sector_size) for entry in table.entries)
        self.context.update_progress(current=0, total=len(table.entries), bytes_total=total_bytes)

        for entry in table.entries:
            self.states[entry.index] = PartitionState.PENDING

        for position, entry in enumerate(table.entries):
            node = self.platform.partition_node(self.request.source, entry.index)
            # Chosen once per partition; a later retry must make the same choice
            backend = self.registry.resolve(entry.filesystem_kind, node in mounted)[0]
            try:
                self.context.check_cancelled()
                self._image_partition(entry, node, backend, codec)
            except JobCancelledException:
                self._record(entry, backend, EntryStatus.FAILED, note="cancelled")
                self.context.emit(
                    PartitionEvent(EventKind.FAILED, entry.index, backend.name, message="cancelled")
                )
                raise
            self.context.update_progress(current=position + 1)

    def _image_partition(
        self,
        entry: PartitionEntry,
        node: str,
        backend: Backend,
        codec: Codec,
    ) -> None:
        filename = payload_filename(entry.index, backend, codec)
        payload = self.scratch_path / filename

        self.states[entry.index] = PartitionState.IMAGING
        self.context.emit(PartitionEvent(EventKind.START, entry.index, backend.name, message=node))
        self.context.update_progress(message=f"Imaging partition {entry.index} with {backend.name}")
        log = logger.bind(partition=entry.index, backend=backend.name, node=node)
        log.info("Imaging partition", filesystem=entry.filesystem_kind.value, mode=backend.mode.value)

        stages = [Stage.of(backend.name, backend.save_command(node))]
        compress = codec.compress_command(self.config.archive.compression_level)
        if compress is not None:
            stages.append(Stage.of(codec.name, compress))

        def on_stage_exit(stage: Stage, returncode: int) -> None:
            if stage is stages[0] and returncode == 0 and len(stages) > 1:
                self.states[entry.index] = PartitionState.COMPRESSING

        def on_progress(bytes_in: int, bytes_out: int) -> None:
            self.context.update_progress(bytes_processed=self._bytes_done + bytes_out)

        pipeline = Pipeline(
            stages=stages,
            sink=payload,
            cancel_event=self.context.cancel_event,
            progress_interval=self.config.archive.progress_interval_seconds,
            on_progress=on_progress,
            on_stage_exit=on_stage_exit,
        )
        try:
            result = pipeline.run()
        except JobCancelledException:
            payload.unlink(missing_ok=True)
            raise

        if not result.success:
            payload.unlink(missing_ok=True)
            error = StageFailedError(
                f"Imaging partition {entry.index} failed in {result.first_failure}",
                returncodes={s.name: rc for s, rc in zip(result.stages, result.returncodes) if rc is not None},
                diagnostic=result.diagnostic,
            )
            self._record(entry, backend, EntryStatus.FAILED, note=str(error))
            self.context.add_warning(f"Partition {entry.index}: {error}")
            self.context.emit(PartitionEvent(EventKind.FAILED, entry.index, backend.name, message=str(error)))
            return

        size = payload.stat().st_size
        self._bytes_done += size
        self._record(entry, backend, EntryStatus.OK, filename=filename, size=size)
        log.info("Partition imaged", payload=filename, size_bytes=size, duration_seconds=result.duration_seconds)
        self.context.emit(PartitionEvent(EventKind.DONE, entry.index, backend.name, bytes=size))

    def _record(
        self,
        entry: PartitionEntry,
        backend: Backend,
        status: EntryStatus,
        filename: str | None = None,
        size: int = 0,
        note: str | None = None,
    ) -> None:
        self.manifest.append(
            ManifestEntry(
                partition_index=entry.index,
                filesystem_kind=entry.filesystem_kind,
                backend_used=backend.name,
                backend_mode=backend.mode,
                status=status,
                payload_filename=filename,
                byte_size=size,
                note=note,
            )
        )
        if status == EntryStatus.OK:
            self.states[entry.index] = PartitionState.DONE
            self.summary.succeeded.append(entry.index)
        else:
            self.states[entry.index] = PartitionState.FAILED
            self.summary.failed.append(entry.index)

        self.manifest.save(self.scratch_path / MANIFEST_FILE)
