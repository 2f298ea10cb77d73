"""
Whole-disk clone.

Copies the source device byte for byte onto the target, then relocates the
secondary GPT header to the end of a larger target.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from partvault.core.errors import PartVaultError, StageFailedError, StorageError
from partvault.core.job import JobCancelledException, JobContext
from partvault.core.logging import OperationLogger, get_logger
from partvault.core.models import (
    EventKind,
    OperationMode,
    OperationRequest,
    OperationSummary,
    PartitionEvent,
)
from partvault.engine.capabilities import CapabilityRegistry
from partvault.engine.pipeline import Pipeline, Stage
from partvault.engine.resize import SourceResizer

if TYPE_CHECKING:
    from partvault.core.config import PartVaultConfig
    from partvault.core.safety import SafetyManager
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)

# Events for a whole-disk copy use index 0
WHOLE_DISK = 0


class CloneOrchestrator:
    """Clones one disk onto another."""

    def __init__(
        self,
        request: OperationRequest,
        platform: PlatformBackend,
        registry: CapabilityRegistry,
        config: PartVaultConfig,
        safety: SafetyManager,
        context: JobContext | None = None,
    ) -> None:
        self.request = request
        self.platform = platform
        self.registry = registry
        self.config = config
        self.safety = safety
        self.context = context or JobContext()
        self.summary = OperationSummary(mode=OperationMode.CLONE)
        self.resizer = SourceResizer(platform, safety, self.context)

    def run(self) -> OperationSummary:
        started = time.monotonic()
        source, target = self.request.source, self.request.target
        raw = self.registry.raw
        phase = "PREPARE"

        try:
            self.safety.guard_mutation(target)
            source_bytes = self.platform.device_size_bytes(source)
            target_bytes = self.platform.device_size_bytes(target)
            # Refused before a single byte is written
            self.safety.validate_capacity(source_bytes, target_bytes, OperationMode.CLONE)

            unmounted = self.platform.unmount_device(target)
            if unmounted:
                logger.info("Unmounted target partitions", nodes=unmounted)

            if self.request.shrink_source:
                phase = "SHRINK"
                with OperationLogger("source shrink", logger, device=source):
                    self.context.update_progress(stage=phase, message=f"Shrinking filesystems on {source}")
                    self.resizer.shrink(source, self.platform.read_table(source))

            phase = "COPY"
            self.context.update_progress(stage=phase, bytes_total=source_bytes, total=1, current=0)
            self.context.emit(PartitionEvent(EventKind.START, WHOLE_DISK, raw.name, message=f"{source} -> {target}"))
            with OperationLogger("clone copy", logger, source=source, target=target, size_bytes=source_bytes):
                pipeline = Pipeline(
                    stages=[
                        Stage.of("read", raw.save_command(source)),
                        Stage.of("write", raw.restore_command(target)),
                    ],
                    cancel_event=self.context.cancel_event,
                    progress_interval=self.config.archive.progress_interval_seconds,
                )
                result = pipeline.run()

            if not result.success:
                self.summary.failed.append(WHOLE_DISK)
                self.context.emit(
                    PartitionEvent(EventKind.FAILED, WHOLE_DISK, raw.name, message=result.diagnostic)
                )
                raise StageFailedError(
                    f"Copying {source} to {target} failed",
                    returncodes={s.name: rc for s, rc in zip(result.stages, result.returncodes) if rc is not None},
                    diagnostic=result.diagnostic,
                )

            self.summary.succeeded.append(WHOLE_DISK)
            self.context.emit(PartitionEvent(EventKind.DONE, WHOLE_DISK, raw.name, bytes=source_bytes))
            self.context.update_progress(current=1, bytes_processed=source_bytes)

            phase = "POST_CHECK"
            with OperationLogger("clone post check", logger, target=target):
                repaired = self.platform.repair_backup_header(target)
                if not repaired.success:
                    self.context.add_warning(
                        f"Backup GPT header on {target} could not be relocated: {repaired.stderr.strip()}"
                    )
                reread = self.platform.reread_table(target)
                if not reread.success:
                    self.context.add_warning(f"Kernel did not re-read {target}: {reread.stderr.strip()}")
                if self.resizer.shrunk:
                    self.resizer.grow_copies(target, self.config.restore.ext4_reserved_percent)

        except JobCancelledException as e:
            self.summary.failed.append(WHOLE_DISK)
            self._finish(started)
            e.summary = self.summary
            raise
        except OSError as e:
            if phase == "COPY" and WHOLE_DISK not in self.summary.failed + self.summary.succeeded:
                self.summary.failed.append(WHOLE_DISK)
            error = StorageError(f"Clone I/O failed during {phase.lower()}", diagnostic=str(e))
            self._fail(error, phase, started)
            raise error from e
        except PartVaultError as e:
            self._fail(e, phase, started)
            raise

        self._finish(started)
        logger.info("Clone finished", source=source, target=target, elapsed_seconds=self.summary.elapsed_seconds)
        return self.summary

    def _fail(self, error: PartVaultError, phase: str, started: float) -> None:
        error.phase = error.phase or phase
        self.summary.fatal_error = error.message
        self.summary.fatal_phase = error.phase
        self._finish(started)
        error.summary = self.summary

    def _finish(self, started: float) -> None:
        if self.resizer.shrunk and self.request.regrow_source:
            self.context.update_progress(stage="REGROW", message=f"Growing filesystems on {self.request.source}")
            self.resizer.regrow()
        self.summary.warnings = self.context.get_warnings()
        self.summary.elapsed_seconds = time.monotonic() - started
