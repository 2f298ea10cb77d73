"""
PartVault Session Management.

Wires configuration, logging, the platform backend, the capability
registry, safety and the job runner together, and keeps an audit report of
every operation run in the session.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from partvault.core.config import PartVaultConfig, load_config
from partvault.core.job import Job, JobProgress, JobResult, JobRunner
from partvault.core.logging import SessionLogger, get_logger, setup_logging
from partvault.core.models import OperationRequest, OperationSummary, PartitionEvent
from partvault.core.safety import SafetyManager

if TYPE_CHECKING:
    from partvault.engine.capabilities import CapabilityRegistry
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)


@dataclass
class SessionReport:
    """Complete session report for audit and review."""

    session_id: str
    started_at: datetime
    ended_at: datetime | None = None
    operations: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    config_snapshot: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_seconds": (
                (self.ended_at - self.started_at).total_seconds()
                if self.ended_at
                else None
            ),
            "operations": self.operations,
            "errors": self.errors,
            "warnings": self.warnings,
            "config_snapshot": self.config_snapshot,
            "summary": {
                "total_operations": len(self.operations),
                "successful_operations": sum(
                    1 for op in self.operations if op.get("success", False)
                ),
                "failed_operations": sum(
                    1 for op in self.operations if not op.get("success", True)
                ),
                "total_errors": len(self.errors),
                "total_warnings": len(self.warnings),
            },
        }

    def save(self, path: Path) -> None:
        """Save report to file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


class Session:
    """
    Manages a PartVault session with configuration, safety, and job execution.

    This is the main entry point for all PartVault operations.
    """

    def __init__(
        self,
        config: PartVaultConfig | None = None,
        session_id: str | None = None,
        platform: PlatformBackend | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.config = config or load_config()
        self.started_at = datetime.now()

        setup_logging(self.config.logging)

        self.job_runner = JobRunner()
        self.session_logger = SessionLogger(
            self.config.get_session_file(),
            get_logger(f"session.{self.id[:8]}"),
        )

        self._report = SessionReport(
            session_id=self.id,
            started_at=self.started_at,
            config_snapshot=self.config.model_dump(mode="json"),
        )

        # Platform and capability probe are loaded lazily
        self._platform_backend = platform
        self._registry = registry
        self._safety: SafetyManager | None = None

        logger.info("Session started", session_id=self.id)
        self.session_logger.info("Session started", session_id=self.id)

    @property
    def platform(self) -> PlatformBackend:
        """Get the platform-specific backend."""
        if self._platform_backend is None:
            from partvault.platform import get_platform_backend

            self._platform_backend = get_platform_backend()
        return self._platform_backend

    @property
    def registry(self) -> CapabilityRegistry:
        """Capability registry, probed once per session."""
        if self._registry is None:
            from partvault.engine.capabilities import CapabilityRegistry

            self._registry = CapabilityRegistry.probe(self.config.raw_block_size_bytes)
        return self._registry

    @property
    def safety(self) -> SafetyManager:
        if self._safety is None:
            self._safety = SafetyManager(self.config.safety, self.platform)
        return self._safety

    def build_job(self, request: OperationRequest) -> Job[OperationSummary]:
        from partvault.engine.jobs import build_job

        return build_job(request, self.platform, self.registry, self.config, self.safety)

    def build_resume_job(self, scratch_dir: Path) -> Job[OperationSummary]:
        from partvault.engine.jobs import ResumeRestoreJob

        return ResumeRestoreJob(scratch_dir, self.platform, self.registry, self.config, self.safety)

    def run(
        self,
        request: OperationRequest,
        on_event: Callable[[PartitionEvent], None] | None = None,
        on_progress: Callable[[JobProgress], None] | None = None,
    ) -> JobResult[OperationSummary]:
        """Run one operation synchronously."""
        job = self.build_job(request)
        self.session_logger.info("Operation requested", **request.to_dict())
        return self.run_job(job, on_event, on_progress)

    def resume(
        self,
        scratch_dir: Path,
        on_event: Callable[[PartitionEvent], None] | None = None,
        on_progress: Callable[[JobProgress], None] | None = None,
    ) -> JobResult[OperationSummary]:
        """Retry a failed restore from its retained scratch area."""
        return self.run_job(self.build_resume_job(scratch_dir), on_event, on_progress)

    def run_job(
        self,
        job: Job[Any],
        on_event: Callable[[PartitionEvent], None] | None = None,
        on_progress: Callable[[JobProgress], None] | None = None,
    ) -> JobResult[Any]:
        """Run a job synchronously and track in session."""
        if on_event is not None:
            job.context.add_event_callback(on_event)
        if on_progress is not None:
            job.context.add_progress_callback(on_progress)

        self.session_logger.info(
            "Executing job",
            job_id=job.id,
            job_name=job.name,
            plan=job.get_plan(),
        )

        # Runs on the runner's thread so an interrupt here can cancel it cleanly
        job_id = self.job_runner.submit(job)
        self.job_runner.start(job_id)
        try:
            while job.result is None:
                self.job_runner.wait(job_id, timeout=0.5)
        except KeyboardInterrupt:
            self.session_logger.warning("Operation interrupted", job_id=job.id)
            self.job_runner.cancel(job_id)
            self.job_runner.wait(job_id)

        result: JobResult[Any] = job.result
        self._track_operation(job, result)
        return result

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a running job."""
        return self.job_runner.cancel(job_id)

    def _track_operation(self, job: Job[Any], result: JobResult[Any]) -> None:
        """Track an operation in the session report."""
        operation_record: dict[str, Any] = {
            "timestamp": datetime.now().isoformat(),
            "job_id": job.id,
            "job_name": job.name,
            "job_description": job.description,
            "success": result.success,
            "duration_seconds": result.duration_seconds,
        }
        if isinstance(result.data, OperationSummary):
            operation_record["summary"] = result.data.to_dict()

        if result.error:
            operation_record["error"] = result.error
            self._report.errors.append(
                {
                    "timestamp": datetime.now().isoformat(),
                    "job_id": job.id,
                    "error": result.error,
                }
            )

        if result.warnings:
            operation_record["warnings"] = result.warnings
            self._report.warnings.extend(result.warnings)

        self._report.operations.append(operation_record)

        if result.success:
            self.session_logger.info("Operation completed", job_id=job.id, job_name=job.name)
        else:
            self.session_logger.error(
                "Operation failed",
                job_id=job.id,
                job_name=job.name,
                error=result.error,
            )

    def close(self) -> Path:
        """Close the session and save reports."""
        self._report.ended_at = datetime.now()

        self.session_logger.close()

        report_path = self.config.session_directory / f"report_{self.id[:8]}.json"
        self._report.save(report_path)

        logger.info(
            "Session closed",
            session_id=self.id,
            duration_seconds=(self._report.ended_at - self.started_at).total_seconds(),
            report_path=str(report_path),
        )

        return report_path

    def get_report(self) -> SessionReport:
        """Get the current session report."""
        return self._report

    def __enter__(self) -> Session:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
