"""
PartVault Safety & Estimation.

Detects a source that backs the running system, estimates archive
payloads, checks capacity, and runs preflight checks before any
destructive operation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from partvault.core.errors import InsufficientCapacityError, LiveSourceError, SafetyVetoError
from partvault.core.logging import get_logger
from partvault.core.models import FileSystemKind, OperationMode, OperationRequest, PartitionTable

if TYPE_CHECKING:
    from partvault.core.config import SafetyConfig
    from partvault.platform.base import PlatformBackend

logger = get_logger(__name__)


@dataclass
class PreflightCheck:
    """Result of a single preflight check."""

    name: str
    passed: bool
    message: str
    severity: str = "info"  # info, warning, error, critical
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class PreflightReport:
    """Complete preflight check report."""

    checks: list[PreflightCheck] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def has_errors(self) -> bool:
        return any(c.severity in ("error", "critical") and not c.passed for c in self.checks)

    @property
    def has_warnings(self) -> bool:
        return any(c.severity == "warning" and not c.passed for c in self.checks)

    @property
    def errors(self) -> list[PreflightCheck]:
        return [c for c in self.checks if c.severity in ("error", "critical") and not c.passed]

    @property
    def warnings(self) -> list[str]:
        return [c.message for c in self.checks if c.severity == "warning" and not c.passed]

    def get(self, name: str) -> PreflightCheck | None:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def get_summary(self) -> str:
        """Get human-readable summary."""
        lines = [f"Preflight Check Report ({self.timestamp.isoformat()})"]
        lines.append("=" * 60)

        passed = sum(1 for c in self.checks if c.passed)
        total = len(self.checks)
        lines.append(f"Results: {passed}/{total} checks passed")
        lines.append("")

        for check in self.checks:
            status = "✓" if check.passed else "✗"
            lines.append(f"[{status}] {check.name}: {check.message}")
            if check.details:
                for key, value in check.details.items():
                    lines.append(f"    {key}: {value}")

        return "\n".join(lines)


@dataclass
class PayloadEstimate:
    """Advisory archive size: used bytes where the filesystem reports them, else full size."""

    total_bytes: int = 0
    per_partition: dict[int, int] = field(default_factory=dict)
    exact: set[int] = field(default_factory=set)

    @property
    def is_exact(self) -> bool:
        return set(self.per_partition) == self.exact

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_bytes": self.total_bytes,
            "per_partition": {str(k): v for k, v in self.per_partition.items()},
            "exact_indices": sorted(self.exact),
        }


class PreflightChecker:
    """Performs preflight checks before operations."""

    def __init__(self) -> None:
        self._checks: list[tuple[str, Any]] = []

    def add_check(self, name: str, check_func: Any) -> None:
        """Add a preflight check function."""
        self._checks.append((name, check_func))

    def run_checks(self, context: dict[str, Any]) -> PreflightReport:
        """Run all preflight checks and return report."""
        report = PreflightReport()

        for name, check_func in self._checks:
            try:
                result = check_func(context)
                if isinstance(result, PreflightCheck):
                    report.checks.append(result)
                elif isinstance(result, bool):
                    report.checks.append(
                        PreflightCheck(
                            name=name,
                            passed=result,
                            message="Passed" if result else "Failed",
                        )
                    )
            except Exception as e:
                report.checks.append(
                    PreflightCheck(
                        name=name,
                        passed=False,
                        message=f"Check failed with error: {e}",
                        severity="error",
                    )
                )

        return report


def generate_confirmation_string(target_identifier: str) -> str:
    """Generate a confirmation string that includes the target identifier."""
    safe_target = re.sub(r"[^a-zA-Z0-9/_-]", "", target_identifier)
    return f"DESTROY-{safe_target.upper()}"


def verify_confirmation(target_identifier: str, user_input: str) -> tuple[bool, str]:
    """
    Verify user confirmation for a destructive operation.
    Returns (verified, message).
    """
    expected = generate_confirmation_string(target_identifier)
    if user_input.strip() != expected:
        logger.warning("Confirmation verification failed", expected=expected, received=user_input)
        return False, f"Confirmation mismatch. Expected: {expected}"

    logger.info("Operation confirmed", target=target_identifier)
    return True, "Confirmation verified"


def _same_device(left: str | None, right: str | None) -> bool:
    if not left or not right:
        return False
    return os.path.realpath(left) == os.path.realpath(right)


class SafetyManager:
    """Manages safety rules and size estimation for PartVault operations."""

    def __init__(self, config: SafetyConfig, platform: PlatformBackend) -> None:
        self.config = config
        self.platform = platform
        self._root_disk: str | None = None
        self._root_probed = False

    def _running_root_disk(self) -> str | None:
        if not self._root_probed:
            self._root_disk = self.platform.root_disk()
            self._root_probed = True
        return self._root_disk

    def is_live_source(self, device: str) -> bool:
        """Whether the device backs the running system's root filesystem."""
        return _same_device(device, self._running_root_disk())

    def guard_mutation(self, device: str) -> None:
        """Refuse any table write, shrink or grow on the disk backing the running system."""
        if self.is_live_source(device):
            raise LiveSourceError(
                f"{device} hosts the running system and cannot be modified"
            )

    def estimate_payload(self, table: PartitionTable, device: str | None = None) -> PayloadEstimate:
        """Sum used bytes per partition, falling back to the full partition size."""
        device = device or table.device
        estimate = PayloadEstimate()

        for entry in table.entries:
            full_size = entry.size_bytes(table.sector_size)
            used: int | None = None
            if device and entry.filesystem_kind != FileSystemKind.UNKNOWN:
                node = self.platform.partition_node(device, entry.index)
                used = self.platform.filesystem_used_bytes(node, entry.filesystem_kind)

            if used is None:
                size = full_size
            else:
                size = min(used, full_size)
                estimate.exact.add(entry.index)
            estimate.per_partition[entry.index] = size
            estimate.total_bytes += size

        logger.debug(
            "Payload estimated",
            device=device,
            total_bytes=estimate.total_bytes,
            exact=sorted(estimate.exact),
        )
        return estimate

    def validate_capacity(
        self,
        estimate: PayloadEstimate | int,
        target_bytes: int,
        mode: OperationMode = OperationMode.CLONE,
    ) -> PreflightCheck:
        """
        Compare an estimate against target capacity.

        A clone to a smaller target raises InsufficientCapacityError. For
        archive and restore a shortfall is only a warning, since the
        compressed size is not known in advance.
        """
        needed = estimate.total_bytes if isinstance(estimate, PayloadEstimate) else int(estimate)
        details = {"estimate_bytes": needed, "target_bytes": target_bytes}

        if needed <= target_bytes:
            return PreflightCheck(
                name="Capacity",
                passed=True,
                message="Target has sufficient capacity",
                details=details,
            )

        message = f"Target ({target_bytes} bytes) is smaller than the estimate ({needed} bytes)"
        if mode == OperationMode.CLONE:
            raise InsufficientCapacityError(message)

        return PreflightCheck(
            name="Capacity",
            passed=False,
            message=message,
            severity="warning",
            details=details,
        )

    def preflight(self, request: OperationRequest) -> PreflightReport:
        """Run the standard checks for a request."""
        context: dict[str, Any] = {
            "request": request,
            "safety": self,
            "mounted_paths": list(self.platform.get_mounted_devices()),
        }

        checker = PreflightChecker()
        checker.add_check("Power Status", check_power_status)
        checker.add_check("Live Source", check_live_source)
        if request.mode.is_destructive:
            checker.add_check("System Disk", check_system_disk)
            checker.add_check("Capacity", check_capacity)
        # Partial restores write into the existing partitions without unmounting them
        if self.config.mounted_target_protection and (
            request.mode == OperationMode.CLONE or request.is_partial
        ):
            checker.add_check("Mount Status", check_not_mounted)
        if request.mode == OperationMode.ARCHIVE:
            checker.add_check("Archive Space", check_archive_space)

        report = checker.run_checks(context)
        logger.info(
            "Preflight completed",
            mode=request.mode.value,
            passed=report.all_passed,
            errors=[c.name for c in report.errors],
        )
        return report

    def enforce(self, request: OperationRequest) -> PreflightReport:
        """Run preflight and raise when any check vetoes the request."""
        if not self.config.preflight_checks_enabled:
            return PreflightReport()

        report = self.preflight(request)
        live = report.get("Live Source")
        if live is not None and not live.passed and live.severity in ("error", "critical"):
            raise LiveSourceError(live.message)
        if report.has_errors:
            raise SafetyVetoError(
                "Preflight checks failed",
                diagnostic="; ".join(c.message for c in report.errors),
            )
        return report


def check_power_status(context: dict[str, Any]) -> PreflightCheck:
    """Check if system is on AC power (not battery)."""
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, OSError) as e:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message=f"Could not check power status: {e}",
        )

    if battery is None:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message="No battery detected (desktop/server)",
        )

    if battery.power_plugged:
        return PreflightCheck(
            name="Power Status",
            passed=True,
            message="System is on AC power",
            details={"battery_percent": battery.percent},
        )
    return PreflightCheck(
        name="Power Status",
        passed=battery.percent > 50,
        message=f"System on battery ({battery.percent}%)",
        severity="warning" if battery.percent > 50 else "error",
        details={"battery_percent": battery.percent},
    )


def check_live_source(context: dict[str, Any]) -> PreflightCheck:
    """Reading the running system's disk needs an explicit read-only confirmation."""
    request: OperationRequest = context["request"]
    safety: SafetyManager = context["safety"]

    if request.mode == OperationMode.RESTORE:
        return PreflightCheck(name="Live Source", passed=True, message="Not applicable")
    if not request.shrink_source and not safety.config.live_source_protection:
        return PreflightCheck(name="Live Source", passed=True, message="Not applicable")

    if not safety.is_live_source(request.source):
        return PreflightCheck(name="Live Source", passed=True, message="Source is not the running system")

    # Shrinking writes to the source, so no confirmation covers it
    if request.shrink_source:
        return PreflightCheck(
            name="Live Source",
            passed=False,
            message=f"{request.source} hosts the running system; its filesystems cannot be shrunk",
            severity="critical",
        )
    if request.allow_live_source:
        return PreflightCheck(
            name="Live Source",
            passed=False,
            message=f"{request.source} hosts the running system; imaging read-only, data may be inconsistent",
            severity="warning",
        )
    return PreflightCheck(
        name="Live Source",
        passed=False,
        message=f"{request.source} hosts the running system; confirm read-only imaging to proceed",
        severity="critical",
    )


def check_system_disk(context: dict[str, Any]) -> PreflightCheck:
    """The target of a destructive operation must not be the running system's disk."""
    request: OperationRequest = context["request"]
    safety: SafetyManager = context["safety"]

    if safety.config.system_disk_protection and safety.is_live_source(request.target):
        return PreflightCheck(
            name="System Disk",
            passed=False,
            message=f"{request.target} hosts the running system and cannot be overwritten",
            severity="critical",
        )
    return PreflightCheck(name="System Disk", passed=True, message="Target is not the system disk")


def check_capacity(context: dict[str, Any]) -> PreflightCheck:
    """Target capacity versus the source device (clone) or the archive file (restore)."""
    request: OperationRequest = context["request"]
    safety: SafetyManager = context["safety"]

    target_bytes = safety.platform.device_size_bytes(request.target)
    if target_bytes == 0:
        return PreflightCheck(
            name="Capacity",
            passed=False,
            message="Could not determine target size",
            severity="error",
        )

    if request.mode == OperationMode.CLONE:
        source_bytes = safety.platform.device_size_bytes(request.source)
        try:
            return safety.validate_capacity(source_bytes, target_bytes, OperationMode.CLONE)
        except InsufficientCapacityError as e:
            return PreflightCheck(
                name="Capacity",
                passed=False,
                message=e.message,
                severity="error",
                details={"source_bytes": source_bytes, "target_bytes": target_bytes},
            )

    archive = Path(request.source)
    archive_bytes = archive.stat().st_size if archive.exists() else 0
    return safety.validate_capacity(archive_bytes, target_bytes, request.mode)


def check_not_mounted(context: dict[str, Any]) -> PreflightCheck:
    """Check that no partition of the target is mounted."""
    request: OperationRequest = context["request"]
    mounted_paths: list[str] = context.get("mounted_paths", [])
    target = os.path.realpath(request.target)

    pattern = re.compile(re.escape(target) + r"(p?\d+)?$")
    busy = [path for path in mounted_paths if pattern.match(os.path.realpath(path))]
    if busy:
        return PreflightCheck(
            name="Mount Status",
            passed=False,
            message=f"Target {request.target} has mounted partitions",
            severity="error",
            details={"mounted_paths": busy},
        )

    return PreflightCheck(name="Mount Status", passed=True, message="Target is not mounted")


def check_archive_space(context: dict[str, Any]) -> PreflightCheck:
    """Warn when the archive's filesystem has less free space than the source's used bytes."""
    request: OperationRequest = context["request"]
    safety: SafetyManager = context["safety"]

    directory = Path(request.target).expanduser().resolve().parent
    while not directory.exists() and directory != directory.parent:
        directory = directory.parent
    free_bytes = psutil.disk_usage(str(directory)).free

    table = safety.platform.read_table(request.source)
    estimate = safety.estimate_payload(table, request.source)
    check = safety.validate_capacity(estimate, free_bytes, OperationMode.ARCHIVE)
    check.name = "Archive Space"
    return check
