"""
PartVault error taxonomy.

Table-level errors are fatal to an operation; per-partition failures are
recorded in the manifest and surfaced as warnings instead of being raised.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from partvault.core.models import OperationSummary


class PartVaultError(Exception):
    """Base class for all PartVault errors."""

    fatal = True

    def __init__(
        self,
        message: str,
        phase: str | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.diagnostic = diagnostic
        self.summary: OperationSummary | None = None

    def __str__(self) -> str:
        text = self.message
        if self.phase:
            text = f"[{self.phase}] {text}"
        if self.diagnostic:
            text = f"{text}: {self.diagnostic.strip()}"
        return text


class MalformedTableError(PartVaultError):
    """A partition table dump could not be parsed or violates table invariants."""


class LayoutError(PartVaultError):
    """A derived layout cannot be computed."""


class InsufficientSpaceError(LayoutError):
    """The planned layout does not fit on the target disk."""


class OutOfBudgetError(LayoutError):
    """An enlargement request exceeds the free sectors available to it."""


class TableWriteError(PartVaultError):
    """Writing the table, or re-asserting its identity fields, failed."""


class PackagingError(PartVaultError):
    """Bundling the archive failed; payloads are retained for manual recovery."""

    def __init__(
        self,
        message: str,
        retained_path: Path | None = None,
        phase: str | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message, phase=phase, diagnostic=diagnostic)
        self.retained_path = retained_path


class CorruptArchiveError(PartVaultError):
    """The archive bundle or its manifest is unreadable or empty."""


class BackendMismatchError(PartVaultError):
    """A payload would be restored with a backend family it was not made with."""

    fatal = False


class InsufficientCapacityError(PartVaultError):
    """The target is smaller than the source for a clone."""


class StageFailedError(PartVaultError):
    """A pipeline stage exited with a non-zero status."""

    fatal = False

    def __init__(
        self,
        message: str,
        returncodes: dict[str, int] | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message, diagnostic=diagnostic)
        self.returncodes = returncodes or {}


class SafetyVetoError(PartVaultError):
    """An operation was refused by a safety rule."""


class LiveSourceError(SafetyVetoError):
    """The device backs the running system and cannot be used this way."""


class StorageError(PartVaultError):
    """Reading or writing the archive, scratch area or a payload file failed."""
