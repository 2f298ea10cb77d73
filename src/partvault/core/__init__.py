"""
PartVault Core - Backend service layer.

Contains the data model, partition table handling, job execution,
configuration, safety checks and session management.
"""

from partvault.core.config import PartVaultConfig
from partvault.core.job import Job, JobRunner, JobStatus, JobResult
from partvault.core.session import Session
from partvault.core.logging import get_logger, setup_logging
from partvault.core.safety import SafetyManager

__all__ = [
    "PartVaultConfig",
    "Job",
    "JobRunner",
    "JobStatus",
    "JobResult",
    "Session",
    "get_logger",
    "setup_logging",
    "SafetyManager",
]
