"""
PartVault CLI Module.

Provides the command-line interface for PartVault operations.
"""

from partvault.cli.main import main, cli

__all__ = ["main", "cli"]
