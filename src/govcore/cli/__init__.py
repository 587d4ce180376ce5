"""
govcore command line

Read-only inspection of governance backups.
"""

from .main import cli

__all__ = ["cli"]
