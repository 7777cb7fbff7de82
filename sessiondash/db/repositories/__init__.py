"""Repository package for database access."""

from .branches import SqliteBranchRepository

__all__ = [
    "SqliteBranchRepository",
]
