"""Package pool and SAT solver.

Records from every subdir index and the installed snapshot are registered in a
``Pool``; ``Solver`` turns install/update/remove jobs into a ``ResolvedSet`` or
raises ``ConflictError`` with a minimal ``Conflict``.
"""

from .pool import Pool, Repo
from .solver import Conflict, ResolvedSet, Solver

__all__ = [
    "Pool",
    "Repo",
    "Solver",
    "Conflict",
    "ResolvedSet",
]
