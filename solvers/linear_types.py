"""
Shared linear solver result types.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from parallel.mpi_bootstrap import get_petsc


@dataclass
class LinearSolveResult:
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    reason: int = 0
    rhs_norm: float = 0.0
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None


def ksp_reason_name(reason: int) -> str:
    """Readable name of a KSPConvergedReason code (falls back to the number)."""
    PETSc = get_petsc()
    for name in dir(PETSc.KSP.ConvergedReason):
        if name.isupper() and getattr(PETSc.KSP.ConvergedReason, name) == reason:
            return name
    return str(reason)
