from __future__ import annotations

import os
import sys
from typing import Optional, Sequence

_BOOTSTRAPPED = False
_PETSC_BOOTSTRAPPED = False


def bootstrap_mpi() -> None:
    """
    Import mpi4py once so MPI_Init happens before PETSc initializes.
    """
    global _BOOTSTRAPPED
    if _BOOTSTRAPPED:
        return
    _BOOTSTRAPPED = True
    from mpi4py import MPI  # noqa: F401


def bootstrap_mpi_before_petsc(argv: Optional[Sequence[str]] = None) -> None:
    """
    Ensure mpi4py initializes before petsc4py, and pass argv to PETSc.

    Under pytest the command line belongs to pytest, so PETSc gets no options.
    """
    bootstrap_mpi()

    global _PETSC_BOOTSTRAPPED
    if _PETSC_BOOTSTRAPPED:
        return
    _PETSC_BOOTSTRAPPED = True

    import petsc4py

    if argv is None:
        argv = [] if os.environ.get("PYTEST_CURRENT_TEST") else sys.argv
    petsc4py.init(list(argv))


def get_petsc():
    """Return the initialized petsc4py.PETSc module."""
    bootstrap_mpi_before_petsc()
    from petsc4py import PETSc

    return PETSc


def world_comm():
    """PETSc COMM_WORLD after bootstrap."""
    return get_petsc().COMM_WORLD
