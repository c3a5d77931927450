"""
Explicit collective operations on a PETSc communicator.

Every synchronization point of the solver goes through one of these calls;
on a single rank they reduce to local no-ops.
"""

from __future__ import annotations

import numpy as np

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc


def _get_mpi_comm(comm):
    if comm is None or comm.getSize() == 1:
        return None, None
    bootstrap_mpi_before_petsc()
    from mpi4py import MPI

    return MPI, comm.tompi4py()


def allreduce_sum(comm, local: np.ndarray) -> np.ndarray:
    loc = np.ascontiguousarray(local, dtype=np.float64)
    MPI, mpicomm = _get_mpi_comm(comm)
    if mpicomm is None:
        return loc.copy()
    out = np.empty_like(loc)
    mpicomm.Allreduce([loc, MPI.DOUBLE], [out, MPI.DOUBLE], op=MPI.SUM)
    return out


def allreduce_min_max(comm, lo: float, hi: float) -> tuple[float, float]:
    MPI, mpicomm = _get_mpi_comm(comm)
    if mpicomm is None:
        return float(lo), float(hi)
    return float(mpicomm.allreduce(float(lo), op=MPI.MIN)), float(mpicomm.allreduce(float(hi), op=MPI.MAX))
