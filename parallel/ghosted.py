"""
Owned/relevant views over one PETSc ghosted vector.

- ``owned``: writable array of the DoFs this rank owns (exclusive writer).
- ``relevant``: read-only snapshot of owned + ghost DoFs, laid out as
  LayoutDistributed local indices.

Ghost values change only through an explicit ``update_ghosts()``.
"""

from __future__ import annotations

import logging

import numpy as np

from core.layout_dist import LayoutDistributed
from core.types import FloatArray
from parallel.mpi_bootstrap import get_petsc

logger = logging.getLogger(__name__)


class GhostedVector:
    def __init__(self, layout: LayoutDistributed, name: str = "u") -> None:
        PETSc = get_petsc()
        self.layout = layout
        self.name = name
        self._ghosts = np.asarray(layout.ghost_dofs, dtype=PETSc.IntType)
        comm = layout.comm if layout.comm is not None else PETSc.COMM_SELF
        self.vec = PETSc.Vec().createGhost(
            self._ghosts,
            size=(layout.n_owned, layout.n_dofs),
            comm=comm,
        )
        self.vec.setName(name)
        self.vec.set(0.0)
        self.update_ghosts()

    @property
    def owned(self) -> FloatArray:
        return self.vec.array

    def set_owned(self, values) -> None:
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (self.layout.n_owned,):
            raise ValueError(f"set_owned expects shape ({self.layout.n_owned},), got {values.shape}.")
        self.vec.array[:] = values

    def copy_owned_from(self, other) -> None:
        """Copy the owned block of a PETSc Vec with the same ownership."""
        self.set_owned(other.getArray(readonly=True))

    def update_ghosts(self) -> None:
        PETSc = get_petsc()
        self.vec.ghostUpdate(addv=PETSc.InsertMode.INSERT_VALUES, mode=PETSc.ScatterMode.FORWARD)

    def distribute_constraints(self, constraints) -> None:
        """Write owned constrained DoFs from their masters, then refresh ghosts.

        Masters of owned constrained DoFs must be relevant on this rank.
        """
        owned_constrained = constraints.constrained_dofs()
        owned_constrained = owned_constrained[self.layout.is_owned(owned_constrained)]
        if owned_constrained.size:
            with self.vec.localForm() as loc:
                values = loc.array
                constraints.distribute(values, positions=self.layout.local_index, rows=owned_constrained)
        self.update_ghosts()

    def relevant(self) -> FloatArray:
        with self.vec.localForm() as loc:
            return np.array(loc.getArray(readonly=True), dtype=np.float64)

    def destroy(self) -> None:
        self.vec.destroy()
