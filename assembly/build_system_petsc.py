"""
PETSc assembly of the CDR system on this rank's owned cells.

The matrix is assembled once per run (its coefficients do not depend on
time); the right-hand side is assembled every step from the ghosted previous
solution and the forcing at the new time level.

Local contributions pass through ``ConstraintSet.expand``:

    A_glob += T^T A_cell T
    b_glob += T^T (b_cell - A_cell g)

with a positive diagonal on constrained rows, so the global matrix stays
nonsingular and constrained rows of the solution come out as zero before
``distribute`` overwrites them.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from assembly.constraints import ConstraintSet, LocalExpansion
from assembly.kernels import cell_matrix, cell_rhs
from assembly.sparsity_pattern import SparsityPattern, build_sparsity_pattern
from core.dofs import DoFHandler
from core.expressions import ExpressionFunction
from core.fe import FEValues, QGauss
from core.layout_dist import LayoutDistributed
from core.types import FloatArray, Parameters
from parallel.ghosted import GhostedVector
from parallel.mat_prealloc import count_diag_off_nnz
from parallel.mpi_bootstrap import get_petsc

logger = logging.getLogger(__name__)


def _constrained_diagonal(a_cell: FloatArray) -> float:
    scale = float(np.mean(np.abs(np.diag(a_cell))))
    return scale if scale > 0.0 else 1.0


def _scatter_cell_matrix(A, a_cell: FloatArray, exp: LocalExpansion) -> None:
    PETSc = get_petsc()
    add = PETSc.InsertMode.ADD_VALUES
    if exp.transform is None:
        idx = exp.targets.astype(PETSc.IntType)
        A.setValues(idx, idx, np.ascontiguousarray(a_cell), addv=add)
        return
    if exp.targets.size:
        idx = exp.targets.astype(PETSc.IntType)
        a_glob = exp.transform.T @ a_cell @ exp.transform
        A.setValues(idx, idx, np.ascontiguousarray(a_glob), addv=add)
    diag = _constrained_diagonal(a_cell)
    for g in exp.constrained_global.tolist():
        A.setValue(int(g), int(g), diag, addv=add)


def _scatter_cell_rhs(b, b_cell: FloatArray, exp: LocalExpansion) -> None:
    PETSc = get_petsc()
    add = PETSc.InsertMode.ADD_VALUES
    if exp.transform is None:
        b.setValues(exp.targets.astype(PETSc.IntType), b_cell, addv=add)
    elif exp.targets.size:
        b.setValues(exp.targets.astype(PETSc.IntType), exp.transform.T @ b_cell, addv=add)


class SystemAssembler:
    """Owned-cell assembler bound to one DoF layout and one constraint set."""

    def __init__(
        self,
        params: Parameters,
        dof_handler: DoFHandler,
        layout: LayoutDistributed,
        constraints: ConstraintSet,
        convection: ExpressionFunction,
    ) -> None:
        if not constraints.is_closed:
            raise RuntimeError("SystemAssembler needs a closed ConstraintSet.")
        self.params = params
        self.dof_handler = dof_handler
        self.layout = layout
        self.constraints = constraints
        self.convection = convection
        self.fe_values = FEValues(dof_handler.fe, QGauss(params.quadrature_order))
        self._pattern: Optional[SparsityPattern] = None

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------
    def _petsc_comm(self):
        PETSc = get_petsc()
        return self.layout.comm if self.layout.comm is not None else PETSc.COMM_SELF

    @property
    def pattern(self) -> SparsityPattern:
        """Owned rows of the pattern; the mesh is replicated, so every cell is scanned."""
        if self._pattern is None:
            self._pattern = build_sparsity_pattern(
                self.dof_handler,
                self.constraints,
                row_range=self.layout.ownership_range,
            )
        return self._pattern

    def create_matrix(self):
        PETSc = get_petsc()
        pattern = self.pattern
        d_nnz, o_nnz = count_diag_off_nnz(pattern, self.layout.ownership_range)
        n_owned, n = self.layout.n_owned, self.layout.n_dofs
        A = PETSc.Mat().createAIJ(
            size=((n_owned, n), (n_owned, n)),
            nnz=(d_nnz.astype(PETSc.IntType), o_nnz.astype(PETSc.IntType)),
            comm=self._petsc_comm(),
        )
        A.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, True)
        A.setUp()
        logger.debug(
            "system matrix: local rows=%d, local nnz=%d (diag=%d, off=%d)",
            n_owned,
            pattern.nnz,
            int(d_nnz.sum()),
            int(o_nnz.sum()),
        )
        return A

    def create_vector(self):
        PETSc = get_petsc()
        b = PETSc.Vec().createMPI((self.layout.n_owned, self.layout.n_dofs), comm=self._petsc_comm())
        b.set(0.0)
        return b

    # ------------------------------------------------------------------
    # Cell loop
    # ------------------------------------------------------------------
    def _reinit(self, k: int) -> FEValues:
        grid = self.dof_handler.grid
        return self.fe_values.reinit(grid.cell_coords(self.dof_handler.active_cells[int(k)]))

    def _cell_matrix(self, fev: FEValues) -> FloatArray:
        p = self.params
        return cell_matrix(
            fev,
            self.convection.vector_value(fev.quadrature_points),
            p.diffusion_coefficient,
            p.reaction_coefficient,
            p.time_step,
            p.time_dependent,
        )

    def assemble_matrix(self, A) -> None:
        """Zero ``A`` and add every owned cell; ends with a compress."""
        A.zeroEntries()
        for k in self.layout.owned_cells:
            fev = self._reinit(k)
            exp = self.constraints.expand(self.dof_handler.cell_dofs[int(k)])
            _scatter_cell_matrix(A, self._cell_matrix(fev), exp)
        A.assemblyBegin()
        A.assemblyEnd()

    def assemble_rhs(self, b, previous: GhostedVector, forcing: ExpressionFunction) -> None:
        """
        Zero ``b`` and add every owned cell.

        ``previous`` must have up-to-date ghosts; ``forcing`` is evaluated at
        its current time.
        """
        p = self.params
        b.zeroEntries()
        u_rel = previous.relevant()
        for k in self.layout.owned_cells:
            fev = self._reinit(k)
            dofs = self.dof_handler.cell_dofs[int(k)]
            u_old = u_rel[self.layout.to_local(dofs)]
            b_cell = cell_rhs(
                fev,
                u_old,
                forcing.value(fev.quadrature_points),
                p.time_step,
                p.time_dependent,
            )
            exp = self.constraints.expand(dofs)
            if exp.transform is not None and np.any(exp.inhomogeneities != 0.0):
                b_cell = b_cell - self._cell_matrix(fev) @ exp.inhomogeneities
            _scatter_cell_rhs(b, b_cell, exp)
        b.assemblyBegin()
        b.assemblyEnd()
