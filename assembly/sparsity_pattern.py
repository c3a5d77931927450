"""
Constraint-aware sparsity pattern of the global system matrix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from assembly.constraints import ConstraintSet
from core.dofs import DoFHandler
from core.types import IntArray


@dataclass(slots=True)
class SparsityPattern:
    """CSR pattern for the rows [row_offset, row_offset + n_rows)."""

    indptr: np.ndarray
    indices: np.ndarray
    shape: Tuple[int, int]
    row_offset: int = 0
    meta: Dict[str, float] = field(default_factory=dict)

    @property
    def n_rows(self) -> int:
        return int(self.shape[0])

    @property
    def nnz(self) -> int:
        return int(self.indices.size)

    def row_columns(self, row: int) -> np.ndarray:
        i = int(row) - self.row_offset
        return self.indices[self.indptr[i] : self.indptr[i + 1]]

    def row_lengths(self) -> np.ndarray:
        return np.diff(self.indptr).astype(np.int64)


def build_sparsity_pattern(
    dof_handler: DoFHandler,
    constraints: ConstraintSet,
    *,
    cells: Optional[Iterable[int]] = None,
    row_range: Optional[Tuple[int, int]] = None,
) -> SparsityPattern:
    """
    Couplings produced by assembling ``cells`` (all active cells by default)
    through ``constraints``: every pair of expanded targets of a cell, plus the
    diagonal of every DoF.

    ``row_range`` keeps only the rows [r0, r1), i.e. a rank's owned rows.
    Every cell that could reach those rows must be in ``cells``.
    """
    n = dof_handler.n_dofs
    cell_ids = np.arange(dof_handler.n_active_cells) if cells is None else np.asarray(list(cells), dtype=np.int64)

    rows = [np.arange(n, dtype=np.int64)]
    cols = [np.arange(n, dtype=np.int64)]
    for k in cell_ids:
        targets = constraints.expand(dof_handler.cell_dofs[int(k)]).targets
        if targets.size == 0:
            continue
        rows.append(np.repeat(targets, targets.size))
        cols.append(np.tile(targets, targets.size))

    r = np.concatenate(rows)
    c = np.concatenate(cols)
    mat = sp.coo_matrix((np.ones(r.size, dtype=np.int32), (r, c)), shape=(n, n)).tocsr()
    mat.sum_duplicates()
    mat.sort_indices()

    r0, r1 = (0, n) if row_range is None else (int(row_range[0]), int(row_range[1]))
    block = mat[r0:r1]
    return SparsityPattern(
        indptr=block.indptr.astype(np.int64),
        indices=block.indices.astype(np.int64),
        shape=(r1 - r0, n),
        row_offset=r0,
        meta={"n_cells": float(cell_ids.size), "nnz_global": float(mat.nnz)},
    )
