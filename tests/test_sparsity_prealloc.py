"""
Sparsity pattern and MPIAIJ preallocation counts.

Tests:
1. Pattern is structurally symmetric and contains the diagonal
2. Hanging-node constraints couple masters of neighbouring cells
3. Row-restricted patterns match the global pattern slice
4. d_nnz + o_nnz equals the row lengths for every rank
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.constraints import ConstraintSet, build_constraints, make_hanging_node_constraints
from assembly.sparsity_pattern import build_sparsity_pattern
from core.dofs import DoFHandler
from core.fe import FE_Q
from core.grid import build_shell_grid
from core.layout_dist import partition_dofs
from core.types import Parameters
from parallel.mat_prealloc import count_diag_off_nnz


def _shell_dh(refinement: int = 1, degree: int = 1, refine_one: bool = False) -> DoFHandler:
    grid = build_shell_grid(Parameters(refinement_level=refinement))
    if refine_one:
        grid.refine_cells([grid.active_cells()[0]])
    return DoFHandler(grid, FE_Q(degree))


def _dense(pattern) -> np.ndarray:
    out = np.zeros(pattern.shape, dtype=bool)
    for i in range(pattern.n_rows):
        out[i, pattern.row_columns(pattern.row_offset + i)] = True
    return out


def test_pattern_symmetric_with_diagonal():
    dh = _shell_dh(degree=2)
    pattern = build_sparsity_pattern(dh, build_constraints(dh))
    dense = _dense(pattern)
    assert np.array_equal(dense, dense.T)
    assert dense.diagonal().all()
    # an unconstrained Q2 cell couples all 9 of its DoFs
    assert pattern.row_lengths().max() >= 9


def test_pattern_without_constraints_matches_cell_couplings():
    coarse = _shell_dh(refinement=0)
    # every vertex of the 8-cell ring touches two cells
    assert np.all(build_sparsity_pattern(coarse, ConstraintSet()).row_lengths() == 6)

    dh = _shell_dh(refinement=1)
    pattern = build_sparsity_pattern(dh, ConstraintSet())
    dense = _dense(pattern)
    for dofs in dh.cell_dofs:
        assert dense[np.ix_(dofs, dofs)].all()
    # vertices on the middle circle touch four cells
    assert pattern.row_lengths().max() == 9


def test_hanging_constraints_widen_the_pattern():
    dh = _shell_dh(refine_one=True)
    plain = build_sparsity_pattern(dh, ConstraintSet())
    cs = make_hanging_node_constraints(dh)
    cs.close()
    constrained = build_sparsity_pattern(dh, cs)

    slave = int(cs.constrained_dofs()[0])
    masters = [m for m, _ in cs.line(slave).entries]
    fine_cell = next(k for k, d in enumerate(dh.cell_dofs) if slave in d)
    others = [int(d) for d in dh.cell_dofs[fine_cell] if d != slave and d not in cs]
    dense = _dense(constrained)
    for m in masters:
        assert dense[m, others].all()
    far = [m for m in masters if m not in dh.cell_dofs[fine_cell]]
    assert far and not _dense(plain)[far[0], others].all()


@pytest.mark.parametrize("n_ranks", [2, 3])
def test_restricted_rows_match_global_slice(n_ranks):
    dh = _shell_dh(degree=2)
    parts = partition_dofs(dh, n_ranks)  # renumbers dh
    cs = build_constraints(dh)
    full = _dense(build_sparsity_pattern(dh, cs))
    for p in parts:
        r0, r1 = p.ownership_range
        local = build_sparsity_pattern(dh, cs, row_range=(r0, r1))
        assert local.row_offset == r0
        assert np.array_equal(_dense(local), full[r0:r1])


@pytest.mark.parametrize("n_ranks", [1, 2, 4])
def test_diag_off_counts(n_ranks):
    dh = _shell_dh(degree=2)
    parts = partition_dofs(dh, n_ranks)
    cs = build_constraints(dh)
    total = 0
    for p in parts:
        r0, r1 = p.ownership_range
        pattern = build_sparsity_pattern(dh, cs, row_range=(r0, r1))
        d_nz, o_nz = count_diag_off_nnz(pattern, (r0, r1))
        assert np.array_equal(d_nz + o_nz, pattern.row_lengths())
        assert np.all(d_nz >= 1)  # diagonal always present
        assert np.all(d_nz <= r1 - r0)
        if n_ranks == 1:
            assert not o_nz.any()
        total += int(d_nz.sum() + o_nz.sum())
    assert total == build_sparsity_pattern(dh, cs).nnz


def test_diag_off_rejects_mismatched_range():
    dh = _shell_dh(refinement=0)
    pattern = build_sparsity_pattern(dh, ConstraintSet(), row_range=(0, 5))
    with pytest.raises(ValueError):
        count_diag_off_nnz(pattern, (0, 6))
    with pytest.raises(ValueError):
        count_diag_off_nnz(pattern, (3, 1))
