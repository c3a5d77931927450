# -*- coding: utf-8 -*-
"""
MPI-aware matrix preallocation utilities.

Split a rank's pattern rows into diag/off-diag blocks and count per-row nnz
for PETSc MPIAIJ preallocation.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from assembly.sparsity_pattern import SparsityPattern


def count_diag_off_nnz(
    pattern: SparsityPattern,
    ownership_range: Tuple[int, int],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Count diag/off nnz per owned row of ``pattern``.

    The diagonal block holds the columns in [rstart, rend); the pattern must
    cover exactly those rows.
    """
    rstart, rend = (int(v) for v in ownership_range)
    if rstart < 0 or rstart > rend:
        raise ValueError(f"Invalid ownership_range={ownership_range}.")
    if pattern.row_offset != rstart or pattern.n_rows != rend - rstart:
        raise ValueError(
            f"Pattern rows [{pattern.row_offset}, {pattern.row_offset + pattern.n_rows}) "
            f"do not match ownership range [{rstart}, {rend})."
        )
    lengths = pattern.row_lengths()
    in_diag = ((pattern.indices >= rstart) & (pattern.indices < rend)).astype(np.int64)
    row_of_entry = np.repeat(np.arange(pattern.n_rows), lengths)
    d_nz = np.bincount(row_of_entry, weights=in_diag, minlength=pattern.n_rows).astype(np.int64)
    o_nz = lengths - d_nz
    return d_nz, o_nz
