"""
Ownership partition of the DoF index space across ranks.

The mesh is replicated on every rank, so the partition of every rank can be
computed anywhere; each rank then keeps its own view (LayoutDistributed).

Rules:
- active cells are split into contiguous chunks of the depth-first cell order,
  which on the shell gives angular sectors;
- a DoF belongs to the lowest rank among the cells that touch it;
- DoFs are renumbered so rank r owns [ranges[r], ranges[r+1]);
- relevant DoFs of rank r = DoFs of its cells and of its ghost cells (cells
  sharing a vertex with an owned cell), plus anything added later, e.g.
  constraint masters of owned DoFs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

import numpy as np

from core.dofs import DoFHandler
from core.types import IntArray

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DoFPartition:
    rank: int
    n_ranks: int
    n_dofs: int
    ownership_ranges: IntArray
    owned_cells: IntArray
    ghost_cells: IntArray
    relevant_dofs: IntArray

    @property
    def ownership_range(self) -> Tuple[int, int]:
        return int(self.ownership_ranges[self.rank]), int(self.ownership_ranges[self.rank + 1])

    @property
    def n_owned(self) -> int:
        r0, r1 = self.ownership_range
        return r1 - r0

    @property
    def owned_dofs(self) -> IntArray:
        r0, r1 = self.ownership_range
        return np.arange(r0, r1, dtype=np.int64)

    @property
    def ghost_dofs(self) -> IntArray:
        r0, r1 = self.ownership_range
        rel = self.relevant_dofs
        return rel[(rel < r0) | (rel >= r1)]

    def add_relevant(self, indices: Iterable[int]) -> None:
        extra = np.fromiter((int(i) for i in indices), dtype=np.int64)
        if extra.size == 0:
            return
        if np.any((extra < 0) | (extra >= self.n_dofs)):
            raise ValueError("add_relevant: index outside the DoF range.")
        self.relevant_dofs = np.union1d(self.relevant_dofs, extra)


def partition_cells(n_cells: int, n_ranks: int) -> IntArray:
    """Rank of every active cell: contiguous, nearly equal chunks."""
    if n_ranks < 1:
        raise ValueError(f"n_ranks must be >= 1, got {n_ranks}.")
    owner = np.empty(n_cells, dtype=np.int64)
    for rank, chunk in enumerate(np.array_split(np.arange(n_cells), n_ranks)):
        owner[chunk] = rank
    return owner


def _ghost_cells(dof_handler: DoFHandler, owned_cells: IntArray, cell_owner: IntArray, rank: int) -> IntArray:
    grid = dof_handler.grid
    v2c = grid.vertex_to_active_cells()
    ghosts = set()
    for k in owned_cells:
        for v in grid.cell_vertices[dof_handler.active_cells[int(k)]]:
            for c in v2c.get(v, ()):
                kc = dof_handler.cell_index[c]
                if cell_owner[kc] != rank:
                    ghosts.add(kc)
    return np.array(sorted(ghosts), dtype=np.int64)


def partition_dofs(dof_handler: DoFHandler, n_ranks: int) -> List[DoFPartition]:
    """
    Partition cells and DoFs for ``n_ranks`` ranks.

    Renumbers ``dof_handler`` in place so that owned blocks are contiguous,
    and returns the partition of every rank.
    """
    n_cells = dof_handler.n_active_cells
    cell_owner = partition_cells(n_cells, n_ranks)

    dofs, cells = dof_handler.cells_touching()
    owner = np.full(dof_handler.n_dofs, n_ranks, dtype=np.int64)
    np.minimum.at(owner, dofs, cell_owner[cells])
    if np.any(owner >= n_ranks):
        raise RuntimeError("partition_dofs: some DoFs are not touched by any active cell.")

    order = np.argsort(owner, kind="stable")
    new_index = np.empty_like(order)
    new_index[order] = np.arange(order.size, dtype=np.int64)
    dof_handler.renumber(new_index)

    counts = np.bincount(owner, minlength=n_ranks)
    ranges = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)

    partitions: List[DoFPartition] = []
    for rank in range(n_ranks):
        owned_cells = np.flatnonzero(cell_owner == rank).astype(np.int64)
        ghost_cells = _ghost_cells(dof_handler, owned_cells, cell_owner, rank)
        touched = dof_handler.cell_dofs[np.concatenate([owned_cells, ghost_cells]).astype(np.int64)].ravel()
        relevant = np.union1d(touched, np.arange(ranges[rank], ranges[rank + 1], dtype=np.int64))
        partitions.append(
            DoFPartition(
                rank=rank,
                n_ranks=n_ranks,
                n_dofs=dof_handler.n_dofs,
                ownership_ranges=ranges,
                owned_cells=owned_cells,
                ghost_cells=ghost_cells,
                relevant_dofs=relevant.astype(np.int64),
            )
        )
    return partitions


@dataclass(slots=True)
class LayoutDistributed:
    """This rank's view of the partition, plus global -> local lookups.

    Local numbering follows PETSc ghosted vectors: owned DoFs first, in global
    order, then ghost DoFs in ``ghost_dofs`` order.
    """

    comm: object
    rank: int
    size: int
    partition: DoFPartition
    local_index: IntArray

    @staticmethod
    def build(comm, dof_handler: DoFHandler, partitions: Optional[List[DoFPartition]] = None) -> "LayoutDistributed":
        if comm is None:
            rank, size = 0, 1
        else:
            rank, size = int(comm.getRank()), int(comm.getSize())
        if partitions is None:
            partitions = partition_dofs(dof_handler, size)
        if len(partitions) != size:
            raise ValueError(f"Expected {size} partitions, got {len(partitions)}.")
        layout = LayoutDistributed(
            comm=comm,
            rank=rank,
            size=size,
            partition=partitions[rank],
            local_index=np.empty(0, dtype=np.int64),
        )
        layout.refresh_local_index()
        r0, r1 = layout.ownership_range
        logger.debug(
            "LayoutDistributed: rank=%d owns [%d, %d) of %d, ghosts=%d, cells=%d",
            rank,
            r0,
            r1,
            layout.n_dofs,
            layout.ghost_dofs.size,
            layout.owned_cells.size,
        )
        return layout

    def refresh_local_index(self) -> None:
        lookup = np.full(self.partition.n_dofs, -1, dtype=np.int64)
        owned = self.partition.owned_dofs
        ghosts = self.partition.ghost_dofs
        lookup[owned] = np.arange(owned.size, dtype=np.int64)
        lookup[ghosts] = owned.size + np.arange(ghosts.size, dtype=np.int64)
        self.local_index = lookup

    def add_relevant(self, indices: Iterable[int]) -> None:
        self.partition.add_relevant(indices)
        self.refresh_local_index()

    @property
    def n_dofs(self) -> int:
        return self.partition.n_dofs

    @property
    def n_owned(self) -> int:
        return self.partition.n_owned

    @property
    def ownership_range(self) -> Tuple[int, int]:
        return self.partition.ownership_range

    @property
    def ownership_ranges(self) -> IntArray:
        return self.partition.ownership_ranges

    @property
    def owned_cells(self) -> IntArray:
        return self.partition.owned_cells

    @property
    def ghost_dofs(self) -> IntArray:
        return self.partition.ghost_dofs

    @property
    def relevant_dofs(self) -> IntArray:
        return self.partition.relevant_dofs

    def to_local(self, global_indices) -> IntArray:
        idx = self.local_index[np.asarray(global_indices, dtype=np.int64)]
        if np.any(idx < 0):
            missing = np.asarray(global_indices)[idx < 0]
            raise KeyError(f"DoFs {missing[:8].tolist()} are not relevant on rank {self.rank}.")
        return idx

    def is_owned(self, global_indices) -> np.ndarray:
        r0, r1 = self.ownership_range
        g = np.asarray(global_indices, dtype=np.int64)
        return (g >= r0) & (g < r1)
