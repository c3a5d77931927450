"""
Degree-of-freedom enumeration for FE_Q on a ShellGrid.

DoFs live on geometric entities and are numbered on first encounter while
walking the active cells in order:
- one per vertex,
- p-1 per edge, ordered from the lower to the higher global vertex id,
- (p-1)^2 per cell interior.

Hanging vertices (edge midpoints of a refined neighbor) get ordinary vertex
DoFs here; the constraint builder ties them to the coarse side afterwards.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Tuple

import numpy as np

from core.fe import FE_Q, bilinear_map
from core.grid import CELL_EDGE_VERTICES, Edge, ShellGrid, edge_key
from core.types import FloatArray, IntArray

logger = logging.getLogger(__name__)


class DoFHandler:
    """Cell-to-global DoF map plus entity lookups.

    Attributes
    ----------
    cell_dofs : (n_active, dofs_per_cell) int array, rows follow ``active_cells``.
    support_points : (n_dofs, 2) physical node locations.
    vertex_dof : dict vertex id -> global DoF.
    line_dofs : dict edge key -> int array of the edge's interior DoFs (low -> high vertex).
    """

    def __init__(self, grid: ShellGrid, fe: FE_Q) -> None:
        self.grid = grid
        self.fe = fe
        self.active_cells: List[int] = list(grid.active_cells())
        self.cell_index: Dict[int, int] = {c: k for k, c in enumerate(self.active_cells)}
        self.vertex_dof: Dict[int, int] = {}
        self.line_dofs: Dict[Edge, IntArray] = {}
        self._distribute()

    @property
    def n_dofs(self) -> int:
        return int(self.support_points.shape[0])

    @property
    def dofs_per_cell(self) -> int:
        return self.fe.dofs_per_cell

    @property
    def n_active_cells(self) -> int:
        return len(self.active_cells)

    def _distribute(self) -> None:
        fe = self.fe
        grid = self.grid
        n_line = fe.dofs_per_line
        unit_pts = fe.unit_support_points
        cell_dofs = np.full((len(self.active_cells), fe.dofs_per_cell), -1, dtype=np.int64)
        points: List[FloatArray] = []
        next_dof = 0

        for k, cell in enumerate(self.active_cells):
            verts = grid.cell_vertices[cell]
            coords = grid.cell_coords(cell)
            phys, _ = bilinear_map(coords, unit_pts)

            for lv, v in enumerate(verts):
                dof = self.vertex_dof.get(v)
                if dof is None:
                    dof = next_dof
                    next_dof += 1
                    self.vertex_dof[v] = dof
                    points.append(phys[lv])
                cell_dofs[k, lv] = dof

            for line, (a, b) in enumerate(CELL_EDGE_VERTICES):
                if n_line == 0:
                    break
                local = fe.line_dofs(line)
                key = edge_key(verts[a], verts[b])
                forward = verts[a] < verts[b]
                dofs = self.line_dofs.get(key)
                if dofs is None:
                    dofs = np.arange(next_dof, next_dof + n_line, dtype=np.int64)
                    next_dof += n_line
                    self.line_dofs[key] = dofs
                    ordered_local = local if forward else local[::-1]
                    points.extend(phys[i] for i in ordered_local)
                cell_dofs[k, local] = dofs if forward else dofs[::-1]

            interior = fe.quad_dofs
            if interior:
                dofs = np.arange(next_dof, next_dof + len(interior), dtype=np.int64)
                next_dof += len(interior)
                cell_dofs[k, interior] = dofs
                points.extend(phys[i] for i in interior)

        if np.any(cell_dofs < 0):
            raise RuntimeError("DoF enumeration left unassigned local DoFs.")
        self.cell_dofs = cell_dofs
        self.support_points = np.vstack(points) if points else np.empty((0, 2))
        logger.debug("DoFHandler: %d dofs on %d cells (%r)", self.n_dofs, len(self.active_cells), fe)

    def edge_dofs_with_vertices(self, edge: Edge) -> IntArray:
        """All DoFs on an edge from its low to its high vertex, endpoints included."""
        lo, hi = edge
        inner = self.line_dofs.get(edge, np.empty(0, dtype=np.int64))
        return np.concatenate([[self.vertex_dof[lo]], inner, [self.vertex_dof[hi]]]).astype(np.int64)

    def boundary_dofs(self, boundary_id: int = 0) -> IntArray:
        """DoFs on active boundary edges carrying ``boundary_id``."""
        active_edges = set()
        for cell in self.active_cells:
            active_edges.update(self.grid.cell_edges(cell))
        out = set()
        for edge in self.grid.boundary_edges_with_id(boundary_id):
            if edge in active_edges:
                out.update(int(d) for d in self.edge_dofs_with_vertices(edge))
        return np.array(sorted(out), dtype=np.int64)

    def renumber(self, new_index: IntArray) -> None:
        """Apply a permutation given as new_index[old_dof]."""
        new_index = np.asarray(new_index, dtype=np.int64)
        if new_index.shape != (self.n_dofs,) or np.unique(new_index).size != self.n_dofs:
            raise ValueError("renumber expects a permutation of all DoFs.")
        self.cell_dofs = new_index[self.cell_dofs]
        points = np.empty_like(self.support_points)
        points[new_index] = self.support_points
        self.support_points = points
        self.vertex_dof = {v: int(new_index[d]) for v, d in self.vertex_dof.items()}
        self.line_dofs = {e: new_index[d] for e, d in self.line_dofs.items()}

    def cells_touching(self) -> Tuple[IntArray, IntArray]:
        """Flattened (dof, cell_index) incidence pairs."""
        dofs = self.cell_dofs.ravel()
        cells = np.repeat(np.arange(self.n_active_cells), self.dofs_per_cell)
        return dofs, cells
