"""
Quadrilateral shell mesh with manifold-aware refinement.

Responsibilities:
- Build the coarse 2D hyper-shell (8 quads between two concentric circles).
- Keep the refinement forest: every cell knows its level, parent and children;
  active cells are the leaves, enumerated depth-first from the coarse cells.
- Place new vertices through the manifold attached to the refined cell
  (SphericalManifold for the shell, straight averaging otherwise).
- Track boundary edges (boundary id 0 on both circles) and edge midpoints,
  the latter being the topological record used for hanging-node detection.

Cell vertex ordering is lexicographic on the reference square:
v0=(0,0), v1=(1,0), v2=(0,1), v3=(1,1). Local edges are
e0=(v0,v2), e1=(v1,v3), e2=(v0,v1), e3=(v2,v3).
Edges are keyed by the sorted pair of their global vertex ids.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from core.types import FloatArray, Parameters

logger = logging.getLogger(__name__)

Edge = Tuple[int, int]

CELL_EDGE_VERTICES: Tuple[Tuple[int, int], ...] = ((0, 2), (1, 3), (0, 1), (2, 3))
FLAT_MANIFOLD_ID = -1
SHELL_MANIFOLD_ID = 0
DEFAULT_BOUNDARY_ID = 0


def edge_key(a: int, b: int) -> Edge:
    return (a, b) if a < b else (b, a)


class FlatManifold:
    """Straight-line placement: weighted average of the parent points."""

    def get_new_point(self, points: FloatArray, weights: FloatArray) -> FloatArray:
        return np.asarray(weights, dtype=np.float64) @ np.asarray(points, dtype=np.float64)


class SphericalManifold:
    """Polar-coordinate placement around a center.

    The new point takes the weighted mean radius and the normalized weighted
    mean direction of its parents, so refined boundary edges follow the circle.
    """

    def __init__(self, center: Sequence[float] = (0.0, 0.0)) -> None:
        self.center = np.asarray(center, dtype=np.float64)

    def get_new_point(self, points: FloatArray, weights: FloatArray) -> FloatArray:
        pts = np.asarray(points, dtype=np.float64) - self.center
        w = np.asarray(weights, dtype=np.float64)
        radii = np.linalg.norm(pts, axis=1)
        if np.any(radii <= 0.0):
            raise ValueError("SphericalManifold cannot place points through its center.")
        radius = float(w @ radii)
        direction = w @ (pts / radii[:, None])
        norm = float(np.linalg.norm(direction))
        if norm < 1.0e-12:
            return self.center + w @ pts
        return self.center + radius * direction / norm


class ShellGrid:
    """Refinable forest of quadrilaterals."""

    def __init__(
        self,
        vertices: Sequence[Sequence[float]],
        cells: Sequence[Sequence[int]],
        boundary_edges: Mapping[Edge, int],
    ) -> None:
        self._vertices: List[FloatArray] = [np.asarray(v, dtype=np.float64) for v in vertices]
        self.cell_vertices: List[Tuple[int, int, int, int]] = []
        self.cell_level: List[int] = []
        self.cell_parent: List[int] = []
        self.cell_children: List[Optional[Tuple[int, int, int, int]]] = []
        self.cell_manifold: List[int] = []
        for verts in cells:
            if len(verts) != 4:
                raise ValueError(f"Quadrilateral cells need 4 vertices, got {verts}.")
            self._add_cell(tuple(int(v) for v in verts), level=0, parent=-1)
        self.coarse_cells: List[int] = list(range(len(self.cell_vertices)))
        self.boundary_edges: Dict[Edge, int] = {edge_key(*e): int(b) for e, b in boundary_edges.items()}
        self.edge_midpoints: Dict[Edge, int] = {}
        self.manifolds: Dict[int, object] = {}
        self._active: Optional[List[int]] = None
        self._vertex_array: Optional[FloatArray] = None

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------
    def _add_cell(self, verts: Tuple[int, int, int, int], *, level: int, parent: int, manifold: int = FLAT_MANIFOLD_ID) -> int:
        self.cell_vertices.append(verts)
        self.cell_level.append(int(level))
        self.cell_parent.append(int(parent))
        self.cell_children.append(None)
        self.cell_manifold.append(int(manifold))
        return len(self.cell_vertices) - 1

    def _add_vertex(self, point: FloatArray) -> int:
        self._vertices.append(np.asarray(point, dtype=np.float64))
        self._vertex_array = None
        return len(self._vertices) - 1

    @property
    def vertices(self) -> FloatArray:
        if self._vertex_array is None:
            self._vertex_array = np.vstack(self._vertices)
        return self._vertex_array

    @property
    def n_vertices(self) -> int:
        return len(self._vertices)

    def active_cells(self) -> List[int]:
        """Leaf cells in depth-first order from the coarse cells."""
        if self._active is None:
            order: List[int] = []
            stack = list(reversed(self.coarse_cells))
            while stack:
                c = stack.pop()
                children = self.cell_children[c]
                if children is None:
                    order.append(c)
                else:
                    stack.extend(reversed(children))
            self._active = order
        return self._active

    @property
    def n_active_cells(self) -> int:
        return len(self.active_cells())

    def cell_coords(self, cell: int) -> FloatArray:
        return self.vertices[list(self.cell_vertices[cell])]

    def cell_edges(self, cell: int) -> List[Edge]:
        verts = self.cell_vertices[cell]
        return [edge_key(verts[a], verts[b]) for a, b in CELL_EDGE_VERTICES]

    def vertex_to_active_cells(self) -> Dict[int, List[int]]:
        table: Dict[int, List[int]] = {}
        for c in self.active_cells():
            for v in self.cell_vertices[c]:
                table.setdefault(v, []).append(c)
        return table

    def boundary_edges_with_id(self, boundary_id: int) -> List[Edge]:
        return [e for e, b in self.boundary_edges.items() if b == int(boundary_id)]

    # ------------------------------------------------------------------
    # Manifolds
    # ------------------------------------------------------------------
    def set_manifold(self, manifold_id: int, manifold) -> None:
        self.manifolds[int(manifold_id)] = manifold

    def set_all_manifold_ids(self, manifold_id: int) -> None:
        for c in range(len(self.cell_manifold)):
            self.cell_manifold[c] = int(manifold_id)

    def _manifold_for(self, manifold_id: int):
        return self.manifolds.get(int(manifold_id), FlatManifold())

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------
    def _edge_midpoint(self, edge: Edge, manifold_id: int) -> int:
        mid = self.edge_midpoints.get(edge)
        if mid is not None:
            return mid
        manifold = self._manifold_for(manifold_id)
        point = manifold.get_new_point(self.vertices[list(edge)], np.array([0.5, 0.5]))
        mid = self._add_vertex(point)
        self.edge_midpoints[edge] = mid
        bid = self.boundary_edges.get(edge)
        if bid is not None:
            self.boundary_edges[edge_key(edge[0], mid)] = bid
            self.boundary_edges[edge_key(mid, edge[1])] = bid
        return mid

    def _refine_cell(self, cell: int) -> None:
        if self.cell_children[cell] is not None:
            raise ValueError(f"Cell {cell} is already refined.")
        v0, v1, v2, v3 = self.cell_vertices[cell]
        mid_id = self.cell_manifold[cell]
        m02 = self._edge_midpoint(edge_key(v0, v2), mid_id)
        m13 = self._edge_midpoint(edge_key(v1, v3), mid_id)
        m01 = self._edge_midpoint(edge_key(v0, v1), mid_id)
        m23 = self._edge_midpoint(edge_key(v2, v3), mid_id)
        center = self._manifold_for(mid_id).get_new_point(
            self.vertices[[v0, v1, v2, v3]], np.full(4, 0.25)
        )
        c = self._add_vertex(center)
        level = self.cell_level[cell] + 1
        children = (
            self._add_cell((v0, m01, m02, c), level=level, parent=cell, manifold=mid_id),
            self._add_cell((m01, v1, c, m13), level=level, parent=cell, manifold=mid_id),
            self._add_cell((m02, c, v2, m23), level=level, parent=cell, manifold=mid_id),
            self._add_cell((c, m13, m23, v3), level=level, parent=cell, manifold=mid_id),
        )
        self.cell_children[cell] = children

    def refine_global(self, times: int = 1) -> None:
        for _ in range(int(times)):
            for c in list(self.active_cells()):
                self._refine_cell(c)
            self._active = None
        logger.debug(
            "refine_global(%d): %d active cells, %d vertices", times, self.n_active_cells, self.n_vertices
        )

    def refine_cells(self, cells: Iterable[int]) -> None:
        """Refine selected active cells once (setup only; keeps the mesh 2:1 balanced)."""
        active = set(self.active_cells())
        targets = sorted(set(int(c) for c in cells))
        for c in targets:
            if c not in active:
                raise ValueError(f"Cell {c} is not active and cannot be refined.")
        for c in targets:
            self._refine_cell(c)
        self._active = None
        self._check_balanced()

    def _check_balanced(self) -> None:
        for c in self.active_cells():
            for edge in self.cell_edges(c):
                mid = self.edge_midpoints.get(edge)
                if mid is None:
                    continue
                for child in (edge_key(edge[0], mid), edge_key(mid, edge[1])):
                    if child in self.edge_midpoints:
                        raise ValueError(
                            f"Mesh is not 2:1 balanced: active cell {c} borders edge {edge} refined twice."
                        )

    def hanging_edges(self) -> List[Edge]:
        """Edges of active cells that the neighbor on the other side has split."""
        seen = set()
        out: List[Edge] = []
        for c in self.active_cells():
            for edge in self.cell_edges(c):
                if edge in seen:
                    continue
                seen.add(edge)
                if edge in self.edge_midpoints:
                    out.append(edge)
        return out


def hyper_shell(
    inner_radius: float,
    outer_radius: float,
    n_cells: int = 8,
    center: Sequence[float] = (0.0, 0.0),
) -> ShellGrid:
    """Coarse ring of ``n_cells`` quads; every boundary edge gets boundary id 0."""
    if n_cells < 3:
        raise ValueError(f"hyper_shell needs at least 3 cells, got {n_cells}.")
    c = np.asarray(center, dtype=np.float64)
    angles = 2.0 * math.pi * np.arange(n_cells) / n_cells
    unit = np.column_stack([np.cos(angles), np.sin(angles)])
    vertices = np.vstack([c + inner_radius * unit, c + outer_radius * unit])

    cells = []
    boundary: Dict[Edge, int] = {}
    for k in range(n_cells):
        k1 = (k + 1) % n_cells
        cells.append((k, n_cells + k, k1, n_cells + k1))
        boundary[edge_key(k, k1)] = DEFAULT_BOUNDARY_ID
        boundary[edge_key(n_cells + k, n_cells + k1)] = DEFAULT_BOUNDARY_ID
    return ShellGrid(vertices, cells, boundary)


def build_shell_grid(params: Parameters) -> ShellGrid:
    """Shell geometry with the spherical manifold on every cell, refined globally."""
    grid = hyper_shell(float(params.inner_radius), float(params.outer_radius))
    grid.set_manifold(SHELL_MANIFOLD_ID, SphericalManifold((0.0, 0.0)))
    grid.set_all_manifold_ids(SHELL_MANIFOLD_ID)
    grid.refine_global(int(params.refinement_level))
    logger.info(
        "Shell grid: R=[%g, %g], refinement=%d, active cells=%d",
        params.inner_radius,
        params.outer_radius,
        params.refinement_level,
        grid.n_active_cells,
    )
    return grid
