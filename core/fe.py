"""
Continuous Lagrange elements on quadrilaterals, Gauss quadrature and the
bilinear cell mapping.

Local DoF ordering of FE_Q(p) (p >= 1), tensor index (i, j) on the
equispaced nodes k/p:
- vertices 0..3 in lexicographic order: (0,0), (p,0), (0,p), (p,p)
- edge interiors, p-1 each, in local edge order e0..e3, each running
  from the edge's first local vertex to its second
- cell interior, (p-1)^2 nodes, x fastest
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from core.grid import CELL_EDGE_VERTICES
from core.types import FloatArray


def lagrange_basis_1d(nodes: FloatArray, s: FloatArray) -> Tuple[FloatArray, FloatArray]:
    """Values and derivatives of the Lagrange polynomials on ``nodes`` at ``s``.

    Returns two arrays of shape (len(nodes), len(s)).
    """
    nodes = np.asarray(nodes, dtype=np.float64)
    s = np.atleast_1d(np.asarray(s, dtype=np.float64))
    n = nodes.size
    values = np.ones((n, s.size))
    derivs = np.zeros((n, s.size))
    for k in range(n):
        others = [m for m in range(n) if m != k]
        for m in others:
            values[k] *= (s - nodes[m]) / (nodes[k] - nodes[m])
        for j in others:
            term = np.full(s.size, 1.0 / (nodes[k] - nodes[j]))
            for m in others:
                if m != j:
                    term *= (s - nodes[m]) / (nodes[k] - nodes[m])
            derivs[k] += term
    return values, derivs


@dataclass(frozen=True)
class QGauss:
    """Tensor-product Gauss-Legendre rule on the unit square."""

    n_points_1d: int

    def __post_init__(self) -> None:
        if int(self.n_points_1d) < 1:
            raise ValueError(f"QGauss needs at least one point, got {self.n_points_1d}.")

    def rule_1d(self) -> Tuple[FloatArray, FloatArray]:
        x, w = np.polynomial.legendre.leggauss(int(self.n_points_1d))
        return 0.5 * (x + 1.0), 0.5 * w

    @property
    def points(self) -> FloatArray:
        x, _ = self.rule_1d()
        xx, yy = np.meshgrid(x, x, indexing="xy")
        return np.column_stack([xx.ravel(), yy.ravel()])

    @property
    def weights(self) -> FloatArray:
        _, w = self.rule_1d()
        return np.outer(w, w).ravel()

    @property
    def size(self) -> int:
        return int(self.n_points_1d) ** 2


class FE_Q:
    """Scalar continuous Lagrange element of order p on the reference square."""

    def __init__(self, degree: int) -> None:
        if int(degree) < 1:
            raise ValueError(f"FE_Q degree must be >= 1, got {degree}.")
        self.degree = int(degree)
        p = self.degree
        self.nodes_1d = np.linspace(0.0, 1.0, p + 1)
        self.dofs_per_vertex = 1
        self.dofs_per_line = p - 1
        self.dofs_per_quad = (p - 1) ** 2
        self.tensor_indices = self._build_tensor_indices()
        self.dofs_per_cell = len(self.tensor_indices)

    def _build_tensor_indices(self) -> List[Tuple[int, int]]:
        p = self.degree
        corner = [(0, 0), (p, 0), (0, p), (p, p)]
        idx = list(corner)
        for a, b in CELL_EDGE_VERTICES:
            (ia, ja), (ib, jb) = corner[a], corner[b]
            for k in range(1, p):
                idx.append((ia + (ib - ia) * k // p, ja + (jb - ja) * k // p))
        for j in range(1, p):
            for i in range(1, p):
                idx.append((i, j))
        return idx

    def line_dofs(self, line: int) -> List[int]:
        """Local indices of the interior DoFs of a local edge, in edge direction."""
        start = 4 + line * self.dofs_per_line
        return list(range(start, start + self.dofs_per_line))

    @property
    def quad_dofs(self) -> List[int]:
        start = 4 + 4 * self.dofs_per_line
        return list(range(start, start + self.dofs_per_quad))

    @property
    def unit_support_points(self) -> FloatArray:
        idx = np.asarray(self.tensor_indices, dtype=np.float64)
        return idx / self.degree

    def shape_values(self, points: FloatArray) -> FloatArray:
        """Shape (dofs_per_cell, n_points)."""
        pts = np.atleast_2d(points)
        vx, _ = lagrange_basis_1d(self.nodes_1d, pts[:, 0])
        vy, _ = lagrange_basis_1d(self.nodes_1d, pts[:, 1])
        return np.array([vx[i] * vy[j] for i, j in self.tensor_indices])

    def shape_grads(self, points: FloatArray) -> FloatArray:
        """Reference gradients, shape (dofs_per_cell, n_points, 2)."""
        pts = np.atleast_2d(points)
        vx, dx = lagrange_basis_1d(self.nodes_1d, pts[:, 0])
        vy, dy = lagrange_basis_1d(self.nodes_1d, pts[:, 1])
        out = np.empty((self.dofs_per_cell, pts.shape[0], 2))
        for k, (i, j) in enumerate(self.tensor_indices):
            out[k, :, 0] = dx[i] * vy[j]
            out[k, :, 1] = vx[i] * dy[j]
        return out

    def __repr__(self) -> str:
        return f"FE_Q({self.degree})"


def bilinear_map(coords: FloatArray, points: FloatArray) -> Tuple[FloatArray, FloatArray]:
    """Map reference points through the Q1 mapping of a cell.

    Parameters
    ----------
    coords : (4, 2) vertex coordinates in lexicographic order.
    points : (n, 2) reference points.

    Returns
    -------
    x : (n, 2) physical points
    jac : (n, 2, 2) with jac[q, a, b] = d x_a / d xi_b
    """
    pts = np.atleast_2d(points)
    xi, eta = pts[:, 0], pts[:, 1]
    n = np.stack([(1 - xi) * (1 - eta), xi * (1 - eta), (1 - xi) * eta, xi * eta])
    dn_dxi = np.stack([-(1 - eta), (1 - eta), -eta, eta])
    dn_deta = np.stack([-(1 - xi), -xi, (1 - xi), xi])
    x = n.T @ coords
    jac = np.empty((pts.shape[0], 2, 2))
    jac[:, :, 0] = dn_dxi.T @ coords
    jac[:, :, 1] = dn_deta.T @ coords
    return x, jac


class FEValues:
    """Per-cell values of shape functions, gradients and JxW at quadrature points."""

    def __init__(self, fe: FE_Q, quadrature: QGauss) -> None:
        self.fe = fe
        self.quadrature = quadrature
        self.ref_points = quadrature.points
        self.ref_weights = quadrature.weights
        self.shape_values = fe.shape_values(self.ref_points)
        self._ref_grads = fe.shape_grads(self.ref_points)
        self.quadrature_points: FloatArray = np.empty((0, 2))
        self.JxW: FloatArray = np.empty(0)
        self.shape_grads: FloatArray = np.empty((fe.dofs_per_cell, 0, 2))

    @property
    def n_quadrature_points(self) -> int:
        return self.quadrature.size

    @property
    def dofs_per_cell(self) -> int:
        return self.fe.dofs_per_cell

    def reinit(self, coords: FloatArray) -> "FEValues":
        x, jac = bilinear_map(np.asarray(coords, dtype=np.float64), self.ref_points)
        det = jac[:, 0, 0] * jac[:, 1, 1] - jac[:, 0, 1] * jac[:, 1, 0]
        if np.any(det <= 0.0):
            raise ValueError(f"Degenerate or inverted cell: min det(J)={det.min():.3e}.")
        inv_t = np.empty_like(jac)
        inv_t[:, 0, 0] = jac[:, 1, 1] / det
        inv_t[:, 0, 1] = -jac[:, 1, 0] / det
        inv_t[:, 1, 0] = -jac[:, 0, 1] / det
        inv_t[:, 1, 1] = jac[:, 0, 0] / det
        self.quadrature_points = x
        self.JxW = det * self.ref_weights
        self.shape_grads = np.einsum("qab,kqb->kqa", inv_t, self._ref_grads)
        return self
