"""
Affine DoF constraints: hanging nodes and Dirichlet boundary values.

A constraint line reads

    x_i = sum_k w_ik * x_k + g_i

Lines are collected from two sources (hanging-node continuity, Dirichlet
values), merged, then closed: chains are substituted until every master is
unconstrained, so applying the set is a single pass and applying it twice
changes nothing. Cycles are configuration errors.

Assembly uses ``expand`` to push a cell's local matrix/vector through the
constraints (constrained rows and columns redistributed onto their masters,
a positive diagonal kept on the constrained rows).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from core.dofs import DoFHandler
from core.errors import ConfigurationError
from core.fe import lagrange_basis_1d
from core.grid import edge_key
from core.types import FloatArray, IntArray

logger = logging.getLogger(__name__)

_WEIGHT_EPS = 1.0e-13


@dataclass(slots=True)
class ConstraintLine:
    entries: List[Tuple[int, float]] = field(default_factory=list)
    inhomogeneity: float = 0.0


@dataclass(slots=True)
class LocalExpansion:
    """How one cell's local DoFs map onto unconstrained global DoFs.

    ``transform`` is None when no local DoF is constrained (identity on ``targets``).
    """

    targets: IntArray
    transform: Optional[FloatArray]
    constrained_local: IntArray
    constrained_global: IntArray
    inhomogeneities: FloatArray


class ConstraintSet:
    def __init__(self) -> None:
        self._lines: Dict[int, ConstraintLine] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------
    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("ConstraintSet is closed; build a new one to add lines.")

    def add_line(self, dof: int) -> None:
        self._check_open()
        self._lines.setdefault(int(dof), ConstraintLine())

    def add_entry(self, dof: int, master: int, weight: float) -> None:
        self._check_open()
        if int(dof) == int(master):
            raise ConfigurationError(f"DoF {dof} cannot be constrained to itself.")
        self._lines.setdefault(int(dof), ConstraintLine()).entries.append((int(master), float(weight)))

    def add_entries(self, dof: int, entries: Iterable[Tuple[int, float]]) -> None:
        self.add_line(dof)
        for master, weight in entries:
            self.add_entry(dof, master, weight)

    def set_inhomogeneity(self, dof: int, value: float) -> None:
        self._check_open()
        self._lines.setdefault(int(dof), ConstraintLine()).inhomogeneity = float(value)

    def merge(self, other: "ConstraintSet") -> None:
        """Add the lines of ``other`` for DoFs not constrained here (existing lines win)."""
        self._check_open()
        for dof, line in other._lines.items():
            if dof in self._lines:
                continue
            self._lines[dof] = ConstraintLine(list(line.entries), line.inhomogeneity)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def __len__(self) -> int:
        return len(self._lines)

    def __contains__(self, dof: int) -> bool:
        return int(dof) in self._lines

    def is_constrained(self, dof: int) -> bool:
        return int(dof) in self._lines

    @property
    def is_closed(self) -> bool:
        return self._closed

    def line(self, dof: int) -> ConstraintLine:
        return self._lines[int(dof)]

    def constrained_dofs(self) -> IntArray:
        return np.array(sorted(self._lines), dtype=np.int64)

    @property
    def has_inhomogeneities(self) -> bool:
        return any(line.inhomogeneity != 0.0 for line in self._lines.values())

    def masters_of(self, dofs: Iterable[int]) -> IntArray:
        out = set()
        for d in dofs:
            line = self._lines.get(int(d))
            if line is not None:
                out.update(m for m, _ in line.entries)
        return np.array(sorted(out), dtype=np.int64)

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------
    def close(self) -> None:
        """Resolve chains so every master is unconstrained; detect cycles."""
        if self._closed:
            return
        resolved: Dict[int, ConstraintLine] = {}
        visiting: set = set()

        def resolve(dof: int) -> ConstraintLine:
            done = resolved.get(dof)
            if done is not None:
                return done
            if dof in visiting:
                raise ConfigurationError(f"Cyclic constraint chain through DoF {dof}.")
            visiting.add(dof)
            line = self._lines[dof]
            coeffs: Dict[int, float] = {}
            inhom = line.inhomogeneity
            for master, weight in line.entries:
                if master in self._lines:
                    sub = resolve(master)
                    for m, w in sub.entries:
                        coeffs[m] = coeffs.get(m, 0.0) + weight * w
                    inhom += weight * sub.inhomogeneity
                else:
                    coeffs[master] = coeffs.get(master, 0.0) + weight
            visiting.discard(dof)
            entries = sorted((m, w) for m, w in coeffs.items() if abs(w) > _WEIGHT_EPS)
            out = ConstraintLine(entries, inhom)
            resolved[dof] = out
            return out

        for dof in sorted(self._lines):
            resolve(dof)
        self._lines = resolved
        self._closed = True
        logger.debug("ConstraintSet closed: %d lines", len(self._lines))

    def restrict(self, dofs: Iterable[int]) -> "ConstraintSet":
        """Closed copy holding only the lines of ``dofs``."""
        if not self._closed:
            raise RuntimeError("restrict() needs a closed ConstraintSet.")
        out = ConstraintSet()
        for d in dofs:
            line = self._lines.get(int(d))
            if line is not None:
                out._lines[int(d)] = ConstraintLine(list(line.entries), line.inhomogeneity)
        out._closed = True
        return out

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    def distribute(
        self,
        values: FloatArray,
        *,
        positions: Optional[IntArray] = None,
        rows: Optional[Iterable[int]] = None,
    ) -> FloatArray:
        """
        Overwrite constrained entries of ``values`` from their masters, in place.

        ``positions`` maps a global DoF to its index in ``values`` (identity when
        None); ``rows`` limits which constrained DoFs are written.
        """
        if not self._closed:
            raise RuntimeError("distribute() needs a closed ConstraintSet.")
        targets = self._lines.keys() if rows is None else (int(r) for r in rows if int(r) in self._lines)

        def pos(g: int) -> int:
            if positions is None:
                return g
            p = int(positions[g])
            if p < 0:
                raise KeyError(f"Master DoF {g} is not available in the target vector.")
            return p

        for dof in targets:
            line = self._lines[dof]
            total = line.inhomogeneity
            for master, weight in line.entries:
                total += weight * values[pos(master)]
            values[pos(dof)] = total
        return values

    def expand(self, dofs: Sequence[int]) -> LocalExpansion:
        dofs = np.asarray(dofs, dtype=np.int64)
        constrained = np.array([int(d) in self._lines for d in dofs], dtype=bool)
        if not constrained.any():
            return LocalExpansion(
                targets=dofs,
                transform=None,
                constrained_local=np.empty(0, dtype=np.int64),
                constrained_global=np.empty(0, dtype=np.int64),
                inhomogeneities=np.zeros(dofs.size),
            )
        col_of: Dict[int, int] = {}
        rows: List[Tuple[int, int, float]] = []
        inhom = np.zeros(dofs.size)
        for k, d in enumerate(dofs):
            d = int(d)
            if constrained[k]:
                line = self._lines[d]
                inhom[k] = line.inhomogeneity
                for master, weight in line.entries:
                    rows.append((k, col_of.setdefault(master, len(col_of)), weight))
            else:
                rows.append((k, col_of.setdefault(d, len(col_of)), 1.0))
        transform = np.zeros((dofs.size, len(col_of)))
        for k, col, weight in rows:
            transform[k, col] += weight
        targets = np.empty(len(col_of), dtype=np.int64)
        for g, col in col_of.items():
            targets[col] = g
        local = np.flatnonzero(constrained).astype(np.int64)
        return LocalExpansion(
            targets=targets,
            transform=transform,
            constrained_local=local,
            constrained_global=dofs[local],
            inhomogeneities=inhom,
        )


# ----------------------------------------------------------------------
# Constraint sources
# ----------------------------------------------------------------------
def _child_edge_positions(lo: int, hi: int, p: int, s0: float, s1: float) -> FloatArray:
    """Edge-parameter positions of a child edge's interior DoFs (low -> high id order).

    The child edge spans [s0, s1] on the coarse edge with vertex ``lo`` at s0.
    """
    k = np.arange(1, p) / p
    if lo < hi:
        return s0 + (s1 - s0) * k
    return s1 - (s1 - s0) * k


def make_hanging_node_constraints(dof_handler: DoFHandler) -> ConstraintSet:
    """Continuity across edges split on one side only.

    Fine-side DoFs on the split edge (its midpoint vertex and the interior
    DoFs of both child edges) are interpolated from the coarse edge DoFs with
    the 1-D Lagrange basis of the element.
    """
    grid = dof_handler.grid
    p = dof_handler.fe.degree
    nodes = dof_handler.fe.nodes_1d
    cs = ConstraintSet()
    for edge in grid.hanging_edges():
        lo, hi = edge
        mid = grid.edge_midpoints[edge]
        coarse = dof_handler.edge_dofs_with_vertices(edge)

        fine: List[Tuple[int, float]] = [(dof_handler.vertex_dof[mid], 0.5)]
        if p > 1:
            left = dof_handler.line_dofs[edge_key(lo, mid)]
            fine.extend(zip(left.tolist(), _child_edge_positions(lo, mid, p, 0.0, 0.5)))
            right = dof_handler.line_dofs[edge_key(mid, hi)]
            fine.extend(zip(right.tolist(), _child_edge_positions(mid, hi, p, 0.5, 1.0)))

        for dof, s in fine:
            weights, _ = lagrange_basis_1d(nodes, np.array([s]))
            entries = [(int(coarse[k]), float(w)) for k, w in enumerate(weights[:, 0]) if abs(w) > _WEIGHT_EPS]
            cs.add_entries(int(dof), entries)
    logger.debug("hanging-node constraints: %d lines on %d split edges", len(cs), len(grid.hanging_edges()))
    return cs


BoundaryValue = Union[float, Callable[[FloatArray], FloatArray]]


def make_dirichlet_constraints(
    dof_handler: DoFHandler,
    boundary_id: int = 0,
    value: BoundaryValue = 0.0,
    constraints: Optional[ConstraintSet] = None,
) -> ConstraintSet:
    """Fix boundary DoFs to ``value``; DoFs already constrained are left alone."""
    cs = ConstraintSet() if constraints is None else constraints
    dofs = dof_handler.boundary_dofs(boundary_id)
    if callable(value):
        vals = np.asarray(value(dof_handler.support_points[dofs]), dtype=np.float64).reshape(-1)
    else:
        vals = np.full(dofs.size, float(value))
    added = 0
    for dof, g in zip(dofs.tolist(), vals.tolist()):
        if cs.is_constrained(dof):
            continue
        cs.add_line(dof)
        if g != 0.0:
            cs.set_inhomogeneity(dof, g)
        added += 1
    logger.debug("Dirichlet constraints: boundary_id=%d, %d lines", boundary_id, added)
    return cs


def build_constraints(dof_handler: DoFHandler, boundary_id: int = 0, value: BoundaryValue = 0.0) -> ConstraintSet:
    """Hanging-node and Dirichlet lines merged (hanging nodes win), then closed."""
    cs = make_hanging_node_constraints(dof_handler)
    cs.merge(make_dirichlet_constraints(dof_handler, boundary_id=boundary_id, value=value))
    cs.close()
    return cs
