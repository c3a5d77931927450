"""
Shell mesh, FE_Q element and DoF enumeration.

Tests:
1. Coarse shell: 8 cells, vertices on the two circles, positive Jacobians
2. Global refinement keeps new boundary vertices on the circles
3. DoF counts for Q1/Q2 match entity counts
4. Boundary DoFs lie on the inner or outer circle
5. Shape functions are nodal and sum to one; FEValues integrates the area
"""

from __future__ import annotations

import numpy as np
import pytest

from core.dofs import DoFHandler
from core.fe import FE_Q, FEValues, QGauss, bilinear_map
from core.grid import ShellGrid, build_shell_grid, hyper_shell
from core.types import Parameters


def _shell(refinement: int, r0: float = 1.0, r1: float = 2.0) -> ShellGrid:
    return build_shell_grid(Parameters(inner_radius=r0, outer_radius=r1, refinement_level=refinement))


def test_coarse_shell_topology():
    grid = hyper_shell(1.0, 2.0)
    assert grid.n_active_cells == 8
    radii = np.linalg.norm(grid.vertices, axis=1)
    assert np.allclose(np.sort(radii), [1.0] * 8 + [2.0] * 8)
    assert len(grid.boundary_edges_with_id(0)) == 16
    assert grid.hanging_edges() == []


@pytest.mark.parametrize("refinement", [0, 1, 2])
def test_active_cell_count_and_orientation(refinement):
    grid = _shell(refinement)
    assert grid.n_active_cells == 8 * 4**refinement
    fev = FEValues(FE_Q(1), QGauss(2))
    for c in grid.active_cells():
        fev.reinit(grid.cell_coords(c))
        assert np.all(fev.JxW > 0.0)


def test_refined_boundary_vertices_stay_on_circles():
    grid = _shell(2, r0=0.5, r1=1.5)
    for edge in grid.boundary_edges_with_id(0):
        r = np.linalg.norm(grid.vertices[list(edge)], axis=1)
        assert np.allclose(r, r[0])
        assert r[0] == pytest.approx(0.5) or r[0] == pytest.approx(1.5)


@pytest.mark.parametrize(
    "refinement, degree, expected",
    [
        (0, 1, 16),  # 2 rings x 8 angles
        (1, 1, 48),  # 3 rings x 16 angles
        (0, 2, 48),  # 16 vertices + 24 edges + 8 interiors
        (1, 2, 160),  # 48 vertices + 80 edges + 32 interiors
    ],
)
def test_dof_counts(refinement, degree, expected):
    dh = DoFHandler(_shell(refinement), FE_Q(degree))
    assert dh.n_dofs == expected
    assert dh.cell_dofs.shape == (8 * 4**refinement, (degree + 1) ** 2)
    assert np.array_equal(np.unique(dh.cell_dofs), np.arange(expected))


def test_shared_dofs_have_matching_support_points():
    grid = _shell(1)
    dh = DoFHandler(grid, FE_Q(2))
    unit = dh.fe.unit_support_points
    for k, c in enumerate(dh.active_cells):
        phys, _ = bilinear_map(grid.cell_coords(c), unit)
        assert np.allclose(phys, dh.support_points[dh.cell_dofs[k]])


def test_boundary_dofs_on_circles():
    dh = DoFHandler(_shell(1), FE_Q(1))
    bdofs = dh.boundary_dofs(0)
    assert bdofs.size == 32
    r = np.linalg.norm(dh.support_points[bdofs], axis=1)
    assert np.all(np.isclose(r, 1.0) | np.isclose(r, 2.0))
    assert dh.boundary_dofs(7).size == 0


def test_renumber_is_consistent():
    dh = DoFHandler(_shell(0), FE_Q(2))
    pts_before = dh.support_points.copy()
    cells_before = dh.cell_dofs.copy()
    perm = np.arange(dh.n_dofs)[::-1].copy()
    dh.renumber(perm)
    assert np.array_equal(dh.cell_dofs, perm[cells_before])
    assert np.allclose(dh.support_points[perm], pts_before)
    with pytest.raises(ValueError):
        dh.renumber(np.zeros(dh.n_dofs, dtype=np.int64))


@pytest.mark.parametrize("degree", [1, 2, 3])
def test_shape_functions_nodal_and_partition_of_unity(degree):
    fe = FE_Q(degree)
    vals = fe.shape_values(fe.unit_support_points)
    assert np.allclose(vals, np.eye(fe.dofs_per_cell))
    q = QGauss(3)
    assert np.allclose(fe.shape_values(q.points).sum(axis=0), 1.0)
    assert np.allclose(fe.shape_grads(q.points).sum(axis=0), 0.0)


def test_fevalues_integrates_shell_area():
    # Bilinear cells under-resolve the circles; the error shrinks with refinement.
    exact = np.pi * (2.0**2 - 1.0**2)
    errors = []
    for refinement in (1, 2, 3):
        grid = _shell(refinement)
        fev = FEValues(FE_Q(1), QGauss(2))
        area = sum(fev.reinit(grid.cell_coords(c)).JxW.sum() for c in grid.active_cells())
        errors.append(abs(area - exact))
    assert errors[0] > errors[1] > errors[2]
    assert errors[2] / exact < 5.0e-3


def test_reinit_rejects_inverted_cell():
    fev = FEValues(FE_Q(1), QGauss(2))
    coords = np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]])  # mirrored
    with pytest.raises(ValueError):
        fev.reinit(coords)


def test_local_refinement_creates_hanging_edges():
    grid = _shell(1)
    grid.refine_cells([grid.active_cells()[0]])
    assert grid.n_active_cells == 32 - 1 + 4
    assert len(grid.hanging_edges()) == 3
    with pytest.raises(ValueError):
        grid.refine_cells([0])  # coarse cell, not active
