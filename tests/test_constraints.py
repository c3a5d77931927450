"""
Constraint set: closing, distribution, expansion, and the two constraint sources.

Tests:
1. Chains are resolved at close; cycles are configuration errors
2. distribute is idempotent
3. Hanging-node constraints reproduce linear fields exactly (Q1, Q2, Q3)
4. Dirichlet lines skip DoFs already constrained
5. expand builds the local-to-global transform
6. merge keeps existing lines; build_constraints merges both sources
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.constraints import (
    ConstraintSet,
    build_constraints,
    make_dirichlet_constraints,
    make_hanging_node_constraints,
)
from core.dofs import DoFHandler
from core.errors import ConfigurationError
from core.fe import FE_Q
from core.grid import ShellGrid, build_shell_grid, edge_key
from core.types import Parameters


def _two_squares(refine_left: bool = True) -> ShellGrid:
    vertices = [(0.0, 0.0), (1.0, 0.0), (0.0, 1.0), (1.0, 1.0), (2.0, 0.0), (2.0, 1.0)]
    cells = [(0, 1, 2, 3), (1, 4, 3, 5)]
    boundary = {
        edge_key(0, 1): 0,
        edge_key(1, 4): 0,
        edge_key(2, 3): 0,
        edge_key(3, 5): 0,
        edge_key(0, 2): 0,
        edge_key(4, 5): 0,
    }
    grid = ShellGrid(vertices, cells, boundary)
    if refine_left:
        grid.refine_cells([0])
    return grid


def _linear(points: np.ndarray) -> np.ndarray:
    return 1.0 + 2.0 * points[:, 0] + 3.0 * points[:, 1]


def test_close_resolves_chains():
    cs = ConstraintSet()
    cs.add_entries(0, [(1, 0.5), (2, 0.5)])
    cs.add_entries(1, [(3, 1.0)])
    cs.set_inhomogeneity(1, 2.0)
    cs.close()
    line = cs.line(0)
    assert dict(line.entries) == pytest.approx({2: 0.5, 3: 0.5})
    assert line.inhomogeneity == pytest.approx(1.0)
    assert cs.is_closed
    with pytest.raises(RuntimeError):
        cs.add_line(7)


def test_cycle_is_configuration_error():
    cs = ConstraintSet()
    cs.add_entry(0, 1, 1.0)
    cs.add_entry(1, 2, 1.0)
    cs.add_entry(2, 0, 1.0)
    with pytest.raises(ConfigurationError):
        cs.close()


def test_self_reference_rejected():
    cs = ConstraintSet()
    with pytest.raises(ConfigurationError):
        cs.add_entry(4, 4, 1.0)


def test_distribute_is_idempotent():
    cs = ConstraintSet()
    cs.add_entries(0, [(1, 0.25), (2, 0.75)])
    cs.add_line(3)
    cs.set_inhomogeneity(3, -1.5)
    cs.close()
    values = np.array([9.0, 4.0, 8.0, 9.0, 1.0])
    once = cs.distribute(values.copy())
    twice = cs.distribute(once.copy())
    assert np.allclose(once, [7.0, 4.0, 8.0, -1.5, 1.0])
    assert np.array_equal(once, twice)


def test_distribute_with_positions_and_rows():
    cs = ConstraintSet()
    cs.add_entries(10, [(20, 1.0)])
    cs.add_entries(30, [(20, 2.0)])
    cs.close()
    positions = np.full(40, -1)
    positions[[10, 20, 30]] = [0, 1, 2]
    local = np.array([0.0, 5.0, 0.0])
    cs.distribute(local, positions=positions, rows=[10])
    assert local.tolist() == [5.0, 5.0, 0.0]

    positions[20] = -1
    with pytest.raises(KeyError):
        cs.distribute(local, positions=positions, rows=[30])


@pytest.mark.parametrize("degree", [1, 2, 3])
def test_hanging_nodes_reproduce_linear_field(degree):
    grid = _two_squares()
    assert grid.hanging_edges() == [edge_key(1, 3)]
    dh = DoFHandler(grid, FE_Q(degree))
    cs = make_hanging_node_constraints(dh)
    cs.close()
    # midpoint vertex plus (p-1) interior DoFs on each child edge
    assert len(cs) == 1 + 2 * (degree - 1)

    exact = _linear(dh.support_points)
    values = exact.copy()
    values[cs.constrained_dofs()] = 123.0
    cs.distribute(values)
    assert np.allclose(values, exact)


def test_hanging_masters_are_coarse_edge_dofs():
    dh = DoFHandler(_two_squares(), FE_Q(2))
    cs = make_hanging_node_constraints(dh)
    cs.close()
    coarse = set(dh.edge_dofs_with_vertices(edge_key(1, 3)).tolist())
    masters = set(cs.masters_of(cs.constrained_dofs()).tolist())
    assert masters <= coarse


def test_dirichlet_skips_constrained_dofs():
    dh = DoFHandler(_two_squares(), FE_Q(1))
    bdofs = dh.boundary_dofs(0)
    interior = np.setdiff1d(np.arange(dh.n_dofs), bdofs)
    cs = ConstraintSet()
    cs.add_entries(int(bdofs[0]), [(int(interior[0]), 1.0)])
    make_dirichlet_constraints(dh, boundary_id=0, value=2.0, constraints=cs)
    cs.close()
    assert len(cs) == bdofs.size
    assert cs.line(bdofs[0]).entries == [(int(interior[0]), 1.0)]
    assert cs.line(bdofs[0]).inhomogeneity == 0.0
    assert cs.line(bdofs[1]).inhomogeneity == 2.0


def test_dirichlet_callable_sets_inhomogeneities():
    dh = DoFHandler(build_shell_grid(Parameters(refinement_level=0)), FE_Q(1))
    cs = make_dirichlet_constraints(dh, value=lambda pts: np.linalg.norm(pts, axis=1))
    cs.close()
    assert cs.has_inhomogeneities
    for dof in cs.constrained_dofs():
        r = np.linalg.norm(dh.support_points[dof])
        assert cs.line(dof).inhomogeneity == pytest.approx(r)
        assert cs.line(dof).entries == []


def test_build_constraints_on_shell_is_pure_dirichlet():
    dh = DoFHandler(build_shell_grid(Parameters(refinement_level=1)), FE_Q(2))
    cs = build_constraints(dh)
    assert cs.is_closed
    assert np.array_equal(cs.constrained_dofs(), dh.boundary_dofs(0))
    assert not cs.has_inhomogeneities


def test_merge_keeps_existing_lines():
    first = ConstraintSet()
    first.add_entries(3, [(1, 1.0)])
    second = ConstraintSet()
    second.add_line(3)
    second.set_inhomogeneity(3, 5.0)
    second.add_line(4)
    second.set_inhomogeneity(4, 2.0)
    first.merge(second)
    assert len(first) == 2
    assert first.line(3).entries == [(1, 1.0)]
    assert first.line(3).inhomogeneity == 0.0
    assert first.line(4).inhomogeneity == 2.0

    # the merged copy does not alias the source line
    second.add_entry(4, 0, 0.5)
    assert first.line(4).entries == []

    first.close()
    with pytest.raises(RuntimeError):
        first.merge(second)


def test_build_constraints_merges_hanging_and_dirichlet():
    grid = build_shell_grid(Parameters(refinement_level=1))
    grid.refine_cells([grid.active_cells()[0]])
    dh = DoFHandler(grid, FE_Q(2))
    hanging = make_hanging_node_constraints(dh)
    dirichlet = make_dirichlet_constraints(dh)
    cs = build_constraints(dh)

    assert len(hanging) > 0
    expected = set(hanging.constrained_dofs().tolist()) | set(dirichlet.constrained_dofs().tolist())
    assert set(cs.constrained_dofs().tolist()) == expected
    assert cs.is_closed
    for dof in hanging.constrained_dofs():
        assert cs.line(dof).entries
        assert not set(m for m, _ in cs.line(dof).entries) & set(cs.constrained_dofs().tolist())


def test_expand_transform():
    cs = ConstraintSet()
    cs.add_entries(0, [(5, 0.5), (9, 0.5)])
    cs.set_inhomogeneity(0, 1.0)
    cs.close()

    exp = cs.expand([5, 0, 7])
    assert exp.targets.tolist() == [5, 9, 7]
    assert np.allclose(exp.transform, [[1.0, 0.0, 0.0], [0.5, 0.5, 0.0], [0.0, 0.0, 1.0]])
    assert exp.constrained_local.tolist() == [1]
    assert exp.constrained_global.tolist() == [0]
    assert np.allclose(exp.inhomogeneities, [0.0, 1.0, 0.0])

    plain = cs.expand([1, 2, 3])
    assert plain.transform is None
    assert plain.targets.tolist() == [1, 2, 3]


def test_restrict_keeps_requested_lines():
    cs = ConstraintSet()
    cs.add_entries(0, [(1, 1.0)])
    cs.add_line(2)
    cs.close()
    sub = cs.restrict([0, 5])
    assert sub.is_closed
    assert 0 in sub and 2 not in sub
