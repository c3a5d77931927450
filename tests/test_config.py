"""
YAML case loading and construction-time validation.

Tests:
1. The shipped case file loads into CaseConfig with the expected values
2. Relative out_dir resolves against the case file directory
3. Unknown sections/keys, bad values, dim != 2 raise ConfigurationError
4. Malformed expressions are rejected when the problem is constructed
"""

from __future__ import annotations

import shutil
import tempfile
import textwrap
from pathlib import Path

import pytest

from core.config import case_config_from_mapping, load_case_config, load_parameters, parameters_from_mapping
from core.errors import ConfigurationError
from core.types import Parameters
from solvers.timestepper import CDRProblem, ProblemState

CASES_DIR = Path(__file__).resolve().parent.parent / "cases"


@pytest.fixture
def temp_case_dir():
    temp_dir = tempfile.mkdtemp(prefix="test_config_")
    yield Path(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


def _write_case(directory: Path, text: str, name: str = "case.yaml") -> Path:
    path = directory / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def test_shipped_case_loads():
    cfg = load_case_config(CASES_DIR / "shell_cdr.yaml")
    p = cfg.parameters
    assert cfg.case.id == "shell_cdr"
    assert (p.inner_radius, p.outer_radius) == (1.0, 2.0)
    assert p.convection_field == "-y,x"
    assert p.fe_order == 2 and p.refinement_level == 3
    assert p.n_time_steps == 200
    assert p.time_step == pytest.approx(0.01)
    assert p.quadrature_order == 6
    assert cfg.solver.pc_type == "gamg"
    assert cfg.solver.restart == 30
    assert cfg.output.out_dir == (CASES_DIR / "../out/shell_cdr").resolve()


def test_minimal_case_uses_defaults(temp_case_dir):
    path = _write_case(
        temp_case_dir,
        """
        case:
          id: tiny
        discretization:
          refinement_level: 1
          fe_order: 1
        output:
          out_dir: results
          save_interval: 2
        solver:
          rel_tol: 1e-8
          max_it: 50
        """,
    )
    cfg = load_case_config(path)
    assert cfg.parameters == Parameters(refinement_level=1, fe_order=1, save_interval=2)
    assert cfg.output.out_dir == (temp_case_dir / "results").resolve()
    assert cfg.output.basename == "solution"
    assert cfg.solver.rel_tol == pytest.approx(1.0e-8)
    assert cfg.solver.max_it == 50
    assert load_parameters(path).save_interval == 2


def test_convection_list_and_bool_strings():
    params = parameters_from_mapping(
        {
            "physics": {"convection_field": ["-y", "x"], "time_dependent": "no"},
            "time": {"n_time_steps": 10.0},
        }
    )
    assert params.convection_field == ("-y", "x")
    assert params.time_dependent is False
    assert params.n_time_steps == 10


@pytest.mark.parametrize(
    "raw",
    [
        {"case": {"id": "x"}, "mesh": {}},
        {"case": {"id": "x"}, "physics": {"viscosity": 1.0}},
        {"case": {"id": "x"}, "solver": {"tolerance": 1.0e-6}},
        {"case": {"title": "no id"}},
        {"case": {"id": "x"}, "geometry": {"dim": 3}},
        {"case": {"id": "x"}, "geometry": {"inner_radius": 2.0, "outer_radius": 1.0}},
        {"case": {"id": "x"}, "time": {"n_time_steps": 2.5}},
        {"case": {"id": "x"}, "time": {"start_time": 1.0, "stop_time": 1.0}},
        {"case": {"id": "x"}, "output": {"save_interval": 0}},
        {"case": {"id": "x"}, "solver": {"rel_tol": 2.0}},
        {"case": {"id": "x"}, "physics": "not a mapping"},
    ],
)
def test_invalid_mappings_raise(raw):
    with pytest.raises(ConfigurationError):
        case_config_from_mapping(raw)


def test_unreadable_or_malformed_file(temp_case_dir):
    with pytest.raises(ConfigurationError):
        load_case_config(temp_case_dir / "missing.yaml")
    bad = _write_case(temp_case_dir, "case: [unclosed\n")
    with pytest.raises(ConfigurationError):
        load_case_config(bad)


@pytest.mark.parametrize(
    "overrides",
    [
        {"forcing": "exp(-2*t"},
        {"forcing": "x + q"},
        {"convection_field": "x"},
        {"convection_field": "-y*t,x"},
    ],
)
def test_bad_expressions_fail_at_construction(overrides):
    params = Parameters(refinement_level=0, fe_order=1, **overrides)
    with pytest.raises(ConfigurationError):
        CDRProblem(params)


def test_construction_does_no_mesh_work():
    problem = CDRProblem(Parameters(refinement_level=0, fe_order=1))
    assert problem.state is ProblemState.UNINITIALIZED
    assert problem.dof_handler is None
    assert problem.time == 0.0
