"""
Driver runs under mpiexec (subprocess); skipped when no MPI launcher is found.

Tests:
1. A 3-rank run lists one fragment per rank in every manifest, and the
   fragments together carry the same field as a 1-rank run
2. A manifest write failure on rank 0 stops every rank with a non-zero exit
"""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
import textwrap
from pathlib import Path

import numpy as np
import pytest

pytest.importorskip("petsc4py")
pytest.importorskip("mpi4py")

import pyvista as pv

from output.writers import fragment_filename, read_manifest_pieces

ROOT = Path(__file__).resolve().parent.parent
MPIEXEC = shutil.which("mpiexec") or shutil.which("mpirun")

pytestmark = pytest.mark.skipif(MPIEXEC is None, reason="no mpiexec/mpirun on PATH")

N_STEPS = 3

CASE = f"""
case:
  id: mpi_check
discretization:
  refinement_level: 2
  fe_order: 2
time:
  start_time: 0.0
  stop_time: 0.3
  n_time_steps: {N_STEPS}
output:
  patch_level: 2
solver:
  rel_tol: 1.0e-10
"""


@pytest.fixture
def temp_case_dir():
    temp_dir = tempfile.mkdtemp(prefix="test_mpi_runs_")
    path = Path(temp_dir)
    (path / "case.yaml").write_text(textwrap.dedent(CASE), encoding="utf-8")
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


def _run(n_ranks: int, case: Path, out_dir: Path, timeout: float = 300.0) -> subprocess.CompletedProcess:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(ROOT), env.get("PYTHONPATH", "")) if p)
    # Open MPI refuses root and small hosts without these; other launchers ignore them.
    env.setdefault("OMPI_ALLOW_RUN_AS_ROOT", "1")
    env.setdefault("OMPI_ALLOW_RUN_AS_ROOT_CONFIRM", "1")
    env.setdefault("OMPI_MCA_rmaps_base_oversubscribe", "1")
    env.setdefault("PRTE_MCA_rmaps_default_mapping_policy", ":oversubscribe")
    cmd = [
        MPIEXEC,
        "-n",
        str(n_ranks),
        sys.executable,
        "-m",
        "driver.run_cdr_case",
        "--case",
        str(case),
        "--out-dir",
        str(out_dir),
    ]
    return subprocess.run(cmd, cwd=ROOT, env=env, capture_output=True, text=True, timeout=timeout)


def _checkpoint_field(out_dir: Path, step: int):
    """Points and values of every fragment of a checkpoint, in a rank-independent order."""
    pieces = read_manifest_pieces(out_dir / f"solution-{step}.pvtu")
    points, values = [], []
    for name in pieces:
        grid = pv.read(out_dir / name)
        points.append(np.asarray(grid.points)[:, :2])
        values.append(np.asarray(grid.point_data["u"]))
    points = np.concatenate(points)
    values = np.concatenate(values)
    order = np.lexsort((values, np.round(points[:, 1], 9), np.round(points[:, 0], 9)))
    return pieces, points[order], values[order]


def test_parallel_run_matches_serial(temp_case_dir):
    case = temp_case_dir / "case.yaml"
    serial_dir = temp_case_dir / "serial"
    parallel_dir = temp_case_dir / "parallel"

    serial = _run(1, case, serial_dir)
    assert serial.returncode == 0, serial.stderr
    parallel = _run(3, case, parallel_dir)
    assert parallel.returncode == 0, parallel.stderr

    for step in range(N_STEPS):
        pieces_1, points_1, u_1 = _checkpoint_field(serial_dir, step)
        pieces_3, points_3, u_3 = _checkpoint_field(parallel_dir, step)
        assert pieces_1 == [fragment_filename("solution", step, 0)]
        assert pieces_3 == [fragment_filename("solution", step, r) for r in range(3)]
        assert np.allclose(points_1, points_3, rtol=0.0, atol=1.0e-12)
        scale = np.abs(u_1).max()
        assert scale > 0.0
        assert np.abs(u_3 - u_1).max() <= 1.0e-6 * scale

    assert (parallel_dir / "solution.pvd").exists()
    assert (parallel_dir / "scalars.csv").exists()


def test_manifest_failure_stops_every_rank(temp_case_dir):
    out_dir = temp_case_dir / "out"
    (out_dir / "solution-0.pvtu").mkdir(parents=True)
    result = _run(2, temp_case_dir / "case.yaml", out_dir, timeout=120.0)
    log = result.stdout + result.stderr
    assert result.returncode != 0
    assert "OutputError" in log
    for rank in range(2):
        assert f"[rank {rank}/2] Run failed" in log
