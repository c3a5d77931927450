"""
Driver for the shell convection-diffusion-reaction case, serial or under mpiexec.

Responsibilities:
- Split driver flags from PETSc options and bootstrap MPI/PETSc with the latter.
- Load CaseConfig from YAML (or use the built-in defaults).
- Run CDRProblem and log the summary on rank 0.
- Map CDRError to a non-zero exit code.

Examples:
    python -m driver.run_cdr_case --case cases/shell_cdr.yaml
    mpiexec -n 4 python -m driver.run_cdr_case --case cases/shell_cdr.yaml -cdr_ksp_view
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence, Tuple

from core.config import load_case_config
from core.errors import CDRError, ConfigurationError
from core.logging_utils import get_log_level_from_env, parse_level, setup_logging
from core.types import CaseConfig, CaseMeta, Parameters
from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc, world_comm
from solvers.timestepper import CDRProblem

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG = 2


def _build_config(
    case_path: Optional[str],
    *,
    out_dir: Optional[str],
    n_time_steps: Optional[int],
) -> CaseConfig:
    if case_path is not None:
        cfg = load_case_config(case_path)
    else:
        cfg = CaseConfig(case=CaseMeta(id="shell_cdr", title="default shell case"), parameters=Parameters())
    if n_time_steps is not None:
        cfg.parameters = dataclasses.replace(cfg.parameters, n_time_steps=int(n_time_steps))
    if out_dir is not None:
        cfg.output.out_dir = Path(out_dir).expanduser().resolve()
    return cfg


def run_case(
    case_path: Optional[str] = None,
    *,
    out_dir: Optional[str] = None,
    n_time_steps: Optional[int] = None,
    log_level: Optional[str] = None,
    petsc_args: Sequence[str] = (),
) -> int:
    bootstrap_mpi_before_petsc([sys.argv[0], *petsc_args])
    comm = world_comm()
    rank, size = int(comm.getRank()), int(comm.getSize())
    level = parse_level(log_level) if log_level else get_log_level_from_env("INFO")
    setup_logging(rank, level=level, size=size)

    try:
        cfg = _build_config(case_path, out_dir=out_dir, n_time_steps=n_time_steps)
        logger.info(
            "case=%s ranks=%d out_dir=%s",
            cfg.case.id,
            size,
            cfg.output.out_dir,
        )
        problem = CDRProblem(cfg, comm=comm)
        summary = problem.run()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        return EXIT_CONFIG
    except CDRError as exc:
        logger.error("Run failed: %s: %s", type(exc).__name__, exc)
        return EXIT_RUN_FAILED

    logger.info(
        "finished case=%s: %d steps, t_final=%.6g, %d DoFs, %d checkpoints",
        summary.case_id,
        summary.n_steps,
        summary.final_time,
        summary.n_dofs,
        len(summary.checkpoints),
    )
    return EXIT_OK


def _parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(description="Run the shell convection-diffusion-reaction case.")
    parser.add_argument("--case", default=None, help="Path to case YAML file (default: built-in parameters).")
    parser.add_argument("--out-dir", default=None, help="Override output directory.")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Log level name or number (default: CDR_LOG_LEVEL env, then INFO).",
    )
    parser.add_argument("--n-time-steps", type=int, default=None, help="Override the number of time steps.")
    args, unknown = parser.parse_known_args(argv)
    return args, list(unknown)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args, petsc_args = _parse_args(argv)
    # Prevent PETSc from parsing driver-specific CLI flags.
    sys.argv = [sys.argv[0]] + list(petsc_args)
    return run_case(
        args.case,
        out_dir=args.out_dir,
        n_time_steps=args.n_time_steps,
        log_level=args.log_level,
        petsc_args=petsc_args,
    )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
