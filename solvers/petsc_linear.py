"""
PETSc Krylov backend for the constant CDR system matrix.

Design goals:
- KSP/PC are built once per run; the operator does not change between steps.
- GMRES with right preconditioning, so the stopping test sees the true
  (unpreconditioned) residual: ||b - A x|| <= rel_tol * ||b||.
- GAMG levels smooth with SOR-Richardson unless the options database says
  otherwise.
- The iteration cap is the number of DoFs unless the config lowers it.
- A non-converged solve raises ConvergenceError; nothing is silently accepted.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import numpy as np

from core.errors import ConvergenceError
from core.types import CaseSolver
from parallel.mpi_bootstrap import get_petsc
from solvers.linear_types import LinearSolveResult, ksp_reason_name

logger = logging.getLogger(__name__)


def _normalize_prefix(prefix: Optional[str]) -> str:
    prefix = "" if prefix is None else str(prefix)
    if prefix and not prefix.endswith("_"):
        prefix += "_"
    return prefix


# GAMG's default Chebyshev/Jacobi level smoother assumes a symmetric operator;
# advection makes this one nonsymmetric.
_GAMG_LEVEL_DEFAULTS = (
    ("mg_levels_ksp_type", "richardson"),
    ("mg_levels_pc_type", "sor"),
)


def _opts_set_if_absent(opts, key: str, value: Any) -> bool:
    if opts.hasName(key):
        return False
    opts.setValue(key, str(value))
    return True


class KrylovSolver:
    """KSP bound to one assembled matrix."""

    def __init__(self, A, settings: Optional[CaseSolver] = None) -> None:
        PETSc = get_petsc()
        if not isinstance(A, PETSc.Mat):
            raise TypeError(f"Expected PETSc.Mat for A, got {type(A)}")
        m, n = A.getSize()
        if m != n:
            raise ValueError(f"A must be square, got size {(m, n)}")

        self.settings = settings if settings is not None else CaseSolver()
        self.A = A
        self.n_dofs = int(n)
        s = self.settings
        self.max_it = self.n_dofs if s.max_it is None else min(int(s.max_it), self.n_dofs)
        self.max_it = max(self.max_it, 1)

        ksp = PETSc.KSP().create(comm=A.getComm())
        ksp.setOptionsPrefix(_normalize_prefix(s.options_prefix))
        ksp.setOperators(A, A)
        try:
            ksp.setType(s.ksp_type)
        except PETSc.Error:
            logger.warning("Unknown ksp_type='%s', falling back to gmres", s.ksp_type)
            ksp.setType("gmres")
        pc = ksp.getPC()
        try:
            pc.setType(s.pc_type)
        except PETSc.Error:
            logger.warning("Unknown pc_type='%s', falling back to jacobi", s.pc_type)
            pc.setType("jacobi")

        if str(pc.getType()).lower() == "gamg":
            opts = PETSc.Options(ksp.getOptionsPrefix() or "")
            for key, value in _GAMG_LEVEL_DEFAULTS:
                if _opts_set_if_absent(opts, key, value):
                    logger.debug("KrylovSolver: default %s=%s for gamg", key, value)

        ksp.setPCSide(PETSc.PC.Side.RIGHT)
        ksp.setNormType(PETSc.KSP.NormType.UNPRECONDITIONED)
        if str(ksp.getType()).lower() in ("gmres", "fgmres"):
            ksp.setGMRESRestart(int(s.restart))

        if s.monitor:
            def _monitor(ksp_obj, its, rnorm):
                logger.debug("[KSP] its=%d rnorm=%.6e", its, rnorm)

            ksp.setMonitor(_monitor)

        ksp.setFromOptions()
        ksp.setUp()
        self.ksp = ksp
        logger.debug(
            "KrylovSolver: n=%d ksp=%s pc=%s restart=%d rel_tol=%.3e max_it=%d",
            self.n_dofs,
            ksp.getType(),
            pc.getType(),
            s.restart,
            s.rel_tol,
            self.max_it,
        )

    @property
    def method(self) -> str:
        return f"{self.ksp.getType()}+{self.ksp.getPC().getType()}"

    def solve(self, b, x, *, step_index: Optional[int] = None) -> LinearSolveResult:
        """
        Solve A x = b in place of ``x`` (zero initial guess).

        Raises ConvergenceError when KSP reports divergence.
        """
        b_norm = float(b.norm())
        x.set(0.0)
        if b_norm == 0.0:
            return LinearSolveResult(
                converged=True,
                n_iter=0,
                residual_norm=0.0,
                rel_residual=0.0,
                method=self.method,
                rhs_norm=0.0,
                message="zero right-hand side",
            )

        rel_tol = float(self.settings.rel_tol)
        self.ksp.setTolerances(rtol=0.0, atol=rel_tol * b_norm, max_it=self.max_it)
        self.ksp.setInitialGuessNonzero(False)
        self.ksp.solve(b, x)

        reason = int(self.ksp.getConvergedReason())
        n_iter = int(self.ksp.getIterationNumber())
        res_norm = float(self.ksp.getResidualNorm())
        if not np.isfinite(res_norm):
            r = b.duplicate()
            self.A.mult(x, r)
            r.aypx(-1.0, b)
            res_norm = float(r.norm())
            r.destroy()
        rel = res_norm / b_norm
        diag: Dict[str, Any] = {"reason_name": ksp_reason_name(reason), "atol": rel_tol * b_norm}

        if reason < 0:
            logger.error(
                "KSP not converged at step %s: reason=%s its=%d residual=%.3e rel=%.3e (%s)",
                step_index,
                diag["reason_name"],
                n_iter,
                res_norm,
                rel,
                self.method,
            )
            raise ConvergenceError(
                f"Linear solve did not converge (reason={diag['reason_name']}, "
                f"iterations={n_iter}, residual={res_norm:.3e}, target={rel_tol * b_norm:.3e}).",
                step_index=step_index,
                n_iter=n_iter,
                residual_norm=res_norm,
                reason=reason,
            )

        return LinearSolveResult(
            converged=True,
            n_iter=n_iter,
            residual_norm=res_norm,
            rel_residual=rel,
            method=self.method,
            reason=reason,
            rhs_norm=b_norm,
            diag=diag,
        )

    def destroy(self) -> None:
        self.ksp.destroy()
