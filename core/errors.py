"""
Exception hierarchy for the shell CDR solver.

Every error below is fatal for a run:
- ConfigurationError: bad parameters, malformed expressions, constraint cycles.
- ConvergenceError: the Krylov solve did not reach its tolerance within the cap.
- OutputError: a checkpoint file could not be written.
"""

from __future__ import annotations

from typing import Optional


class CDRError(RuntimeError):
    """Base class for all solver errors."""


class ConfigurationError(CDRError, ValueError):
    """Raised at construction time, before any partitioning or assembly."""


class ConvergenceError(CDRError):
    """Raised when the linear solve of a time step fails to converge."""

    def __init__(
        self,
        message: str,
        *,
        step_index: Optional[int] = None,
        n_iter: Optional[int] = None,
        residual_norm: Optional[float] = None,
        reason: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.step_index = step_index
        self.n_iter = n_iter
        self.residual_norm = residual_norm
        self.reason = reason


class OutputError(CDRError):
    """Raised when writing a checkpoint fragment or manifest fails."""
