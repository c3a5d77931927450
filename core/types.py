"""
Strongly typed containers for the run configuration.

Conventions (law of the land):
- Spatial dimension is 2; points are arrays of shape (n, 2) in (x, y).
- The shell occupies inner_radius < |x| < outer_radius, centered at the origin.
- Boundary indicator 0 covers both the inner and the outer circle.
- time_step = (stop_time - start_time) / n_time_steps, fixed for the run.
- Checkpoints are written when step_index % save_interval == 0 (step 0 included).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from core.errors import ConfigurationError

FloatArray = NDArray[np.float64]
IntArray = NDArray[np.int64]

SUPPORTED_DIMS: Tuple[int, ...] = (2,)


@dataclass(frozen=True, slots=True)
class Parameters:
    """Immutable run parameters of the convection-diffusion-reaction problem.

    Attributes
    ----------
    inner_radius, outer_radius : float
        Radii of the shell domain.
    diffusion_coefficient : float
        Diffusivity eps in front of the Laplacian.
    convection_field : str or tuple of str
        Two expressions of (x, y), either as ``"-y,x"`` or ``("-y", "x")``.
    reaction_coefficient : float
        Linear reaction rate r.
    forcing : str
        Expression of (x, y, t).
    time_dependent : bool
        Keep the mass (time derivative) term in the operator.
    refinement_level : int
        Number of global refinements applied to the coarse shell.
    fe_order : int
        Polynomial order of the continuous Lagrange element.
    start_time, stop_time : float
        Simulated time interval.
    n_time_steps : int
        Number of fixed-size steps.
    save_interval : int
        Checkpoint cadence in steps.
    patch_level : int
        Output subdivisions per cell (0 is treated as 1).
    dim : int
        Spatial dimension; only 2 is supported.
    """

    inner_radius: float = 1.0
    outer_radius: float = 2.0
    diffusion_coefficient: float = 1.0e-3
    convection_field: Union[str, Tuple[str, str]] = "-y,x"
    reaction_coefficient: float = 1.0e-4
    forcing: str = "exp(-2*t)*exp(-40*(x - 1.5)^6)*exp(-40*y^6)"
    time_dependent: bool = True
    refinement_level: int = 3
    fe_order: int = 2
    start_time: float = 0.0
    stop_time: float = 2.0
    n_time_steps: int = 200
    save_interval: int = 1
    patch_level: int = 3
    dim: int = 2

    def __post_init__(self) -> None:
        if int(self.dim) not in SUPPORTED_DIMS:
            raise ConfigurationError(
                f"Unsupported spatial dimension dim={self.dim}; supported={list(SUPPORTED_DIMS)}."
            )
        if not float(self.stop_time) > float(self.start_time):
            raise ConfigurationError(
                f"stop_time must exceed start_time, got start={self.start_time}, stop={self.stop_time}."
            )
        if int(self.n_time_steps) <= 0:
            raise ConfigurationError(f"n_time_steps must be positive, got {self.n_time_steps}.")
        if int(self.save_interval) <= 0:
            raise ConfigurationError(f"save_interval must be positive, got {self.save_interval}.")
        if float(self.inner_radius) <= 0.0:
            raise ConfigurationError(f"inner_radius must be positive, got {self.inner_radius}.")
        if float(self.outer_radius) <= float(self.inner_radius):
            raise ConfigurationError(
                f"outer_radius ({self.outer_radius}) must exceed inner_radius ({self.inner_radius})."
            )
        if int(self.fe_order) < 1:
            raise ConfigurationError(f"fe_order must be >= 1, got {self.fe_order}.")
        if int(self.refinement_level) < 0:
            raise ConfigurationError(f"refinement_level must be >= 0, got {self.refinement_level}.")
        if int(self.patch_level) < 0:
            raise ConfigurationError(f"patch_level must be >= 0, got {self.patch_level}.")
        if float(self.diffusion_coefficient) < 0.0:
            raise ConfigurationError(
                f"diffusion_coefficient must be non-negative, got {self.diffusion_coefficient}."
            )
        if float(self.reaction_coefficient) < 0.0:
            raise ConfigurationError(
                f"reaction_coefficient must be non-negative, got {self.reaction_coefficient}."
            )
        if not str(self.forcing).strip():
            raise ConfigurationError("forcing expression must not be empty.")

    @property
    def time_step(self) -> float:
        return (float(self.stop_time) - float(self.start_time)) / int(self.n_time_steps)

    @property
    def quadrature_order(self) -> int:
        """Gauss points per direction, sized for the element order."""
        return 3 * (2 + int(self.fe_order)) // 2


@dataclass(slots=True)
class CaseMeta:
    """Metadata for the case block."""

    id: str
    title: str = ""
    notes: Optional[str] = None


@dataclass(slots=True)
class CaseOutput:
    """Output options (YAML output block)."""

    out_dir: Path = field(default_factory=lambda: Path("."))
    basename: str = "solution"
    write_pvd: bool = True
    write_scalars: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.out_dir, Path):
            raise TypeError("out_dir must be pathlib.Path (loader must convert str -> Path).")
        if not self.basename:
            raise ConfigurationError("output basename must not be empty.")


@dataclass(slots=True)
class CaseSolver:
    """Krylov solver options (YAML solver block)."""

    ksp_type: str = "gmres"
    pc_type: str = "gamg"
    restart: int = 30
    rel_tol: float = 1.0e-6
    max_it: Optional[int] = None
    options_prefix: str = "cdr_"
    monitor: bool = False

    def __post_init__(self) -> None:
        if not 0.0 < float(self.rel_tol) < 1.0:
            raise ConfigurationError(f"solver rel_tol must lie in (0, 1), got {self.rel_tol}.")
        if int(self.restart) <= 0:
            raise ConfigurationError(f"solver restart must be positive, got {self.restart}.")
        if self.max_it is not None and int(self.max_it) <= 0:
            raise ConfigurationError(f"solver max_it must be positive, got {self.max_it}.")


@dataclass(slots=True)
class CaseConfig:
    """Top-level configuration: physics parameters plus run plumbing."""

    case: CaseMeta
    parameters: Parameters
    output: CaseOutput = field(default_factory=CaseOutput)
    solver: CaseSolver = field(default_factory=CaseSolver)
