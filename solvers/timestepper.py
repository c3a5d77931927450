"""
Fixed-step backward-Euler driver of the distributed CDR problem.

Lifecycle (out-of-order calls raise RuntimeError):

    UNINITIALIZED --setup_geometry--> GEOMETRY_SET
                  --setup_matrices--> MATRICES_READY
                  --step/time_iterate--> STEPPING --(n_time_steps done)--> DONE

Scope:
- Mesh, DoFs, partition and constraints are built once; the system matrix is
  assembled and factored into a KSP once.
- Each step assembles the right-hand side at the new time level, solves,
  distributes constraints on owned rows and refreshes ghosts.
- Checkpoints are written when step_index % save_interval == 0, after the
  solve of that step succeeded.
- The initial field is zero.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from time import perf_counter
from typing import Any, Dict, List, Optional, Union

import numpy as np

from assembly.build_system_petsc import SystemAssembler
from assembly.constraints import ConstraintSet, build_constraints
from core.dofs import DoFHandler
from core.expressions import build_convection_function, build_forcing_function
from core.fe import FE_Q
from core.grid import build_shell_grid
from core.layout_dist import LayoutDistributed, partition_dofs
from core.types import CaseConfig, CaseMeta, FloatArray, Parameters
from output.writers import CheckpointWriter, ScalarsWriter
from parallel.collectives import allreduce_min_max
from parallel.ghosted import GhostedVector
from solvers.petsc_linear import KrylovSolver

logger = logging.getLogger(__name__)


class ProblemState(Enum):
    UNINITIALIZED = "uninitialized"
    GEOMETRY_SET = "geometry_set"
    MATRICES_READY = "matrices_ready"
    STEPPING = "stepping"
    DONE = "done"


@dataclass(frozen=True, slots=True)
class StepContext:
    """Clock of one step: ``time`` is the new time level t_{k+1}."""

    step_index: int
    time: float
    dt: float


@dataclass(slots=True)
class StepDiagnostics:
    """Diagnostics for a single timestep."""

    step_index: int
    time: float
    dt: float

    # Linear solve info
    n_iter: int
    residual_norm: float
    rel_residual: float
    rhs_norm: float
    method: str

    # Solution range (global)
    u_min: float
    u_max: float

    checkpoint: Optional[Path] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunSummary:
    case_id: str
    n_steps: int
    final_time: float
    n_dofs: int
    n_active_cells: int
    n_ranks: int
    steps: List[StepDiagnostics] = field(default_factory=list)
    checkpoints: List[Path] = field(default_factory=list)
    wall_time: float = 0.0


class CDRProblem:
    def __init__(
        self,
        config: Union[CaseConfig, Parameters],
        *,
        comm=None,
        out_dir: Optional[Union[str, Path]] = None,
    ) -> None:
        if isinstance(config, Parameters):
            config = CaseConfig(case=CaseMeta(id="cdr"), parameters=config)
        self.cfg = config
        self.params = config.parameters
        self.comm = comm
        self.rank = 0 if comm is None else int(comm.getRank())
        self.size = 1 if comm is None else int(comm.getSize())
        self.out_dir = Path(out_dir) if out_dir is not None else Path(config.output.out_dir)

        # Expressions are parsed before any mesh work.
        self.convection = build_convection_function(self.params.convection_field)
        self.forcing = build_forcing_function(self.params.forcing, self.params.start_time)

        self.state = ProblemState.UNINITIALIZED
        self.time = float(self.params.start_time)
        self.steps_done = 0

        self.dof_handler: Optional[DoFHandler] = None
        self.layout: Optional[LayoutDistributed] = None
        self.constraints: Optional[ConstraintSet] = None
        self.local_constraints: Optional[ConstraintSet] = None
        self.solution: Optional[GhostedVector] = None
        self.assembler: Optional[SystemAssembler] = None
        self.system_matrix = None
        self.system_rhs = None
        self._x = None
        self.solver: Optional[KrylovSolver] = None
        self.checkpoints: Optional[CheckpointWriter] = None
        self.scalars: Optional[ScalarsWriter] = None
        self.history: List[StepDiagnostics] = []

    def _require(self, op: str, *states: ProblemState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.name for s in states)
            raise RuntimeError(f"{op}() requires state {allowed}; current state is {self.state.name}.")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def setup_geometry(self) -> None:
        """Mesh, DoFs, partition, constraints and the ghosted solution vector."""
        self._require("setup_geometry", ProblemState.UNINITIALIZED)
        p = self.params
        grid = build_shell_grid(p)
        dof_handler = DoFHandler(grid, FE_Q(p.fe_order))
        partitions = partition_dofs(dof_handler, self.size)
        layout = LayoutDistributed.build(self.comm, dof_handler, partitions)

        constraints = build_constraints(dof_handler, boundary_id=0, value=0.0)
        constrained = constraints.constrained_dofs()
        owned_constrained = constrained[layout.is_owned(constrained)]
        layout.add_relevant(constraints.masters_of(owned_constrained))

        self.dof_handler = dof_handler
        self.layout = layout
        self.constraints = constraints
        self.local_constraints = constraints.restrict(layout.relevant_dofs)
        self.solution = GhostedVector(layout, name="u")

        logger.info(
            "geometry: %d active cells, %d DoFs (Q%d), %d constraints, %d rank(s)",
            dof_handler.n_active_cells,
            dof_handler.n_dofs,
            p.fe_order,
            len(constraints),
            self.size,
        )
        self.state = ProblemState.GEOMETRY_SET

    def setup_matrices(self) -> None:
        """Assemble the (time-independent) system matrix and build the Krylov solver."""
        self._require("setup_matrices", ProblemState.GEOMETRY_SET)
        assembler = SystemAssembler(
            self.params,
            self.dof_handler,
            self.layout,
            self.constraints,
            self.convection,
        )
        A = assembler.create_matrix()
        assembler.assemble_matrix(A)
        self.assembler = assembler
        self.system_matrix = A
        self.system_rhs = assembler.create_vector()
        self._x = self.system_rhs.duplicate()
        self.solver = KrylovSolver(A, self.cfg.solver)

        out = self.cfg.output
        self.checkpoints = CheckpointWriter(
            self.out_dir,
            comm=self.comm,
            basename=out.basename,
            write_pvd=out.write_pvd,
        )
        self.scalars = ScalarsWriter(self.out_dir, comm=self.comm, enabled=out.write_scalars)
        logger.info(
            "matrices: dt=%.6g, %d steps, solver=%s, max_it=%d",
            self.params.time_step,
            self.params.n_time_steps,
            self.solver.method,
            self.solver.max_it,
        )
        self.state = ProblemState.MATRICES_READY

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------
    def next_context(self) -> StepContext:
        p = self.params
        k = self.steps_done
        return StepContext(step_index=k, time=p.start_time + (k + 1) * p.time_step, dt=p.time_step)

    def owned_cell_values(self) -> FloatArray:
        """Local DoF values of every owned cell, shape (n_owned_cells, dofs_per_cell)."""
        dofs = self.dof_handler.cell_dofs[self.layout.owned_cells]
        return self.solution.relevant()[self.layout.to_local(dofs)]

    def _solution_range(self) -> tuple[float, float]:
        owned = self.solution.owned
        lo = float(owned.min()) if owned.size else np.inf
        hi = float(owned.max()) if owned.size else -np.inf
        return allreduce_min_max(self.comm, lo, hi)

    def step(self) -> StepDiagnostics:
        """Advance one step; raises ConvergenceError without touching the solution or output."""
        self._require("step", ProblemState.MATRICES_READY, ProblemState.STEPPING)
        self.state = ProblemState.STEPPING
        p = self.params
        ctx = self.next_context()

        self.forcing.set_time(ctx.time)
        self.assembler.assemble_rhs(self.system_rhs, self.solution, self.forcing)
        result = self.solver.solve(self.system_rhs, self._x, step_index=ctx.step_index)

        self.solution.copy_owned_from(self._x)
        self.solution.update_ghosts()
        self.solution.distribute_constraints(self.local_constraints)
        self.time = ctx.time
        self.steps_done += 1

        u_min, u_max = self._solution_range()
        diag = StepDiagnostics(
            step_index=ctx.step_index,
            time=ctx.time,
            dt=ctx.dt,
            n_iter=result.n_iter,
            residual_norm=result.residual_norm,
            rel_residual=result.rel_residual,
            rhs_norm=result.rhs_norm,
            method=result.method,
            u_min=u_min,
            u_max=u_max,
        )
        if ctx.step_index % p.save_interval == 0:
            diag.checkpoint = self.checkpoints.write(
                ctx.step_index,
                ctx.time,
                self.dof_handler,
                self.layout.owned_cells,
                self.owned_cell_values(),
                p.patch_level,
            )

        self.scalars.write(diag)
        self.history.append(diag)
        logger.info(
            "step %d/%d t=%.6g its=%d res=%.3e u=[%.4e, %.4e]",
            ctx.step_index + 1,
            p.n_time_steps,
            ctx.time,
            result.n_iter,
            result.residual_norm,
            u_min,
            u_max,
        )

        if self.steps_done == p.n_time_steps:
            self.state = ProblemState.DONE
        return diag

    def time_iterate(self) -> RunSummary:
        self._require("time_iterate", ProblemState.MATRICES_READY, ProblemState.STEPPING)
        t0 = perf_counter()
        while self.steps_done < self.params.n_time_steps:
            self.step()
        summary = self.summary()
        summary.wall_time = perf_counter() - t0
        logger.info(
            "done: %d steps, t=%.6g, %d checkpoints, %.2fs",
            summary.n_steps,
            summary.final_time,
            len(summary.checkpoints),
            summary.wall_time,
        )
        return summary

    def summary(self) -> RunSummary:
        return RunSummary(
            case_id=self.cfg.case.id,
            n_steps=self.steps_done,
            final_time=self.time,
            n_dofs=0 if self.dof_handler is None else self.dof_handler.n_dofs,
            n_active_cells=0 if self.dof_handler is None else self.dof_handler.n_active_cells,
            n_ranks=self.size,
            steps=list(self.history),
            checkpoints=[d.checkpoint for d in self.history if d.checkpoint is not None],
        )

    def run(self) -> RunSummary:
        try:
            self.setup_geometry()
            self.setup_matrices()
            return self.time_iterate()
        finally:
            self.close()

    def close(self) -> None:
        """Close output files and release PETSc objects."""
        if self.scalars is not None:
            self.scalars.close()
        if self.solver is not None:
            self.solver.destroy()
            self.solver = None
        for vec in (self.system_rhs, self._x):
            if vec is not None:
                vec.destroy()
        self.system_rhs = None
        self._x = None
        if self.system_matrix is not None:
            self.system_matrix.destroy()
            self.system_matrix = None
        if self.solution is not None:
            self.solution.destroy()
            self.solution = None
