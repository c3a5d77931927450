"""
Output helpers:
- build_patches: subdivide owned cells and sample the FE field on them.
- write_vtu_fragment: one rank's patches as a pyvista UnstructuredGrid (.vtu).
- write_pvtu_manifest / write_pvd: the small XML records that tie the
  fragments of a checkpoint and the checkpoints of a run together.
- CheckpointWriter: per-checkpoint orchestration (all ranks write fragments,
  rank 0 writes the manifest and refreshes the time-series collection).
- ScalarsWriter: per-step diagnostics to CSV on rank 0.

Every file is written to a temp name and moved into place with os.replace;
OSError surfaces as OutputError. A failure on one rank is shared with all
ranks, so either every rank continues or every rank raises.
"""

from __future__ import annotations

import csv
import logging
import os
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple

import numpy as np
import pyvista as pv

from core.dofs import DoFHandler
from core.errors import OutputError
from core.fe import bilinear_map
from core.types import FloatArray, IntArray
from parallel.collectives import allreduce_sum

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from solvers.timestepper import StepDiagnostics

logger = logging.getLogger(__name__)


def fragment_filename(basename: str, step_index: int, rank: int) -> str:
    return f"{basename}-{step_index}.{rank:04d}.vtu"


def manifest_filename(basename: str, step_index: int) -> str:
    return f"{basename}-{step_index}.pvtu"


def collection_filename(basename: str) -> str:
    return f"{basename}.pvd"


# ============================================================================
# Patches
# ============================================================================


@dataclass(slots=True)
class PatchData:
    points: FloatArray  # (n_points, 2)
    values: FloatArray  # (n_points,)
    connectivity: IntArray  # (n_subcells, 4), VTK quad order
    subdomain: FloatArray  # (n_subcells,)

    @property
    def n_points(self) -> int:
        return int(self.points.shape[0])

    @property
    def n_cells(self) -> int:
        return int(self.connectivity.shape[0])


def _patch_reference(n_sub: int) -> Tuple[FloatArray, IntArray]:
    s = np.linspace(0.0, 1.0, n_sub + 1)
    xi, eta = np.meshgrid(s, s, indexing="xy")
    ref = np.column_stack([xi.ravel(), eta.ravel()])
    quads = []
    for j in range(n_sub):
        for i in range(n_sub):
            p0 = j * (n_sub + 1) + i
            quads.append((p0, p0 + 1, p0 + n_sub + 2, p0 + n_sub + 1))
    return ref, np.asarray(quads, dtype=np.int64)


def build_patches(
    dof_handler: DoFHandler,
    cells: Sequence[int],
    cell_values: FloatArray,
    patch_level: int,
    subdomain_id: int,
) -> PatchData:
    """
    Sample the field on a (patch_level x patch_level) subdivision of each cell.

    ``cell_values`` holds the local DoF values of every cell in ``cells``,
    shape (len(cells), dofs_per_cell). A patch level of 0 is treated as 1.
    """
    n_sub = max(int(patch_level), 1)
    ref, quads = _patch_reference(n_sub)
    shape = dof_handler.fe.shape_values(ref)  # (dofs_per_cell, n_ref)
    grid = dof_handler.grid
    n_ref = ref.shape[0]

    pts: List[FloatArray] = []
    vals: List[FloatArray] = []
    conn: List[IntArray] = []
    for n, k in enumerate(cells):
        x, _ = bilinear_map(grid.cell_coords(dof_handler.active_cells[int(k)]), ref)
        pts.append(x)
        vals.append(shape.T @ np.asarray(cell_values[n], dtype=np.float64))
        conn.append(quads + n * n_ref)

    if pts:
        points = np.concatenate(pts)
        values = np.concatenate(vals)
        connectivity = np.concatenate(conn)
    else:
        points = np.empty((0, 2))
        values = np.empty(0)
        connectivity = np.empty((0, 4), dtype=np.int64)
    subdomain = np.full(connectivity.shape[0], float(subdomain_id))
    return PatchData(points=points, values=values, connectivity=connectivity, subdomain=subdomain)


# ============================================================================
# Files
# ============================================================================


def _atomic_write(path: Path, write: Callable[[Path], None]) -> Path:
    """Run ``write`` on a temp name next to ``path``, then move it into place."""
    path = Path(path)
    tmp_path = path.with_name(f"{path.stem}.tmp{path.suffix}")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        write(tmp_path)
        os.replace(tmp_path, path)
    except (OSError, RuntimeError) as exc:
        raise OutputError(f"Failed to write {path}: {exc}") from exc
    return path


def _raise_collectively(comm, error: Optional[OutputError], what: str) -> None:
    """Raise on every rank if any rank failed; the failing rank keeps its own error."""
    n_failed = int(allreduce_sum(comm, np.array([0.0 if error is None else 1.0]))[0])
    if error is not None:
        raise error
    if n_failed:
        raise OutputError(f"{what} failed on {n_failed} rank(s).")


def patches_to_grid(patches: PatchData, field_name: str = "u") -> pv.UnstructuredGrid:
    points3 = np.zeros((patches.n_points, 3))
    points3[:, :2] = patches.points
    if patches.n_cells:
        cells = np.hstack([np.full((patches.n_cells, 1), 4, dtype=np.int64), patches.connectivity]).ravel()
        cell_types = np.full(patches.n_cells, pv.CellType.QUAD, dtype=np.uint8)
        grid = pv.UnstructuredGrid(cells, cell_types, points3)
    else:
        grid = pv.UnstructuredGrid()
        grid.points = points3
    grid.point_data[field_name] = np.asarray(patches.values, dtype=np.float64)
    grid.cell_data["subdomain"] = np.asarray(patches.subdomain, dtype=np.float64)
    return grid


def write_vtu_fragment(path: Path, patches: PatchData, field_name: str = "u") -> Path:
    grid = patches_to_grid(patches, field_name)
    return _atomic_write(path, lambda tmp: grid.save(tmp))


def _vtk_root(kind: str) -> Tuple[ET.Element, ET.Element]:
    root = ET.Element("VTKFile", {"type": kind, "version": "0.1", "byte_order": "LittleEndian"})
    body = ET.SubElement(root, kind)
    return root, body


def _write_xml(root: ET.Element, path: Path) -> Path:
    tree = ET.ElementTree(root)
    ET.indent(tree)
    return _atomic_write(path, lambda tmp: tree.write(tmp, encoding="utf-8", xml_declaration=True))


def write_pvtu_manifest(path: Path, pieces: Sequence[str], field_name: str = "u") -> Path:
    """Manifest listing the per-rank fragment filenames (relative to its own directory)."""
    root, grid = _vtk_root("PUnstructuredGrid")
    grid.set("GhostLevel", "0")
    ppd = ET.SubElement(grid, "PPointData", {"Scalars": field_name})
    ET.SubElement(ppd, "PDataArray", {"type": "Float64", "Name": field_name})
    pcd = ET.SubElement(grid, "PCellData", {"Scalars": "subdomain"})
    ET.SubElement(pcd, "PDataArray", {"type": "Float64", "Name": "subdomain"})
    ppoints = ET.SubElement(grid, "PPoints")
    ET.SubElement(ppoints, "PDataArray", {"type": "Float64", "NumberOfComponents": "3"})
    for source in pieces:
        ET.SubElement(grid, "Piece", {"Source": str(source)})
    return _write_xml(root, path)


def write_pvd(path: Path, entries: Sequence[Tuple[float, str]]) -> Path:
    root, collection = _vtk_root("Collection")
    for t, fname in entries:
        ET.SubElement(
            collection,
            "DataSet",
            {"timestep": repr(float(t)), "group": "", "part": "0", "file": str(fname)},
        )
    return _write_xml(root, path)


def read_manifest_pieces(path: Path) -> List[str]:
    """Fragment filenames listed in a .pvtu manifest."""
    root = ET.parse(Path(path)).getroot()
    return [p.get("Source") for p in root.iter("Piece")]


# ============================================================================
# Checkpoints
# ============================================================================


class CheckpointWriter:
    """Writes one checkpoint per call; collective over ``comm``."""

    def __init__(
        self,
        out_dir: Path | str,
        *,
        comm=None,
        basename: str = "solution",
        field_name: str = "u",
        write_pvd: bool = True,
    ) -> None:
        self.out_dir = Path(out_dir)
        self.comm = comm
        self.rank = 0 if comm is None else int(comm.getRank())
        self.size = 1 if comm is None else int(comm.getSize())
        self.basename = basename
        self.field_name = field_name
        self.write_pvd = bool(write_pvd)
        self.entries: List[Tuple[float, str]] = []

    def write(
        self,
        step_index: int,
        time: float,
        dof_handler: DoFHandler,
        cells: Sequence[int],
        cell_values: FloatArray,
        patch_level: int,
    ) -> Path:
        """
        Write this rank's fragment, synchronize, then (rank 0) the manifest.

        Both stages end in a synchronization that reports failures on any
        rank, so either every rank returns or every rank raises OutputError.
        """
        frag = self.out_dir / fragment_filename(self.basename, step_index, self.rank)
        error: Optional[OutputError] = None
        try:
            patches = build_patches(dof_handler, cells, cell_values, patch_level, self.rank)
            write_vtu_fragment(frag, patches, self.field_name)
        except OutputError as exc:
            error = exc
        _raise_collectively(self.comm, error, f"Checkpoint {step_index}: fragment write")

        manifest = self.out_dir / manifest_filename(self.basename, step_index)
        if self.rank == 0:
            pieces = [fragment_filename(self.basename, step_index, r) for r in range(self.size)]
            try:
                write_pvtu_manifest(manifest, pieces, self.field_name)
                self.entries.append((float(time), manifest.name))
                if self.write_pvd:
                    write_pvd(self.out_dir / collection_filename(self.basename), self.entries)
            except OutputError as exc:
                error = exc
        _raise_collectively(self.comm, error, f"Checkpoint {step_index}: manifest write")

        if self.rank == 0:
            logger.info("checkpoint %d (t=%.6g): %s [%d pieces]", step_index, time, manifest.name, self.size)
        return manifest


# ============================================================================
# Scalars
# ============================================================================


class ScalarsWriter:
    """Per-step diagnostics CSV, written by rank 0; collective over ``comm``."""

    fields = (
        "step",
        "t",
        "dt",
        "ksp_its",
        "residual_norm",
        "rel_residual",
        "rhs_norm",
        "u_min",
        "u_max",
        "checkpoint",
    )

    def __init__(
        self,
        out_dir: Path | str,
        *,
        comm=None,
        enabled: bool = True,
        filename: str = "scalars.csv",
    ) -> None:
        self.comm = comm
        self.rank = 0 if comm is None else int(comm.getRank())
        self.enabled = bool(enabled)
        self.out_path = Path(out_dir) / filename
        self._fh = None
        self._writer = None
        if self.enabled:
            error: Optional[OutputError] = None
            if self.rank == 0:
                try:
                    self._open()
                except OutputError as exc:
                    error = exc
            _raise_collectively(self.comm, error, f"Opening {self.out_path.name}")

    def _open(self) -> None:
        try:
            self.out_path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = self.out_path.open("w", newline="")
            self._writer = csv.writer(self._fh)
            self._writer.writerow(self.fields)
            self._fh.flush()
        except OSError as exc:
            raise OutputError(f"Failed to open {self.out_path}: {exc}") from exc

    def _write_row(self, diag: "StepDiagnostics") -> None:
        if self._writer is None or self._fh is None:
            self._open()
        row = [
            diag.step_index,
            f"{diag.time:.12g}",
            f"{diag.dt:.12g}",
            diag.n_iter,
            f"{diag.residual_norm:.6e}",
            f"{diag.rel_residual:.6e}",
            f"{diag.rhs_norm:.6e}",
            f"{diag.u_min:.6e}",
            f"{diag.u_max:.6e}",
            "" if diag.checkpoint is None else Path(diag.checkpoint).name,
        ]
        try:
            self._writer.writerow(row)
            self._fh.flush()
        except OSError as exc:
            raise OutputError(f"Failed to write {self.out_path}: {exc}") from exc

    def write(self, diag: "StepDiagnostics") -> None:
        if not self.enabled:
            return
        error: Optional[OutputError] = None
        if self.rank == 0:
            try:
                self._write_row(diag)
            except OutputError as exc:
                error = exc
        _raise_collectively(self.comm, error, f"Step {diag.step_index}: {self.out_path.name} write")

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            finally:
                self._fh = None
                self._writer = None
