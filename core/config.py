"""
YAML case loader.

Layout of a case file (every section and key optional except ``case.id``):

    case:           {id, title, notes}
    geometry:       {inner_radius, outer_radius, dim}
    physics:        {diffusion_coefficient, convection_field, reaction_coefficient,
                     forcing, time_dependent}
    discretization: {refinement_level, fe_order}
    time:           {start_time, stop_time, n_time_steps}
    output:         {out_dir, basename, save_interval, patch_level, write_pvd, write_scalars}
    solver:         {ksp_type, pc_type, restart, rel_tol, max_it, options_prefix, monitor}

Relative ``output.out_dir`` is resolved against the YAML file's directory.
Unknown sections or keys are configuration errors.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from core.errors import ConfigurationError
from core.types import CaseConfig, CaseMeta, CaseOutput, CaseSolver, Parameters

_PARAMETER_SECTIONS: Dict[str, tuple[str, ...]] = {
    "geometry": ("inner_radius", "outer_radius", "dim"),
    "physics": (
        "diffusion_coefficient",
        "convection_field",
        "reaction_coefficient",
        "forcing",
        "time_dependent",
    ),
    "discretization": ("refinement_level", "fe_order"),
    "time": ("start_time", "stop_time", "n_time_steps"),
}
_OUTPUT_PARAMETER_KEYS = ("save_interval", "patch_level")
_OUTPUT_KEYS = ("out_dir", "basename", "write_pvd", "write_scalars")
_SOLVER_KEYS = tuple(f.name for f in dataclasses.fields(CaseSolver))
_SECTIONS = ("case", "output", "solver", *_PARAMETER_SECTIONS)

_PARAMETER_TYPES = {f.name: f.default for f in dataclasses.fields(Parameters)}


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _resolve_path(base: Path, value: str | Path) -> Path:
    """Resolve a possibly relative path against base."""
    path = Path(value)
    return path if path.is_absolute() else (base / path).resolve()


def _section(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Section '{name}' must be a mapping, got {type(value).__name__}.")
    return dict(value)


def _check_keys(section: str, values: Mapping[str, Any], allowed) -> None:
    unknown = set(values) - set(allowed)
    if unknown:
        raise ConfigurationError(f"Unsupported keys in '{section}': {sorted(unknown)}.")


def _coerce_parameter(name: str, value: Any) -> Any:
    """Cast a YAML scalar to the type of the Parameters default."""
    default = _PARAMETER_TYPES[name]
    if name == "convection_field":
        if isinstance(value, (list, tuple)):
            return tuple(str(v) for v in value)
        return str(value)
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(default, int):
            if isinstance(value, float) and not value.is_integer():
                raise ValueError("not an integer")
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for '{name}': {value!r}.") from exc


def parameters_from_mapping(raw: Mapping[str, Any]) -> Parameters:
    """Build Parameters from the parameter-bearing sections of a case mapping."""
    values: Dict[str, Any] = {}
    for section, keys in _PARAMETER_SECTIONS.items():
        sec = _section(raw, section)
        _check_keys(section, sec, keys)
        for key, val in sec.items():
            values[key] = _coerce_parameter(key, val)
    out = _section(raw, "output")
    for key in _OUTPUT_PARAMETER_KEYS:
        if key in out:
            values[key] = _coerce_parameter(key, out[key])
    return Parameters(**values)


def case_config_from_mapping(raw: Mapping[str, Any], base: Optional[Path] = None) -> CaseConfig:
    if not isinstance(raw, Mapping):
        raise ConfigurationError("Case file must contain a mapping at the top level.")
    _check_keys("<root>", raw, _SECTIONS)
    base = Path(".").resolve() if base is None else base

    case_raw = _section(raw, "case")
    _check_keys("case", case_raw, ("id", "title", "notes"))
    if "id" not in case_raw:
        raise ConfigurationError("Missing required key 'case.id'.")
    case = CaseMeta(
        id=str(case_raw["id"]),
        title=str(case_raw.get("title", "")),
        notes=case_raw.get("notes"),
    )

    params = parameters_from_mapping(raw)

    out_raw = _section(raw, "output")
    _check_keys("output", out_raw, _OUTPUT_KEYS + _OUTPUT_PARAMETER_KEYS)
    output = CaseOutput(
        out_dir=_resolve_path(base, out_raw.get("out_dir", ".")),
        basename=str(out_raw.get("basename", "solution")),
        write_pvd=bool(out_raw.get("write_pvd", True)),
        write_scalars=bool(out_raw.get("write_scalars", True)),
    )

    solver_raw = _section(raw, "solver")
    _check_keys("solver", solver_raw, _SOLVER_KEYS)
    try:
        if "rel_tol" in solver_raw:
            solver_raw["rel_tol"] = float(solver_raw["rel_tol"])
        for key in ("restart", "max_it"):
            if solver_raw.get(key) is not None:
                solver_raw[key] = int(solver_raw[key])
        solver = CaseSolver(**solver_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid solver section: {exc}") from exc

    return CaseConfig(case=case, parameters=params, output=output, solver=solver)


def load_case_config(path: str | Path) -> CaseConfig:
    """Load a YAML case file into CaseConfig."""
    cfg_file = Path(path).expanduser().resolve()
    try:
        text = _read_yaml_text(cfg_file)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read case file {cfg_file}: {exc}") from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Malformed YAML in {cfg_file}: {exc}") from exc
    return case_config_from_mapping(raw or {}, base=cfg_file.parent)


def load_parameters(path: str | Path) -> Parameters:
    return load_case_config(path).parameters
