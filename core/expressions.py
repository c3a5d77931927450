"""
Symbolic expression evaluation for the convection field and forcing term.

Expressions are written in muParser style (``^`` for powers, ``pi`` as a
named constant), parsed once with sympy and compiled to numpy callables.
The only mutable state of an ExpressionFunction is its time.
"""

from __future__ import annotations

import io
import keyword
import logging
import math
import tokenize
from tokenize import TokenError
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import sympy
from sympy.core.function import AppliedUndef
from sympy.parsing.sympy_parser import convert_xor, parse_expr, standard_transformations

from core.errors import ConfigurationError
from core.types import FloatArray

logger = logging.getLogger(__name__)

_TRANSFORMATIONS = standard_transformations + (convert_xor,)

DEFAULT_CONSTANTS: Mapping[str, float] = {"pi": math.pi}

_ALLOWED_OPS = frozenset({"+", "-", "*", "/", "**", "^", "%", "(", ")", ","})
_NON_FINITE = (sympy.zoo, sympy.nan, sympy.oo, -sympy.oo)


def split_convection_field(field: str | Sequence[str]) -> List[str]:
    """Split ``"a,b"`` at the first comma into its two components."""
    if isinstance(field, str):
        head, sep, tail = field.partition(",")
        if not sep:
            raise ConfigurationError(
                f"convection_field must hold two comma-separated expressions, got {field!r}."
            )
        parts = [head.strip(), tail.strip()]
    else:
        parts = [str(p).strip() for p in field]
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(f"convection_field must have exactly two components, got {field!r}.")
    return parts


def _parse_variables(variables: str | Sequence[str]) -> List[str]:
    if isinstance(variables, str):
        names = [v.strip() for v in variables.split(",")]
    else:
        names = [str(v).strip() for v in variables]
    if not names or not all(names):
        raise ConfigurationError(f"Invalid variable list {variables!r}.")
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Duplicate variable names in {variables!r}.")
    return names


class ExpressionFunction:
    """Vector-valued function of position (and optionally time) from expressions.

    Parameters
    ----------
    variables : str or sequence of str
        Free variables, e.g. ``"x,y"`` or ``"x,y,t"``. When ``time_dependent``
        is True the last variable is time.
    expressions : str or sequence of str
        One expression per component.
    constants : mapping, optional
        Named numeric constants substituted before compilation.
    time_dependent : bool
        Whether the last variable is the time.
    initial_time : float
        Starting value of the internal time.
    """

    def __init__(
        self,
        variables: str | Sequence[str],
        expressions: str | Sequence[str],
        constants: Optional[Mapping[str, float]] = None,
        *,
        time_dependent: bool = False,
        initial_time: float = 0.0,
    ) -> None:
        names = _parse_variables(variables)
        if time_dependent and len(names) < 2:
            raise ConfigurationError(
                f"time-dependent function needs spatial variables plus time, got {names}."
            )
        self.variables: Tuple[str, ...] = tuple(names)
        self.time_dependent = bool(time_dependent)
        self.space_variables: Tuple[str, ...] = tuple(names[:-1] if time_dependent else names)
        self.constants = dict(DEFAULT_CONSTANTS if constants is None else constants)

        if isinstance(expressions, str):
            expressions = [expressions]
        self.expressions: Tuple[str, ...] = tuple(str(e) for e in expressions)
        if not self.expressions:
            raise ConfigurationError("At least one expression is required.")

        symbols = {name: sympy.Symbol(name, real=True) for name in self.variables}
        local_dict = dict(symbols)
        for cname, cval in self.constants.items():
            if cname in symbols:
                raise ConfigurationError(f"Constant {cname!r} shadows a variable.")
            local_dict[cname] = sympy.Float(float(cval))

        self._exprs = []
        self._funcs: List[Callable] = []
        ordered = [symbols[name] for name in self.variables]
        for text in self.expressions:
            expr = self._parse(text, local_dict)
            unknown = sorted(str(s) for s in expr.free_symbols if str(s) not in symbols)
            if unknown:
                raise ConfigurationError(
                    f"Expression {text!r} uses undeclared symbols {unknown}; variables={list(self.variables)}."
                )
            self._exprs.append(expr)
            self._funcs.append(self._compile(text, ordered, expr))

        self._time = float(initial_time)

    @staticmethod
    def _check_tokens(text: str) -> None:
        """Arithmetic only: no keywords, strings, attribute access or subscripts."""
        try:
            tokens = list(tokenize.generate_tokens(io.StringIO(text).readline))
        except (SyntaxError, TokenError) as exc:
            raise ConfigurationError(f"Malformed expression {text!r}: {exc}") from exc
        for tok in tokens:
            if tok.type == tokenize.STRING:
                raise ConfigurationError(f"Expression {text!r} contains a string literal.")
            if tok.type == tokenize.NAME and (keyword.iskeyword(tok.string) or tok.string.startswith("_")):
                raise ConfigurationError(f"Expression {text!r} uses the keyword {tok.string!r}.")
            if tok.type == tokenize.OP and tok.string not in _ALLOWED_OPS:
                raise ConfigurationError(f"Expression {text!r} uses the operator {tok.string!r}.")

    @staticmethod
    def _parse(text: str, local_dict: Mapping[str, object]):
        if not text.strip():
            raise ConfigurationError("Empty expression.")
        ExpressionFunction._check_tokens(text)
        try:
            expr = parse_expr(text, local_dict=dict(local_dict), transformations=_TRANSFORMATIONS)
        except Exception as exc:
            raise ConfigurationError(f"Malformed expression {text!r}: {exc}") from exc
        if not isinstance(expr, sympy.Expr):
            raise ConfigurationError(f"Expression {text!r} does not evaluate to a scalar.")
        undefined = sorted(str(f.func) for f in expr.atoms(AppliedUndef))
        if undefined:
            raise ConfigurationError(f"Expression {text!r} calls unknown functions {undefined}.")
        if any(expr.has(v) for v in _NON_FINITE):
            raise ConfigurationError(f"Expression {text!r} is not finite.")
        return expr

    @staticmethod
    def _compile(text: str, ordered: Sequence[sympy.Symbol], expr) -> Callable:
        """lambdify, then evaluate once at a sample point so failures surface here."""
        sample = [np.full(1, 0.5) for _ in ordered]
        try:
            func = sympy.lambdify(ordered, expr, modules="numpy")
            with np.errstate(all="ignore"):
                np.asarray(func(*sample), dtype=np.float64)
        except Exception as exc:
            raise ConfigurationError(f"Expression {text!r} cannot be evaluated: {exc}") from exc
        return func

    @property
    def n_components(self) -> int:
        return len(self._funcs)

    @property
    def time(self) -> float:
        return self._time

    def set_time(self, t: float) -> None:
        self._time = float(t)

    def advance_time(self, dt: float) -> None:
        self._time += float(dt)

    def _arguments(self, points: FloatArray) -> List[FloatArray]:
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        if pts.shape[1] != len(self.space_variables):
            raise ValueError(
                f"points must have shape (n, {len(self.space_variables)}), got {pts.shape}."
            )
        args = [pts[:, k] for k in range(pts.shape[1])]
        if self.time_dependent:
            args.append(np.full(pts.shape[0], self._time))
        return args

    def value(self, points: FloatArray, component: int = 0) -> FloatArray:
        """Evaluate one component at points of shape (n, dim); returns shape (n,)."""
        args = self._arguments(points)
        out = self._funcs[component](*args)
        return np.broadcast_to(np.asarray(out, dtype=np.float64), args[0].shape).copy()

    def vector_value(self, points: FloatArray) -> FloatArray:
        """Evaluate every component; returns shape (n_components, n)."""
        args = self._arguments(points)
        n = args[0].shape[0]
        out = np.empty((self.n_components, n), dtype=np.float64)
        for k, func in enumerate(self._funcs):
            out[k] = np.broadcast_to(np.asarray(func(*args), dtype=np.float64), (n,))
        return out

    def __repr__(self) -> str:
        return (
            f"ExpressionFunction(variables={','.join(self.variables)!r}, "
            f"expressions={list(self.expressions)!r}, t={self._time:g})"
        )


def build_convection_function(field: str | Sequence[str]) -> ExpressionFunction:
    return ExpressionFunction("x,y", split_convection_field(field), time_dependent=False)


def build_forcing_function(expression: str, start_time: float) -> ExpressionFunction:
    return ExpressionFunction(
        "x,y,t",
        [expression],
        time_dependent=True,
        initial_time=start_time,
    )
