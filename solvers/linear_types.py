"""
Shared linear solver settings and result types.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import numpy as np


@dataclass
class LinearSolveResult:
    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None


class Orthogonalization(str, Enum):
    CLASSICAL = "classical"
    MODIFIED = "modified"
    CLASSICAL_REORTH = "classical_reorth"


# CADET-style integer codes of the Gram-Schmidt variant
_GS_CODES = {
    0: Orthogonalization.CLASSICAL,
    1: Orthogonalization.MODIFIED,
    2: Orthogonalization.CLASSICAL_REORTH,
}


class KrylovBackend(str, Enum):
    NATIVE = "native"
    SCIPY = "scipy"


class SchurAccumulation(str, Enum):
    REDUCE = "reduce"
    LOCK = "lock"


def _coerce_enum(enum_cls: type[Enum], value: Any, where: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except Exception:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}")
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")


def _coerce_orthogonalization(value: Any) -> Orthogonalization:
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        if int(value) not in _GS_CODES:
            raise ValueError(f"solver.gs_type: invalid value {value!r}, allowed={sorted(_GS_CODES)}")
        return _GS_CODES[int(value)]
    if isinstance(value, str) and value.strip().isdigit():
        return _coerce_orthogonalization(int(value))
    return _coerce_enum(Orthogonalization, value, "solver.gs_type")


def _lookup(d: Mapping[str, Any], key: str):
    if key in d:
        return d[key]
    return d.get(key.upper(), None)


@dataclass(slots=True)
class SolverSettings:
    """
    Settings of the Schur-complement solve.

    ``max_krylov == 0`` means "number of coupling DOFs".
    """

    max_krylov: int = 0
    gs_type: Orthogonalization = Orthogonalization.MODIFIED
    max_restarts: int = 10
    schur_safety: float = 1e-8
    krylov_backend: KrylovBackend = KrylovBackend.NATIVE
    accumulation: SchurAccumulation = SchurAccumulation.REDUCE
    n_threads: int = 1

    @classmethod
    def from_dict(cls, d: Optional[Mapping[str, Any]]) -> "SolverSettings":
        if d is None:
            return cls()
        if not isinstance(d, Mapping):
            raise TypeError(f"solver: expected mapping, got {type(d).__name__}")
        out = cls()

        raw = _lookup(d, "max_krylov")
        if raw is not None:
            try:
                out.max_krylov = int(raw)
            except Exception as exc:
                raise ValueError(f"solver.max_krylov: invalid value {raw!r}") from exc
            if out.max_krylov < 0:
                raise ValueError(f"solver.max_krylov: must be >= 0, got {out.max_krylov}")

        raw = _lookup(d, "gs_type")
        if raw is not None:
            out.gs_type = _coerce_orthogonalization(raw)

        raw = _lookup(d, "max_restarts")
        if raw is not None:
            try:
                out.max_restarts = int(raw)
            except Exception as exc:
                raise ValueError(f"solver.max_restarts: invalid value {raw!r}") from exc
            if out.max_restarts < 0:
                raise ValueError(f"solver.max_restarts: must be >= 0, got {out.max_restarts}")

        raw = _lookup(d, "schur_safety")
        if raw is not None:
            try:
                out.schur_safety = float(raw)
            except Exception as exc:
                raise ValueError(f"solver.schur_safety: invalid value {raw!r}") from exc
            if out.schur_safety <= 0.0:
                raise ValueError(f"solver.schur_safety: must be positive, got {out.schur_safety}")

        raw = _lookup(d, "krylov_backend")
        if raw is not None:
            out.krylov_backend = _coerce_enum(KrylovBackend, raw, "solver.krylov_backend")

        raw = _lookup(d, "accumulation")
        if raw is not None:
            out.accumulation = _coerce_enum(SchurAccumulation, raw, "solver.accumulation")

        raw = _lookup(d, "n_threads")
        if raw is not None:
            try:
                out.n_threads = int(raw)
            except Exception as exc:
                raise ValueError(f"solver.n_threads: invalid value {raw!r}") from exc
            if out.n_threads < 1:
                raise ValueError(f"solver.n_threads: must be >= 1, got {out.n_threads}")

        return out
