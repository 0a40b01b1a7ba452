"""
Diagnostic Jacobians of the coupled network (not used by the solve path).

- build_fd_jacobian: forward differences of the global residual,
  ``(dF/dy + alpha dF/dy_dot)`` column by column.
- assemble_jacobian: the same matrix from the analytic matrix-vector products
  of the units and the coupling matrices.
- compare_jacobians: max-abs deviation between two of them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import numpy as np
import scipy.sparse as sps

from assembly.residual_global import multiply_with_derivative_jacobian, multiply_with_jacobian, residual

if TYPE_CHECKING:
    from core.model_system import ModelSystem

logger = logging.getLogger(__name__)


def build_fd_jacobian(
    system: "ModelSystem",
    t: float,
    sec_idx: int,
    time_factor: float,
    y: np.ndarray,
    y_dot: Optional[np.ndarray] = None,
    *,
    alpha: float = 0.0,
    eps: float = 1.0e-8,
    drop_tol: float = 0.0,
) -> Tuple[sps.csr_matrix, Dict[str, Any]]:
    n = system.num_dofs()
    x0 = np.asarray(y, dtype=np.float64).copy()
    xd0 = np.zeros(n, dtype=np.float64) if y_dot is None else np.asarray(y_dot, dtype=np.float64).copy()
    r0 = np.zeros(n, dtype=np.float64)
    residual(system, t, sec_idx, time_factor, x0, xd0, r0)

    rows, cols, vals = [], [], []
    r_work = np.zeros(n, dtype=np.float64)
    x_work = x0.copy()
    xd_work = xd0.copy()
    n_calls = 1
    for j in range(n):
        dx = eps * (1.0 + abs(x0[j]))
        x_work[j] = x0[j] + dx
        residual(system, t, sec_idx, time_factor, x_work, xd0, r_work)
        col = (r_work - r0) / dx
        x_work[j] = x0[j]
        n_calls += 1

        if alpha != 0.0:
            dxd = eps * (1.0 + abs(xd0[j]))
            xd_work[j] = xd0[j] + dxd
            residual(system, t, sec_idx, time_factor, x0, xd_work, r_work)
            col = col + alpha * (r_work - r0) / dxd
            xd_work[j] = xd0[j]
            n_calls += 1

        mask = np.abs(col) > drop_tol if drop_tol > 0.0 else col != 0.0
        idx = np.nonzero(mask)[0]
        rows.extend(idx.tolist())
        cols.extend([j] * idx.size)
        vals.extend(col[idx].tolist())

    jac = sps.csr_matrix((vals, (rows, cols)), shape=(n, n))
    stats = {
        "n_fd_calls": n_calls,
        "nnz_total": int(jac.nnz),
        "shape": (n, n),
        "eps": float(eps),
        "drop_tol": float(drop_tol),
    }
    logger.debug("FD Jacobian: %s", stats)
    return jac, stats


def assemble_jacobian(system: "ModelSystem", *, alpha: float = 0.0, time_factor: float = 1.0) -> sps.csr_matrix:
    """Dense probing of ``dF/dy + alpha dF/dy_dot`` through the matrix-vector products."""
    n = system.num_dofs()
    dense = np.zeros((n, n), dtype=np.float64)
    e = np.zeros(n, dtype=np.float64)
    col = np.zeros(n, dtype=np.float64)
    col_dot = np.zeros(n, dtype=np.float64)
    for j in range(n):
        e[j] = 1.0
        multiply_with_jacobian(system, e, 1.0, 0.0, col)
        if alpha != 0.0:
            multiply_with_derivative_jacobian(system, e, col_dot, time_factor)
            col += alpha * col_dot
        dense[:, j] = col
        e[j] = 0.0
    return sps.csr_matrix(dense)


def compare_jacobians(reference: sps.spmatrix, other: sps.spmatrix) -> Dict[str, Any]:
    if reference.shape != other.shape:
        raise ValueError(f"shape mismatch: {reference.shape} vs {other.shape}")
    diff = abs(reference - other)
    max_abs = float(diff.max()) if diff.nnz else 0.0
    out = {"max_abs_diff": max_abs, "nnz_reference": int(reference.nnz), "nnz_other": int(other.nnz)}
    if diff.nnz:
        r, c = np.unravel_index(int(np.argmax(diff.toarray())), diff.shape)
        out["worst_entry"] = (int(r), int(c))
    return out
