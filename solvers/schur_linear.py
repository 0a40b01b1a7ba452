"""
Block elimination solve of the network Jacobian.

    [ J_0               NF_0 ] [x_0]   [b_0]
    [      ...          ...  ] [...] = [...]
    [ FN_0 ... FN_{N-1}  I   ] [x_c]   [b_c]

1. forward elimination:  y_i = J_i^-1 b_i,  y_c = b_c - sum_i FN_i y_i
2. Schur complement:     S x_c = y_c,  S = I - sum_i FN_i J_i^-1 NF_i  (GMRES, matrix-free)
3. back substitution:    x_i = y_i - J_i^-1 NF_i x_c

Only units with both an inlet and an outlet contribute to S.
The solve works in place on ``rhs``.
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING, List, Optional, Tuple

import numpy as np

from core.types import fuse_error_codes, update_error_indicator
from solvers.linear_types import LinearSolveResult, SchurAccumulation

if TYPE_CHECKING:
    from core.model_system import ModelSystem

logger = logging.getLogger(__name__)


def _part(vec: Optional[np.ndarray], sl: slice) -> Optional[np.ndarray]:
    return None if vec is None else vec[sl]


def schur_complement_matrix_vector(system: "ModelSystem", x: np.ndarray, z: np.ndarray, t: float,
                                   time_factor: float, alpha: float, outer_tol: float,
                                   weight: np.ndarray, y: np.ndarray, y_dot: Optional[np.ndarray],
                                   res: Optional[np.ndarray]) -> int:
    """``z = S x``; unit codes are folded into the error indicator."""
    z[:] = x
    layout = system.layout
    in_out = system.in_out_models
    use_lock = system.settings.accumulation == SchurAccumulation.LOCK

    def work(k: int) -> Tuple[int, Optional[np.ndarray]]:
        i = in_out[k]
        sl = layout.unit_slice(i)
        tmp = system.coupling.nf_values[i] @ x
        code = system.units[i].linear_solve(
            t, time_factor, alpha, outer_tol, tmp, weight[sl], y[sl], _part(y_dot, sl), _part(res, sl)
        )
        contrib = system.coupling.fn_values[i] @ tmp
        if use_lock:
            with system.pool.lock:
                np.subtract(z, contrib, out=z)
            return code, None
        return code, contrib

    results: List[Tuple[int, Optional[np.ndarray]]] = system.pool.map(work, len(in_out))
    for k, (code, contrib) in enumerate(results):
        i = in_out[k]
        system.error_indicator[i] = update_error_indicator(system.error_indicator[i], code)
        if contrib is not None:
            z -= contrib
    return fuse_error_codes(system.error_indicator)


def linear_solve(system: "ModelSystem", t: float, time_factor: float, alpha: float, outer_tol: float,
                 rhs: np.ndarray, weight: np.ndarray, y: np.ndarray, y_dot: Optional[np.ndarray],
                 res: Optional[np.ndarray]) -> int:
    """Solve ``(dF/dy + alpha dF/dy_dot) x = rhs`` in place."""
    system.require_configured()
    n = system.num_dofs()
    if rhs.shape != (n,) or weight.shape != (n,):
        raise ValueError(f"linear_solve: rhs {rhs.shape} / weight {weight.shape} do not match ({n},)")
    layout = system.layout
    units = system.units
    n_units = system.num_models
    c = layout.coupling_slice()

    def forward(i: int) -> int:
        sl = layout.unit_slice(i)
        return units[i].linear_solve(
            t, time_factor, alpha, outer_tol, rhs[sl], weight[sl], y[sl], _part(y_dot, sl), _part(res, sl)
        )

    system.error_indicator[:] = system.pool.map(forward, n_units)

    # in-place accumulation into rhs_c stays sequential
    rhs_c = rhs[c]
    for i, sl in layout.iter_units():
        if units[i].has_outlet():
            rhs_c -= system.coupling.fn_values[i] @ rhs[sl]

    tolerance = math.sqrt(float(n)) * outer_tol * system.settings.schur_safety

    def matvec(x_vec: np.ndarray, z_vec: np.ndarray) -> int:
        return schur_complement_matrix_vector(
            system, x_vec, z_vec, t, time_factor, alpha, outer_tol, weight, y, y_dot, res
        )

    system.gmres.matrix_vector_multiplier(matvec)

    # reset before GMRES: the Schur matvec folds its codes into the indicator
    cur_error = fuse_error_codes(system.error_indicator)
    system.error_indicator[:] = [0] * n_units

    schur_rhs = rhs_c.copy()
    gmres_code = system.gmres.solve(tolerance, weight[c], schur_rhs, rhs_c)
    fused = update_error_indicator(cur_error, gmres_code)
    system.error_indicator[:] = [fused] * n_units

    stats = system.gmres.stats
    rhs_norm = float(np.linalg.norm(weight[c] * schur_rhs))
    system.last_schur_result = LinearSolveResult(
        x=rhs_c.copy(),
        converged=stats.converged,
        n_iter=stats.n_iter,
        residual_norm=stats.residual_norm,
        rel_residual=stats.residual_norm / rhs_norm if rhs_norm > 0.0 else 0.0,
        method=f"schur-gmres-{system.gmres.backend.value}",
        message=None if gmres_code == 0 else f"gmres code {gmres_code}",
        diag={"tolerance": tolerance, "restarts": stats.n_restarts},
    )

    def backward(i: int) -> int:
        unit = units[i]
        if not unit.has_inlet():
            # NF_i = 0
            return 0
        sl = layout.unit_slice(i)
        tmp = system.coupling.nf_values[i] @ rhs_c
        code = unit.linear_solve(
            t, time_factor, alpha, outer_tol, tmp, weight[sl], y[sl], _part(y_dot, sl), _part(res, sl)
        )
        rhs[sl] -= tmp
        return code

    codes = system.pool.map(backward, n_units)
    for i, code in enumerate(codes):
        system.error_indicator[i] = update_error_indicator(system.error_indicator[i], code)
    return fuse_error_codes(system.error_indicator)
