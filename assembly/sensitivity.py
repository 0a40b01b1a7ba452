"""
Forward sensitivity residuals of the coupled network.

For parameter direction p with sensitivities s = dy/dp, s_dot = dy_dot/dp:

    unit rows:     dF_i/dy s_i + dF_i/dy_dot s_dot_i + dF_i/dp + NF_i s_c
    coupling rows: s_c + sum_i FN_i s_i + (dFN_i/dp) y_i

``ad_res`` carries dF/dp in its first directions (one per sensitive
parameter); the coupling rows of ``ad_res`` receive (dFN/dp) y from the active
flow-rate coefficients.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

import numpy as np

from assembly.residual_global import multiply_coupling_jacobian, residual_connect_unit_ops
from core.ad import ActiveArray
from core.types import fuse_error_codes, update_error_indicator

if TYPE_CHECKING:
    from core.model_system import ModelSystem

logger = logging.getLogger(__name__)


def _check_sens(system: "ModelSystem", vecs: Sequence[np.ndarray], name: str) -> None:
    n = system.num_dofs()
    for j, v in enumerate(vecs):
        if np.shape(v) != (n,):
            raise ValueError(f"{name}[{j}] has shape {np.shape(v)}, expected ({n},)")


def _ad_pass(system: "ModelSystem", t: float, sec_idx: int, time_factor: float, y: np.ndarray,
             y_dot: Optional[np.ndarray], ad_res: ActiveArray, ad_y: Optional[ActiveArray],
             ad_dir_offset: int, with_jacobian: bool) -> int:
    if len(ad_res) != system.num_dofs():
        raise ValueError(f"ad_res has length {len(ad_res)}, expected {system.num_dofs()}")
    layout = system.layout

    def work(i: int) -> int:
        sl = layout.unit_slice(i)
        unit = system.units[i]
        yd = None if y_dot is None else y_dot[sl]
        if with_jacobian:
            a_y = None if ad_y is None else ad_y[sl]
            return unit.residual_sens_fwd_with_jacobian(
                t, sec_idx, time_factor, y[sl], yd, ad_res[sl], a_y, ad_dir_offset
            )
        return unit.residual_sens_fwd_ad_only(t, sec_idx, time_factor, y[sl], yd, ad_res[sl])

    system.error_indicator[:] = system.pool.map(work, system.num_models)
    residual_connect_unit_ops(system, y, ad_res)
    return fuse_error_codes(system.error_indicator)


def dres_dp_fwd_with_jacobian(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                              y: np.ndarray, y_dot: Optional[np.ndarray], ad_res: ActiveArray,
                              ad_y: Optional[ActiveArray], ad_dir_offset: int) -> int:
    """dF/dp of all sensitive parameters into ``ad_res`` plus Jacobian refresh."""
    system.require_configured()
    return _ad_pass(system, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y, ad_dir_offset, True)


def _combine(system: "ModelSystem", time_factor: float, ys: Sequence[np.ndarray],
             ys_dot: Sequence[np.ndarray], res_s: Sequence[np.ndarray], ad_res: ActiveArray,
             tmp1: np.ndarray, tmp2: np.ndarray, tmp3: np.ndarray) -> int:
    layout = system.layout
    n_sens = len(ys)

    def combine(i: int) -> int:
        sl = layout.unit_slice(i)
        return system.units[i].residual_sens_fwd_combine(
            time_factor,
            [s[sl] for s in ys],
            [s[sl] for s in ys_dot],
            [r[sl] for r in res_s],
            ad_res[sl],
            tmp1[sl],
            tmp2[sl],
            tmp3[sl],
        )

    codes = system.pool.map(combine, system.num_models)
    for i, code in enumerate(codes):
        system.error_indicator[i] = update_error_indicator(system.error_indicator[i], code)

    c = layout.coupling_slice()

    def superstructure(param: int) -> None:
        out = res_s[param]
        multiply_coupling_jacobian(system, ys[param], 1.0, 0.0, out)
        # dF_c/dy_dot vanishes; the explicit parameter dependence comes from ad_res
        out[c] += ad_res.ad[c, param]

    system.pool.map(superstructure, n_sens)
    return fuse_error_codes(system.error_indicator)


def residual_sens_fwd(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                      y: np.ndarray, y_dot: Optional[np.ndarray], ys: Sequence[np.ndarray],
                      ys_dot: Sequence[np.ndarray], res_s: Sequence[np.ndarray], ad_res: ActiveArray,
                      tmp1: np.ndarray, tmp2: np.ndarray, tmp3: np.ndarray) -> int:
    """Sensitivity residuals without touching the unit Jacobians."""
    system.require_configured()
    _check_sens(system, ys, "ys")
    _check_sens(system, ys_dot, "ys_dot")
    _check_sens(system, res_s, "res_s")
    code = _ad_pass(system, t, sec_idx, time_factor, y, y_dot, ad_res, None, 0, False)
    if code < 0:
        return code
    return _combine(system, time_factor, ys, ys_dot, res_s, ad_res, tmp1, tmp2, tmp3)


def residual_sens_fwd_with_jacobian(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                                    y: np.ndarray, y_dot: Optional[np.ndarray], ys: Sequence[np.ndarray],
                                    ys_dot: Sequence[np.ndarray], res_s: Sequence[np.ndarray],
                                    ad_res: ActiveArray, ad_y: Optional[ActiveArray], ad_dir_offset: int,
                                    tmp1: np.ndarray, tmp2: np.ndarray, tmp3: np.ndarray) -> int:
    """Sensitivity residuals; units refresh their Jacobians in the same AD pass."""
    system.require_configured()
    _check_sens(system, ys, "ys")
    _check_sens(system, ys_dot, "ys_dot")
    _check_sens(system, res_s, "res_s")
    code = _ad_pass(system, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y, ad_dir_offset, True)
    if code < 0:
        return code
    return _combine(system, time_factor, ys, ys_dot, res_s, ad_res, tmp1, tmp2, tmp3)


def residual_sens_fwd_norm(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                           y: np.ndarray, y_dot: Optional[np.ndarray], ys: Sequence[np.ndarray],
                           ys_dot: Sequence[np.ndarray], ad_res: ActiveArray) -> np.ndarray:
    """Max-norm of every sensitivity residual."""
    n = system.num_dofs()
    res_s: List[np.ndarray] = [np.zeros(n, dtype=np.float64) for _ in ys]
    tmp = [np.zeros(n, dtype=np.float64) for _ in range(3)]
    residual_sens_fwd(system, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, res_s, ad_res, *tmp)
    return np.array([np.linalg.norm(r, ord=np.inf) if r.size else 0.0 for r in res_s], dtype=np.float64)
