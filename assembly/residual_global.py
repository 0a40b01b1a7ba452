"""
Global residual of the coupled network (unit blocks + coupling block).

Layout: y = [y_0, ..., y_{N-1}, y_c]. Residual:
- unit rows:     F_i(y_i, y_dot_i) + NF_i y_c
- coupling rows: y_c + sum_i FN_i y_i

Unit evaluations run on the worker pool (disjoint output slices); the coupling
equations are applied afterwards on the calling thread. Error codes of the
units are stored per unit and fused into the return value.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Union

import numpy as np

from core.ad import ActiveArray
from core.types import fuse_error_codes

if TYPE_CHECKING:
    from core.model_system import ModelSystem

logger = logging.getLogger(__name__)

Vector = Union[np.ndarray, ActiveArray]


def _check_vec(system: "ModelSystem", vec, name: str) -> None:
    n = system.num_dofs()
    size = len(vec) if isinstance(vec, ActiveArray) else np.shape(vec)[0]
    if size != n:
        raise ValueError(f"{name} has length {size}, expected {n}")


def _store_codes(system: "ModelSystem", codes) -> int:
    system.error_indicator[:] = [int(c) for c in codes]
    return fuse_error_codes(system.error_indicator)


def residual_connect_unit_ops(system: "ModelSystem", y: np.ndarray, res: Vector) -> None:
    """
    Apply the coupling equations to ``res``.

    ``res`` may be plain or an ``ActiveArray``; in the latter case the coupling
    rows also receive dFN/dp * y from the active flow-rate coefficients.
    """
    layout = system.layout
    c = layout.coupling_slice()
    y_c = y[c]
    res_c = res[c]
    if isinstance(res_c, ActiveArray):
        res_c.val[:] = y_c
        res_c.ad[:] = 0.0
    else:
        res_c[:] = y_c

    for i, sl in layout.iter_units():
        unit = system.units[i]
        if unit.has_inlet():
            system.coupling.nf[i].multiply_add(y_c, res[sl])
        if unit.has_outlet():
            system.coupling.fn[i].multiply_add(y[sl], res_c)


def residual(system: "ModelSystem", t: float, sec_idx: int, time_factor: float, y: np.ndarray,
             y_dot: Optional[np.ndarray], res: np.ndarray) -> int:
    system.require_configured()
    _check_vec(system, y, "y")
    _check_vec(system, res, "res")

    def work(i: int) -> int:
        sl = system.layout.unit_slice(i)
        yd = None if y_dot is None else y_dot[sl]
        return system.units[i].residual(t, sec_idx, time_factor, y[sl], yd, res[sl])

    code = _store_codes(system, system.pool.map(work, system.num_models))
    residual_connect_unit_ops(system, y, res)
    return code


def residual_with_jacobian(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                           y: np.ndarray, y_dot: Optional[np.ndarray], res: np.ndarray,
                           ad_res: Optional[ActiveArray], ad_y: Optional[ActiveArray],
                           ad_dir_offset: int) -> int:
    """Residual plus per-unit Jacobian refresh (units extract their Jacobians via AD or analytically)."""
    system.require_configured()
    _check_vec(system, y, "y")
    _check_vec(system, res, "res")

    def work(i: int) -> int:
        sl = system.layout.unit_slice(i)
        yd = None if y_dot is None else y_dot[sl]
        a_res = None if ad_res is None else ad_res[sl]
        a_y = None if ad_y is None else ad_y[sl]
        return system.units[i].residual_with_jacobian(
            t, sec_idx, time_factor, y[sl], yd, res[sl], a_res, a_y, ad_dir_offset
        )

    code = _store_codes(system, system.pool.map(work, system.num_models))
    residual_connect_unit_ops(system, y, res)
    return code


def residual_norm(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                  y: np.ndarray, y_dot: Optional[np.ndarray]) -> float:
    """Max-norm of the global residual."""
    res = np.zeros(system.num_dofs(), dtype=np.float64)
    residual(system, t, sec_idx, time_factor, y, y_dot, res)
    return float(np.linalg.norm(res, ord=np.inf)) if res.size else 0.0


def multiply_coupling_jacobian(system: "ModelSystem", x: np.ndarray, alpha: float, beta: float,
                               ret: np.ndarray) -> None:
    """
    Apply the coupling part of the Jacobian (NF column, FN row, identity corner).

    ``ret_c = alpha * x_c + beta * ret_c``, ``ret_i += alpha * NF_i x_c`` and
    ``ret_c += alpha * FN_i x_i``. Unit diagonal blocks are left to the units.
    """
    layout = system.layout
    c = layout.coupling_slice()
    x_c = x[c]
    if beta == 0.0:
        ret[c] = alpha * x_c
    else:
        ret[c] = alpha * x_c + beta * ret[c]
    for i, sl in layout.iter_units():
        ret[sl] += alpha * (system.coupling.nf_values[i] @ x_c)
    for i, sl in layout.iter_units():
        ret[c] += alpha * (system.coupling.fn_values[i] @ x[sl])


def multiply_with_jacobian(system: "ModelSystem", x: np.ndarray, alpha: float, beta: float,
                           ret: np.ndarray) -> None:
    """``ret = alpha * dF/dy * x + beta * ret`` with the last computed Jacobian."""
    system.require_configured()
    _check_vec(system, x, "x")
    _check_vec(system, ret, "ret")
    layout = system.layout

    def work(i: int) -> None:
        sl = layout.unit_slice(i)
        system.units[i].multiply_with_jacobian(x[sl], alpha, beta, ret[sl])

    system.pool.map(work, system.num_models)
    multiply_coupling_jacobian(system, x, alpha, beta, ret)


def multiply_with_derivative_jacobian(system: "ModelSystem", x: np.ndarray, ret: np.ndarray,
                                      time_factor: float) -> None:
    """``ret = dF/dy_dot * x``; the coupling equations do not depend on y_dot."""
    system.require_configured()
    _check_vec(system, x, "x")
    _check_vec(system, ret, "ret")
    layout = system.layout

    def work(i: int) -> None:
        sl = layout.unit_slice(i)
        system.units[i].multiply_with_derivative_jacobian(x[sl], ret[sl], time_factor)

    system.pool.map(work, system.num_models)
    ret[layout.coupling_slice()] = 0.0


def solve_coupling_dof(system: "ModelSystem", vec: np.ndarray) -> None:
    """
    Forward-solve the coupling block of ``vec`` and copy it into the unit inlets.

    ``vec[c] -= sum_i FN_i vec_i``; then every inlet row of a unit receives the
    coupling value of its (unit, component) DOF. Callers zero or pre-load
    ``vec[c]`` as needed.
    """
    layout = system.layout
    c = layout.coupling_slice()
    vec_c = vec[c]
    for i, sl in layout.iter_units():
        if system.units[i].has_outlet():
            vec_c -= system.coupling.fn_values[i] @ vec[sl]

    for i, sl in layout.iter_units():
        unit = system.units[i]
        if not unit.has_inlet():
            continue
        block = vec[sl]
        idx = unit.local_inlet_component_index()
        stride = unit.local_inlet_component_stride()
        for comp in range(unit.num_components()):
            block[idx + comp * stride] = vec_c[layout.coupling_dof(i, comp)]
