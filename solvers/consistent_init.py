"""
Consistent initial values of the coupled network.

State / derivative (both modes):
1. units without inlet compute their consistent state (network sources)
2. coupling DOFs: y_c = 0 - sum_i FN_i y_i, copied into the unit inlets
3. units with inlet compute their consistent state
4. residual with Jacobian at (y, y_dot = 0)
5. units compute y_dot from that residual; the coupling block of y_dot is
   forward-solved like in step 2

Sensitivities follow the same two phases with dF/dp from an AD pass and the
cross term -(dFN/dp) y_dot in the coupling block of s_dot.

FULL and LEAN differ only in the unit primitives invoked and in where the
step-4 residual lands (y_dot itself for FULL, a scratch buffer for LEAN).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional, Sequence

import numpy as np

from assembly.residual_global import residual_with_jacobian, solve_coupling_dof
from assembly.sensitivity import dres_dp_fwd_with_jacobian
from core.ad import ActiveArray

if TYPE_CHECKING:
    from core.model_system import ModelSystem
    from units.base import UnitOperation

logger = logging.getLogger(__name__)


class InitMode(str, Enum):
    FULL = "full"
    LEAN = "lean"


def _full_time_derivative(unit: "UnitOperation", t: float, sec_idx: int, time_factor: float,
                          y: np.ndarray, y_dot: np.ndarray, res: np.ndarray) -> None:
    unit.consistent_initial_time_derivative(t, sec_idx, time_factor, y, y_dot)


def _lean_time_derivative(unit: "UnitOperation", t: float, sec_idx: int, time_factor: float,
                          y: np.ndarray, y_dot: np.ndarray, res: np.ndarray) -> None:
    unit.lean_consistent_initial_time_derivative(t, time_factor, y_dot, res)


@dataclass(frozen=True)
class InitStrategy:
    state: str
    sensitivity: str
    time_derivative: Callable[..., None]
    residual_into_ydot: bool


_STRATEGIES: Dict[InitMode, InitStrategy] = {
    InitMode.FULL: InitStrategy(
        state="consistent_initial_state",
        sensitivity="consistent_initial_sensitivity",
        time_derivative=_full_time_derivative,
        residual_into_ydot=True,
    ),
    InitMode.LEAN: InitStrategy(
        state="lean_consistent_initial_state",
        sensitivity="lean_consistent_initial_sensitivity",
        time_derivative=_lean_time_derivative,
        residual_into_ydot=False,
    ),
}


def _strategy(mode) -> InitStrategy:
    return _STRATEGIES[InitMode(mode)]


def consistent_initial_conditions(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                                  y: np.ndarray, y_dot: np.ndarray,
                                  ad_res: Optional[ActiveArray] = None, ad_y: Optional[ActiveArray] = None,
                                  ad_dir_offset: int = 0, error_tol: float = 1e-12,
                                  mode: InitMode = InitMode.FULL) -> None:
    system.require_configured()
    strat = _strategy(mode)
    layout = system.layout
    units = system.units
    c = layout.coupling_slice()

    def unit_state(with_inlet: bool) -> None:
        for i, sl in layout.iter_units():
            unit = units[i]
            if unit.has_inlet() != with_inlet:
                continue
            a_res = None if ad_res is None else ad_res[sl]
            a_y = None if ad_y is None else ad_y[sl]
            getattr(unit, strat.state)(t, sec_idx, time_factor, y[sl], a_res, a_y, ad_dir_offset, error_tol)

    # Phase 1: algebraic states
    unit_state(with_inlet=False)
    y[c] = 0.0
    solve_coupling_dof(system, y)
    unit_state(with_inlet=True)

    # Phase 2: residual at y_dot = 0 (and fresh Jacobians)
    res = y_dot if strat.residual_into_ydot else system.temp_state
    residual_with_jacobian(system, t, sec_idx, time_factor, y, None, res, ad_res, ad_y, ad_dir_offset)

    # Phase 3: time derivatives
    for i, sl in layout.iter_units():
        strat.time_derivative(units[i], t, sec_idx, time_factor, y[sl], y_dot[sl], res[sl])
    y_dot[c] = 0.0
    solve_coupling_dof(system, y_dot)
    logger.debug("Consistent initialization (%s) done at t=%g sec=%d", InitMode(mode).value, t, sec_idx)


def consistent_initial_sensitivity(system: "ModelSystem", t: float, sec_idx: int, time_factor: float,
                                   y: np.ndarray, y_dot: np.ndarray, sens_y: Sequence[np.ndarray],
                                   sens_y_dot: Sequence[np.ndarray], ad_res: ActiveArray,
                                   ad_y: Optional[ActiveArray] = None,
                                   mode: InitMode = InitMode.FULL) -> None:
    system.require_configured()
    if len(sens_y) != len(sens_y_dot):
        raise ValueError(f"got {len(sens_y)} sensitivity states but {len(sens_y_dot)} derivatives")
    strat = _strategy(mode)
    layout = system.layout
    units = system.units
    c = layout.coupling_slice()
    n_sens = len(sens_y)

    # AD directions [0, n_sens) hold dF/dp, Jacobian directions follow
    dres_dp_fwd_with_jacobian(system, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y, n_sens)

    def unit_sensitivity(with_inlet: bool) -> None:
        for i, sl in layout.iter_units():
            unit = units[i]
            if unit.has_inlet() != with_inlet:
                continue
            getattr(unit, strat.sensitivity)(
                t, sec_idx, time_factor, y[sl], y_dot[sl],
                [s[sl] for s in sens_y], [s[sl] for s in sens_y_dot], ad_res[sl],
            )

    unit_sensitivity(with_inlet=False)
    for param in range(n_sens):
        vsy = sens_y[param]
        vsy[c] = -ad_res.ad[c, param]
        solve_coupling_dof(system, vsy)

    unit_sensitivity(with_inlet=True)
    for param in range(n_sens):
        vsyd = sens_y_dot[param]
        # -(d^2 res_c / dy dp) y_dot
        vsyd[c] = 0.0
        for i, sl in layout.iter_units():
            vsyd[c] -= system.coupling.fn[i].ad_csr(param) @ y_dot[sl]
        solve_coupling_dof(system, vsyd)
