"""
Reference unit operations with linear, analytically differentiable models.

- InletUnit: network source; outlet concentration follows ``const + lin * t``.
- OutletUnit: network sink; its state is the inlet concentration.
- CstrUnit: ideally mixed tank of constant volume with an inlet and an outlet.

All three keep their Jacobians in closed form, so they never request AD
directions for Jacobian extraction; parameter sensitivities are propagated
through the ``Active`` handles of their parameters.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Sequence

import numpy as np
import scipy.sparse as sps
import scipy.sparse.linalg as spla

from core.ad import Active, ActiveArray
from units.base import UnitOperation, ad_column

logger = logging.getLogger(__name__)


def _as_components(values, n_comp: int, name: str) -> np.ndarray:
    if values is None:
        return np.zeros(n_comp, dtype=np.float64)
    arr = np.asarray(values, dtype=np.float64).ravel()
    if arr.size == 1 and n_comp > 1:
        arr = np.full(n_comp, float(arr[0]))
    if arr.size != n_comp:
        raise ValueError(f"{name} must have {n_comp} entries, got {arr.size}")
    return arr


class InletUnit(UnitOperation):
    """Outlet-only source with a linear-in-time profile per component."""

    def __init__(self, unit_operation_id: int, n_comp: int, const_coeff=None, lin_coeff=None,
                 name: str = "") -> None:
        super().__init__(unit_operation_id, name)
        self._n_comp = int(n_comp)
        const = _as_components(const_coeff, self._n_comp, "const_coeff")
        lin = _as_components(lin_coeff, self._n_comp, "lin_coeff")
        self._const = [self._register_parameter("CONST_COEFF", v, c) for c, v in enumerate(const)]
        self._lin = [self._register_parameter("LIN_COEFF", v, c) for c, v in enumerate(lin)]

    def num_dofs(self) -> int:
        return self._n_comp

    def num_components(self) -> int:
        return self._n_comp

    def has_inlet(self) -> bool:
        return False

    def has_outlet(self) -> bool:
        return True

    def _profile(self, t: float) -> np.ndarray:
        return np.array([a.val + b.val * t for a, b in zip(self._const, self._lin)], dtype=np.float64)

    def _slope(self) -> np.ndarray:
        return np.array([b.val for b in self._lin], dtype=np.float64)

    def residual(self, t, sec_idx, time_factor, y, y_dot, res) -> int:
        res[:] = y - self._profile(t)
        return 0

    def residual_with_jacobian(self, t, sec_idx, time_factor, y, y_dot, res, ad_res, ad_y, ad_dir_offset) -> int:
        # dF/dy is the identity, nothing to extract
        return self.residual(t, sec_idx, time_factor, y, y_dot, res)

    def linear_solve(self, t, time_factor, alpha, outer_tol, rhs, weight, y, y_dot, res) -> int:
        return 0

    def multiply_with_jacobian(self, x, alpha, beta, ret) -> None:
        ret[:] = alpha * x + beta * ret

    def multiply_with_derivative_jacobian(self, x, ret, time_factor) -> None:
        ret[:] = 0.0

    def residual_sens_fwd_ad_only(self, t, sec_idx, time_factor, y, y_dot, ad_res: ActiveArray) -> int:
        ad_res.val[:] = y - self._profile(t)
        nd = ad_res.n_dirs
        for c in range(self._n_comp):
            ad_res.ad[c, :] = -(ad_column(self._const[c], nd) + t * ad_column(self._lin[c], nd))
        return 0

    def consistent_initial_state(self, t, sec_idx, time_factor, y, ad_res, ad_y, ad_dir_offset, error_tol) -> None:
        y[:] = self._profile(t)

    def consistent_initial_time_derivative(self, t, sec_idx, time_factor, y, y_dot) -> None:
        y_dot[:] = self._slope() / time_factor

    def lean_consistent_initial_time_derivative(self, t, time_factor, y_dot, res) -> None:
        y_dot[:] = self._slope() / time_factor

    def consistent_initial_sensitivity(self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot, ad_res) -> None:
        for j in range(len(sens_y)):
            sens_y[j][:] = -ad_res.ad[:, j]
            sens_y_dot[j][:] = [b.get_ad_value(j) / time_factor for b in self._lin]

    def apply_initial_condition(self, y, y_dot) -> None:
        y[:] = self._profile(0.0)
        y_dot[:] = 0.0


class OutletUnit(UnitOperation):
    """Inlet-only sink. Its whole state is the inlet, tied to the coupling DOFs."""

    def __init__(self, unit_operation_id: int, n_comp: int, name: str = "") -> None:
        super().__init__(unit_operation_id, name)
        self._n_comp = int(n_comp)

    def num_dofs(self) -> int:
        return self._n_comp

    def num_components(self) -> int:
        return self._n_comp

    def has_inlet(self) -> bool:
        return True

    def has_outlet(self) -> bool:
        return False

    def residual(self, t, sec_idx, time_factor, y, y_dot, res) -> int:
        res[:] = y
        return 0

    def residual_with_jacobian(self, t, sec_idx, time_factor, y, y_dot, res, ad_res, ad_y, ad_dir_offset) -> int:
        return self.residual(t, sec_idx, time_factor, y, y_dot, res)

    def linear_solve(self, t, time_factor, alpha, outer_tol, rhs, weight, y, y_dot, res) -> int:
        return 0

    def multiply_with_jacobian(self, x, alpha, beta, ret) -> None:
        ret[:] = alpha * x + beta * ret

    def multiply_with_derivative_jacobian(self, x, ret, time_factor) -> None:
        ret[:] = 0.0

    def residual_sens_fwd_ad_only(self, t, sec_idx, time_factor, y, y_dot, ad_res: ActiveArray) -> int:
        ad_res.val[:] = y
        ad_res.ad[:] = 0.0
        return 0

    def consistent_initial_time_derivative(self, t, sec_idx, time_factor, y, y_dot) -> None:
        y_dot[:] = 0.0

    def lean_consistent_initial_time_derivative(self, t, time_factor, y_dot, res) -> None:
        y_dot[:] = 0.0

    def consistent_initial_sensitivity(self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot, ad_res) -> None:
        # inlet sensitivities come from the coupling DOFs
        for sd in sens_y_dot:
            sd[:] = 0.0


class CstrUnit(UnitOperation):
    """
    Constant-volume stirred tank.

    Local DOFs: ``[c_in (n_comp), c (n_comp)]``.

    Residual::

        inlet rows:  c_in
        state rows:  tf * V * dc/dt - Q_in * c_in + Q_out * c

    The network adds ``-c_coupling`` to the inlet rows, so at a consistent point
    ``c_in`` equals the mixed inflow concentration.
    """

    def __init__(self, unit_operation_id: int, n_comp: int, volume: float = 1.0, init_c=None,
                 name: str = "") -> None:
        super().__init__(unit_operation_id, name)
        self._n_comp = int(n_comp)
        if volume <= 0.0:
            raise ValueError(f"volume must be positive, got {volume}")
        self._volume = self._register_parameter("VOLUME", float(volume))
        self._init_c = _as_components(init_c, self._n_comp, "init_c")

    def num_dofs(self) -> int:
        return 2 * self._n_comp

    def num_components(self) -> int:
        return self._n_comp

    def has_inlet(self) -> bool:
        return True

    def has_outlet(self) -> bool:
        return True

    def local_outlet_component_index(self) -> int:
        return self._n_comp

    # ------------------------------------------------------------------ model
    def _state_residual(self, time_factor: float, y: np.ndarray, y_dot: Optional[np.ndarray]) -> np.ndarray:
        n = self._n_comp
        q_in = self.flow_rate_in.val
        q_out = self.flow_rate_out.val
        acc = 0.0 if y_dot is None else time_factor * self._volume.val * y_dot[n:]
        return acc - q_in * y[:n] + q_out * y[n:]

    def _jacobian(self) -> sps.csr_matrix:
        n = self._n_comp
        eye = sps.identity(n, format="csr")
        return sps.bmat(
            [[eye, None], [-self.flow_rate_in.val * eye, self.flow_rate_out.val * eye]],
            format="csr",
        )

    def _derivative_jacobian(self, time_factor: float) -> sps.csr_matrix:
        n = self._n_comp
        diag = np.concatenate([np.zeros(n), np.full(n, time_factor * self._volume.val)])
        return sps.diags(diag, format="csr")

    def residual(self, t, sec_idx, time_factor, y, y_dot, res) -> int:
        n = self._n_comp
        res[:n] = y[:n]
        res[n:] = self._state_residual(time_factor, y, y_dot)
        return 0

    def residual_with_jacobian(self, t, sec_idx, time_factor, y, y_dot, res, ad_res, ad_y, ad_dir_offset) -> int:
        return self.residual(t, sec_idx, time_factor, y, y_dot, res)

    def linear_solve(self, t, time_factor, alpha, outer_tol, rhs, weight, y, y_dot, res) -> int:
        mat = (self._jacobian() + alpha * self._derivative_jacobian(time_factor)).tocsc()
        x = spla.spsolve(mat, rhs)
        if not np.all(np.isfinite(x)):
            logger.warning("Unit %d: local linear solve produced non-finite values", self.unit_operation_id)
            return 1
        rhs[:] = x
        return 0

    def multiply_with_jacobian(self, x, alpha, beta, ret) -> None:
        ret[:] = alpha * (self._jacobian() @ x) + beta * ret

    def multiply_with_derivative_jacobian(self, x, ret, time_factor) -> None:
        ret[:] = self._derivative_jacobian(time_factor) @ x

    # ------------------------------------------------------------------ sensitivities
    def residual_sens_fwd_ad_only(self, t, sec_idx, time_factor, y, y_dot, ad_res: ActiveArray) -> int:
        n = self._n_comp
        nd = ad_res.n_dirs
        self.residual(t, sec_idx, time_factor, y, y_dot, ad_res.val)
        ad_res.ad[:] = 0.0
        d_vol = ad_column(self._volume, nd)
        d_in = ad_column(self.flow_rate_in, nd)
        d_out = ad_column(self.flow_rate_out, nd)
        c_dot = np.zeros(n) if y_dot is None else y_dot[n:]
        ad_res.ad[n:, :] = (
            time_factor * np.outer(c_dot, d_vol) - np.outer(y[:n], d_in) + np.outer(y[n:], d_out)
        )
        return 0

    # ------------------------------------------------------------------ consistent initialization
    def consistent_initial_time_derivative(self, t, sec_idx, time_factor, y, y_dot) -> None:
        n = self._n_comp
        y_dot[n:] = -y_dot[n:] / (time_factor * self._volume.val)
        y_dot[:n] = 0.0

    def lean_consistent_initial_time_derivative(self, t, time_factor, y_dot, res) -> None:
        n = self._n_comp
        y_dot[n:] = -res[n:] / (time_factor * self._volume.val)
        y_dot[:n] = 0.0

    def consistent_initial_sensitivity(self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot, ad_res) -> None:
        n = self._n_comp
        jac = self._jacobian()
        scale = time_factor * self._volume.val
        for j in range(len(sens_y)):
            rhs = -(jac @ sens_y[j])[n:] - ad_res.ad[n:, j]
            sens_y_dot[j][n:] = rhs / scale
            sens_y_dot[j][:n] = 0.0

    # ------------------------------------------------------------------ initial conditions
    def apply_initial_condition(self, y, y_dot) -> None:
        n = self._n_comp
        y[:n] = 0.0
        y[n:] = self._init_c
        y_dot[:] = 0.0

    def apply_initial_condition_from(self, params: Mapping[str, Any], y, y_dot) -> None:
        init_c = params.get("init_c", params.get("INIT_C"))
        if init_c is not None:
            self._init_c = _as_components(init_c, self._n_comp, "init_c")
        self.apply_initial_condition(y, y_dot)

    def reconfigure(self, params: Mapping[str, Any]) -> bool:
        volume = params.get("volume", params.get("VOLUME"))
        if volume is not None:
            if float(volume) <= 0.0:
                return False
            self._volume.set_value(float(volume))
        return True
