"""
Contract between the network engine and a unit operation.

A unit operation owns one contiguous block of the global state vector. Every
array argument it receives (y, y_dot, res, rhs, AD buffers, sensitivity
vectors) is a view of *its own* block; it never sees another unit's slice or
the coupling DOFs.

Return codes of numerical methods: negative = non-recoverable, 0 = success,
positive = recoverable (the integrator may retry with a smaller step).
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from core.ad import Active, ActiveArray
from core.types import UNIT_OP_INDEP, ParameterId

logger = logging.getLogger(__name__)


def ad_column(handle: Active, n_dirs: int) -> np.ndarray:
    """Directional derivatives of a parameter handle padded / truncated to ``n_dirs``."""
    out = np.zeros(n_dirs, dtype=np.float64)
    m = min(n_dirs, handle.ad.size)
    out[:m] = handle.ad[:m]
    return out


class UnitOperation(abc.ABC):
    """Abstract unit operation with a local parameter registry."""

    def __init__(self, unit_operation_id: int, name: str = "") -> None:
        if int(unit_operation_id) < 0:
            raise ValueError(f"unit operation id must be non-negative, got {unit_operation_id}")
        self.unit_operation_id = int(unit_operation_id)
        self.name = name or type(self).__name__
        self._parameters: Dict[ParameterId, Active] = {}
        self._sens_params: List[Active] = []
        self._external_functions: Sequence[Any] = ()
        self._section_times: Optional[np.ndarray] = None
        self.flow_rate_in: Active = Active(0.0)
        self.flow_rate_out: Active = Active(0.0)

    # ------------------------------------------------------------------ structure
    @abc.abstractmethod
    def num_dofs(self) -> int: ...

    def num_pure_dofs(self) -> int:
        return self.num_dofs()

    @abc.abstractmethod
    def num_components(self) -> int: ...

    @abc.abstractmethod
    def has_inlet(self) -> bool: ...

    @abc.abstractmethod
    def has_outlet(self) -> bool: ...

    def can_accumulate(self) -> bool:
        return False

    def uses_ad(self) -> bool:
        return False

    def required_ad_dirs(self) -> int:
        return 0

    def local_inlet_component_index(self) -> int:
        return 0

    def local_inlet_component_stride(self) -> int:
        return 1

    def local_outlet_component_index(self) -> int:
        return 0

    def local_outlet_component_stride(self) -> int:
        return 1

    # ------------------------------------------------------------------ residual / Jacobian
    @abc.abstractmethod
    def residual(self, t: float, sec_idx: int, time_factor: float, y: np.ndarray,
                 y_dot: Optional[np.ndarray], res: np.ndarray) -> int: ...

    @abc.abstractmethod
    def residual_with_jacobian(self, t: float, sec_idx: int, time_factor: float, y: np.ndarray,
                               y_dot: Optional[np.ndarray], res: np.ndarray,
                               ad_res: Optional[ActiveArray], ad_y: Optional[ActiveArray],
                               ad_dir_offset: int) -> int: ...

    @abc.abstractmethod
    def linear_solve(self, t: float, time_factor: float, alpha: float, outer_tol: float,
                     rhs: np.ndarray, weight: np.ndarray, y: np.ndarray,
                     y_dot: np.ndarray, res: np.ndarray) -> int:
        """Solve ``(dF/dy + alpha * dF/dy_dot) x = rhs`` in place on ``rhs``."""

    @abc.abstractmethod
    def multiply_with_jacobian(self, x: np.ndarray, alpha: float, beta: float, ret: np.ndarray) -> None:
        """``ret = alpha * dF/dy * x + beta * ret``."""

    @abc.abstractmethod
    def multiply_with_derivative_jacobian(self, x: np.ndarray, ret: np.ndarray, time_factor: float) -> None:
        """``ret = dF/dy_dot * x``."""

    # ------------------------------------------------------------------ sensitivities
    @abc.abstractmethod
    def residual_sens_fwd_ad_only(self, t: float, sec_idx: int, time_factor: float, y: np.ndarray,
                                  y_dot: Optional[np.ndarray], ad_res: ActiveArray) -> int: ...

    def residual_sens_fwd_with_jacobian(self, t: float, sec_idx: int, time_factor: float, y: np.ndarray,
                                        y_dot: Optional[np.ndarray], ad_res: ActiveArray,
                                        ad_y: Optional[ActiveArray], ad_dir_offset: int) -> int:
        res = np.empty(self.num_dofs(), dtype=np.float64)
        code = self.residual_with_jacobian(t, sec_idx, time_factor, y, y_dot, res, None, ad_y, ad_dir_offset)
        if code < 0:
            return code
        return max(code, self.residual_sens_fwd_ad_only(t, sec_idx, time_factor, y, y_dot, ad_res))

    def residual_sens_fwd_combine(self, time_factor: float, ys: Sequence[np.ndarray],
                                  ys_dot: Sequence[np.ndarray], res_s: Sequence[np.ndarray],
                                  ad_res: ActiveArray, tmp1: np.ndarray, tmp2: np.ndarray,
                                  tmp3: np.ndarray) -> int:
        """
        ``res_s[j] = dF/dy * ys[j] + dF/dy_dot * ys_dot[j] + dF/dp_j``.

        ``tmp1`` receives ``dF/dy * s`` and ``tmp2`` receives ``dF/dy_dot * s_dot``
        of the last direction.
        """
        for j in range(len(ys)):
            self.multiply_with_jacobian(ys[j], 1.0, 0.0, tmp1)
            self.multiply_with_derivative_jacobian(ys_dot[j], tmp2, time_factor)
            res_s[j][:] = tmp1 + tmp2 + ad_res.ad[:, j]
        return 0

    # ------------------------------------------------------------------ consistent initialization
    def consistent_initial_state(self, t: float, sec_idx: int, time_factor: float, y: np.ndarray,
                                 ad_res: Optional[ActiveArray], ad_y: Optional[ActiveArray],
                                 ad_dir_offset: int, error_tol: float) -> None:
        pass

    def lean_consistent_initial_state(self, t: float, sec_idx: int, time_factor: float, y: np.ndarray,
                                      ad_res: Optional[ActiveArray], ad_y: Optional[ActiveArray],
                                      ad_dir_offset: int, error_tol: float) -> None:
        self.consistent_initial_state(t, sec_idx, time_factor, y, ad_res, ad_y, ad_dir_offset, error_tol)

    @abc.abstractmethod
    def consistent_initial_time_derivative(self, t: float, sec_idx: int, time_factor: float,
                                           y: np.ndarray, y_dot: np.ndarray) -> None:
        """On entry ``y_dot`` holds the residual at ``(y, 0)``; on exit the consistent derivative."""

    def lean_consistent_initial_time_derivative(self, t: float, time_factor: float,
                                                y_dot: np.ndarray, res: np.ndarray) -> None:
        y_dot[:] = res
        self.consistent_initial_time_derivative(t, 0, time_factor, np.zeros_like(y_dot), y_dot)

    @abc.abstractmethod
    def consistent_initial_sensitivity(self, t: float, sec_idx: int, time_factor: float,
                                       y: np.ndarray, y_dot: np.ndarray,
                                       sens_y: Sequence[np.ndarray], sens_y_dot: Sequence[np.ndarray],
                                       ad_res: ActiveArray) -> None: ...

    def lean_consistent_initial_sensitivity(self, t: float, sec_idx: int, time_factor: float,
                                            y: np.ndarray, y_dot: np.ndarray,
                                            sens_y: Sequence[np.ndarray], sens_y_dot: Sequence[np.ndarray],
                                            ad_res: ActiveArray) -> None:
        self.consistent_initial_sensitivity(t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot, ad_res)

    # ------------------------------------------------------------------ network notifications
    def set_flow_rates(self, total_in: Active, total_out: Active) -> None:
        self.flow_rate_in = total_in
        self.flow_rate_out = total_out

    def notify_discontinuous_section_transition(self, t: float, sec_idx: int,
                                                ad_res: Optional[ActiveArray],
                                                ad_y: Optional[ActiveArray], ad_dir_offset: int) -> None:
        pass

    def set_section_times(self, section_times: Sequence[float], section_continuity: Sequence[bool],
                          n_sections: int) -> None:
        self._section_times = np.asarray(section_times, dtype=np.float64)

    def set_external_functions(self, functions: Sequence[Any]) -> None:
        self._external_functions = tuple(functions)

    def prepare_ad_vectors(self, ad_res: ActiveArray, ad_y: ActiveArray, ad_dir_offset: int) -> None:
        pass

    def reconfigure(self, params: Mapping[str, Any]) -> bool:
        return True

    def expand_error_tol(self, error_spec: Sequence[float], expand_out: np.ndarray) -> None:
        pass

    # ------------------------------------------------------------------ initial conditions / output
    def apply_initial_condition(self, y: np.ndarray, y_dot: np.ndarray) -> None:
        y[:] = 0.0
        y_dot[:] = 0.0

    def apply_initial_condition_from(self, params: Mapping[str, Any], y: np.ndarray, y_dot: np.ndarray) -> None:
        self.apply_initial_condition(y, y_dot)

    def report_solution(self, recorder, solution: np.ndarray) -> None:
        recorder.record_unit(self.unit_operation_id, solution[: self.num_dofs()])

    def report_solution_structure(self, recorder) -> None:
        recorder.register_unit(self.unit_operation_id, self.name, self.num_dofs(), self.num_components())

    # ------------------------------------------------------------------ parameters
    def _register_parameter(self, name: str, value: float, component: int = -1) -> Active:
        pid = ParameterId(name=name, unit_operation=self.unit_operation_id, component=component)
        handle = Active(value)
        self._parameters[pid] = handle
        return handle

    def _lookup(self, pid: ParameterId) -> Optional[Active]:
        handle = self._parameters.get(pid)
        if handle is None and pid.unit_operation == UNIT_OP_INDEP:
            own = ParameterId(
                name=pid.name,
                unit_operation=self.unit_operation_id,
                component=pid.component,
                particle_type=pid.particle_type,
                bound_state=pid.bound_state,
                reaction=pid.reaction,
                section=pid.section,
            )
            handle = self._parameters.get(own)
        return handle

    def has_parameter(self, pid: ParameterId) -> bool:
        return self._lookup(pid) is not None

    def get_all_parameter_values(self) -> Dict[ParameterId, float]:
        return {pid: float(h) for pid, h in self._parameters.items()}

    def set_parameter(self, pid: ParameterId, value) -> bool:
        handle = self._lookup(pid)
        if handle is None or isinstance(value, bool):
            return False
        handle.set_value(float(value))
        return True

    def set_sensitive_parameter(self, pid: ParameterId, ad_direction: int, ad_value: float) -> bool:
        handle = self._lookup(pid)
        if handle is None:
            return False
        logger.debug("Unit %d: parameter %s dir %d seeded with %g", self.unit_operation_id, pid, ad_direction, ad_value)
        if not any(h is handle for h in self._sens_params):
            self._sens_params.append(handle)
        handle.set_ad_value(ad_direction, ad_value)
        return True

    def set_sensitive_parameter_value(self, pid: ParameterId, value: float) -> None:
        handle = self._lookup(pid)
        if handle is not None and any(h is handle for h in self._sens_params):
            handle.set_value(float(value))

    def clear_sens_params(self) -> None:
        for handle in self._sens_params:
            handle.clear_ad()
        self._sens_params = []
