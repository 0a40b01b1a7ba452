"""
Network of unit operations solved as one DAE system.

ModelSystem owns the registered units, the DOF layout, the valve-switch
schedule and the coupling matrices. Numerical work is delegated to:
- assembly.residual_global  (residual, Jacobian products, coupling solve)
- assembly.sensitivity      (forward sensitivity residuals)
- solvers.schur_linear      (block elimination + Schur complement GMRES)
- solvers.consistent_init   (full / lean consistent initialization)

Configuration errors raise NetworkConfigError; numerical failures are
returned as integer codes (negative fatal, positive recoverable).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np

from assembly import residual_global, sensitivity
from assembly.coupling import CouplingMatrices
from assembly.flow_network import FlowNetwork
from core.ad import Active, ActiveArray
from core.layout import DofLayout
from core.types import UNIT_OP_INDEP, NetworkConfigError, ParameterId
from parallel.pool import WorkerPool
from solvers import consistent_init, schur_linear
from solvers.consistent_init import InitMode
from solvers.gmres import Gmres
from solvers.linear_types import LinearSolveResult, SolverSettings
from units.base import UnitOperation

logger = logging.getLogger(__name__)

ExternalFactory = Callable[[str], Any]


def _scope(cfg: Mapping[str, Any], key: str):
    if key in cfg:
        return cfg[key]
    return cfg.get(key.upper(), None)


def _source_key(i: int) -> str:
    return f"source_{i:03d}"


def _unit_key(unit_id: int) -> str:
    return f"unit_{unit_id:03d}"


class ModelSystem:
    def __init__(self, settings: Optional[SolverSettings] = None) -> None:
        self.units: List[UnitOperation] = []
        self.layout = DofLayout()
        self.network = FlowNetwork()
        self.coupling = CouplingMatrices()
        self.settings = settings or SolverSettings()
        self.pool = WorkerPool(self.settings.n_threads)
        self.gmres = Gmres()
        self.error_indicator: List[int] = []
        self.in_out_models: List[int] = []
        self.external_functions: List[Any] = []
        self.temp_state = np.zeros(0, dtype=np.float64)
        self.last_schur_result: Optional[LinearSolveResult] = None
        self._sens_params: List[Active] = []
        self._configured = False

    # ------------------------------------------------------------------ unit registry
    @property
    def num_models(self) -> int:
        return len(self.units)

    def add_model(self, unit: UnitOperation) -> None:
        if self.get_unit_operation_model(unit.unit_operation_id) is not None:
            raise NetworkConfigError(f"Unit operation id {unit.unit_operation_id} is already registered")
        self.units.append(unit)
        self._rebuild_internal_data_structures()

    def get_model(self, index: int) -> Optional[UnitOperation]:
        if 0 <= index < len(self.units):
            return self.units[index]
        return None

    def get_unit_operation_model(self, unit_id: int) -> Optional[UnitOperation]:
        for unit in self.units:
            if unit.unit_operation_id == unit_id:
                return unit
        return None

    def remove_model(self, model: Union[UnitOperation, int]) -> bool:
        target = self.get_unit_operation_model(model) if isinstance(model, int) else model
        for i, unit in enumerate(self.units):
            if unit is target:
                del self.units[i]
                self._rebuild_internal_data_structures()
                return True
        return False

    def max_unit_operation_id(self) -> int:
        """Largest registered unit id, -1 without units."""
        if not self.units:
            return -1
        return max(u.unit_operation_id for u in self.units)

    def _rebuild_internal_data_structures(self) -> None:
        self.layout.rebuild(self.units)
        self.error_indicator = [0] * len(self.units)
        self.in_out_models = [i for i, u in enumerate(self.units) if u.has_inlet() and u.has_outlet()]
        self.temp_state = np.zeros(self.num_dofs(), dtype=np.float64)
        self.gmres.initialize(self.num_coupling_dofs(), self.settings.max_krylov)
        # the switch schedule refers to unit indices
        self._configured = False

    # ------------------------------------------------------------------ sizes / AD
    def num_dofs(self) -> int:
        return self.layout.num_dofs() if self.layout.offsets else 0

    def num_pure_dofs(self) -> int:
        return sum(u.num_pure_dofs() for u in self.units)

    def num_coupling_dofs(self) -> int:
        return self.layout.num_coupling_dofs

    def uses_ad(self) -> bool:
        return any(u.uses_ad() for u in self.units)

    def required_ad_dirs(self) -> int:
        # units are locally independent, so the largest requirement suffices
        return max((u.required_ad_dirs() for u in self.units), default=0)

    def prepare_ad_vectors(self, ad_res: Optional[ActiveArray], ad_y: Optional[ActiveArray],
                           ad_dir_offset: int) -> None:
        if ad_y is None:
            return
        for i, sl in self.layout.iter_units():
            if self.units[i].uses_ad():
                self.units[i].prepare_ad_vectors(ad_res[sl], ad_y[sl], ad_dir_offset)

    # ------------------------------------------------------------------ configuration
    def require_configured(self) -> None:
        if not self._configured:
            raise RuntimeError("ModelSystem is not configured (call configure() after registering units)")

    def _apply_solver_settings(self, settings: SolverSettings) -> None:
        if self.pool.n_threads != settings.n_threads:
            self.pool.close()
            self.pool = WorkerPool(settings.n_threads)
        self.settings = settings
        self.gmres = Gmres(
            size=self.num_coupling_dofs(),
            max_krylov=settings.max_krylov,
            orthogonalization=settings.gs_type,
            max_restarts=settings.max_restarts,
            backend=settings.krylov_backend,
        )

    def configure(self, config: Mapping[str, Any], external_factory: Optional[ExternalFactory] = None) -> bool:
        """
        Read switches, solver settings and external functions.

        Raises NetworkConfigError on structural problems. Returns False if an
        external function could not be created or configured (it is disabled).
        """
        self._rebuild_internal_data_structures()

        connections = _scope(config, "connections")
        if connections is None:
            raise NetworkConfigError("missing 'connections' group")
        self.network.configure(connections, self.units)
        self._sens_params = []

        self._apply_solver_settings(SolverSettings.from_dict(_scope(config, "solver")))

        success = self._create_external_functions(_scope(config, "external"), external_factory)
        for unit in self.units:
            unit.set_external_functions(self.external_functions)

        self._configured = True
        self._apply_switch(assemble=True)
        logger.info(
            "Configured network: %d units, %d DOFs (%d coupling), %d switches",
            self.num_models, self.num_dofs(), self.num_coupling_dofs(), self.network.num_switches,
        )
        return success

    def reconfigure(self, config: Mapping[str, Any]) -> bool:
        """Re-read switches, solver options and external function parameters."""
        self.require_configured()
        connections = _scope(config, "connections")
        if connections is not None:
            self.network.configure(connections, self.units)
            self._sens_params = []

        success = True
        external = _scope(config, "external")
        if external is not None:
            for i, func in enumerate(self.external_functions):
                if func is None:
                    continue
                params = external.get(_source_key(i))
                if params is None:
                    continue
                ok = bool(func.configure(params))
                if not ok:
                    logger.error("Failed to reconfigure external source %d", i)
                success = ok and success

        solver = _scope(config, "solver")
        if solver is not None:
            new = SolverSettings.from_dict(solver)
            self.settings.gs_type = new.gs_type
            self.settings.max_restarts = new.max_restarts
            self.settings.schur_safety = new.schur_safety
            self.gmres.orthogonalization = new.gs_type
            self.gmres.max_restarts = new.max_restarts

        self._apply_switch(assemble=True)
        return success

    def reconfigure_model(self, params: Mapping[str, Any], unit_id: int) -> bool:
        unit = self.get_unit_operation_model(unit_id)
        if unit is None:
            return False
        return unit.reconfigure(params)

    # ------------------------------------------------------------------ external functions
    def _create_external_functions(self, external: Optional[Mapping[str, Any]],
                                   factory: Optional[ExternalFactory]) -> bool:
        self.external_functions = []
        if not external:
            return True
        success = True
        i = 0
        while _source_key(i) in external:
            params = external[_source_key(i)]
            ext_type = str(_scope(params, "extfun_type") or "")
            func = factory(ext_type) if factory is not None else None
            if func is None:
                logger.error("Failed to create external source %d as type %r is unknown, source is ignored", i, ext_type)
                self.external_functions.append(None)
                success = False
            elif not func.configure(params):
                logger.error("Failed to configure external source %d (%s), source is ignored", i, ext_type)
                self.external_functions.append(None)
                success = False
            else:
                self.external_functions.append(func)
            i += 1
        return success

    def add_external_function(self, func: Any) -> int:
        self.external_functions.append(func)
        for unit in self.units:
            unit.set_external_functions(self.external_functions)
        return len(self.external_functions) - 1

    def get_external_function(self, index: int) -> Optional[Any]:
        if 0 <= index < len(self.external_functions):
            return self.external_functions[index]
        return None

    def remove_external_function(self, index: int) -> bool:
        if not 0 <= index < len(self.external_functions):
            return False
        # keep source indices stable
        self.external_functions[index] = None
        for unit in self.units:
            unit.set_external_functions(self.external_functions)
        return True

    # ------------------------------------------------------------------ parameters
    def _matching_units(self, pid: ParameterId):
        for unit in self.units:
            if pid.unit_operation == UNIT_OP_INDEP or unit.unit_operation_id == pid.unit_operation:
                yield unit

    def get_all_parameter_values(self) -> Dict[ParameterId, float]:
        data = {pid: float(h) for pid, h in self.network.parameters.items()}
        for unit in self.units:
            data.update(unit.get_all_parameter_values())
        return data

    def has_parameter(self, pid: ParameterId) -> bool:
        if any(unit.has_parameter(pid) for unit in self._matching_units(pid)):
            return True
        return pid in self.network.parameters

    def set_parameter(self, pid: ParameterId, value: Union[int, float, bool]) -> bool:
        """
        Set a parameter value.

        Flow-rate changes take effect at the next section transition that
        rebuilds the coupling matrices.
        """
        found = False
        handle = self.network.parameters.get(pid)
        if handle is not None and not isinstance(value, bool):
            handle.set_value(float(value))
            found = True
        for unit in self._matching_units(pid):
            found = unit.set_parameter(pid, value) or found
        return found

    def set_sensitive_parameter(self, pid: ParameterId, ad_direction: int, ad_value: float) -> bool:
        found = False
        if pid.unit_operation == UNIT_OP_INDEP:
            handle = self.network.parameters.get(pid)
            if handle is not None:
                logger.debug("Found parameter %s in ModelSystem: dir %d is set to %g", pid, ad_direction, ad_value)
                if not any(h is handle for h in self._sens_params):
                    self._sens_params.append(handle)
                handle.set_ad_value(ad_direction, ad_value)
                found = True
        for unit in self._matching_units(pid):
            found = unit.set_sensitive_parameter(pid, ad_direction, ad_value) or found
        return found

    def set_sensitive_parameter_value(self, pid: ParameterId, value: float) -> None:
        if pid.unit_operation == UNIT_OP_INDEP:
            handle = self.network.parameters.get(pid)
            if handle is not None and any(h is handle for h in self._sens_params):
                handle.set_value(float(value))
        for unit in self._matching_units(pid):
            unit.set_sensitive_parameter_value(pid, value)

    def clear_sens_params(self) -> None:
        for handle in self._sens_params:
            handle.clear_ad()
        self._sens_params = []
        for unit in self.units:
            unit.clear_sens_params()

    # ------------------------------------------------------------------ topology
    @property
    def cur_switch(self) -> int:
        return self.network.cur_switch

    def _apply_switch(self, assemble: bool) -> None:
        total_in, total_out = self.network.unit_flow_totals(self.num_models)
        for i, unit in enumerate(self.units):
            unit.set_flow_rates(total_in[i], total_out[i])
        if assemble:
            self.coupling.assemble(self.units, self.layout, self.network.active)

    def notify_discontinuous_section_transition(self, t: float, sec_idx: int,
                                                ad_res: Optional[ActiveArray] = None,
                                                ad_y: Optional[ActiveArray] = None,
                                                ad_dir_offset: int = 0) -> None:
        self.require_configured()
        prev, cur = self.network.select_switch(sec_idx)

        total_in, total_out = self.network.unit_flow_totals(self.num_models)
        for i, sl in self.layout.iter_units():
            unit = self.units[i]
            unit.set_flow_rates(total_in[i], total_out[i])
            unit.notify_discontinuous_section_transition(
                t, sec_idx,
                None if ad_res is None else ad_res[sl],
                None if ad_y is None else ad_y[sl],
                ad_dir_offset,
            )

        if sec_idx == 0 or prev != cur:
            self.coupling.assemble(self.units, self.layout, self.network.active)

    def set_section_times(self, section_times: Sequence[float], section_continuity: Sequence[bool],
                          n_sections: int) -> None:
        for unit in self.units:
            unit.set_section_times(section_times, section_continuity, n_sections)
        for func in self.external_functions:
            if func is not None and hasattr(func, "set_section_times"):
                func.set_section_times(section_times, section_continuity, n_sections)

    # ------------------------------------------------------------------ residual / Jacobian
    def residual(self, t, sec_idx, time_factor, y, y_dot, res) -> int:
        return residual_global.residual(self, t, sec_idx, time_factor, y, y_dot, res)

    def residual_with_jacobian(self, t, sec_idx, time_factor, y, y_dot, res,
                               ad_res=None, ad_y=None, ad_dir_offset: int = 0) -> int:
        return residual_global.residual_with_jacobian(
            self, t, sec_idx, time_factor, y, y_dot, res, ad_res, ad_y, ad_dir_offset
        )

    def residual_norm(self, t, sec_idx, time_factor, y, y_dot) -> float:
        return residual_global.residual_norm(self, t, sec_idx, time_factor, y, y_dot)

    def multiply_with_jacobian(self, x, alpha, beta, ret) -> None:
        residual_global.multiply_with_jacobian(self, x, alpha, beta, ret)

    def multiply_with_derivative_jacobian(self, x, ret, time_factor: float = 1.0) -> None:
        residual_global.multiply_with_derivative_jacobian(self, x, ret, time_factor)

    def solve_coupling_dof(self, vec: np.ndarray) -> None:
        residual_global.solve_coupling_dof(self, vec)

    def linear_solve(self, t, time_factor, alpha, outer_tol, rhs, weight, y, y_dot, res) -> int:
        return schur_linear.linear_solve(self, t, time_factor, alpha, outer_tol, rhs, weight, y, y_dot, res)

    # ------------------------------------------------------------------ consistent initialization
    def consistent_initial_conditions(self, t, sec_idx, time_factor, y, y_dot, ad_res=None, ad_y=None,
                                      ad_dir_offset: int = 0, error_tol: float = 1e-12) -> None:
        consistent_init.consistent_initial_conditions(
            self, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y, ad_dir_offset, error_tol, InitMode.FULL
        )

    def lean_consistent_initial_conditions(self, t, sec_idx, time_factor, y, y_dot, ad_res=None, ad_y=None,
                                           ad_dir_offset: int = 0, error_tol: float = 1e-12) -> None:
        consistent_init.consistent_initial_conditions(
            self, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y, ad_dir_offset, error_tol, InitMode.LEAN
        )

    def consistent_initial_sensitivity(self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot,
                                       ad_res, ad_y=None) -> None:
        consistent_init.consistent_initial_sensitivity(
            self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot, ad_res, ad_y, InitMode.FULL
        )

    def lean_consistent_initial_sensitivity(self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot,
                                            ad_res, ad_y=None) -> None:
        consistent_init.consistent_initial_sensitivity(
            self, t, sec_idx, time_factor, y, y_dot, sens_y, sens_y_dot, ad_res, ad_y, InitMode.LEAN
        )

    # ------------------------------------------------------------------ sensitivities
    def dres_dp_fwd_with_jacobian(self, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y=None,
                                  ad_dir_offset: int = 0) -> int:
        return sensitivity.dres_dp_fwd_with_jacobian(
            self, t, sec_idx, time_factor, y, y_dot, ad_res, ad_y, ad_dir_offset
        )

    def residual_sens_fwd(self, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, res_s, ad_res,
                          tmp1, tmp2, tmp3) -> int:
        return sensitivity.residual_sens_fwd(
            self, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, res_s, ad_res, tmp1, tmp2, tmp3
        )

    def residual_sens_fwd_with_jacobian(self, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, res_s,
                                        ad_res, ad_y, ad_dir_offset, tmp1, tmp2, tmp3) -> int:
        return sensitivity.residual_sens_fwd_with_jacobian(
            self, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, res_s, ad_res, ad_y, ad_dir_offset,
            tmp1, tmp2, tmp3,
        )

    def residual_sens_fwd_norm(self, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, ad_res) -> np.ndarray:
        return sensitivity.residual_sens_fwd_norm(self, t, sec_idx, time_factor, y, y_dot, ys, ys_dot, ad_res)

    # ------------------------------------------------------------------ initial conditions / output
    def apply_initial_condition(self, y: np.ndarray, y_dot: np.ndarray) -> None:
        for i, sl in self.layout.iter_units():
            self.units[i].apply_initial_condition(y[sl], y_dot[sl])

    def apply_initial_condition_from(self, config: Mapping[str, Any], y: np.ndarray, y_dot: np.ndarray) -> None:
        """
        ``init_state_y`` / ``init_state_ydot`` (full vectors) take precedence;
        otherwise every unit reads its ``unit_XXX`` scope.
        """
        n = self.num_dofs()
        skip_units = False
        init_y = _scope(config, "init_state_y")
        if init_y is not None:
            arr = np.asarray(init_y, dtype=np.float64).ravel()
            if arr.size >= n:
                y[:] = arr[:n]
                skip_units = True
        init_ydot = _scope(config, "init_state_ydot")
        if init_ydot is not None:
            arr = np.asarray(init_ydot, dtype=np.float64).ravel()
            if arr.size >= n:
                y_dot[:] = arr[:n]
        if skip_units:
            return
        for i, sl in self.layout.iter_units():
            unit = self.units[i]
            params = _scope(config, _unit_key(unit.unit_operation_id)) or {}
            unit.apply_initial_condition_from(params, y[sl], y_dot[sl])

    def report_solution(self, recorder, solution: np.ndarray) -> None:
        for i, sl in self.layout.iter_units():
            self.units[i].report_solution(recorder, solution[sl])
        recorder.record_coupling(solution[self.layout.coupling_slice()])

    def report_solution_structure(self, recorder) -> None:
        for unit in self.units:
            unit.report_solution_structure(recorder)

    def calculate_error_tols_for_additional_dofs(self, error_tol: Sequence[float]) -> List[float]:
        # coupling DOFs do not get tolerances of their own
        return []

    def expand_error_tol(self, error_spec: Sequence[float], expand_out: np.ndarray) -> None:
        for unit in self.units:
            unit.expand_error_tol(error_spec, expand_out)

    def close(self) -> None:
        self.pool.close()

    def __enter__(self) -> "ModelSystem":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
