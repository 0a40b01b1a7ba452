"""
Parameter registry, external functions and reconfiguration.

Tests:
1. Flow rates are parameters (first occurrence only), unit parameters are forwarded
2. set_parameter on a flow rate takes effect at the next section transition
3. UNIT_OP_INDEP parameters reach every unit that has them
4. External source creation / configuration failures disable the source and
   make configure() return False
5. reconfigure() updates solver options, external sources and switches
6. Section times and external functions are forwarded to the units
"""

from __future__ import annotations

import logging

import numpy as np
import pytest

from core.model_system import ModelSystem
from core.types import UNIT_OP_INDEP, NetworkConfigError, ParameterId, flow_rate_param_id
from solvers.linear_types import Orthogonalization
from units.linear import CstrUnit, InletUnit, OutletUnit


class _ConstantSource:
    """Minimal external function: a constant value read from its scope."""

    def __init__(self):
        self.value = None
        self.section_times = None

    def configure(self, params):
        if "value" not in params:
            return False
        self.value = float(params["value"])
        return True

    def set_section_times(self, section_times, section_continuity, n_sections):
        self.section_times = list(section_times)


def _factory(ext_type):
    if ext_type == "CONSTANT":
        return _ConstantSource()
    return None


def _rows(q: float = 1.0):
    return [[0, 1, -1, -1, q], [0, 2, -1, -1, 2.0 * q], [1, 3, -1, -1, q], [2, 3, -1, -1, 2.0 * q]]


def _make_system(config_extra=None, factory=None):
    """inlet(0) splits into cstr(1) and cstr(2), both feed outlet(3)."""
    system = ModelSystem()
    system.add_model(InletUnit(0, 1, const_coeff=1.0))
    system.add_model(CstrUnit(1, 1, volume=1.0))
    system.add_model(CstrUnit(2, 1, volume=3.0))
    system.add_model(OutletUnit(3, 1))
    cfg = {"connections": {"switches": [{"section": 0, "connections": _rows()}]}}
    cfg.update(config_extra or {})
    ok = system.configure(cfg, external_factory=factory)
    return system, ok


def test_parameter_registry_contents():
    system, ok = _make_system()
    assert ok
    values = system.get_all_parameter_values()

    assert values[flow_rate_param_id(0, 2, 0)] == 2.0
    assert values[ParameterId("VOLUME", unit_operation=2)] == 3.0
    assert values[ParameterId("CONST_COEFF", unit_operation=0, component=0)] == 1.0
    assert system.has_parameter(flow_rate_param_id(1, 3, 0))
    assert not system.has_parameter(flow_rate_param_id(3, 1, 0))
    assert system.has_parameter(ParameterId("VOLUME", unit_operation=UNIT_OP_INDEP))
    assert not system.has_parameter(ParameterId("VOLUME", unit_operation=0))


def test_flow_rate_change_applies_at_transition():
    system, _ = _make_system()
    cstr = system.get_unit_operation_model(1)
    assert cstr.flow_rate_in.val == 1.0

    assert system.set_parameter(flow_rate_param_id(0, 1, 0), 4.0)
    assert cstr.flow_rate_in.val == 1.0
    system.notify_discontinuous_section_transition(0.0, 0)
    assert cstr.flow_rate_in.val == 4.0

    # FN of the inlet now splits 4 : 2 between the tanks' coupling rows
    fn = system.coupling.fn_values[0].toarray()
    np.testing.assert_allclose(fn[:, 0], [-1.0, -1.0, 0.0])


def test_independent_parameter_reaches_all_units():
    system, _ = _make_system()
    pid = ParameterId("VOLUME", unit_operation=UNIT_OP_INDEP)
    assert system.set_parameter(pid, 5.0)
    values = system.get_all_parameter_values()
    assert values[ParameterId("VOLUME", unit_operation=1)] == 5.0
    assert values[ParameterId("VOLUME", unit_operation=2)] == 5.0

    assert not system.set_parameter(ParameterId("NOPE"), 1.0)
    assert not system.set_parameter(pid, True)


def test_sensitive_parameter_value_only_for_seeded_handles():
    system, _ = _make_system()
    pid = flow_rate_param_id(2, 3, 0)
    system.set_sensitive_parameter_value(pid, 9.0)
    assert system.get_all_parameter_values()[pid] == 2.0

    assert system.set_sensitive_parameter(pid, 0, 1.0)
    system.set_sensitive_parameter_value(pid, 9.0)
    assert system.get_all_parameter_values()[pid] == 9.0


def test_external_function_failures(caplog):
    external = {
        "source_000": {"EXTFUN_TYPE": "CONSTANT", "value": 2.5},
        "source_001": {"extfun_type": "SPLINE"},
        "source_002": {"extfun_type": "CONSTANT"},
    }
    with caplog.at_level(logging.ERROR, logger="core.model_system"):
        system, ok = _make_system({"external": external}, factory=_factory)

    assert not ok
    assert system.get_external_function(0).value == 2.5
    assert system.get_external_function(1) is None
    assert system.get_external_function(2) is None
    assert "unknown" in caplog.text
    assert "Failed to configure external source 2" in caplog.text
    # units see the same list, disabled slots included
    assert len(system.get_model(1)._external_functions) == 3


def test_external_function_registry():
    system, ok = _make_system({"external": {"source_000": {"extfun_type": "CONSTANT", "value": 1.0}}}, _factory)
    assert ok
    idx = system.add_external_function(_ConstantSource())
    assert idx == 1
    assert system.remove_external_function(0)
    assert system.get_external_function(0) is None
    assert not system.remove_external_function(5)

    system.set_section_times([0.0, 1.0, 2.0], [False, False], 2)
    assert system.get_external_function(1).section_times == [0.0, 1.0, 2.0]
    np.testing.assert_array_equal(system.get_model(2)._section_times, [0.0, 1.0, 2.0])


def test_reconfigure():
    system, _ = _make_system(
        {"external": {"source_000": {"extfun_type": "CONSTANT", "value": 1.0}}}, _factory
    )
    ok = system.reconfigure(
        {
            "solver": {"GS_TYPE": 0, "MAX_RESTARTS": 4, "SCHUR_SAFETY": 1e-4},
            "external": {"source_000": {"value": 7.0}},
            "connections": {"switches": [{"section": 0, "connections": _rows(2.0)}]},
        }
    )
    assert ok
    assert system.settings.gs_type == Orthogonalization.CLASSICAL
    assert system.gmres.max_restarts == 4
    assert system.settings.schur_safety == 1e-4
    assert system.get_external_function(0).value == 7.0
    assert system.get_unit_operation_model(2).flow_rate_in.val == 4.0

    assert not system.reconfigure({"external": {"source_000": {}}})
    unbalanced = [[0, 1, -1, -1, 1.0], [1, 3, -1, -1, 2.0]]
    with pytest.raises(NetworkConfigError, match="Unbalanced"):
        system.reconfigure({"connections": {"switches": [{"section": 0, "connections": unbalanced}]}})
    # the previous schedule is kept
    assert len(system.network.active.connections) == 4


def test_reconfigure_model():
    system, _ = _make_system()
    assert system.reconfigure_model({"VOLUME": 0.25}, 2)
    assert system.get_all_parameter_values()[ParameterId("VOLUME", unit_operation=2)] == 0.25
    assert not system.reconfigure_model({"volume": -1.0}, 2)
    assert not system.reconfigure_model({}, 42)


def test_missing_connections_group():
    system = ModelSystem()
    system.add_model(InletUnit(0, 1))
    with pytest.raises(NetworkConfigError, match="connections"):
        system.configure({})


def test_misc_forwarding():
    system, _ = _make_system()
    assert system.calculate_error_tols_for_additional_dofs([1e-6]) == []
    assert not system.uses_ad()
    assert system.required_ad_dirs() == 0
    assert system.num_coupling_dofs() == 3
