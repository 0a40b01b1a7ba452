"""
Consistent initialization (full and lean).

Tests:
1. After full initialization the algebraic rows and the coupling rows vanish
   and the residual with the computed y_dot is zero
2. Running full initialization twice leaves (y, y_dot) unchanged
3. Lean initialization yields the same point for the linear reference units
4. Initial conditions from init_state_y or unit_XXX scopes
5. Engine calls before configure() raise
"""

from __future__ import annotations

import numpy as np
import pytest

from core.model_system import ModelSystem
from units.linear import CstrUnit, InletUnit, OutletUnit


def _make_system(n_comp: int = 2) -> ModelSystem:
    """inlet(0) -> cstr(1) -> cstr(2) -> outlet(3), recycle cstr(2) -> cstr(1)."""
    system = ModelSystem()
    system.add_model(InletUnit(0, n_comp, const_coeff=[1.0, 0.25][:n_comp], lin_coeff=[0.2, -0.1][:n_comp]))
    system.add_model(CstrUnit(1, n_comp, volume=2.0, init_c=[0.5, 0.0][:n_comp]))
    system.add_model(CstrUnit(2, n_comp, volume=1.0, init_c=[0.1, 0.3][:n_comp]))
    system.add_model(OutletUnit(3, n_comp))
    rows = [
        [0, 1, -1, -1, 1.0],
        [1, 2, -1, -1, 1.5],
        [2, 1, -1, -1, 0.5],
        [2, 3, -1, -1, 1.0],
    ]
    system.configure({"connections": {"switches": [{"section": 0, "connections": rows}]}})
    return system


def _initial_point(system: ModelSystem):
    n = system.num_dofs()
    y = np.zeros(n)
    y_dot = np.zeros(n)
    system.apply_initial_condition(y, y_dot)
    return y, y_dot


def test_full_init_is_consistent():
    system = _make_system()
    y, y_dot = _initial_point(system)
    t, tf = 0.7, 2.0
    system.notify_discontinuous_section_transition(t, 0)
    system.consistent_initial_conditions(t, 0, tf, y, y_dot)

    # the inlet follows its profile
    np.testing.assert_allclose(y[:2], [1.0 + 0.2 * t, 0.25 - 0.1 * t])
    # tank states are differential and stay as they were
    np.testing.assert_allclose(y[4:6], [0.5, 0.0])
    assert system.residual_norm(t, 0, tf, y, y_dot) < 1e-12


def test_full_init_idempotent():
    system = _make_system()
    y, y_dot = _initial_point(system)
    system.notify_discontinuous_section_transition(0.0, 0)
    system.consistent_initial_conditions(0.0, 0, 1.0, y, y_dot)
    y1, y_dot1 = y.copy(), y_dot.copy()

    system.consistent_initial_conditions(0.0, 0, 1.0, y, y_dot)
    np.testing.assert_allclose(y, y1, rtol=1e-14, atol=1e-14)
    np.testing.assert_allclose(y_dot, y_dot1, rtol=1e-14, atol=1e-14)


def test_lean_init_matches_full():
    full = _make_system()
    lean = _make_system()
    y_f, yd_f = _initial_point(full)
    y_l, yd_l = _initial_point(lean)
    for system in (full, lean):
        system.notify_discontinuous_section_transition(0.0, 0)

    full.consistent_initial_conditions(0.0, 0, 1.0, y_f, yd_f)
    lean.lean_consistent_initial_conditions(0.0, 0, 1.0, y_l, yd_l)

    np.testing.assert_allclose(y_l, y_f, rtol=1e-14, atol=1e-14)
    np.testing.assert_allclose(yd_l, yd_f, rtol=1e-13, atol=1e-14)
    assert lean.residual_norm(0.0, 0, 1.0, y_l, yd_l) < 1e-12


def test_initial_condition_from_unit_scopes():
    system = _make_system()
    n = system.num_dofs()
    y = np.full(n, np.nan)
    y_dot = np.full(n, np.nan)
    system.apply_initial_condition_from({"unit_002": {"INIT_C": [2.0, 3.0]}}, y, y_dot)

    sl = system.layout.unit_slice(2)
    np.testing.assert_array_equal(y[sl], [0.0, 0.0, 2.0, 3.0])
    np.testing.assert_array_equal(y_dot[sl], 0.0)
    # coupling DOFs are not touched
    assert np.all(np.isnan(y[system.layout.coupling_slice()]))


def test_initial_condition_from_full_state():
    system = _make_system()
    n = system.num_dofs()
    y = np.zeros(n)
    y_dot = np.zeros(n)
    init = np.arange(n + 2, dtype=np.float64)
    system.apply_initial_condition_from({"init_state_y": init.tolist(), "INIT_STATE_YDOT": [1.0] * n}, y, y_dot)
    np.testing.assert_array_equal(y, init[:n])
    np.testing.assert_array_equal(y_dot, 1.0)

    # too short: fall back to the unit scopes
    system.apply_initial_condition_from({"init_state_y": [1.0]}, y, y_dot)
    np.testing.assert_array_equal(y[system.layout.unit_slice(1)], [0.0, 0.0, 0.5, 0.0])


def test_engine_requires_configure():
    system = ModelSystem()
    system.add_model(InletUnit(0, 1))
    system.add_model(OutletUnit(1, 1))
    y = np.zeros(system.num_dofs())
    with pytest.raises(RuntimeError, match="not configured"):
        system.residual(0.0, 0, 1.0, y, None, y.copy())
    with pytest.raises(RuntimeError, match="not configured"):
        system.consistent_initial_conditions(0.0, 0, 1.0, y, y.copy())
