"""
Coupling matrices and the global residual.

Tests:
1. NF: -1 at every inlet row, columns in coupling-index order
2. FN round-trip for a single connection: -FN_A applied to A's outlet gives A's outlet
3. FN with two inflows: coefficients are rate fractions of the destination inflow
4. Closed valve into a unit without other inflow leaves its FN rows empty
5. Residual coupling rows: y_c + sum_i FN_i y_i; unit inlet rows get -y_c
6. Assembled Jacobian (matrix-vector products) agrees with finite differences
7. Error codes of the units are fused into the residual return value
"""

from __future__ import annotations

import numpy as np
import pytest

from assembly.coupling import ActiveSparseMatrix, CouplingMatrices
from assembly.fd_jacobian import assemble_jacobian, build_fd_jacobian, compare_jacobians
from core.ad import Active
from core.layout import DofLayout
from core.model_system import ModelSystem
from core.types import Connection, FlowSwitch
from units.linear import CstrUnit, InletUnit, OutletUnit


def _make_switch(rows):
    conns, rates, authority = [], [], {}
    for src, dst, sc, dc, q in rows:
        conns.append(Connection(src, dst, sc, dc))
        rates.append(authority.setdefault((src, dst), Active(q)))
    return FlowSwitch(section=0, connections=conns, rates=rates)


def _make_recycle_system(rate_in: float = 1.0, rate_recycle: float = 0.5, n_comp: int = 2):
    """inlet(0) -> cstr(1) -> cstr(2) -> outlet(3), recycle cstr(2) -> cstr(1)."""
    system = ModelSystem()
    system.add_model(InletUnit(0, n_comp, const_coeff=np.linspace(1.0, 2.0, n_comp), lin_coeff=0.1))
    system.add_model(CstrUnit(1, n_comp, volume=2.0))
    system.add_model(CstrUnit(2, n_comp, volume=0.7))
    system.add_model(OutletUnit(3, n_comp))
    q = rate_in + rate_recycle
    rows = [
        [0, 1, -1, -1, rate_in],
        [1, 2, -1, -1, q],
        [2, 1, -1, -1, rate_recycle],
        [2, 3, -1, -1, rate_in],
    ]
    system.configure({"connections": {"switches": [{"section": 0, "connections": rows}]}})
    return system


def test_nf_entries():
    units = [InletUnit(0, 2), CstrUnit(1, 2), OutletUnit(2, 2)]
    layout = DofLayout.build(units)
    cm = CouplingMatrices()
    cm.assemble(units, layout, _make_switch([[0, 1, -1, -1, 1.0], [1, 2, -1, -1, 1.0]]))

    assert cm.nf[0].nnz == 0
    np.testing.assert_array_equal(cm.nf_values[1].toarray(), [[-1, 0, 0, 0], [0, -1, 0, 0], [0, 0, 0, 0], [0, 0, 0, 0]])
    np.testing.assert_array_equal(cm.nf_values[2].toarray(), [[0, 0, -1, 0], [0, 0, 0, -1]])


@pytest.mark.parametrize("rate", [1e-6, 1.0, 3.7e4])
def test_fn_round_trip_single_connection(rate):
    units = [InletUnit(0, 3), OutletUnit(1, 3)]
    layout = DofLayout.build(units)
    cm = CouplingMatrices()
    cm.assemble(units, layout, _make_switch([[0, 1, -1, -1, rate]]))

    outlet = np.array([0.3, -1.2, 4.0])
    coupling = -(cm.fn_values[0] @ outlet)
    np.testing.assert_array_equal(coupling, outlet)
    # NF_B puts -coupling into B's inlet rows
    np.testing.assert_array_equal(cm.nf_values[1] @ coupling, -outlet)


def test_fn_rate_fractions_and_component_mapping():
    units = [InletUnit(0, 2), InletUnit(1, 2), OutletUnit(2, 2)]
    layout = DofLayout.build(units)
    cm = CouplingMatrices()
    # unit 1 feeds only its component 1 into component 0 of the sink
    cm.assemble(units, layout, _make_switch([[0, 2, -1, -1, 3.0], [1, 2, 1, 0, 1.0]]))

    np.testing.assert_allclose(cm.fn_values[0].toarray(), [[-0.75, 0.0], [0.0, -0.75]])
    np.testing.assert_allclose(cm.fn_values[1].toarray(), [[0.0, -0.25], [0.0, 0.0]])
    # active and numeric coefficients agree
    np.testing.assert_array_equal(cm.fn[0].to_csr().toarray(), cm.fn_values[0].toarray())


def test_closed_valve_skips_rows():
    units = [InletUnit(0, 1), OutletUnit(1, 1)]
    layout = DofLayout.build(units)
    cm = CouplingMatrices()
    cm.assemble(units, layout, _make_switch([[0, 1, -1, -1, 0.0]]))
    assert cm.fn[0].nnz == 0
    assert cm.nf[1].nnz == 1


def test_active_sparse_matrix_bounds_and_derivatives():
    mat = ActiveSparseMatrix(2, 3)
    with pytest.raises(IndexError):
        mat.add_element(2, 0, Active(1.0))
    mat.add_element(1, 2, Active(2.0, [0.0, 5.0]))
    np.testing.assert_array_equal(mat.ad_csr(1).toarray(), [[0, 0, 0], [0, 0, 5.0]])
    np.testing.assert_array_equal(mat.ad_csr(3).toarray(), np.zeros((2, 3)))


def test_residual_coupling_rows():
    system = _make_recycle_system()
    n = system.num_dofs()
    rng = np.random.default_rng(7)
    y = rng.normal(size=n)
    y_dot = rng.normal(size=n)
    res = np.zeros(n)
    assert system.residual(0.5, 0, 1.0, y, y_dot, res) == 0

    layout = system.layout
    c = layout.coupling_slice()
    expected_c = y[c].copy()
    for i, sl in layout.iter_units():
        expected_c += system.coupling.fn_values[i] @ y[sl]
    np.testing.assert_allclose(res[c], expected_c, rtol=1e-14, atol=1e-14)

    # cstr 1 inlet rows: c_in - y_c
    sl1 = layout.unit_slice(1)
    np.testing.assert_allclose(res[sl1][:2], y[sl1][:2] - y[c][:2], rtol=1e-14, atol=1e-14)

    # cstr 1 inflow mixes inlet (1.0) and recycle (0.5)
    fn0 = system.coupling.fn_values[0].toarray()
    np.testing.assert_allclose(fn0[0, 0], -1.0 / 1.5)
    assert system.residual_norm(0.5, 0, 1.0, y, y_dot) == pytest.approx(np.abs(res).max())


def test_assembled_jacobian_matches_finite_differences():
    system = _make_recycle_system()
    n = system.num_dofs()
    rng = np.random.default_rng(3)
    y = rng.normal(size=n)
    y_dot = rng.normal(size=n)
    alpha = 2.5

    res = np.zeros(n)
    system.residual_with_jacobian(0.0, 0, 1.0, y, y_dot, res)
    jac_fd, stats = build_fd_jacobian(system, 0.0, 0, 1.0, y, y_dot, alpha=alpha, eps=1e-7)
    jac = assemble_jacobian(system, alpha=alpha, time_factor=1.0)

    out = compare_jacobians(jac, jac_fd)
    assert out["max_abs_diff"] < 1e-6
    assert stats["shape"] == (n, n)
    assert stats["n_fd_calls"] == 2 * n + 1


def test_unit_error_codes_are_fused():
    class FailingCstr(CstrUnit):
        code = 0

        def residual(self, t, sec_idx, time_factor, y, y_dot, res):
            super().residual(t, sec_idx, time_factor, y, y_dot, res)
            return self.code

    system = ModelSystem()
    system.add_model(InletUnit(0, 1))
    bad = FailingCstr(1, 1)
    system.add_model(bad)
    system.add_model(OutletUnit(2, 1))
    system.configure({"connections": {"switches": [{"section": 0, "connections": [[0, 1, -1, -1, 1.0], [1, 2, -1, -1, 1.0]]}]}})

    y = np.zeros(system.num_dofs())
    res = np.zeros_like(y)
    bad.code = 2
    assert system.residual(0.0, 0, 1.0, y, None, res) == 2
    bad.code = -1
    assert system.residual(0.0, 0, 1.0, y, None, res) == -1
    assert system.error_indicator == [0, -1, 0]
