"""
Valve switches: fail-fast validation, flow balance and the topology state machine.

Tests:
1. Valid source -> sink switch is accepted (both ends exempt from the balance)
2. 2e-15 relative imbalance at a non-exempt unit fails for rates 1, 1e-3 and 1e-6; 1e-16 passes
3. Every structural error names the switch and row
4. Section index rules (first = 0, strictly increasing, nswitches, cycle_sections)
5. Duplicate (source, dest) rows share the first row's flow rate
6. Switch cycling for thresholds [0, 3]: 0,0,0,1,1,1,0
7. Explicit cycle_sections and single-switch schedules
8. A failed configure keeps the previous schedule
"""

from __future__ import annotations

import pytest

from assembly.flow_network import FlowNetwork, flow_totals
from core.types import NetworkConfigError, flow_rate_param_id
from units.linear import CstrUnit, InletUnit, OutletUnit


def _make_chain(n_comp: int = 1):
    """inlet(0) -> cstr(1) -> outlet(2)"""
    return [InletUnit(0, n_comp), CstrUnit(1, n_comp), OutletUnit(2, n_comp)]


def _cfg(*switches, **extra):
    cfg = {"switches": [{"section": sec, "connections": rows} for sec, rows in switches]}
    cfg.update(extra)
    return cfg


def _chain_rows(q_in: float = 1.0, q_out: float = 1.0):
    return [[0, 1, -1, -1, q_in], [1, 2, -1, -1, q_out]]


def test_source_to_sink_accepted():
    units = [InletUnit(0, 2), OutletUnit(1, 2)]
    net = FlowNetwork()
    net.configure(_cfg((0, [0, 1, -1, -1, 3.5])), units)

    assert net.num_switches == 1
    conn = net.active.connections[0]
    assert (conn.source, conn.dest) == (0, 1)
    assert net.active.rates[0].val == 3.5


@pytest.mark.parametrize("rate", [1.0, 1e-3, 1e-6])
@pytest.mark.parametrize("rel_error", [2e-15, 1e-10])
def test_balance_violation_detected(rate, rel_error):
    net = FlowNetwork()
    with pytest.raises(NetworkConfigError, match=r"switch 0\): Unbalanced flow rate at unit operation 1"):
        net.configure(_cfg((0, _chain_rows(rate, rate * (1.0 + rel_error)))), _make_chain())


@pytest.mark.parametrize("rate", [1.0, 1e-3, 1e-6])
def test_balance_within_tolerance_passes(rate):
    net = FlowNetwork()
    net.configure(_cfg((0, _chain_rows(rate, rate * (1.0 + 1e-16)))), _make_chain())
    assert net.num_switches == 1

    net.configure(_cfg((0, _chain_rows(rate, rate))), _make_chain())
    assert net.active.rates[1].val == rate


def test_accumulating_and_terminal_units_are_exempt():
    class Tank(CstrUnit):
        def can_accumulate(self) -> bool:
            return True

    net = FlowNetwork()
    net.configure(_cfg((0, _chain_rows(2.0, 1.0))), [InletUnit(0, 1), Tank(1, 1), OutletUnit(2, 1)])

    # cstr 1 never acts as source: terminal node
    net.configure(_cfg((0, [[0, 1, -1, -1, 2.0]])), _make_chain())


@pytest.mark.parametrize(
    "rows, match",
    [
        ([[-1, 1, -1, -1, 1.0]], r"\(switch 0 row 0\): Source unit operation id has to be at least zero"),
        ([[0, -2, -1, -1, 1.0]], r"\(switch 0 row 0\): Destination unit operation id has to be at least zero"),
        ([[0, 7, -1, -1, 1.0]], r"Destination unit operation 7 not found"),
        ([[9, 1, -1, -1, 1.0]], r"Source unit operation 9 not found"),
        ([[2, 1, -1, -1, 1.0]], r"Source unit operation 2 does not have an outlet"),
        ([[0, 1, -1, -1, 1.0], [1, 0, -1, -1, 1.0]], r"\(switch 0 row 1\): Destination unit operation 0 does not have an inlet"),
        ([[0, 1, 2, 0, 1.0]], r"Source component index 2 exceeds number of components 2"),
        ([[0, 1, 0, 5, 1.0]], r"Destination component index 5 exceeds"),
        ([[0, 1, -1, 0, 1.0]], r"both -1 or both non-negative"),
    ],
)
def test_structural_errors(rows, match):
    net = FlowNetwork()
    with pytest.raises(NetworkConfigError, match=match):
        net.configure(_cfg((0, rows)), _make_chain(n_comp=2))


def test_wildcard_component_count_mismatch():
    units = [InletUnit(0, 2), OutletUnit(1, 3)]
    with pytest.raises(NetworkConfigError, match=r"source \(2\) and destination \(3\)"):
        FlowNetwork().configure(_cfg((0, [0, 1, -1, -1, 1.0])), units)


def test_malformed_table():
    with pytest.raises(NetworkConfigError, match="not a multiple of 5"):
        FlowNetwork().configure(_cfg((0, [0, 1, -1, -1])), _make_chain())
    with pytest.raises(NetworkConfigError, match="at least one valve switch"):
        FlowNetwork().configure({"switches": []}, _make_chain())


def test_section_rules():
    units = _make_chain()
    with pytest.raises(NetworkConfigError, match="first switch must start at section 0"):
        FlowNetwork().configure(_cfg((1, _chain_rows())), units)
    with pytest.raises(NetworkConfigError, match="must be greater than 2"):
        FlowNetwork().configure(_cfg((0, _chain_rows()), (2, _chain_rows()), (2, _chain_rows())), units)
    with pytest.raises(NetworkConfigError, match="nswitches = 3"):
        FlowNetwork().configure(_cfg((0, _chain_rows()), nswitches=3), units)
    with pytest.raises(NetworkConfigError, match="cycle_sections"):
        FlowNetwork().configure(_cfg((0, _chain_rows()), (4, _chain_rows()), cycle_sections=4), units)


def test_switch_scopes_and_upper_case_keys():
    cfg = {
        "NSWITCHES": 2,
        "switch_001": {"SECTION": 2, "CONNECTIONS": _chain_rows(2.0, 2.0)},
        "switch_000": {"SECTION": 0, "CONNECTIONS": _chain_rows()},
    }
    net = FlowNetwork()
    net.configure(cfg, _make_chain())
    assert [s.section for s in net.switches] == [0, 2]
    assert net.switches[1].rates[0].val == 2.0


def test_duplicate_pair_shares_first_rate():
    units = [InletUnit(0, 2), OutletUnit(1, 2)]
    rows = [[0, 1, 0, 0, 2.0], [0, 1, 1, 1, 99.0]]
    net = FlowNetwork()
    net.configure(_cfg((0, rows)), units)

    sw = net.active
    assert sw.first_occurrence(1) == 0
    assert sw.rates[1] is sw.rates[0]
    total_in, total_out = flow_totals(sw, 2)
    assert total_in[1].val == 2.0
    assert total_out[0].val == 2.0
    # only the first occurrence is a parameter
    assert list(net.parameters) == [flow_rate_param_id(0, 1, 0)]


def test_topology_cycling_two_switches():
    net = FlowNetwork()
    net.configure(_cfg((0, _chain_rows()), (3, _chain_rows(2.0, 2.0))), _make_chain())

    seq = []
    for sec in range(7):
        net.select_switch(sec)
        seq.append(net.cur_switch)
    assert seq == [0, 0, 0, 1, 1, 1, 0]
    assert net.cycle_period() == 6


def test_topology_restart_and_explicit_cycle():
    net = FlowNetwork()
    net.configure(
        _cfg((0, _chain_rows()), (1, _chain_rows(2.0, 2.0)), (2, _chain_rows(3.0, 3.0)), cycle_sections=4),
        _make_chain(),
    )
    seq = []
    for sec in range(9):
        prev, cur = net.select_switch(sec)
        seq.append(cur)
    assert seq == [0, 1, 2, 2, 0, 1, 2, 2, 0]

    # section 0 always restarts the schedule
    assert net.select_switch(0) == (0, 0)


def test_single_switch_never_moves():
    net = FlowNetwork()
    net.configure(_cfg((0, _chain_rows())), _make_chain())
    assert [net.select_switch(sec)[1] for sec in range(5)] == [0, 0, 0, 0, 0]


def test_failed_configure_keeps_previous_schedule():
    units = _make_chain()
    net = FlowNetwork()
    net.configure(_cfg((0, _chain_rows(4.0, 4.0))), units)
    with pytest.raises(NetworkConfigError):
        net.configure(_cfg((0, _chain_rows()), (1, _chain_rows(1.0, 3.0))), units)
    assert net.num_switches == 1
    assert net.active.rates[0].val == 4.0
