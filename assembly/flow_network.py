"""
Valve switches of the unit-operation network.

Input (already parsed):
  connections:
    nswitches: 2            # optional, must match len(switches)
    cycle_sections: 6       # optional period of the switch schedule
    switches:
      - section: 0
        connections: [src, dst, src_comp, dst_comp, rate, ...]

Behavior:
- Every row is validated before any state is replaced (no partial acceptance).
- A (source, dest) pair carries one flow rate: the first row of the pair is the
  authority, later rows only add component mappings.
- The flow balance must close for every unit that is not exempt (single-port
  units, units that never act as a source, units that can accumulate).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from core.ad import Active
from core.types import (
    ALL_COMPONENTS,
    Connection,
    FlowSwitch,
    NetworkConfigError,
    ParameterId,
    flow_rate_param_id,
)

logger = logging.getLogger(__name__)

BALANCE_TOL = 1e-15
VALUES_PER_ROW = 5


def _get(cfg: Mapping[str, Any], key: str, default=None):
    if key in cfg:
        return cfg[key]
    return cfg.get(key.upper(), default)


def _rows_from_value(switch_idx: int, raw) -> np.ndarray:
    arr = np.asarray(raw, dtype=np.float64)
    if arr.ndim == 2:
        if arr.shape[1] != VALUES_PER_ROW:
            raise NetworkConfigError(
                f"In CONNECTIONS matrix (switch {switch_idx}): rows must have {VALUES_PER_ROW} values, got {arr.shape[1]}"
            )
        return arr
    arr = arr.ravel()
    if arr.size % VALUES_PER_ROW != 0:
        raise NetworkConfigError(
            f"In CONNECTIONS matrix (switch {switch_idx}): number of values ({arr.size}) is not a multiple of {VALUES_PER_ROW}"
        )
    return arr.reshape(-1, VALUES_PER_ROW)


def parse_switch_table(cfg: Mapping[str, Any]) -> Tuple[List[Tuple[int, np.ndarray]], Optional[int]]:
    """
    Extract ``[(section, rows)]`` and the optional cycle period from a connections mapping.

    Accepts a ``switches`` list or CADET-style ``switch_000`` scopes.
    """
    raw_switches = _get(cfg, "switches")
    if raw_switches is None:
        keys = sorted(k for k in cfg if str(k).lower().startswith("switch_"))
        raw_switches = [cfg[k] for k in keys]
    if not raw_switches:
        raise NetworkConfigError("CONNECTIONS: at least one valve switch is required")

    n_declared = _get(cfg, "nswitches")
    if n_declared is not None and int(n_declared) != len(raw_switches):
        raise NetworkConfigError(
            f"CONNECTIONS: nswitches = {n_declared} but {len(raw_switches)} switches were given"
        )

    table: List[Tuple[int, np.ndarray]] = []
    for i, sw in enumerate(raw_switches):
        section = _get(sw, "section")
        if section is None:
            raise NetworkConfigError(f"CONNECTIONS: switch {i} has no section index")
        conns = _get(sw, "connections")
        if conns is None:
            raise NetworkConfigError(f"CONNECTIONS: switch {i} has no connections")
        table.append((int(section), _rows_from_value(i, conns)))

    cycle = _get(cfg, "cycle_sections")
    return table, (None if cycle is None else int(cycle))


def _err(switch_idx: int, row: int, msg: str) -> NetworkConfigError:
    return NetworkConfigError(f"In CONNECTIONS matrix (switch {switch_idx} row {row}): {msg}")


def build_switch(switch_idx: int, section: int, rows: np.ndarray, units: Sequence,
                 id_to_index: Mapping[int, int]) -> FlowSwitch:
    """Validate one connection table and resolve unit ids to unit indices."""
    connections: List[Connection] = []
    rates: List[Active] = []
    authority: Dict[Tuple[int, int], Active] = {}

    for r, row in enumerate(rows):
        src_id, dst_id = int(row[0]), int(row[1])
        src_comp, dst_comp = int(row[2]), int(row[3])
        rate = float(row[4])

        if src_id < 0:
            raise _err(switch_idx, r, "Source unit operation id has to be at least zero")
        if dst_id < 0:
            raise _err(switch_idx, r, "Destination unit operation id has to be at least zero")
        if src_id not in id_to_index:
            raise _err(switch_idx, r, f"Source unit operation {src_id} not found")
        if dst_id not in id_to_index:
            raise _err(switch_idx, r, f"Destination unit operation {dst_id} not found")

        src, dst = id_to_index[src_id], id_to_index[dst_id]
        src_unit, dst_unit = units[src], units[dst]
        if not src_unit.has_outlet():
            raise _err(switch_idx, r, f"Source unit operation {src_id} does not have an outlet")
        if not dst_unit.has_inlet():
            raise _err(switch_idx, r, f"Destination unit operation {dst_id} does not have an inlet")

        n_src, n_dst = src_unit.num_components(), dst_unit.num_components()
        if src_comp < ALL_COMPONENTS or src_comp >= n_src:
            raise _err(switch_idx, r, f"Source component index {src_comp} exceeds number of components {n_src}")
        if dst_comp < ALL_COMPONENTS or dst_comp >= n_dst:
            raise _err(switch_idx, r, f"Destination component index {dst_comp} exceeds number of components {n_dst}")
        if (src_comp == ALL_COMPONENTS) != (dst_comp == ALL_COMPONENTS):
            raise _err(switch_idx, r, "Source and destination component indices have to be both -1 or both non-negative")
        if src_comp == ALL_COMPONENTS and n_src != n_dst:
            raise _err(
                switch_idx, r,
                f"Number of components of source ({n_src}) and destination ({n_dst}) unit operation do not match",
            )

        pair = (src, dst)
        if pair not in authority:
            authority[pair] = Active(rate)
        connections.append(Connection(src, dst, src_comp, dst_comp))
        rates.append(authority[pair])

    return FlowSwitch(section=section, connections=connections, rates=rates)


def flow_totals(switch: FlowSwitch, n_units: int) -> Tuple[List[Active], List[Active]]:
    """Total inflow / outflow per unit index, each (source, dest) pair counted once."""
    total_in = [Active(0.0) for _ in range(n_units)]
    total_out = [Active(0.0) for _ in range(n_units)]
    for r in switch.unique_rows():
        conn = switch.connections[r]
        rate = switch.rates[r]
        total_in[conn.dest] = total_in[conn.dest] + rate
        total_out[conn.source] = total_out[conn.source] + rate
    return total_in, total_out


def check_flow_balance(switch_idx: int, switch: FlowSwitch, units: Sequence) -> None:
    total_in, total_out = flow_totals(switch, len(units))
    sources = {conn.source for conn in switch.connections}
    for i, unit in enumerate(units):
        if not (unit.has_inlet() and unit.has_outlet()):
            continue
        if i not in sources or unit.can_accumulate():
            continue
        f_in, f_out = total_in[i].val, total_out[i].val
        # purely relative, so small flow rates are checked as strictly as large ones
        if abs(f_in - f_out) > BALANCE_TOL * max(abs(f_in), abs(f_out)):
            raise NetworkConfigError(
                f"In CONNECTIONS matrix (switch {switch_idx}): Unbalanced flow rate at unit operation "
                f"{unit.unit_operation_id}: {f_in} in, {f_out} out"
            )


@dataclass(slots=True)
class FlowNetwork:
    """Switch schedule plus the topology state machine."""

    switches: List[FlowSwitch] = field(default_factory=list)
    cycle_sections: Optional[int] = None
    cur_switch: int = 0
    parameters: Dict[ParameterId, Active] = field(default_factory=dict)

    @property
    def num_switches(self) -> int:
        return len(self.switches)

    @property
    def active(self) -> FlowSwitch:
        if not self.switches:
            raise RuntimeError("flow network has no switches configured")
        return self.switches[self.cur_switch]

    def configure(self, cfg: Mapping[str, Any], units: Sequence) -> None:
        """Parse and validate all switches; replaces the current schedule only on success."""
        table, cycle = parse_switch_table(cfg)
        id_to_index = {u.unit_operation_id: i for i, u in enumerate(units)}

        switches: List[FlowSwitch] = []
        params: Dict[ParameterId, Active] = {}
        prev_section = -1
        for i, (section, rows) in enumerate(table):
            if i == 0 and section != 0:
                raise NetworkConfigError(f"CONNECTIONS: first switch must start at section 0, got {section}")
            if section <= prev_section:
                raise NetworkConfigError(
                    f"CONNECTIONS: section index of switch {i} ({section}) must be greater than {prev_section}"
                )
            prev_section = section

            switch = build_switch(i, section, rows, units, id_to_index)
            check_flow_balance(i, switch, units)
            for r in switch.unique_rows():
                conn = switch.connections[r]
                pid = flow_rate_param_id(
                    units[conn.source].unit_operation_id, units[conn.dest].unit_operation_id, i
                )
                params[pid] = switch.rates[r]
            switches.append(switch)

        if cycle is not None and cycle <= switches[-1].section:
            raise NetworkConfigError(
                f"CONNECTIONS: cycle_sections ({cycle}) must exceed the last switch section ({switches[-1].section})"
            )

        self.switches = switches
        self.cycle_sections = cycle
        self.cur_switch = 0
        self.parameters = params
        logger.debug("Configured %d valve switches (sections %s)", len(switches), [s.section for s in switches])

    def cycle_period(self) -> int:
        """Number of sections after which the switch schedule repeats."""
        if self.cycle_sections is not None:
            return self.cycle_sections
        if self.num_switches <= 1:
            return 1
        last = self.switches[-1].section
        return last + int(math.ceil(last / (self.num_switches - 1)))

    def select_switch(self, sec_idx: int) -> Tuple[int, int]:
        """Advance the state machine for section ``sec_idx``; returns ``(previous, current)``."""
        prev = self.cur_switch
        n = self.num_switches
        if sec_idx == 0 or n <= 1:
            self.cur_switch = 0
        else:
            wrap = sec_idx % self.cycle_period()
            if self.cur_switch < n - 1 and self.switches[self.cur_switch + 1].section <= wrap:
                self.cur_switch += 1
            elif self.cur_switch == n - 1 and self.switches[0].section == wrap:
                self.cur_switch = 0
            logger.debug(
                "Switching from valve configuration %d to %d (sec = %d wrapSec = %d)",
                prev, self.cur_switch, sec_idx, wrap,
            )
        if logger.isEnabledFor(logging.DEBUG):
            for conn, rate in zip(self.active.connections, self.active.rates):
                logger.debug(
                    "  unit %d comp %d => unit %d comp %d, flow %g",
                    conn.source, conn.source_comp, conn.dest, conn.dest_comp, rate.val,
                )
        return prev, self.cur_switch

    def unit_flow_totals(self, n_units: int) -> Tuple[List[Active], List[Active]]:
        return flow_totals(self.active, n_units)
