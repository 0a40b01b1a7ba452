"""
Shared value types for the unit-operation network.

Conventions (law of the land):
- Unit operations are identified by a non-negative integer id; internally the
  network works with the unit *index* (position in the registration order).
- A connection row is (source, dest, source_comp, dest_comp); a component of -1
  is the wildcard "all components" and must appear on both ends.
- Error codes: negative = non-recoverable, 0 = success, positive = recoverable.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]

# Sentinels for parameter ids that do not depend on a unit / component / ...
UNIT_OP_INDEP = -1
COMP_INDEP = -1
PARTYPE_INDEP = -1
BOUND_STATE_INDEP = -1
REACTION_INDEP = -1
SECTION_INDEP = -1

ALL_COMPONENTS = -1

FLOW_RATE_PARAM = "CONNECTION"


class NetworkConfigError(ValueError):
    """Raised for structurally invalid network configuration (fail fast)."""


@dataclass(frozen=True, slots=True)
class ParameterId:
    """Structured parameter identifier (hashable, usable as dict key)."""

    name: str
    unit_operation: int = UNIT_OP_INDEP
    component: int = COMP_INDEP
    particle_type: int = PARTYPE_INDEP
    bound_state: int = BOUND_STATE_INDEP
    reaction: int = REACTION_INDEP
    section: int = SECTION_INDEP

    def __str__(self) -> str:
        return (
            f"{self.name}[unit={self.unit_operation} comp={self.component} "
            f"partype={self.particle_type} bnd={self.bound_state} "
            f"reac={self.reaction} sec={self.section}]"
        )


def flow_rate_param_id(source_id: int, dest_id: int, switch_idx: int) -> ParameterId:
    """
    Parameter id of the flow rate from unit ``source_id`` to ``dest_id`` in a switch.

    Source and destination are stored in the bound-state / reaction slots, the
    switch index in the section slot.
    """
    return ParameterId(
        name=FLOW_RATE_PARAM,
        unit_operation=UNIT_OP_INDEP,
        component=COMP_INDEP,
        bound_state=int(source_id),
        reaction=int(dest_id),
        section=int(switch_idx),
    )


@dataclass(frozen=True, slots=True)
class Connection:
    """One row of a resolved connection list (unit indices, not ids)."""

    source: int
    dest: int
    source_comp: int
    dest_comp: int

    @property
    def pair(self) -> Tuple[int, int]:
        return (self.source, self.dest)

    @property
    def is_wildcard(self) -> bool:
        return self.source_comp == ALL_COMPONENTS


@dataclass(slots=True)
class FlowSwitch:
    """
    A valve configuration active from ``section`` on.

    ``rates`` holds one Active handle per row. Rows repeating an earlier
    (source, dest) pair share the handle of the first occurrence, which is the
    flow-rate authority for that pair.
    """

    section: int
    connections: List[Connection]
    rates: list  # List[core.ad.Active]

    def __len__(self) -> int:
        return len(self.connections)

    def first_occurrence(self, row: int) -> int:
        """Index of the first row sharing the (source, dest) pair of ``row``."""
        pair = self.connections[row].pair
        for j in range(row):
            if self.connections[j].pair == pair:
                return j
        return row

    def unique_rows(self) -> Iterable[int]:
        """Rows that are the first occurrence of their (source, dest) pair."""
        seen = set()
        for i, conn in enumerate(self.connections):
            if conn.pair in seen:
                continue
            seen.add(conn.pair)
            yield i


def update_error_indicator(cur_code: int, next_code: int) -> int:
    """Fuse two error codes: any negative code wins (most negative), else the maximum."""
    if cur_code < 0 or next_code < 0:
        return min(cur_code, next_code)
    return max(cur_code, next_code)


def fuse_error_codes(codes: Sequence[int]) -> int:
    """
    Total error code of a list of independent codes.

    >>> fuse_error_codes([-1, 2, 0])
    -1
    >>> fuse_error_codes([2, 0, 1])
    2
    >>> fuse_error_codes([])
    0
    """
    total = 0
    for code in codes:
        total = update_error_indicator(total, int(code))
    return total
