"""
Global degree-of-freedom layout of the network.

Principles:
- The global state vector is one contiguous arena: unit blocks in registration
  order followed by a single trailing coupling block.
- Unit blocks are addressed only through offsets from this layout (no
  hand-rolled index math elsewhere); slices of numpy arrays are views.
- Coupling DOFs exist for every (unit with inlet, component) pair, numbered
  contiguously in unit order then component order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterator, List, Sequence, Tuple

if TYPE_CHECKING:
    from units.base import UnitOperation

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DofLayout:
    """Offsets and sizes of unit blocks plus the coupling index map."""

    offsets: List[int] = field(default_factory=list)
    sizes: List[int] = field(default_factory=list)
    coupling_index: Dict[Tuple[int, int], int] = field(default_factory=dict)

    @classmethod
    def build(cls, units: Sequence["UnitOperation"]) -> "DofLayout":
        layout = cls()
        layout.rebuild(units)
        return layout

    def rebuild(self, units: Sequence["UnitOperation"]) -> None:
        """
        Recompute offsets, sizes and the (unit index, component) -> coupling DOF map.

        ``offsets`` has one trailing entry holding the start of the coupling block;
        ``sizes`` has one trailing entry holding the coupling DOF count.
        """
        self.offsets = []
        self.sizes = []
        total = 0
        for unit in units:
            self.offsets.append(total)
            n = int(unit.num_dofs())
            self.sizes.append(n)
            total += n
        self.offsets.append(total)

        self.coupling_index = {}
        counter = 0
        for i, unit in enumerate(units):
            # Only unit operations with an inlet have dedicated inlet DOFs
            if not unit.has_inlet():
                continue
            for comp in range(int(unit.num_components())):
                self.coupling_index[(i, comp)] = counter
                counter += 1
        self.sizes.append(counter)

        logger.debug("DOF offsets: %s (coupling DOFs: %d)", self.offsets, counter)

    @property
    def num_units(self) -> int:
        return len(self.offsets) - 1 if self.offsets else 0

    @property
    def coupling_offset(self) -> int:
        return self.offsets[-1] if self.offsets else 0

    @property
    def num_coupling_dofs(self) -> int:
        return self.sizes[-1] if self.sizes else 0

    def num_dofs(self) -> int:
        return self.coupling_offset + self.num_coupling_dofs

    def unit_slice(self, idx: int) -> slice:
        if idx < 0 or idx >= self.num_units:
            raise IndexError(f"unit index {idx} out of range [0,{self.num_units})")
        start = self.offsets[idx]
        return slice(start, start + self.sizes[idx])

    def coupling_slice(self) -> slice:
        return slice(self.coupling_offset, self.num_dofs())

    def coupling_dof(self, unit_idx: int, comp: int) -> int:
        key = (int(unit_idx), int(comp))
        if key not in self.coupling_index:
            raise KeyError(f"no coupling DOF for unit index {unit_idx} component {comp}")
        return self.coupling_index[key]

    def iter_units(self) -> Iterator[Tuple[int, slice]]:
        for i in range(self.num_units):
            yield i, self.unit_slice(i)

    def describe(self) -> Dict[str, object]:
        return {
            "n_dof": int(self.num_dofs()),
            "units": [
                {"index": i, "start": int(sl.start), "stop": int(sl.stop), "size": int(sl.stop - sl.start)}
                for i, sl in self.iter_units()
            ],
            "coupling": {"start": self.coupling_offset, "size": self.num_coupling_dofs},
        }
