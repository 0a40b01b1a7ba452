"""
In-memory solution recorder.

The network hands every unit its own solution slice; the recorder copies what
it keeps. Usage per output time::

    recorder.begin_timestep(t)
    system.report_solution(recorder, y)
    recorder.end_timestep()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class UnitRecord:
    unit_id: int
    name: str
    n_dofs: int
    n_comp: int
    solutions: List[np.ndarray] = field(default_factory=list)

    def as_array(self) -> np.ndarray:
        if not self.solutions:
            return np.zeros((0, self.n_dofs), dtype=np.float64)
        return np.vstack(self.solutions)


class SolutionRecorder:
    def __init__(self, store_coupling: bool = False) -> None:
        self.store_coupling = bool(store_coupling)
        self.units: Dict[int, UnitRecord] = {}
        self.times: List[float] = []
        self.coupling: List[np.ndarray] = []
        self._in_step = False
        self._t: Optional[float] = None

    def clear(self) -> None:
        for rec in self.units.values():
            rec.solutions.clear()
        self.times.clear()
        self.coupling.clear()
        self._in_step = False

    def register_unit(self, unit_id: int, name: str, n_dofs: int, n_comp: int) -> None:
        self.units[int(unit_id)] = UnitRecord(int(unit_id), str(name), int(n_dofs), int(n_comp))

    def begin_timestep(self, t: float) -> None:
        if self._in_step:
            raise RuntimeError("begin_timestep called twice without end_timestep")
        self._in_step = True
        self._t = float(t)

    def record_unit(self, unit_id: int, solution: np.ndarray) -> None:
        rec = self.units.get(int(unit_id))
        if rec is None:
            raise KeyError(f"unit {unit_id} was not registered with the recorder")
        sol = np.array(solution, dtype=np.float64, copy=True)
        if sol.shape != (rec.n_dofs,):
            raise ValueError(f"unit {unit_id}: solution shape {sol.shape}, expected ({rec.n_dofs},)")
        rec.solutions.append(sol)

    def record_coupling(self, values: np.ndarray) -> None:
        if self.store_coupling:
            self.coupling.append(np.array(values, dtype=np.float64, copy=True))

    def end_timestep(self) -> None:
        if not self._in_step:
            raise RuntimeError("end_timestep called without begin_timestep")
        self.times.append(self._t)
        self._in_step = False

    def solution(self, unit_id: int) -> np.ndarray:
        return self.units[int(unit_id)].as_array()
