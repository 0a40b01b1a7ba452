"""
Inlet / outlet coupling matrices of the network.

Per unit ``i`` (local block of size n_i, coupling block of size n_c):
- NF_i (n_i x n_c): -1 at (local inlet row, coupling DOF of that inlet component).
- FN_i (n_c x n_i): -rate / total_inflow(dest) at (coupling DOF of dest component,
  local outlet column of the source component).

Global Jacobian::

    [ J_0               NF_0 ]
    [      ...          ...  ]
    [          J_{N-1}  NF_. ]
    [ FN_0 ... FN_{N-1}  I   ]

Entries are ``Active`` so that flow-rate sensitivities see dFN/dp; ``to_csr``
is the value-only shadow used by the residual and the linear solver.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Union

import numpy as np
import scipy.sparse as sps

from core.ad import Active, ActiveArray
from core.layout import DofLayout
from core.types import ALL_COMPONENTS, FlowSwitch

logger = logging.getLogger(__name__)


class ActiveSparseMatrix:
    """Triplet sparse matrix with ``Active`` coefficients."""

    __slots__ = ("n_rows", "n_cols", "_rows", "_cols", "_values", "_csr")

    def __init__(self, n_rows: int, n_cols: int) -> None:
        self.n_rows = int(n_rows)
        self.n_cols = int(n_cols)
        self._rows: List[int] = []
        self._cols: List[int] = []
        self._values: List[Active] = []
        self._csr: Optional[sps.csr_matrix] = None

    @property
    def shape(self):
        return (self.n_rows, self.n_cols)

    @property
    def nnz(self) -> int:
        return len(self._values)

    def clear(self) -> None:
        self._rows.clear()
        self._cols.clear()
        self._values.clear()
        self._csr = None

    def add_element(self, row: int, col: int, value: Active) -> None:
        if not (0 <= row < self.n_rows and 0 <= col < self.n_cols):
            raise IndexError(f"entry ({row}, {col}) outside matrix of shape {self.shape}")
        self._rows.append(int(row))
        self._cols.append(int(col))
        self._values.append(value)
        self._csr = None

    def entries(self):
        return zip(self._rows, self._cols, self._values)

    def to_csr(self) -> sps.csr_matrix:
        if self._csr is None:
            vals = np.array([v.val for v in self._values], dtype=np.float64)
            self._csr = sps.csr_matrix((vals, (self._rows, self._cols)), shape=self.shape)
        return self._csr

    def ad_csr(self, direction: int) -> sps.csr_matrix:
        """Matrix of the derivatives in AD ``direction``."""
        vals = np.array([v.get_ad_value(direction) for v in self._values], dtype=np.float64)
        return sps.csr_matrix((vals, (self._rows, self._cols)), shape=self.shape)

    def multiply_add(self, x: Union[np.ndarray, ActiveArray], out: Union[np.ndarray, ActiveArray],
                     factor: float = 1.0) -> None:
        """
        ``out += factor * A x`` for plain or active operands.

        With an ``ActiveArray`` output the derivative part receives
        ``dA x`` (active coefficients) and, for an active ``x``, ``A dx``.
        """
        x_val = x.val if isinstance(x, ActiveArray) else x
        mat = self.to_csr()
        if not isinstance(out, ActiveArray):
            out += factor * (mat @ x_val)
            return
        out.val += factor * (mat @ x_val)
        for d in range(out.n_dirs):
            out.ad[:, d] += factor * (self.ad_csr(d) @ x_val)
        if isinstance(x, ActiveArray):
            n = min(out.n_dirs, x.n_dirs)
            out.ad[:, :n] += factor * (mat @ x.ad[:, :n])


@dataclass(slots=True)
class CouplingMatrices:
    nf: List[ActiveSparseMatrix] = field(default_factory=list)
    fn: List[ActiveSparseMatrix] = field(default_factory=list)
    fn_values: List[sps.csr_matrix] = field(default_factory=list)
    nf_values: List[sps.csr_matrix] = field(default_factory=list)

    def reset(self, layout: DofLayout) -> None:
        n_c = layout.num_coupling_dofs
        self.nf = [ActiveSparseMatrix(layout.sizes[i], n_c) for i in range(layout.num_units)]
        self.fn = [ActiveSparseMatrix(n_c, layout.sizes[i]) for i in range(layout.num_units)]
        self.fn_values = []
        self.nf_values = []

    def assemble(self, units: Sequence, layout: DofLayout, switch: FlowSwitch) -> None:
        """Rebuild NF / FN of every unit for the active ``switch``."""
        self.reset(layout)

        counter = 0
        for i, unit in enumerate(units):
            if not unit.has_inlet():
                continue
            idx = unit.local_inlet_component_index()
            stride = unit.local_inlet_component_stride()
            for comp in range(unit.num_components()):
                self.nf[i].add_element(idx + comp * stride, counter, Active(-1.0))
                counter += 1

        total_inlet_flow = [Active(0.0) for _ in units]
        for r in switch.unique_rows():
            conn = switch.connections[r]
            total_inlet_flow[conn.dest] = total_inlet_flow[conn.dest] + switch.rates[r]

        for r, conn in enumerate(switch.connections):
            rate = switch.rates[switch.first_occurrence(r)]
            total = total_inlet_flow[conn.dest]
            if total.val == 0.0:
                # closed valve into a unit without any other inflow
                continue
            coeff = -(rate / total)

            src_unit = units[conn.source]
            out_idx = src_unit.local_outlet_component_index()
            out_stride = src_unit.local_outlet_component_stride()
            if conn.source_comp == ALL_COMPONENTS:
                comps = [(c, c) for c in range(src_unit.num_components())]
            else:
                comps = [(conn.source_comp, conn.dest_comp)]
            for src_comp, dst_comp in comps:
                row = layout.coupling_dof(conn.dest, dst_comp)
                self.fn[conn.source].add_element(row, out_idx + out_stride * src_comp, coeff)

        self.fn_values = [m.to_csr() for m in self.fn]
        self.nf_values = [m.to_csr() for m in self.nf]
        logger.debug(
            "Assembled coupling matrices: NF nnz %s, FN nnz %s",
            [m.nnz for m in self.nf], [m.nnz for m in self.fn],
        )
