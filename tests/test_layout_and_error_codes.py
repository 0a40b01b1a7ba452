"""
DOF layout and error-code fusion.

Tests:
1. num_dofs = sum of unit sizes + coupling DOFs; offsets strictly increasing
2. Coupling index map: units with inlet only, unit order then component order
3. Duplicate unit ids are rejected at registration
4. Error fusion: examples, associativity and commutativity
5. Registry helpers (max id sentinel, lookup by id / index, remove)
"""

from __future__ import annotations

import itertools

import numpy as np
import pytest

from core.layout import DofLayout
from core.model_system import ModelSystem
from core.types import NetworkConfigError, fuse_error_codes, update_error_indicator
from units.linear import CstrUnit, InletUnit, OutletUnit


def _make_units():
    return [
        InletUnit(0, 2, const_coeff=[1.0, 2.0]),
        CstrUnit(1, 2, volume=1.5),
        OutletUnit(2, 2),
        CstrUnit(5, 2, volume=0.5),
    ]


def test_layout_offsets_and_sizes():
    units = _make_units()
    layout = DofLayout.build(units)

    assert layout.offsets == [0, 2, 6, 8, 12]
    assert layout.sizes[:-1] == [2, 4, 2, 4]
    # cstr 1, outlet 2, cstr 5 carry inlets with 2 components each
    assert layout.num_coupling_dofs == 6
    assert layout.num_dofs() == 2 + 4 + 2 + 4 + 6
    assert all(b > a for a, b in zip(layout.offsets, layout.offsets[1:]))
    assert layout.coupling_slice() == slice(12, 18)
    assert layout.unit_slice(1) == slice(2, 6)


def test_coupling_index_map_order():
    layout = DofLayout.build(_make_units())

    assert (0, 0) not in layout.coupling_index
    assert [layout.coupling_dof(1, c) for c in range(2)] == [0, 1]
    assert [layout.coupling_dof(2, c) for c in range(2)] == [2, 3]
    assert [layout.coupling_dof(3, c) for c in range(2)] == [4, 5]
    with pytest.raises(KeyError, match="no coupling DOF"):
        layout.coupling_dof(0, 0)
    with pytest.raises(IndexError):
        layout.unit_slice(4)


def test_layout_describe_and_views():
    layout = DofLayout.build(_make_units())
    y = np.arange(layout.num_dofs(), dtype=np.float64)

    block = y[layout.unit_slice(3)]
    block[:] = -1.0
    np.testing.assert_array_equal(y[8:12], -1.0)

    info = layout.describe()
    assert info["n_dof"] == 18
    assert info["coupling"] == {"start": 12, "size": 6}


def test_duplicate_unit_id_rejected():
    system = ModelSystem()
    system.add_model(InletUnit(3, 1))
    with pytest.raises(NetworkConfigError, match="already registered"):
        system.add_model(OutletUnit(3, 1))
    assert system.num_models == 1


def test_registry_helpers():
    system = ModelSystem()
    assert system.max_unit_operation_id() == -1

    for unit in _make_units():
        system.add_model(unit)
    assert system.max_unit_operation_id() == 5
    assert system.num_dofs() == 18
    assert system.num_pure_dofs() == 12
    assert system.in_out_models == [1, 3]
    assert len(system.error_indicator) == 4

    assert system.get_unit_operation_model(5) is system.get_model(3)
    assert system.get_model(7) is None

    assert system.remove_model(5)
    assert not system.remove_model(5)
    assert system.num_models == 3
    assert system.num_dofs() == 2 + 4 + 2 + 4
    assert system.in_out_models == [1]


def test_error_fusion_examples():
    assert fuse_error_codes([-1, 2, 0]) == -1
    assert fuse_error_codes([2, 0, 1]) == 2
    assert fuse_error_codes([]) == 0
    assert fuse_error_codes([-1, -3, 5]) == -3
    assert update_error_indicator(0, 1) == 1
    assert update_error_indicator(-2, 7) == -2


def test_error_fusion_associative_and_commutative():
    codes = [-2, -1, 0, 1, 3]
    for a, b, c in itertools.product(codes, repeat=3):
        assert update_error_indicator(a, b) == update_error_indicator(b, a)
        left = update_error_indicator(update_error_indicator(a, b), c)
        right = update_error_indicator(a, update_error_indicator(b, c))
        assert left == right
    for perm in itertools.permutations([-1, 2, 0, 1]):
        assert fuse_error_codes(perm) == -1
