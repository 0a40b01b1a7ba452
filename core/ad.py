"""
Forward-mode automatic differentiation with a fixed set of directions.

Two containers:
- ``Active``: a scalar value with directional derivatives. Used as a mutable
  parameter handle (flow rates, unit parameters) so that setting a value or a
  seed direction is seen by every expression that holds the handle.
- ``ActiveArray``: a value vector plus a (n, n_dirs) direction matrix. Basic
  slicing returns views, so a unit operation only ever touches its own block
  of the global buffers.
"""

from __future__ import annotations

from typing import Optional, Union

import numpy as np

Number = Union[int, float]


def _pad(a: np.ndarray, n: int) -> np.ndarray:
    if a.size >= n:
        return a
    out = np.zeros(n, dtype=np.float64)
    out[: a.size] = a
    return out


def _cast(other) -> "Active":
    if isinstance(other, Active):
        return other
    return Active(float(other))


class Active:
    """Scalar dual number with an arbitrary number of derivative directions."""

    __slots__ = ("val", "ad")

    def __init__(self, val: Number = 0.0, ad: Optional[np.ndarray] = None) -> None:
        self.val = float(val)
        if ad is None:
            self.ad = np.zeros(0, dtype=np.float64)
        else:
            self.ad = np.array(ad, dtype=np.float64).ravel()

    # handle interface
    def set_value(self, val: Number) -> None:
        self.val = float(val)

    def get_ad_value(self, direction: int) -> float:
        if direction < self.ad.size:
            return float(self.ad[direction])
        return 0.0

    def set_ad_value(self, direction: int, value: Number) -> None:
        if direction >= self.ad.size:
            self.ad = _pad(self.ad, direction + 1)
        self.ad[direction] = float(value)

    def clear_ad(self) -> None:
        self.ad = np.zeros(0, dtype=np.float64)

    def n_dirs(self) -> int:
        return int(self.ad.size)

    def copy(self) -> "Active":
        return Active(self.val, self.ad.copy())

    def __float__(self) -> float:
        return self.val

    def __repr__(self) -> str:
        return f"Active({self.val!r}, ad={self.ad.tolist()!r})"

    # arithmetic
    def _combine(self, other: "Active", val: float, da: float, db: float) -> "Active":
        n = max(self.ad.size, other.ad.size)
        return Active(val, da * _pad(self.ad, n) + db * _pad(other.ad, n))

    def __add__(self, other) -> "Active":
        b = _cast(other)
        return self._combine(b, self.val + b.val, 1.0, 1.0)

    def __radd__(self, other) -> "Active":
        return self.__add__(other)

    def __sub__(self, other) -> "Active":
        b = _cast(other)
        return self._combine(b, self.val - b.val, 1.0, -1.0)

    def __rsub__(self, other) -> "Active":
        return _cast(other).__sub__(self)

    def __mul__(self, other) -> "Active":
        b = _cast(other)
        return self._combine(b, self.val * b.val, b.val, self.val)

    def __rmul__(self, other) -> "Active":
        return self.__mul__(other)

    def __truediv__(self, other) -> "Active":
        b = _cast(other)
        inv = 1.0 / b.val
        return self._combine(b, self.val * inv, inv, -self.val * inv * inv)

    def __rtruediv__(self, other) -> "Active":
        return _cast(other).__truediv__(self)

    def __neg__(self) -> "Active":
        return Active(-self.val, -self.ad)

    # comparisons act on the value only
    def __eq__(self, other) -> bool:
        return self.val == float(other)

    def __lt__(self, other) -> bool:
        return self.val < float(other)

    def __le__(self, other) -> bool:
        return self.val <= float(other)

    def __gt__(self, other) -> bool:
        return self.val > float(other)

    def __ge__(self, other) -> bool:
        return self.val >= float(other)

    __hash__ = object.__hash__


class ActiveArray:
    """Vector of dual numbers stored as ``val`` (n,) and ``ad`` (n, n_dirs)."""

    __slots__ = ("val", "ad")

    def __init__(self, val: np.ndarray, ad: np.ndarray) -> None:
        if ad.ndim != 2 or ad.shape[0] != val.shape[0]:
            raise ValueError(f"ad shape {ad.shape} incompatible with val shape {val.shape}")
        self.val = val
        self.ad = ad

    @classmethod
    def zeros(cls, n: int, n_dirs: int) -> "ActiveArray":
        return cls(np.zeros(n, dtype=np.float64), np.zeros((n, n_dirs), dtype=np.float64))

    @property
    def n_dirs(self) -> int:
        return int(self.ad.shape[1])

    def __len__(self) -> int:
        return int(self.val.shape[0])

    def __getitem__(self, key) -> "ActiveArray":
        if not isinstance(key, slice):
            raise TypeError("ActiveArray only supports slice views")
        return ActiveArray(self.val[key], self.ad[key])

    def get_ad_value(self, i: int, direction: int) -> float:
        return float(self.ad[i, direction])

    def set_values(self, values: np.ndarray) -> None:
        """Assign plain values; derivatives are reset to zero."""
        self.val[:] = values
        self.ad[:] = 0.0

    def seed_identity(self, dir_offset: int = 0) -> None:
        """Seed direction ``dir_offset + i`` on entry ``i`` (dense Jacobian extraction)."""
        n = len(self)
        if dir_offset + n > self.n_dirs:
            raise ValueError(f"not enough AD directions: need {dir_offset + n}, have {self.n_dirs}")
        self.ad[:, dir_offset : dir_offset + n] = np.eye(n)

    def copy(self) -> "ActiveArray":
        return ActiveArray(self.val.copy(), self.ad.copy())
