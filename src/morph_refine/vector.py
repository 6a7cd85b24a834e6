"""ParameterVector — a value map bound to its key universe.

A vector is created against the key set of the ``db`` bounds for its
group and must cover that set exactly.  Reading an unknown key, or
replacing one, raises :class:`~morph_refine.errors.UnknownParameterError`
instead of silently growing the vector.

>>> v = ParameterVector({"pearFigure": 0.4, "emaciated": 0.0})
>>> v = v.replace({"pearFigure": 0.2})
>>> v["narrowWaist"]
Traceback (most recent call last):
    ...
UnknownParameterError: 'narrowWaist'
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, Optional

from .errors import UnknownParameterError

__all__ = [
    "ParameterVector",
    "is_finite_number",
]


def is_finite_number(value) -> bool:
    """``True`` for finite ints / floats; booleans are not numbers here."""
    return (isinstance(value, (int, float))
            and not isinstance(value, bool)
            and math.isfinite(value))


class ParameterVector(Mapping):
    """Immutable mapping of parameter name → finite float.

    Parameters
    ----------
    values : mapping
        ``{key: value}``; every value must be a finite number.
    universe : iterable of str, optional
        Allowed keys.  Defaults to the keys of *values*.  When given, the
        keys of *values* must equal it exactly.

    Raises
    ------
    UnknownParameterError
        If *values* has keys outside *universe*.
    ValueError
        If a universe key is missing or a value is not finite.
    """

    __slots__ = ("_values",)

    def __init__(
        self,
        values: Mapping[str, float],
        universe: Optional[Iterable[str]] = None,
    ):
        if universe is not None:
            allowed = list(universe)
            allowed_set = set(allowed)
            extra = [k for k in values if k not in allowed_set]
            if extra:
                raise UnknownParameterError(extra[0])
            missing = [k for k in allowed if k not in values]
            if missing:
                raise ValueError(f"Missing parameters: {missing}")
            ordered = {k: values[k] for k in allowed}
        else:
            ordered = dict(values)
        for k, v in ordered.items():
            if not is_finite_number(v):
                raise ValueError(f"Parameter {k!r} is not finite: {v!r}")
        self._values: Dict[str, float] = {k: float(v)
                                          for k, v in ordered.items()}

    def __getitem__(self, key: str) -> float:
        try:
            return self._values[key]
        except KeyError:
            raise UnknownParameterError(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"ParameterVector({len(self._values)} keys)"

    def __setitem__(self, key, value):
        raise TypeError(
            "ParameterVector is immutable — use .replace() instead")

    def get(self, key: str, default: Optional[float] = None):
        return self._values.get(key, default)

    def replace(self, updates: Mapping[str, float]) -> "ParameterVector":
        """Return a new vector with *updates* applied.

        Raises
        ------
        UnknownParameterError
            If *updates* names a key outside the vector.
        """
        for k in updates:
            if k not in self._values:
                raise UnknownParameterError(k)
        merged = dict(self._values)
        merged.update(updates)
        return ParameterVector(merged)

    def to_dict(self) -> Dict[str, float]:
        """Return a mutable copy of the values."""
        return dict(self._values)
