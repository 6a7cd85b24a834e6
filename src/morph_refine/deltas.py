"""DeltaAnalyzer — how far the refinement moved away from the blend.

Two diagnostics are derived from a finished refinement:

* **deltas** — ``|final − blend|`` per key, kept when above
  ``deltas.min_delta``, sorted descending and truncated to the top
  ``deltas.top_n`` per group.
* **active keys** — shape keys with ``|v| > 0.05`` plus limb masses with
  ``|v − 1| > 0.05`` (the fixed ``gate`` excluded).

Neither function raises on bad input: non-numeric or non-finite values
fall back to the group baseline (0 for shape, 1 for limb masses).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry
from .vector import is_finite_number

__all__ = [
    "KeyDelta",
    "RefinementDeltas",
    "compute_refinement_deltas",
    "count_active_keys",
]

FIXED_LIMB_KEYS: Tuple[str, ...] = ("gate",)

_SHAPE_BASELINE = 0.0
_LIMB_BASELINE = 1.0


def _num(value: Any, default: float) -> float:
    return float(value) if is_finite_number(value) else default


@dataclass(frozen=True)
class KeyDelta:
    """One changed key."""

    key: str
    delta: float
    blend: float
    final: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "delta": round(self.delta, 3),
            "blend": round(self.blend, 3),
            "final": round(self.final, 3),
        }


@dataclass(frozen=True)
class RefinementDeltas:
    """Top deltas per group plus the total changed counts."""

    top_shape: Tuple[KeyDelta, ...] = ()
    top_limb: Tuple[KeyDelta, ...] = ()
    total_shape_changes: int = 0
    total_limb_changes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "top_10_shape_deltas": [d.to_dict() for d in self.top_shape],
            "top_10_limb_deltas": [d.to_dict() for d in self.top_limb],
            "total_shape_changes": self.total_shape_changes,
            "total_limb_changes": self.total_limb_changes,
        }


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _group_deltas(
    blend: Mapping[str, Any],
    final: Mapping[str, Any],
    baseline: float,
    exclude: Tuple[str, ...],
    min_delta: float,
    top_n: int,
) -> Tuple[Tuple[KeyDelta, ...], int]:
    keys = [k for k in final if k not in exclude]
    if not keys:
        return (), 0
    b = np.array([_num(blend.get(k), baseline) for k in keys])
    f = np.array([_num(final.get(k), baseline) for k in keys])
    d = np.abs(f - b)

    changed = np.flatnonzero(d > min_delta)
    # stable: equal deltas keep key order
    order = changed[np.argsort(-d[changed], kind="stable")]
    top = tuple(
        KeyDelta(keys[i], float(d[i]), float(b[i]), float(f[i]))
        for i in order[:top_n]
    )
    return top, int(changed.size)


def compute_refinement_deltas(
    blend_shape: Optional[Mapping[str, Any]],
    blend_limb: Optional[Mapping[str, Any]],
    final_shape: Optional[Mapping[str, Any]],
    final_limb: Optional[Mapping[str, Any]],
    thresholds: Optional[ThresholdRegistry] = None,
) -> RefinementDeltas:
    """Compare the final vectors with the blended input.

    Parameters
    ----------
    blend_shape, blend_limb : mapping or None
        The blended input vectors.  Missing keys use the baseline.
    final_shape, final_limb : mapping or None
        Validated output vectors; their keys drive the comparison.
        Anything that is not a mapping counts as empty.
    thresholds : ThresholdRegistry, optional
        Uses ``deltas.min_delta`` and ``deltas.top_n``.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    min_delta = t["deltas.min_delta"]
    top_n = int(t["deltas.top_n"])

    top_shape, n_shape = _group_deltas(
        _mapping(blend_shape), _mapping(final_shape), _SHAPE_BASELINE, (),
        min_delta, top_n)
    top_limb, n_limb = _group_deltas(
        _mapping(blend_limb), _mapping(final_limb), _LIMB_BASELINE,
        FIXED_LIMB_KEYS, min_delta, top_n)
    return RefinementDeltas(
        top_shape=top_shape,
        top_limb=top_limb,
        total_shape_changes=n_shape,
        total_limb_changes=n_limb,
    )


def count_active_keys(
    shape: Optional[Mapping[str, Any]],
    limb: Optional[Mapping[str, Any]],
    threshold: float = 0.05,
) -> int:
    """Number of keys meaningfully away from their neutral value."""
    shape, limb = _mapping(shape), _mapping(limb)
    s = np.array([_num(v, _SHAPE_BASELINE) for v in shape.values()])
    l = np.array([_num(v, _LIMB_BASELINE) for k, v in limb.items()
                  if k not in FIXED_LIMB_KEYS])
    n_shape = int(np.count_nonzero(np.abs(s) > threshold)) if s.size else 0
    n_limb = (int(np.count_nonzero(np.abs(l - _LIMB_BASELINE) > threshold))
              if l.size else 0)
    return n_shape + n_limb
