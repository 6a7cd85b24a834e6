"""Bound data model and the bounds-provider contract.

Two bound sets reach the validator for every request:

* ``k5`` — the narrow envelope spanned by the nearest matching archetypes.
  May omit keys.
* ``db`` — the physiological bounds spanned by every archetype of the
  gender.  Authoritative: its keys are exactly the keys of the output.

Both are :class:`BoundSet` instances: one :class:`EnvelopeBounds` per
parameter group (``"shape"`` and ``"limb"``) plus free-form metadata.

Wire formats accepted by :meth:`BoundSet.from_dict`::

    {"shape_params_envelope": {...}, "limb_masses_envelope": {...},
     "envelope_metadata": {"archetypes_used": [...]}}          # K5 envelope
    {"morph_values": {...}, "limb_masses": {...}}             # DB mapping
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import (Any, Dict, Iterator, Optional, Protocol, Tuple,
                    runtime_checkable)

import numpy as np

from .errors import BoundsContractError, BoundsUnavailableError

logger = logging.getLogger(__name__)

__all__ = [
    "SHAPE",
    "LIMB",
    "GROUPS",
    "BoundRange",
    "EnvelopeBounds",
    "BoundSet",
    "BoundsProvider",
    "StaticBoundsProvider",
]

SHAPE = "shape"
LIMB = "limb"
GROUPS: Tuple[str, str] = (SHAPE, LIMB)

_SHAPE_FIELDS = ("shape_params_envelope", "morph_values", "shape")
_LIMB_FIELDS = ("limb_masses_envelope", "limb_masses", "limb")


# ═══════════════════════════════════════════════════════════════════
# BoundRange
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BoundRange:
    """Closed interval ``[min, max]`` for one parameter.

    Raises
    ------
    BoundsContractError
        If either end is non-finite or ``min > max``.
    """

    min: float
    max: float

    def __post_init__(self):
        if not (math.isfinite(self.min) and math.isfinite(self.max)):
            raise BoundsContractError(
                f"Non-finite bound range [{self.min}, {self.max}]")
        if self.min > self.max:
            raise BoundsContractError(
                f"Inverted bound range: min={self.min} > max={self.max}")

    @property
    def width(self) -> float:
        return self.max - self.min

    @property
    def midpoint(self) -> float:
        return (self.min + self.max) / 2

    @property
    def is_fixed(self) -> bool:
        """``min == max`` — the value is pinned exactly."""
        return self.min == self.max

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max

    def clamp(self, value: float) -> float:
        return float(np.clip(value, self.min, self.max))

    def to_dict(self) -> Dict[str, float]:
        return {"min": self.min, "max": self.max}

    @classmethod
    def from_dict(cls, raw: Any, key: str = "?") -> "BoundRange":
        if not isinstance(raw, Mapping):
            raise BoundsContractError(
                f"Bounds for {key!r} must be an object with min/max")
        try:
            lo = raw["min"]
            hi = raw["max"]
        except KeyError as e:
            raise BoundsContractError(
                f"Bounds for {key!r} missing {e.args[0]!r}") from None
        if not all(isinstance(v, (int, float)) and not isinstance(v, bool)
                   for v in (lo, hi)):
            raise BoundsContractError(
                f"Bounds for {key!r} must be numeric, got {lo!r}/{hi!r}")
        return cls(float(lo), float(hi))


# ═══════════════════════════════════════════════════════════════════
# EnvelopeBounds — one group's key → BoundRange table
# ═══════════════════════════════════════════════════════════════════

class EnvelopeBounds(Mapping):
    """Immutable mapping ``parameter name → BoundRange``."""

    def __init__(self, ranges: Optional[Mapping[str, BoundRange]] = None):
        self._ranges: Dict[str, BoundRange] = dict(ranges or {})

    def __getitem__(self, key: str) -> BoundRange:
        return self._ranges[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._ranges)

    def __len__(self) -> int:
        return len(self._ranges)

    def __repr__(self) -> str:
        return f"EnvelopeBounds({len(self._ranges)} keys)"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EnvelopeBounds):
            return NotImplemented
        return self._ranges == other._ranges

    @property
    def fixed_keys(self) -> Dict[str, float]:
        """``{key: value}`` for every pinned (``min == max``) range."""
        return {k: r.min for k, r in self._ranges.items() if r.is_fixed}

    def to_dict(self) -> Dict[str, Dict[str, float]]:
        return {k: r.to_dict() for k, r in self._ranges.items()}

    @classmethod
    def from_dict(cls, raw: Any) -> "EnvelopeBounds":
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise BoundsContractError("Envelope bounds must be an object")
        return cls({str(k): BoundRange.from_dict(v, k)
                    for k, v in raw.items()})


# ═══════════════════════════════════════════════════════════════════
# BoundSet — shape + limb envelopes
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BoundSet:
    """Bounds for both parameter groups plus metadata."""

    shape: EnvelopeBounds = field(default_factory=EnvelopeBounds)
    limb: EnvelopeBounds = field(default_factory=EnvelopeBounds)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def group(self, name: str) -> EnvelopeBounds:
        """Return the envelope for ``"shape"`` or ``"limb"``."""
        if name == SHAPE:
            return self.shape
        if name == LIMB:
            return self.limb
        raise ValueError(f"Unknown parameter group {name!r}")

    @property
    def archetypes_used(self) -> Tuple[str, ...]:
        return tuple(str(a) for a in
                     self.metadata.get("archetypes_used") or ())

    def require_key_universe(self) -> None:
        """Raise unless both groups define at least one key."""
        for name in GROUPS:
            if len(self.group(name)) == 0:
                raise BoundsContractError(
                    f"DB bounds define no {name} keys; "
                    f"the output key universe is empty")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shape_params_envelope": self.shape.to_dict(),
            "limb_masses_envelope": self.limb.to_dict(),
            "envelope_metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, raw: Mapping) -> "BoundSet":
        """Parse a K5 envelope or DB mapping payload."""
        if not isinstance(raw, Mapping):
            raise BoundsContractError("Bound set must be an object")
        shape_raw = next((raw[f] for f in _SHAPE_FIELDS if f in raw), None)
        limb_raw = next((raw[f] for f in _LIMB_FIELDS if f in raw), None)
        metadata = raw.get("envelope_metadata") or raw.get("metadata") or {}
        return cls(
            shape=EnvelopeBounds.from_dict(shape_raw),
            limb=EnvelopeBounds.from_dict(limb_raw),
            metadata=dict(metadata),
        )


# ═══════════════════════════════════════════════════════════════════
# BoundsProvider — collaborator contract
# ═══════════════════════════════════════════════════════════════════

@runtime_checkable
class BoundsProvider(Protocol):
    """Supplies ``(k5, db)`` bound sets for a gender.

    ``db`` is authoritative for the key universe; ``k5`` may omit keys.
    Implementations raise :class:`BoundsUnavailableError` when they have
    nothing for the gender.
    """

    def get_bounds(self, gender: str) -> Tuple[BoundSet, BoundSet]:
        ...


class StaticBoundsProvider:
    """Bounds served from precomputed per-gender tables.

    Parameters
    ----------
    db : dict[str, BoundSet]
        Physiological bounds per gender.
    k5 : dict[str, BoundSet], optional
        Envelope per gender.  Genders without one get their ``db`` bounds
        as envelope.
    """

    def __init__(
        self,
        db: Mapping[str, BoundSet],
        k5: Optional[Mapping[str, BoundSet]] = None,
    ):
        self._db = dict(db)
        self._k5 = dict(k5 or {})

    def __repr__(self) -> str:
        return f"StaticBoundsProvider(genders={sorted(self._db)})"

    @property
    def genders(self) -> Tuple[str, ...]:
        return tuple(sorted(self._db))

    def get_bounds(self, gender: str) -> Tuple[BoundSet, BoundSet]:
        db = self._db.get(gender)
        if db is None:
            raise BoundsUnavailableError(
                f"No physiological bounds for gender {gender!r} "
                f"(available: {sorted(self._db)})")
        k5 = self._k5.get(gender)
        if k5 is None:
            logger.info(f"No envelope for {gender!r}; using DB bounds")
            k5 = db
        return k5, db

    @classmethod
    def from_json(cls, path: str | Path) -> "StaticBoundsProvider":
        """Load ``{"db": {gender: {...}}, "k5": {gender: {...}}}``.

        Raises
        ------
        BoundsUnavailableError
            If the file does not exist or is not valid JSON.
        """
        path = Path(path).expanduser()
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BoundsUnavailableError(
                f"Cannot load bounds from {path}: {e}") from e
        if not isinstance(payload, Mapping) or "db" not in payload:
            raise BoundsUnavailableError(
                f"Bounds file {path} has no 'db' section")
        db = {g: BoundSet.from_dict(v) for g, v in payload["db"].items()}
        k5 = {g: BoundSet.from_dict(v)
              for g, v in (payload.get("k5") or {}).items()}
        return cls(db, k5)
