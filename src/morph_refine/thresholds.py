"""ThresholdRegistry — every tunable number in one place.

Collects the magic numbers of the refinement pipeline (clamp epsilon,
coherence trigger levels and ceilings, delta / activity cut-offs, gateway
defaults, prompt flags) into a typed, immutable registry that can be:

* **inspected** — ``registry["coherence.adiposity_high"]``
* **overridden** — ``registry.replace({"clamp.envelope_epsilon": 0.01})``
* **diffed** — ``registry.diff(other)``

The registry does *not* cover:

* **Gender rule values** — ceilings and banned values live in the
  declarative tables of :mod:`~morph_refine.gender`.
* **Key roles** — which parameter is the adiposity or muscularity
  indicator is a :class:`~morph_refine.rules.CoherenceKeys` concern.

Usage
-----
>>> from morph_refine.thresholds import DEFAULT_THRESHOLDS
>>> DEFAULT_THRESHOLDS["deltas.min_delta"]          # 0.01
>>> loose = DEFAULT_THRESHOLDS.replace({"deltas.min_delta": 0.05})
>>> loose.diff(DEFAULT_THRESHOLDS)                  # {'deltas.min_delta': (0.05, 0.01)}
"""

from __future__ import annotations

from typing import Dict, Iterator, Optional, Tuple

__all__ = [
    "ThresholdRegistry",
    "DEFAULT_THRESHOLDS",
]


# ═══════════════════════════════════════════════════════════════════
# ThresholdRegistry
# ═══════════════════════════════════════════════════════════════════

class ThresholdRegistry:
    """Immutable typed mapping of dotted threshold keys → float values.

    Parameters
    ----------
    data : dict[str, float]
        ``{"section.name": value, ...}``.
    name : str, optional
        Human-readable label (e.g. ``"production"``, ``"strict-envelope"``).

    Notes
    -----
    * Read-only: ``__setitem__`` raises ``TypeError``.
    * ``replace()`` returns a new registry.
    * ``diff()`` compares two registries.
    * Hashable; equal registries hash alike.
    """

    def __init__(self, data: Dict[str, float], *, name: str = "custom"):
        self._data: Dict[str, float] = dict(data)
        self._name = name

    # ── read ────────────────────────────────────────────────────

    @property
    def name(self) -> str:
        return self._name

    def __getitem__(self, key: str) -> float:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __repr__(self) -> str:
        return f"ThresholdRegistry({self._name!r}, {len(self._data)} keys)"

    def keys(self):
        return self._data.keys()

    def items(self):
        return self._data.items()

    # ── immutable mutation ──────────────────────────────────────

    def __setitem__(self, key: str, value: float):
        raise TypeError(
            "ThresholdRegistry is immutable — use .replace() instead")

    def replace(
        self,
        overrides: Dict[str, float],
        *,
        name: Optional[str] = None,
    ) -> "ThresholdRegistry":
        """Return a new registry with selected keys overridden.

        Raises
        ------
        KeyError
            If any key in *overrides* is not in the registry.
        """
        for k in overrides:
            if k not in self._data:
                raise KeyError(
                    f"Unknown threshold key {k!r}. "
                    f"Valid keys: {sorted(self._data.keys())}"
                )
        merged = dict(self._data)
        merged.update(overrides)
        return ThresholdRegistry(
            merged,
            name=name or (self._name + "+"),
        )

    # ── comparison ──────────────────────────────────────────────

    def diff(
        self, other: "ThresholdRegistry",
    ) -> Dict[str, Tuple[Optional[float], Optional[float]]]:
        """Return ``{key: (self_value, other_value)}`` for differing keys."""
        result = {}
        for k in sorted(set(self._data) | set(other._data)):
            v_self = self._data.get(k)
            v_other = other._data.get(k)
            if v_self != v_other:
                result[k] = (v_self, v_other)
        return result

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ThresholdRegistry):
            return NotImplemented
        return self._data == other._data

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._data.items())))


# ═══════════════════════════════════════════════════════════════════
# DEFAULT_THRESHOLDS — the production config
# ═══════════════════════════════════════════════════════════════════
#
# Naming convention: section.descriptive_name
#   section ∈ {clamp, coherence, gender, deltas, gateway, prompt}
# ═══════════════════════════════════════════════════════════════════

_DEFAULT_DATA: Dict[str, float] = {

    # ── clamp — range clamps ────────────────────────────────────
    "clamp.envelope_epsilon": 0.001,    # smaller K5 moves are not reported
    "clamp.limb_baseline": 1.0,         # "no change" limb-mass multiplier

    # ── coherence — cross-parameter rules ───────────────────────

    # Obesity override
    "coherence.obese_muscle_margin": 0.1,       # tolerated above k5.min

    # Adiposity vs muscularity
    "coherence.adiposity_high": 1.0,
    "coherence.adiposity_muscle_size_ceiling": 0.2,
    "coherence.adiposity_muscle_definition_ceiling": 0.1,
    "coherence.muscularity_high": 0.8,
    "coherence.muscularity_adiposity_ceiling": 0.5,

    # Waist
    "coherence.narrow_waist_trigger": 0.0,
    "coherence.narrow_waist_ceiling": -0.2,

    # Emaciation
    "coherence.emaciation_high": 0.5,
    "coherence.emaciated_adiposity_trigger": 0.3,
    "coherence.emaciated_adiposity_ceiling": 0.2,
    "coherence.emaciated_muscle_trigger": 0.1,
    "coherence.emaciated_muscle_ceiling": 0.0,

    # Fixed limb gate
    "coherence.gate_value": 1.0,
    "coherence.gate_tolerance": 0.001,

    # ── gender — per-gender bans ────────────────────────────────
    "gender.ban_tolerance": 0.001,

    # ── deltas — DeltaAnalyzer ──────────────────────────────────
    "deltas.min_delta": 0.01,
    "deltas.top_n": 10.0,
    "deltas.active_threshold": 0.05,

    # ── gateway — response parsing and transport ────────────────
    "gateway.default_confidence": 0.8,
    "gateway.fallback_confidence": 0.6,
    "gateway.reasoning_warn_ratio": 0.7,

    # ── prompt — PromptBuilder flags ────────────────────────────
    "prompt.narrow_shape_width": 0.5,
    "prompt.narrow_limb_width": 0.3,
    "prompt.muscularity_high": 0.7,
    "prompt.muscularity_low": 0.3,
    "prompt.hip_shoulder_high": 1.1,
    "prompt.waist_hip_low": 0.8,
    "prompt.bmi_obese": 30.0,
    "prompt.bmi_overweight": 25.0,
    "prompt.bmi_underweight": 20.0,
}


DEFAULT_THRESHOLDS: ThresholdRegistry = ThresholdRegistry(
    _DEFAULT_DATA, name="production",
)
"""The production threshold registry."""
