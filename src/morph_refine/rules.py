"""Coherence rules — declarative cross-parameter corrections.

Some body traits are mutually exclusive: a subject cannot be both very
fat and very muscular, or emaciated and fat, or obese with a visibly
narrowed waist.  Each such constraint is a self-contained
:class:`CoherenceRule` object in the :data:`COHERENCE_RULES` registry, so
rules can be:

* **unit-tested** individually (does rule X fire for this vector?),
* **swept** (rebuild the table with other thresholds or key roles),
* **traced** (every correction carries the rule name and its reason).

Architecture
------------
A ``CoherenceRule`` is a frozen dataclass holding:

* **group** – ``"shape"`` or ``"limb"``
* **target_key** – the parameter the rule corrects
* **predicate** – ``(classification, values, k5) -> bool``
* **target** – ``(k5_range) -> float``, the corrected value
* **mode** – ``"cap"`` (only ever lowers the value) or ``"pin"``
  (sets an exact value)
* **requires** – keys that must have a K5 range for the rule to apply
* **reason** – template for the audit reason

Rules are evaluated in registry order against the *progressively
corrected* vector.  Cap targets are ``min(ceiling, k5.max)`` and may sit
below the K5 minimum: such a correction is a recorded exception to the
envelope.  Every target is brought into its DB range before it is
written, so a correction can never leave the physiological bounds.

Key roles (which parameter indicates adiposity, muscularity, …) come
from :class:`CoherenceKeys`; numbers come from the ``coherence.*``
section of the :class:`~morph_refine.thresholds.ThresholdRegistry`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import (Callable, Dict, List, Mapping, Optional, Sequence,
                    Tuple)

from .audit import COHERENCE, SOURCE_PRIORITY, ViolationRecord
from .bounds import LIMB, SHAPE, BoundRange, EnvelopeBounds
from .classification import VisionClassification
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry
from .vector import ParameterVector

logger = logging.getLogger(__name__)

__all__ = [
    "CAP",
    "PIN",
    "CoherenceKeys",
    "CoherenceRule",
    "COHERENCE_RULES",
    "build_coherence_rules",
    "apply_coherence_rules",
    "coherence_target",
    "replace_rules",
]

CAP = "cap"
PIN = "pin"

Predicate = Callable[[VisionClassification, Mapping[str, float],
                      EnvelopeBounds], bool]
TargetFn = Callable[[Optional[BoundRange]], float]


# ═══════════════════════════════════════════════════════════════════
# CoherenceKeys — which parameter plays which role
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CoherenceKeys:
    """Parameter names of the indicator keys the rules reason about."""

    adiposity: str = "pearFigure"
    muscle_size: Tuple[str, ...] = ("bodybuilderSize",)
    muscle_definition: Tuple[str, ...] = ("bodybuilderDetails",)
    emaciation: str = "emaciated"
    narrow_waist: str = "narrowWaist"
    gate: str = "gate"

    @property
    def muscularity(self) -> Tuple[str, ...]:
        return self.muscle_size + self.muscle_definition


# ═══════════════════════════════════════════════════════════════════
# CoherenceRule — one correction
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CoherenceRule:
    """One cross-parameter correction.

    Parameters
    ----------
    name : str
        Unique label (``<trigger>_<target>``).
    group : str
        Parameter group of *target_key*.
    target_key : str
        The key the rule corrects.
    predicate : callable
        ``(classification, values, k5) -> bool``.
    target : callable
        ``(k5_range_of_target_key) -> float``.
    reason : str
        ``str.format`` template; fields ``key``, ``value``, ``target``,
        ``indicator``, ``obesity``.
    mode : str
        ``"cap"`` or ``"pin"``.
    requires : tuple of str
        Keys that must have a K5 range.
    indicator : str
        Key whose value is reported in the reason.
    """

    name: str
    group: str
    target_key: str
    predicate: Predicate
    target: TargetFn
    reason: str
    mode: str = CAP
    requires: Tuple[str, ...] = ()
    indicator: str = ""
    tolerance: float = 0.001

    def evaluate(
        self,
        classification: VisionClassification,
        values: Mapping[str, float],
        k5: EnvelopeBounds,
    ) -> Optional[float]:
        """Return the corrected value if the rule fires, else ``None``."""
        if self.target_key not in values:
            return None
        if any(k not in k5 for k in self.requires):
            return None
        if not self.predicate(classification, values, k5):
            return None

        k5_range = k5.get(self.target_key)
        target = float(self.target(k5_range))
        current = values[self.target_key]
        if self.mode == CAP:
            return target if current > target else None
        return target if abs(current - target) > self.tolerance else None

    def describe(self, classification: VisionClassification,
                 values: Mapping[str, float], target: float) -> str:
        return self.reason.format(
            key=self.target_key,
            value=values.get(self.target_key, 0.0),
            target=target,
            indicator=values.get(self.indicator, 0.0),
            obesity=classification.obesity or "unknown",
        )


# ═══════════════════════════════════════════════════════════════════
# Predicate helpers — concise condition constructors
# ═══════════════════════════════════════════════════════════════════

def _value(values: Mapping[str, float], key: str) -> float:
    return values.get(key, 0.0)


def _obese(c: VisionClassification, _v, _k) -> bool:
    return c.is_obese


def _overweight_or_obese(c: VisionClassification, _v, _k) -> bool:
    return c.is_obese or c.is_overweight


def _not_obese(c: VisionClassification, _v, _k) -> bool:
    return not c.is_obese


def _lean(c: VisionClassification, _v, _k) -> bool:
    """Neither obese nor overweight."""
    return not (c.is_obese or c.is_overweight)


def _gt(key: str, threshold: float) -> Predicate:
    """values[key] > threshold"""
    return lambda c, v, k5: _value(v, key) > threshold


def _any_gt(keys: Sequence[str], threshold: float) -> Predicate:
    """any values[k] > threshold"""
    return lambda c, v, k5: any(_value(v, k) > threshold for k in keys)


def _gt_k5(key: str, fn: Callable[[BoundRange], float]) -> Predicate:
    """values[key] > fn(k5[key])"""
    return lambda c, v, k5: _value(v, key) > fn(k5[key])


def _and(*preds: Predicate) -> Predicate:
    return lambda c, v, k5: all(p(c, v, k5) for p in preds)


def _k5_min(rng: Optional[BoundRange]) -> float:
    return rng.min if rng is not None else 0.0


def _capped(ceiling: float) -> TargetFn:
    """min(ceiling, k5.max)"""
    return lambda rng: min(ceiling, rng.max) if rng is not None else ceiling


def _constant(value: float) -> TargetFn:
    return lambda rng: value


# ═══════════════════════════════════════════════════════════════════
# build_coherence_rules — the registry builder
# ═══════════════════════════════════════════════════════════════════

def build_coherence_rules(
    keys: Optional[CoherenceKeys] = None,
    thresholds: Optional[ThresholdRegistry] = None,
) -> Tuple[CoherenceRule, ...]:
    """Build the ordered rule table for *keys* and *thresholds*.

    Order
    -----
    1. obesity override (muscularity → K5 minimum)
    2. high adiposity caps muscularity (not obese)
    3. high muscularity caps adiposity (neither obese nor overweight)
    4. adiposity excludes a narrow waist (obese or overweight)
    5. emaciation caps adiposity and muscle size
    6. limb gate pinned to 1.0

    Notes
    -----
    Each rule sees the corrections of the rules before it.  With
    ``pearFigure > 1`` and ``bodybuilderSize > 0.8`` on a lean subject,
    rule 2 caps ``bodybuilderSize`` to 0.2 first, so rule 3 no longer
    fires and ``pearFigure`` is kept.
    """
    keys = keys or CoherenceKeys()
    t = thresholds or DEFAULT_THRESHOLDS
    rules: List[CoherenceRule] = []
    fat = keys.adiposity

    # 1. Obesity override
    margin = t["coherence.obese_muscle_margin"]
    for key in keys.muscularity:
        rules.append(CoherenceRule(
            name=f"obesity_override_{key}",
            group=SHAPE,
            target_key=key,
            predicate=_and(
                _obese,
                _gt_k5(key, lambda rng, m=margin: rng.min + m)),
            target=_k5_min,
            requires=(key,),
            reason=("obesity override: {obesity} subject, forcing {key} "
                    "to envelope minimum ({target:.3f})"),
        ))

    # 2. High adiposity caps muscularity
    fat_high = t["coherence.adiposity_high"]
    size_ceiling = t["coherence.adiposity_muscle_size_ceiling"]
    definition_ceiling = t["coherence.adiposity_muscle_definition_ceiling"]
    for size_key in keys.muscle_size:
        rules.append(CoherenceRule(
            name=f"adiposity_caps_{size_key}",
            group=SHAPE,
            target_key=size_key,
            predicate=_and(_not_obese, _gt(fat, fat_high)),
            target=_capped(size_ceiling),
            requires=(fat, size_key),
            indicator=fat,
            reason=("high adiposity ({indicator:.3f}) incompatible with "
                    "muscularity in envelope; {key} capped to {target:.3f}"),
        ))
    primary_size = keys.muscle_size[0] if keys.muscle_size else None
    for def_key in keys.muscle_definition:
        required = (fat, def_key) + ((primary_size,) if primary_size else ())
        rules.append(CoherenceRule(
            name=f"adiposity_caps_{def_key}",
            group=SHAPE,
            target_key=def_key,
            predicate=_and(_not_obese, _gt(fat, fat_high)),
            target=_capped(definition_ceiling),
            requires=required,
            indicator=fat,
            reason=("high adiposity incompatible with muscle definition "
                    "in envelope; {key} capped to {target:.3f}"),
        ))

    # 3. High muscularity caps adiposity
    if keys.muscle_size:
        rules.append(CoherenceRule(
            name=f"muscularity_caps_{fat}",
            group=SHAPE,
            target_key=fat,
            predicate=_and(
                _lean,
                _any_gt(keys.muscle_size, t["coherence.muscularity_high"])),
            target=_capped(t["coherence.muscularity_adiposity_ceiling"]),
            requires=(fat,) + keys.muscle_size,
            indicator=keys.muscle_size[0],
            reason=("high muscularity ({indicator:.3f}) incompatible with "
                    "high adiposity in envelope; {key} capped to "
                    "{target:.3f}"),
        ))

    # 4. Adiposity excludes a narrow waist
    waist = keys.narrow_waist
    rules.append(CoherenceRule(
        name=f"adiposity_caps_{waist}",
        group=SHAPE,
        target_key=waist,
        predicate=_and(_overweight_or_obese,
                       _gt(waist, t["coherence.narrow_waist_trigger"])),
        target=_capped(t["coherence.narrow_waist_ceiling"]),
        requires=(waist,),
        reason=("{obesity} subject: high adiposity incompatible with "
                "narrow waist; {key} capped to {target:.3f}"),
    ))

    # 5. Emaciation caps adiposity and muscle size
    thin = keys.emaciation
    thin_high = t["coherence.emaciation_high"]
    fat_trigger = t["coherence.emaciated_adiposity_trigger"]
    rules.append(CoherenceRule(
        name=f"emaciation_caps_{fat}",
        group=SHAPE,
        target_key=fat,
        predicate=_and(
            _gt(thin, thin_high),
            _gt_k5(fat, lambda rng, c=fat_trigger: min(c, rng.max))),
        target=_capped(t["coherence.emaciated_adiposity_ceiling"]),
        requires=(thin, fat),
        indicator=thin,
        reason=("high emaciation ({indicator:.3f}) incompatible with "
                "adiposity in envelope; {key} capped to {target:.3f}"),
    ))
    muscle_trigger = t["coherence.emaciated_muscle_trigger"]
    for size_key in keys.muscle_size:
        rules.append(CoherenceRule(
            name=f"emaciation_caps_{size_key}",
            group=SHAPE,
            target_key=size_key,
            predicate=_and(
                _gt(thin, thin_high),
                _gt_k5(size_key,
                       lambda rng, c=muscle_trigger: min(c, rng.max))),
            target=_capped(t["coherence.emaciated_muscle_ceiling"]),
            requires=(thin, size_key),
            indicator=thin,
            reason=("high emaciation ({indicator:.3f}) incompatible with "
                    "muscularity in envelope; {key} capped to "
                    "{target:.3f}"),
        ))

    # 6. Fixed gate
    rules.append(CoherenceRule(
        name=f"fixed_{keys.gate}",
        group=LIMB,
        target_key=keys.gate,
        predicate=lambda c, v, k5: True,
        target=_constant(t["coherence.gate_value"]),
        mode=PIN,
        tolerance=t["coherence.gate_tolerance"],
        reason="{key} must be exactly {target:.1f} (fixed baseline)",
    ))

    return tuple(rules)


COHERENCE_RULES: Tuple[CoherenceRule, ...] = build_coherence_rules()
"""The production rule table."""


# ═══════════════════════════════════════════════════════════════════
# apply_coherence_rules — the engine
# ═══════════════════════════════════════════════════════════════════

def apply_coherence_rules(
    vector: ParameterVector,
    group: str,
    classification: VisionClassification,
    k5: EnvelopeBounds,
    db: EnvelopeBounds,
    rules: Optional[Sequence[CoherenceRule]] = None,
) -> Tuple[ParameterVector, List[ViolationRecord]]:
    """Apply every rule of *group* in order, with a full audit trail.

    Returns
    -------
    (vector, records)
        The corrected vector and one :class:`ViolationRecord` per
        correction.
    """
    if rules is None:
        rules = COHERENCE_RULES

    current: Dict[str, float] = vector.to_dict()
    records: List[ViolationRecord] = []

    for rule in rules:
        if rule.group != group:
            continue
        target = rule.evaluate(classification, current, k5)
        if target is None:
            continue
        db_range = db.get(rule.target_key)
        if db_range is not None and not db_range.contains(target):
            logger.warning(
                f"Coherence target {target:.3f} for {rule.target_key!r} "
                f"outside DB range [{db_range.min}, {db_range.max}]; "
                f"clamped")
            target = db_range.clamp(target)
        original = current[rule.target_key]
        if target == original:
            continue
        reason = rule.describe(classification, current, target)
        current[rule.target_key] = target
        k5_range = k5.get(rule.target_key)
        records.append(ViolationRecord(
            key=rule.target_key,
            group=group,
            original_value=original,
            corrected_value=target,
            source=COHERENCE,
            reason=reason,
            priority=SOURCE_PRIORITY[COHERENCE],
            rule=rule.name,
            bound=(k5_range.min, k5_range.max) if k5_range else None,
        ))
        logger.debug(f"{rule.name}: {rule.target_key} "
                     f"{original:.3f} → {target:.3f}")

    return vector.replace(current), records


def coherence_target(
    key: str,
    values: Mapping[str, float],
    group: str,
    classification: VisionClassification,
    k5: EnvelopeBounds,
    db: EnvelopeBounds,
    rules: Optional[Sequence[CoherenceRule]] = None,
) -> Optional[float]:
    """Value the first firing rule of *group* would give *key*, or ``None``.

    The target is brought into the DB range the same way
    :func:`apply_coherence_rules` does it.
    """
    if rules is None:
        rules = COHERENCE_RULES
    for rule in rules:
        if rule.group != group or rule.target_key != key:
            continue
        target = rule.evaluate(classification, values, k5)
        if target is None:
            continue
        db_range = db.get(key)
        if db_range is not None and not db_range.contains(target):
            target = db_range.clamp(target)
        return target
    return None


# ═══════════════════════════════════════════════════════════════════
# Utilities for sweeps
# ═══════════════════════════════════════════════════════════════════

def replace_rules(
    original: Sequence[CoherenceRule],
    replacements: Dict[str, CoherenceRule],
) -> Tuple[CoherenceRule, ...]:
    """Return a new rule table with named rules replaced."""
    return tuple(replacements.get(r.name, r) for r in original)
