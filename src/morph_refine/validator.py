"""ConstraintValidator — reconcile a candidate vector with its bounds.

The validator never rejects data: it corrects it and records every
correction.  Per parameter group it runs

1. **allowlist** — candidate keys absent from ``db`` are dropped,
2. **completion** — ``db`` keys missing from the candidate (or carrying a
   non-finite value) get a neutral default,
3. the :class:`~morph_refine.stages.ValidationPipeline`
   (envelope → db → gender → coherence).

The result holds vectors whose key sets equal the ``db`` key sets exactly,
with every value finite and inside its ``db`` range.

Usage
-----
>>> validator = ConstraintValidator()
>>> result = validator.validate(shape, limb, k5, db, constraints, vision)
>>> result.final_shape["pearFigure"]
>>> print(result.audit.explain())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .audit import AuditTrail, ViolationRecord
from .bounds import GROUPS, LIMB, SHAPE, BoundSet, EnvelopeBounds
from .classification import VisionClassification
from .deltas import count_active_keys
from .gender import GenderConstraints
from .rules import CoherenceRule, build_coherence_rules, replace_rules
from .stages import StageContext, ValidationPipeline, build_default_pipeline
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry
from .vector import ParameterVector, is_finite_number

logger = logging.getLogger(__name__)

__all__ = [
    "RefinementResult",
    "ConstraintValidator",
    "completion_default",
]


def completion_default(group: str, rng, limb_baseline: float = 1.0) -> float:
    """Neutral value for a key the candidate did not supply.

    Shape keys default to 0 and limb masses to *limb_baseline*, or to the
    range midpoint when the range excludes that value.
    """
    neutral = 0.0 if group == SHAPE else limb_baseline
    if rng.contains(neutral):
        return neutral
    return rng.midpoint


# ═══════════════════════════════════════════════════════════════════
# RefinementResult
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RefinementResult:
    """Validated vectors plus the audit trail that produced them."""

    final_shape: ParameterVector
    final_limb: ParameterVector
    audit: AuditTrail
    confidence: float
    active_key_count: int

    def vector(self, group: str) -> ParameterVector:
        if group == SHAPE:
            return self.final_shape
        if group == LIMB:
            return self.final_limb
        raise ValueError(f"Unknown parameter group {group!r}")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "final_shape_params": self.final_shape.to_dict(),
            "final_limb_masses": self.final_limb.to_dict(),
        }
        d.update(self.audit.to_dict())
        d["active_keys_count"] = self.active_key_count
        d["ai_confidence"] = self.confidence
        return d

    def __repr__(self) -> str:
        return (f"RefinementResult(shape={len(self.final_shape)}, "
                f"limb={len(self.final_limb)}, {self.audit.summary()})")


# ═══════════════════════════════════════════════════════════════════
# ConstraintValidator
# ═══════════════════════════════════════════════════════════════════

class ConstraintValidator:
    """Deterministic corrector for candidate parameter vectors.

    Parameters
    ----------
    thresholds : ThresholdRegistry, optional
        Defaults to :data:`DEFAULT_THRESHOLDS`.
    rules : sequence of CoherenceRule, optional
        Coherence rule table.  Defaults to the table built from
        *thresholds*, so ``coherence.*`` overrides take effect.
    rule_overrides : dict, optional
        ``{rule_name: CoherenceRule}`` swapped into the table by name.
    pipeline : ValidationPipeline, optional
        Stage order.  Defaults to :func:`build_default_pipeline`.
    """

    def __init__(
        self,
        thresholds: Optional[ThresholdRegistry] = None,
        rules: Optional[Sequence[CoherenceRule]] = None,
        pipeline: Optional[ValidationPipeline] = None,
        rule_overrides: Optional[Dict[str, CoherenceRule]] = None,
    ):
        self.thresholds = thresholds or DEFAULT_THRESHOLDS
        if rules is None:
            rules = build_coherence_rules(thresholds=self.thresholds)
        if rule_overrides:
            unknown = set(rule_overrides) - {r.name for r in rules}
            if unknown:
                raise KeyError(
                    f"Unknown coherence rules {sorted(unknown)}. "
                    f"Rules: {[r.name for r in rules]}")
            rules = replace_rules(rules, rule_overrides)
        self.rules: Tuple[CoherenceRule, ...] = tuple(rules)
        self.pipeline = pipeline or build_default_pipeline()

        overrides = self.thresholds.diff(DEFAULT_THRESHOLDS)
        if overrides:
            logger.info(f"Threshold overrides vs production: {overrides}")

    def __repr__(self) -> str:
        return (f"ConstraintValidator({self.thresholds.name!r}, "
                f"{len(self.rules)} rules, {self.pipeline.names})")

    # ── intake ──────────────────────────────────────────────────

    def _intake(
        self,
        group: str,
        candidate: Mapping[str, Any],
        db: EnvelopeBounds,
    ) -> Tuple[ParameterVector, List[str], List[str], Dict[str, float]]:
        """Allowlist + completion for one group."""
        candidate = candidate or {}
        removed = [k for k in candidate if k not in db]
        values: Dict[str, float] = {}
        missing: List[str] = []
        defaults: Dict[str, float] = {}
        baseline = self.thresholds["clamp.limb_baseline"]

        for key, rng in db.items():
            raw = candidate.get(key)
            if is_finite_number(raw):
                values[key] = float(raw)
                continue
            default = completion_default(group, rng, baseline)
            if raw is not None:
                logger.warning(f"Non-finite {group} value for {key!r} "
                               f"({raw!r}); using {default:.3f}")
            values[key] = default
            defaults[key] = default
            missing.append(key)

        if removed:
            logger.info(f"Removed {len(removed)} {group} keys not in DB: "
                        f"{removed}")
        return ParameterVector(values, universe=db.keys()), missing, \
            removed, defaults

    # ── validate ────────────────────────────────────────────────

    def validate(
        self,
        shape: Mapping[str, Any],
        limb: Mapping[str, Any],
        k5: BoundSet,
        db: BoundSet,
        gender: GenderConstraints,
        classification: Optional[VisionClassification] = None,
        confidence: float = 1.0,
    ) -> RefinementResult:
        """Correct *shape* / *limb* against *k5*, *db* and the rules.

        Parameters
        ----------
        shape, limb : mapping
            Candidate values.  May contain extra keys, miss keys, or hold
            non-finite values.
        k5 : BoundSet
            Archetype envelope (may omit keys).
        db : BoundSet
            Physiological bounds; defines the output key universe.
        gender : GenderConstraints
            From :func:`~morph_refine.gender.derive_gender_constraints`.
        classification : VisionClassification, optional
        confidence : float
            Carried through to the result.

        Raises
        ------
        BoundsContractError
            If *db* has no keys for either group.
        """
        db.require_key_universe()
        classification = classification or VisionClassification()
        candidates = {SHAPE: shape, LIMB: limb}

        finals: Dict[str, ParameterVector] = {}
        records: List[ViolationRecord] = []
        missing: List[str] = []
        removed: List[str] = []
        defaults: Dict[str, float] = {}

        for group in GROUPS:
            db_env = db.group(group)
            vector, g_missing, g_removed, g_defaults = self._intake(
                group, candidates[group], db_env)
            context = StageContext(
                group=group,
                k5=k5.group(group),
                db=db_env,
                classification=classification,
                gender=gender,
                thresholds=self.thresholds,
                rules=self.rules,
            )
            finals[group], g_records = self.pipeline.apply(vector, context)
            records.extend(g_records)
            missing.extend(g_missing)
            removed.extend(g_removed)
            defaults.update(g_defaults)

        # Records ordered by priority, shape before limb within one.
        records.sort(key=lambda r: r.priority)
        audit = AuditTrail(
            records=tuple(records),
            missing_keys_added=tuple(missing),
            extra_keys_removed=tuple(removed),
            missing_defaults=defaults,
        )
        active = count_active_keys(
            finals[SHAPE], finals[LIMB],
            threshold=self.thresholds["deltas.active_threshold"])
        logger.info(f"Validated candidate: {audit.summary()}, "
                    f"active={active}")
        return RefinementResult(
            final_shape=finals[SHAPE],
            final_limb=finals[LIMB],
            audit=audit,
            confidence=confidence,
            active_key_count=active,
        )
