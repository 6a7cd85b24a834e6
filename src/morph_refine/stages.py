"""ValidationPipeline — ordered, named correction stages.

Each stage takes a vector and returns a corrected vector plus the
:class:`~morph_refine.audit.ViolationRecord` list describing what it
changed.  The pipeline runs its stages in order; a stage's position is
its priority (1 = applied first):

::

    candidate (allowlisted + completed)
        ↓
    ValidationPipeline([EnvelopeClampStage,   # P1  k5 envelope
                        DbClampStage,         # P2  physiological bounds
                        GenderStage,          # P3  bans and ceilings
                        CoherenceStage])      # P4  cross-parameter rules
        ↓
    (final vector, records)

A custom order is just another list:
``ValidationPipeline([EnvelopeClampStage(), DbClampStage()])``.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from .audit import COHERENCE, DB, ENVELOPE, GENDER, ViolationRecord
from .bounds import SHAPE, EnvelopeBounds
from .classification import VisionClassification
from .gender import GenderConstraints
from .rules import CoherenceRule, apply_coherence_rules, coherence_target
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry
from .vector import ParameterVector

logger = logging.getLogger(__name__)

__all__ = [
    "StageContext",
    "Stage",
    "EnvelopeClampStage",
    "DbClampStage",
    "GenderStage",
    "CoherenceStage",
    "ValidationPipeline",
    "build_default_pipeline",
]


# ═══════════════════════════════════════════════════════════════════
# StageContext — everything a stage may read
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StageContext:
    """Read-only inputs shared by every stage for one parameter group."""

    group: str
    k5: EnvelopeBounds
    db: EnvelopeBounds
    classification: VisionClassification
    gender: GenderConstraints
    thresholds: ThresholdRegistry = field(
        default_factory=lambda: DEFAULT_THRESHOLDS)
    rules: Optional[Tuple[CoherenceRule, ...]] = None


# ═══════════════════════════════════════════════════════════════════
# Stage protocol — the composable unit
# ═══════════════════════════════════════════════════════════════════

@runtime_checkable
class Stage(Protocol):
    """Protocol for one correction stage."""

    @property
    def name(self) -> str:
        ...

    @property
    def source(self) -> str:
        """Audit source tag written on this stage's records."""
        ...

    def apply(
        self,
        vector: ParameterVector,
        context: StageContext,
    ) -> Tuple[ParameterVector, List[ViolationRecord]]:
        """Return the corrected vector and one record per correction."""
        ...


def _record(context: StageContext, key: str, original: float,
            corrected: float, source: str, reason: str,
            rule: str = "", bound=None) -> ViolationRecord:
    # priority is stamped by the pipeline
    return ViolationRecord(
        key=key,
        group=context.group,
        original_value=original,
        corrected_value=corrected,
        source=source,
        reason=reason,
        priority=0,
        rule=rule,
        bound=bound,
    )


# ═══════════════════════════════════════════════════════════════════
# Clamp stages
# ═══════════════════════════════════════════════════════════════════

class EnvelopeClampStage:
    """Clamp every key the k5 envelope covers into its range.

    The clamped value is always kept; a record is written only when the
    move exceeds ``clamp.envelope_epsilon``.

    Gender limits win over the envelope.  When the clamped value would
    break a shape key's gender ban or ceiling:

    * a value that already breaks it is left for :class:`GenderStage`;
    * otherwise the value moves only as far as the gender limit (brought
      into the db range), so a validated vector is never pushed back out
      of its gender limit on a second pass.

    A value a coherence cap would set again (a cap below ``k5.min``) is
    left where it is for the same reason.
    """

    name = "envelope"
    source = ENVELOPE

    def apply(self, vector, context):
        eps = context.thresholds["clamp.envelope_epsilon"]
        tol = context.thresholds["gender.ban_tolerance"]
        gendered = context.group == SHAPE
        current = vector.to_dict()
        updates = {}
        records = []
        for key, value in vector.items():
            rng = context.k5.get(key)
            if rng is None:
                continue
            clamped = rng.clamp(value)
            if clamped == value:
                continue
            if gendered and not context.gender.allows(key, clamped, tol):
                if not context.gender.allows(key, value, tol):
                    continue
                limit = context.gender.rule_for(key).value
                clamped = context.db[key].clamp(limit)
                if clamped == value:
                    continue
            held = coherence_target(
                key, {**current, key: clamped}, context.group,
                context.classification, context.k5, context.db,
                rules=context.rules)
            if held is not None and held == value:
                continue
            current[key] = clamped
            updates[key] = clamped
            if abs(clamped - value) > eps:
                records.append(_record(
                    context, key, value, clamped, ENVELOPE,
                    "ai_value_outside_k5_envelope",
                    bound=(rng.min, rng.max)))
        return vector.replace(updates), records


class DbClampStage:
    """Clamp every key into its physiological (db) range.

    Every change is recorded, however small.
    """

    name = "db"
    source = DB

    def apply(self, vector, context):
        updates = {}
        records = []
        for key, value in vector.items():
            rng = context.db[key]
            clamped = rng.clamp(value)
            if clamped == value:
                continue
            updates[key] = clamped
            records.append(_record(
                context, key, value, clamped, DB,
                "ai_value_outside_db_physiological_bounds",
                bound=(rng.min, rng.max)))
        return vector.replace(updates), records


# ═══════════════════════════════════════════════════════════════════
# GenderStage
# ═══════════════════════════════════════════════════════════════════

class GenderStage:
    """Apply the explicit per-gender bans and ceilings to shape keys.

    Targets are brought into the db range; a ban on a key whose db range
    excludes 0 lands on the nearest bound and is logged.
    """

    name = "gender"
    source = GENDER

    def apply(self, vector, context):
        if context.group != SHAPE:
            return vector, []
        constraints = context.gender
        tol = context.thresholds["gender.ban_tolerance"]

        updates = {}
        records = []
        for key, value in vector.items():
            rule = constraints.rule_for(key)
            if rule is None or not rule.violated_by(value, tol):
                continue

            target = rule.value
            rng = context.db[key]
            if not rng.contains(target):
                logger.warning(
                    f"Gender target {target} for {key!r} outside DB range "
                    f"[{rng.min}, {rng.max}]; using nearest bound")
                target = rng.clamp(target)
            if target == value:
                continue
            updates[key] = target
            records.append(_record(
                context, key, value, target, GENDER, rule.reason,
                rule=rule.name, bound=(rng.min, rng.max)))
        return vector.replace(updates), records


# ═══════════════════════════════════════════════════════════════════
# CoherenceStage
# ═══════════════════════════════════════════════════════════════════

class CoherenceStage:
    """Run the coherence rule table (see :mod:`morph_refine.rules`)."""

    name = "coherence"
    source = COHERENCE

    def apply(self, vector, context):
        return apply_coherence_rules(
            vector,
            context.group,
            context.classification,
            context.k5,
            context.db,
            rules=context.rules,
        )


# ═══════════════════════════════════════════════════════════════════
# ValidationPipeline — ordered composition
# ═══════════════════════════════════════════════════════════════════

class ValidationPipeline:
    """Ordered sequence of stages; position ``i`` has priority ``i + 1``.

    Parameters
    ----------
    stages : sequence of Stage
        Stages to apply in order.
    """

    def __init__(self, stages: Sequence[Stage] = ()):
        self._stages: List[Stage] = list(stages)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self._stages]

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self):
        return iter(self._stages)

    def __repr__(self) -> str:
        return f"ValidationPipeline({self.names})"

    def apply(
        self,
        vector: ParameterVector,
        context: StageContext,
    ) -> Tuple[ParameterVector, List[ViolationRecord]]:
        """Run all stages in order, collecting priority-stamped records."""
        records: List[ViolationRecord] = []
        current = vector
        for priority, stage in enumerate(self._stages, start=1):
            current, stage_records = stage.apply(current, context)
            records.extend(dataclasses.replace(r, priority=priority)
                           for r in stage_records)
            if stage_records:
                logger.debug(f"{context.group}/{stage.name}: "
                             f"{len(stage_records)} corrections")
        return current, records


def build_default_pipeline() -> ValidationPipeline:
    """Envelope → DB → gender → coherence."""
    return ValidationPipeline([
        EnvelopeClampStage(),
        DbClampStage(),
        GenderStage(),
        CoherenceStage(),
    ])
