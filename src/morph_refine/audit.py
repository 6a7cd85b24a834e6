"""AuditTrail — every transformation applied to one candidate vector.

Captures the key-level intake changes (keys dropped by the allowlist, keys
filled in by completion) and one :class:`ViolationRecord` per correction
applied by a pipeline stage, in the order the stages ran.  Everything the
response reports (``clamped_keys``, ``envelope_violations``, …,
``clamping_metadata``) is derived from this one object.

Usage
-----
>>> result = ConstraintValidator().validate(candidate, k5, db, ...)
>>> trail = result.audit
>>> trail.envelope_violations        # ['pearFigure']
>>> trail.by_source("coherence")     # [ViolationRecord(…), …]
>>> trail.clamping_metadata()        # priority-grouped audit display
>>> print(trail.explain())
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

__all__ = [
    "ENVELOPE",
    "DB",
    "GENDER",
    "COHERENCE",
    "SOURCE_PRIORITY",
    "ViolationRecord",
    "AuditTrail",
]

ENVELOPE = "envelope"
DB = "db"
GENDER = "gender"
COHERENCE = "coherence"

SOURCE_PRIORITY: Dict[str, int] = {
    ENVELOPE: 1,
    DB: 2,
    GENDER: 3,
    COHERENCE: 4,
}

_METADATA_GROUPS: Tuple[Tuple[str, str], ...] = (
    (ENVELOPE, "envelope_violations"),
    (DB, "db_violations"),
    (GENDER, "gender_violations"),
    (COHERENCE, "semantic_corrections"),
)


# ═══════════════════════════════════════════════════════════════════
# ViolationRecord — one correction
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ViolationRecord:
    """Record of one value correction.

    ``bound`` is the ``(min, max)`` range or ceiling the value was moved
    into, when the correction has one.  ``rule`` names the gender or
    coherence rule that fired.
    """

    key: str
    group: str
    original_value: float
    corrected_value: float
    source: str
    reason: str
    priority: int
    rule: str = ""
    bound: Optional[Tuple[float, float]] = None

    @property
    def delta(self) -> float:
        return self.corrected_value - self.original_value

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "key": self.key,
            "type": "shape_param" if self.group == "shape" else "limb_mass",
            "original_value": round(self.original_value, 6),
            "corrected_value": round(self.corrected_value, 6),
            "source": self.source,
            "reason": self.reason,
            "priority": self.priority,
        }
        if self.rule:
            d["rule"] = self.rule
        if self.bound is not None:
            d["range"] = {"min": self.bound[0], "max": self.bound[1]}
        return d


# ═══════════════════════════════════════════════════════════════════
# AuditTrail
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AuditTrail:
    """Ordered correction records plus key-level intake changes.

    ``missing_defaults`` holds the value each completed key received.
    """

    records: Tuple[ViolationRecord, ...] = ()
    missing_keys_added: Tuple[str, ...] = ()
    extra_keys_removed: Tuple[str, ...] = ()
    missing_defaults: Dict[str, float] = field(default_factory=dict)

    # ── Derived views ───────────────────────────────────────────

    def by_source(self, source: str) -> List[ViolationRecord]:
        return [r for r in self.records if r.source == source]

    def _keys(self, source: Optional[str] = None) -> List[str]:
        seen: Dict[str, None] = {}
        for r in self.records:
            if source is None or r.source == source:
                seen.setdefault(r.key, None)
        return list(seen)

    @property
    def clamped_keys(self) -> List[str]:
        """Every corrected key, first-seen order, across all priorities."""
        return self._keys()

    @property
    def envelope_violations(self) -> List[str]:
        return self._keys(ENVELOPE)

    @property
    def db_violations(self) -> List[str]:
        return self._keys(DB)

    @property
    def gender_violations(self) -> List[str]:
        return self._keys(GENDER)

    @property
    def coherence_corrections(self) -> List[str]:
        return self._keys(COHERENCE)

    @property
    def out_of_range_count(self) -> int:
        """Total number of corrections."""
        return len(self.records)

    @property
    def total_transformations(self) -> int:
        return (len(self.records) + len(self.missing_keys_added)
                + len(self.extra_keys_removed))

    @property
    def is_clean(self) -> bool:
        """No correction and no key-level change."""
        return self.total_transformations == 0

    # ── Serialisation ───────────────────────────────────────────

    def clamping_metadata(self) -> Dict[str, Any]:
        """Records regrouped by priority for audit display."""
        meta: Dict[str, Any] = {
            name: [r.to_dict() for r in self.by_source(src)]
            for src, name in _METADATA_GROUPS
        }
        meta["missing_keys"] = [
            {
                "key": k,
                "default_value": self.missing_defaults.get(k),
                "reason": "missing_from_ai_response",
            }
            for k in self.missing_keys_added
        ]
        meta["removed_keys"] = list(self.extra_keys_removed)
        meta["total_transformations"] = self.total_transformations
        meta["validation_status"] = (
            "transformations_applied"
            if any(r.source in (ENVELOPE, DB, GENDER) for r in self.records)
            else "no_transformations"
        )
        return meta

    def to_dict(self) -> Dict[str, Any]:
        """Return the response-level audit fields."""
        return {
            "clamped_keys": self.clamped_keys,
            "envelope_violations": self.envelope_violations,
            "db_violations": self.db_violations,
            "gender_violations": self.gender_violations,
            "missing_keys_added": list(self.missing_keys_added),
            "extra_keys_removed": list(self.extra_keys_removed),
            "out_of_range_count": self.out_of_range_count,
            "clamping_metadata": self.clamping_metadata(),
        }

    def summary(self) -> str:
        """One-line human-readable summary."""
        return (
            f"corrections={self.out_of_range_count} "
            f"(envelope={len(self.by_source(ENVELOPE))}, "
            f"db={len(self.by_source(DB))}, "
            f"gender={len(self.by_source(GENDER))}, "
            f"coherence={len(self.by_source(COHERENCE))}), "
            f"missing={len(self.missing_keys_added)}, "
            f"removed={len(self.extra_keys_removed)}"
        )

    def explain(self) -> str:
        """Multi-line listing of every transformation, priority order."""
        lines = [f"Audit: {self.summary()}"]
        if self.extra_keys_removed:
            lines.append("")
            lines.append("Removed keys: " + ", ".join(self.extra_keys_removed))
        if self.missing_keys_added:
            lines.append("")
            lines.append("Completed keys:")
            for k in self.missing_keys_added:
                lines.append(
                    f"  {k:<24s} = {self.missing_defaults.get(k, 0.0):+.3f}")
        ordered = sorted(self.records, key=lambda r: r.priority)
        if ordered:
            lines.append("")
            lines.append("Corrections:")
            for r in ordered:
                lines.append(
                    f"  P{r.priority} {r.source:<10s} {r.key:<24s} "
                    f"{r.original_value:+.3f} → {r.corrected_value:+.3f}"
                    f"  ({r.reason})")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"AuditTrail({self.summary()})"
