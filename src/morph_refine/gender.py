"""Per-gender constraints — explicit rules plus what the DB bounds imply.

Two rule kinds are declared in :data:`GENDER_RULES`:

* **ceiling** — the value may never exceed ``value`` for that gender,
  even when the DB maximum is higher.
* **ban** — the value is forced to ``value`` (0) for that gender; the
  morph is anatomically exclusive.

:func:`derive_gender_constraints` merges the table with the bounds: every
shape key whose DB range is ``[0, 0]`` is banned too, and every key with
``min == max`` is fixed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .bounds import GROUPS, BoundSet

__all__ = [
    "CEILING",
    "BAN",
    "GenderRule",
    "GENDER_RULES",
    "GenderConstraints",
    "derive_gender_constraints",
]

CEILING = "ceiling"
BAN = "ban"


@dataclass(frozen=True)
class GenderRule:
    """One explicit per-gender limit on a shape parameter."""

    gender: str
    key: str
    kind: str
    value: float
    name: str
    reason: str

    def violated_by(self, current: float, tolerance: float = 0.001) -> bool:
        if self.kind == CEILING:
            return current > self.value
        return abs(current - self.value) > tolerance


def _ceiling(gender: str, key: str, value: float, reason: str) -> GenderRule:
    return GenderRule(gender, key, CEILING, value,
                      f"{gender}_{key}_ceiling", reason)


def _ban(gender: str, key: str, reason: str) -> GenderRule:
    return GenderRule(gender, key, BAN, 0.0, f"{gender}_{key}_ban", reason)


# ═══════════════════════════════════════════════════════════════════
# GENDER_RULES — the explicit table
# ═══════════════════════════════════════════════════════════════════

GENDER_RULES: Tuple[GenderRule, ...] = (
    _ceiling("masculine", "breastsSmall", 1.0,
             "masculine_physiological_limit_exceeded"),
    _ceiling("masculine", "superBreast", 0.0,
             "masculine_anatomy_positive_superBreast_forbidden"),
    _ban("masculine", "pregnant",
         "pregnant not allowed for masculine"),
    _ban("masculine", "nipples",
         "nipples not allowed for masculine"),
    _ban("masculine", "animeProportion",
         "animeProportion not allowed for masculine"),
)


# ═══════════════════════════════════════════════════════════════════
# GenderConstraints
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GenderConstraints:
    """Resolved constraints for one gender and one DB bound set.

    Attributes
    ----------
    banned : dict
        Shape key → banned value (explicit bans and DB ``[0, 0]`` keys).
    ceilings : dict
        Shape key → maximum allowed value.
    fixed : dict
        Group → ``{key: value}`` for DB ranges with ``min == max``.
    rules : tuple of GenderRule
        Explicit rules that apply to this gender.
    """

    gender: str
    banned: Dict[str, float] = field(default_factory=dict)
    ceilings: Dict[str, float] = field(default_factory=dict)
    fixed: Dict[str, Dict[str, float]] = field(default_factory=dict)
    rules: Tuple[GenderRule, ...] = ()

    @property
    def banned_keys(self) -> List[str]:
        return sorted(self.banned)

    def fixed_in(self, group: str) -> Dict[str, float]:
        return dict(self.fixed.get(group, {}))

    def rule_for(self, key: str) -> Optional[GenderRule]:
        """The rule governing shape *key*, or ``None``.

        A ban takes precedence over a ceiling.  DB-derived bans have no
        explicit rule and get a synthesised ``db_banned`` one.
        """
        if key in self.banned:
            for rule in self.rules:
                if rule.key == key and rule.kind == BAN:
                    return rule
            return GenderRule(
                self.gender, key, BAN, self.banned[key], "db_banned",
                f"{key} banned for {self.gender} (db range [0, 0])")
        if key in self.ceilings:
            for rule in self.rules:
                if rule.key == key and rule.kind == CEILING:
                    return rule
            return _ceiling(self.gender, key, self.ceilings[key],
                            f"{key} above the {self.gender} ceiling")
        return None

    def allows(self, key: str, value: float,
               tolerance: float = 0.001) -> bool:
        """Would *value* for shape *key* pass every gender constraint?"""
        rule = self.rule_for(key)
        return rule is None or not rule.violated_by(value, tolerance)


def derive_gender_constraints(
    gender: str,
    db: BoundSet,
    rules: Optional[Sequence[GenderRule]] = None,
) -> GenderConstraints:
    """Build :class:`GenderConstraints` from the rule table and *db*."""
    if rules is None:
        rules = GENDER_RULES
    active = tuple(r for r in rules if r.gender == gender)

    banned: Dict[str, float] = {
        k: 0.0 for k, r in db.shape.items() if r.min == 0 and r.max == 0
    }
    ceilings: Dict[str, float] = {}
    for rule in active:
        if rule.kind == BAN:
            banned[rule.key] = rule.value
        else:
            ceilings[rule.key] = rule.value

    fixed = {g: db.group(g).fixed_keys for g in GROUPS}
    return GenderConstraints(
        gender=gender,
        banned=banned,
        ceilings=ceilings,
        fixed=fixed,
        rules=active,
    )
