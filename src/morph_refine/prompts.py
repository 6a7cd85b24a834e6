"""PromptBuilder — the instruction payload sent to the refinement model.

The payload is compact plain text, one section per concern:

==================  ==============================================
Section             Content
==================  ==============================================
header              gender | photo views | obesity/muscularity/morphotype
INPUT               blended shape and limb vectors (sorted JSON)
K=5 ENVELOPE (P1)   archetype envelope, ``!`` on narrow ranges
DB BOUNDS (P2)      physiological bounds, ``X`` banned, ``=`` fixed
MUSCULAR GATING     guidance from the muscularity level
PHOTO               photo-derived ratios and BMI, or ``N/A``
GENDER              banned / fixed keys and explicit gender rules
JSON                the expected output schema
==================  ==============================================

Building is pure: the same inputs always produce the same bytes (every
mapping is emitted in sorted key order).
"""

from __future__ import annotations

import json
from typing import Any, List, Mapping, Optional, Sequence

from .bounds import BoundSet, EnvelopeBounds
from .classification import MASCULINE, VisionClassification
from .gender import CEILING, GenderConstraints
from .request import UserMeasurements
from .rules import CoherenceKeys
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry

__all__ = [
    "OUTPUT_SCHEMA",
    "PromptBuilder",
    "build_refinement_prompt",
]

OUTPUT_SCHEMA = (
    '{"final_shape_params":{},"final_limb_masses":{},"ai_confidence":0.8,'
    '"refinement_notes":[],"clamped_keys":[],"envelope_violations":[],'
    '"db_violations":[],"gender_violations":[],"out_of_range_count":0,'
    '"missing_keys_added":[],"extra_keys_removed":[]}'
)


def _compact(values: Mapping[str, Any]) -> str:
    return json.dumps(dict(values or {}), sort_keys=True,
                      separators=(",", ":"))


def _tag(gender: str) -> str:
    return "MASC" if gender == MASCULINE else "FEM"


def _range_lines(env: EnvelopeBounds, flag) -> List[str]:
    return [f"{k}:[{env[k].min:.3f},{env[k].max:.3f}]{flag(env[k])}"
            for k in sorted(env)]


class PromptBuilder:
    """Assemble the refinement prompt.

    Parameters
    ----------
    thresholds : ThresholdRegistry, optional
        Uses the ``prompt.*`` section.
    keys : CoherenceKeys, optional
        Names the muscularity and adiposity keys in the guidance text.
    """

    def __init__(
        self,
        thresholds: Optional[ThresholdRegistry] = None,
        keys: Optional[CoherenceKeys] = None,
    ):
        self.thresholds = thresholds or DEFAULT_THRESHOLDS
        self.keys = keys or CoherenceKeys()

    # ── sections ────────────────────────────────────────────────

    def header(self, gender: str, views: Sequence[str],
               vision: VisionClassification) -> str:
        present = set(views)
        photo = "+".join(tag for view, tag in (("front", "F"),
                                               ("profile", "P"))
                         if view in present)
        return (f"{gender}|{photo}|{vision.obesity}/"
                f"{vision.muscularity}/{vision.morphotype}")

    def envelope_section(self, k5: BoundSet) -> str:
        t = self.thresholds
        shape_narrow = t["prompt.narrow_shape_width"]
        limb_narrow = t["prompt.narrow_limb_width"]
        lines = [f"K=5 ENVELOPE (P1 - {len(k5.archetypes_used)} archetypes):",
                 "SHAPE:"]
        lines += _range_lines(
            k5.shape, lambda r: "!" if r.width < shape_narrow else "")
        lines.append("LIMB:")
        lines += _range_lines(
            k5.limb, lambda r: "!" if r.width < limb_narrow else "")
        lines.append("RULES: Never exceed. ! = narrow/strict. "
                     "Clamped if violated. Gating applied.")
        return "\n".join(lines)

    def db_section(self, gender: str, db: BoundSet) -> str:
        lines = [f"DB BOUNDS {gender} (P2):", "SHAPE:"]
        lines += _range_lines(
            db.shape, lambda r: "X" if r.min == 0 and r.max == 0 else "")
        lines.append("LIMB:")
        lines += _range_lines(db.limb, lambda r: "=" if r.is_fixed else "")
        lines.append("X=banned=0. ==fixed exact. Absolute limits.")
        return "\n".join(lines)

    def gating_section(self, vision: VisionClassification,
                       constraints: GenderConstraints) -> str:
        t = self.thresholds
        muscle = "+".join(self.keys.muscularity)
        level = vision.muscularity_level
        lines = [f'MUSCULAR GATING: "{vision.muscularity}"']
        if level >= t["prompt.muscularity_high"]:
            lines.append(f"HIGH: Maximize {muscle} to upper K=5. "
                         f"{self.keys.adiposity} moderate.")
        elif level <= t["prompt.muscularity_low"]:
            lines.append(f"LOW: {muscle} to lower K=5. "
                         f"{self.keys.emaciation} optimize.")
        else:
            lines.append("NORMAL: Refine all muscular params within K=5.")
        if constraints.rules:
            lines.append(self._rules_line(constraints))
        if vision.is_explicitly_muscular and vision.is_obese:
            lines.append(f"SPECIAL {vision.muscularity}+{vision.obesity}: "
                         f"MAX {muscle} to limits. "
                         f"{self.keys.emaciation}=0.")
        return "\n".join(lines)

    def photo_section(self, measurements: Optional[UserMeasurements]) -> str:
        if measurements is None or not measurements.has_raw:
            return "PHOTO: N/A - visual analysis"
        t = self.thresholds
        parts = [f"PHOTO: H/S={measurements.hip_shoulder_ratio:.2f} "
                 f"W/H={measurements.waist_hip_ratio:.2f} "
                 f"C/W={measurements.chest_waist_ratio:.2f}"]
        bmi = measurements.estimated_bmi
        if bmi is not None:
            if bmi > t["prompt.bmi_obese"]:
                category = "ob"
            elif bmi > t["prompt.bmi_overweight"]:
                category = "ow"
            else:
                category = "n"
            parts[0] += f" BMI={bmi:.1f}({category})"
        else:
            parts[0] += " BMI=N/A"
        parts.append(
            f"Guide: hsr>{t['prompt.hip_shoulder_high']:g}→bigHips/assLarge. "
            f"whr<{t['prompt.waist_hip_low']:g}→{self.keys.narrow_waist}. "
            f"BMI>{t['prompt.bmi_obese']:g}→{self.keys.adiposity}↑. "
            f"BMI<{t['prompt.bmi_underweight']:g}→{self.keys.emaciation}. "
            f"Within K=5.")
        return "\n".join(parts)

    def gender_section(self, constraints: GenderConstraints,
                       vision: VisionClassification) -> str:
        banned = constraints.banned_keys
        fixed = {k: v for group in sorted(constraints.fixed)
                 for k, v in constraints.fixed_in(group).items()
                 if k not in constraints.banned}
        fixed_text = ",".join(f"{k}={fixed[k]:.3f}" for k in sorted(fixed))
        lines = [
            f"GENDER {constraints.gender.upper()}:",
            f"Banned:{','.join(banned) if banned else 'none'}=0",
            f"Fixed:{fixed_text or 'none'}",
        ]
        if constraints.rules:
            lines.append(self._rules_line(constraints))
        else:
            lines.append(f"{_tag(constraints.gender)}: "
                         f"All keys per K=5.")
        if vision.is_explicitly_muscular and vision.is_obese:
            lines.append(f"SPECIAL {vision.muscularity}+{vision.obesity}: "
                         f"MAX {'+'.join(self.keys.muscularity)}.")
        return "\n".join(lines)

    @staticmethod
    def _rules_line(constraints: GenderConstraints) -> str:
        bans = [r.key for r in constraints.rules if r.kind != CEILING]
        ceilings = [f"{r.key}≤{r.value:g}" for r in constraints.rules
                    if r.kind == CEILING]
        parts = []
        if bans:
            parts.append("/".join(bans) + "=0X")
        parts.extend(ceilings)
        return f"{_tag(constraints.gender)}: " + ". ".join(parts) + "."

    # ── assembly ────────────────────────────────────────────────

    def build(
        self,
        *,
        blend_shape: Mapping[str, float],
        blend_limb: Mapping[str, float],
        k5: BoundSet,
        db: BoundSet,
        constraints: GenderConstraints,
        vision: VisionClassification,
        views: Sequence[str] = (),
        measurements: Optional[UserMeasurements] = None,
    ) -> str:
        """Return the full prompt text."""
        gender = constraints.gender
        sections = [
            "3D morph AI. Refine vector from photos within K=5+DB bounds.",
            self.header(gender, views, vision),
            (f"INPUT Shape:{_compact(blend_shape)}\n"
             f"INPUT Limb:{_compact(blend_limb)}"),
            self.envelope_section(k5),
            self.db_section(gender, db),
            self.gating_section(vision, constraints),
            self.photo_section(measurements),
            self.gender_section(constraints, vision),
            ("RULES: Stay K=5+DB bounds. Photo-realistic refinement. "
             "Finite 3 decimals. No extra keys."),
            f"JSON:{OUTPUT_SCHEMA}",
            "Analyze photos, refine vector.",
        ]
        return "\n\n".join(sections)


def build_refinement_prompt(**kwargs) -> str:
    """Build a prompt with the default :class:`PromptBuilder`."""
    return PromptBuilder().build(**kwargs)
