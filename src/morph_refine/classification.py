"""Vision classification labels and their canonical categories.

The upstream photo analysis labels every scan with four free-text
categories (obesity, muscularity, morphotype, overall level).  Labels
arrive in French from the production scan pipeline and in English from
newer clients; both are folded onto the canonical categories below.

Adiposity categories
--------------------
==============  ==================================================
Category        Labels
==============  ==================================================
underweight     Maigre, Insuffisance pondérale, underweight, thin
normal          Normal, Poids normal, normal
overweight      Surpoids, overweight
obese           Obèse, Obésité, obese, moderate obesity
morbidly_obese  Obésité morbide, Obésité sévère, morbidly obese,
                severe, severe obesity
==============  ==================================================
"""

from __future__ import annotations

import logging
import unicodedata
from dataclasses import dataclass
from typing import Any, Dict, Mapping

logger = logging.getLogger(__name__)

__all__ = [
    "MASCULINE",
    "FEMININE",
    "VisionClassification",
    "ADIPOSITY_LEVELS",
    "MUSCULARITY_LEVELS",
    "EXPLICITLY_MUSCULAR",
    "normalize_gender",
    "canonical_label",
]

MASCULINE = "masculine"
FEMININE = "feminine"

_GENDER_ALIASES: Dict[str, str] = {
    "masculine": MASCULINE,
    "male": MASCULINE,
    "m": MASCULINE,
    "feminine": FEMININE,
    "female": FEMININE,
    "f": FEMININE,
}


def canonical_label(label: Any) -> str:
    """Lower-case, accent-free, single-spaced form of a label."""
    if not isinstance(label, str):
        return ""
    folded = unicodedata.normalize("NFKD", label)
    folded = "".join(c for c in folded if not unicodedata.combining(c))
    return " ".join(folded.replace("_", " ").lower().split())


def normalize_gender(gender: Any) -> str:
    """Map ``male`` / ``female`` / ``masculine`` / ``feminine`` to the
    stored gender names.

    Raises
    ------
    ValueError
        For any other value.
    """
    resolved = _GENDER_ALIASES.get(canonical_label(gender))
    if resolved is None:
        raise ValueError(
            f"Gender must be 'masculine' or 'feminine', got {gender!r}")
    return resolved


# ── Label tables (keys in canonical_label form) ─────────────────

ADIPOSITY_LEVELS: Dict[str, str] = {
    "maigre": "underweight",
    "insuffisance ponderale": "underweight",
    "underweight": "underweight",
    "thin": "underweight",
    "normal": "normal",
    "poids normal": "normal",
    "surpoids": "overweight",
    "overweight": "overweight",
    "obese": "obese",
    "obesite": "obese",
    "moderate obesity": "obese",
    "obesite morbide": "morbidly_obese",
    "obesite severe": "morbidly_obese",
    "morbidly obese": "morbidly_obese",
    "morbid obesity": "morbidly_obese",
    "severe": "morbidly_obese",
    "severe obesity": "morbidly_obese",
}

MUSCULARITY_LEVELS: Dict[str, float] = {
    "atrophie severe": 0.1,
    "atrophiee severe": 0.1,
    "severely atrophied": 0.1,
    "legerement atrophie": 0.2,
    "moins musclee": 0.2,
    "slightly atrophied": 0.2,
    "normal": 0.4,
    "moyen muscle": 0.6,
    "moyennement musclee": 0.6,
    "moderately muscular": 0.6,
    "muscle": 0.8,
    "musclee": 0.8,
    "muscular": 0.8,
    "normal costaud": 0.9,
    "athletique": 0.9,
    "athletic": 0.9,
}

EXPLICITLY_MUSCULAR = frozenset({
    "muscle", "musclee", "muscular",
    "athletique", "athletic", "normal costaud",
})

_DEFAULT_MUSCULARITY = 0.4


# ═══════════════════════════════════════════════════════════════════
# VisionClassification
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class VisionClassification:
    """Categorical labels describing the subject.  Trusted input."""

    obesity: str = ""
    muscularity: str = ""
    morphotype: str = ""
    level: str = ""

    @property
    def adiposity(self) -> str:
        """Canonical adiposity category; unknown labels map to normal."""
        return ADIPOSITY_LEVELS.get(canonical_label(self.obesity), "normal")

    @property
    def is_obese(self) -> bool:
        """Obese or morbidly obese."""
        return self.adiposity in ("obese", "morbidly_obese")

    @property
    def is_overweight(self) -> bool:
        return self.adiposity == "overweight"

    @property
    def muscularity_level(self) -> float:
        """Muscularity on a 0–1 scale (0.4 when the label is unknown)."""
        return MUSCULARITY_LEVELS.get(
            canonical_label(self.muscularity), _DEFAULT_MUSCULARITY)

    @property
    def is_explicitly_muscular(self) -> bool:
        return canonical_label(self.muscularity) in EXPLICITLY_MUSCULAR

    def to_dict(self) -> Dict[str, str]:
        return {
            "obesity": self.obesity,
            "muscularity": self.muscularity,
            "morphotype": self.morphotype,
            "level": self.level,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "VisionClassification":
        return cls(**{f: str(raw.get(f) or "")
                      for f in ("obesity", "muscularity",
                                "morphotype", "level")})
