"""Tests for PromptBuilder.

Covers:
1. Determinism and section order
2. Envelope / DB sections — narrow, banned and fixed flags
3. Gating, photo and gender sections
"""

import pytest

from morph_refine.bounds import BoundRange, BoundSet, EnvelopeBounds
from morph_refine.classification import VisionClassification
from morph_refine.gender import derive_gender_constraints
from morph_refine.prompts import (OUTPUT_SCHEMA, PromptBuilder,
                                  build_refinement_prompt)
from morph_refine.request import UserMeasurements


def _bounds(shape, limb, **meta):
    return BoundSet(
        shape=EnvelopeBounds({k: BoundRange(*r) for k, r in shape.items()}),
        limb=EnvelopeBounds({k: BoundRange(*r) for k, r in limb.items()}),
        metadata=meta,
    )


@pytest.fixture
def db():
    return _bounds({"pearFigure": (-1, 2), "pregnant": (0, 0),
                    "bodybuilderSize": (-1, 1)},
                   {"gate": (1, 1), "leftArm": (0.7, 1.4)})


@pytest.fixture
def k5():
    return _bounds({"pearFigure": (0.2, 0.4), "bodybuilderSize": (-1, 1)},
                   {"leftArm": (0.9, 1.0)},
                   archetypes_used=["a", "b", "c", "d", "e"])


@pytest.fixture
def builder():
    return PromptBuilder()


def _build(builder, k5, db, gender="masculine", vision=None, **kw):
    return builder.build(
        blend_shape={"pearFigure": 0.3, "bodybuilderSize": 0.1},
        blend_limb={"leftArm": 1.0, "gate": 1.0},
        k5=k5, db=db,
        constraints=derive_gender_constraints(gender, db),
        vision=vision or VisionClassification("Normal", "Normal", "meso", "1"),
        **kw)


# ═══════════════════════════════════════════════════════════════════
# 1. Determinism and layout
# ═══════════════════════════════════════════════════════════════════

class TestLayout:

    def test_deterministic(self, builder, k5, db):
        assert _build(builder, k5, db) == _build(builder, k5, db)

    def test_blend_sorted(self, builder, k5, db):
        text = _build(builder, k5, db)
        assert 'INPUT Shape:{"bodybuilderSize":0.1,"pearFigure":0.3}' in text

    def test_section_order(self, builder, k5, db):
        text = _build(builder, k5, db)
        markers = ["INPUT Shape", "K=5 ENVELOPE", "DB BOUNDS",
                   "MUSCULAR GATING", "PHOTO:", "GENDER MASCULINE", "JSON:"]
        positions = [text.index(m) for m in markers]
        assert positions == sorted(positions)
        assert text.endswith("Analyze photos, refine vector.")
        assert OUTPUT_SCHEMA in text

    def test_header(self, builder, k5, db):
        text = _build(builder, k5, db, views=("front", "side", "profile"))
        assert "masculine|F+P|Normal/Normal/meso" in text

    def test_module_helper(self, builder, k5, db):
        constraints = derive_gender_constraints("masculine", db)
        vision = VisionClassification("Normal", "Normal", "meso", "1")
        kwargs = dict(blend_shape={}, blend_limb={}, k5=k5, db=db,
                      constraints=constraints, vision=vision)
        assert build_refinement_prompt(**kwargs) == builder.build(**kwargs)


# ═══════════════════════════════════════════════════════════════════
# 2. Bounds sections
# ═══════════════════════════════════════════════════════════════════

class TestBoundsSections:

    def test_envelope_flags(self, builder, k5):
        text = builder.envelope_section(k5)
        assert text.startswith("K=5 ENVELOPE (P1 - 5 archetypes):")
        assert "pearFigure:[0.200,0.400]!" in text
        assert "bodybuilderSize:[-1.000,1.000]\n" in text
        assert "leftArm:[0.900,1.000]!" in text

    def test_db_flags(self, builder, db):
        text = builder.db_section("masculine", db)
        assert text.startswith("DB BOUNDS masculine (P2):")
        assert "pregnant:[0.000,0.000]X" in text
        assert "gate:[1.000,1.000]=" in text
        assert "leftArm:[0.700,1.400]\n" in text


# ═══════════════════════════════════════════════════════════════════
# 3. Gating, photo, gender
# ═══════════════════════════════════════════════════════════════════

class TestGating:

    @pytest.mark.parametrize("label,expected", [
        ("Musclé", "HIGH:"), ("Atrophie sévère", "LOW:"), ("Normal", "NORMAL:")])
    def test_levels(self, builder, db, label, expected):
        text = builder.gating_section(
            VisionClassification(muscularity=label),
            derive_gender_constraints("feminine", db))
        assert expected in text

    def test_masculine_rules_line(self, builder, db):
        text = builder.gating_section(
            VisionClassification(muscularity="Normal"),
            derive_gender_constraints("masculine", db))
        assert ("MASC: pregnant/nipples/animeProportion=0X. "
                "breastsSmall≤1. superBreast≤0.") in text

    def test_special_muscular_obese(self, builder, db):
        text = builder.gating_section(
            VisionClassification(obesity="Obèse", muscularity="Musclé"),
            derive_gender_constraints("feminine", db))
        assert "SPECIAL Musclé+Obèse" in text


class TestPhotoSection:

    def test_no_measurements(self, builder):
        assert builder.photo_section(None) == "PHOTO: N/A - visual analysis"
        partial = UserMeasurements(waist_cm=80.0)
        assert builder.photo_section(partial) == "PHOTO: N/A - visual analysis"

    def test_ratios_and_bmi(self, builder):
        m = UserMeasurements(estimated_bmi=31.0, waist_cm=90.0,
                             chest_cm=100.0, hips_cm=110.0)
        text = builder.photo_section(m)
        assert "H/S=1.10 W/H=0.82 C/W=1.11 BMI=31.0(ob)" in text
        assert text.splitlines()[1].startswith("Guide:")

    @pytest.mark.parametrize("bmi,category", [(27.0, "ow"), (22.0, "n")])
    def test_bmi_categories(self, builder, bmi, category):
        m = UserMeasurements(estimated_bmi=bmi, waist_cm=80.0,
                             chest_cm=100.0, hips_cm=100.0)
        assert f"({category})" in builder.photo_section(m)

    def test_bmi_missing(self, builder):
        m = UserMeasurements(waist_cm=80.0, chest_cm=100.0, hips_cm=100.0)
        assert "BMI=N/A" in builder.photo_section(m)


class TestGenderSection:

    def test_masculine(self, builder, db):
        text = builder.gender_section(
            derive_gender_constraints("masculine", db),
            VisionClassification())
        lines = text.splitlines()
        assert lines[0] == "GENDER MASCULINE:"
        assert lines[1] == "Banned:animeProportion,nipples,pregnant=0"
        assert lines[2] == "Fixed:gate=1.000"

    def test_feminine(self, builder, db):
        text = builder.gender_section(
            derive_gender_constraints("feminine", db),
            VisionClassification())
        assert "Banned:pregnant=0" in text
        assert "FEM: All keys per K=5." in text
