"""Tests for ViolationRecord and AuditTrail.

Covers:
1. ViolationRecord — delta, serialisation
2. AuditTrail — derived key lists and counts
3. clamping_metadata / to_dict / explain
"""

import pytest

from morph_refine.audit import (
    COHERENCE, DB, ENVELOPE, GENDER, SOURCE_PRIORITY, AuditTrail,
    ViolationRecord,
)


def _rec(key, source, original=1.0, corrected=0.5, group="shape", **kw):
    return ViolationRecord(
        key=key, group=group, original_value=original,
        corrected_value=corrected, source=source, reason=f"{source} fix",
        priority=SOURCE_PRIORITY[source], **kw)


@pytest.fixture
def trail():
    return AuditTrail(
        records=(
            _rec("pearFigure", ENVELOPE, bound=(0.0, 0.5)),
            _rec("leftArm", DB, 2.0, 1.4, group="limb", bound=(0.7, 1.4)),
            _rec("pregnant", GENDER, 0.4, 0.0, rule="masculine_pregnant_ban"),
            _rec("pearFigure", COHERENCE, 0.5, 0.2),
        ),
        missing_keys_added=("emaciated",),
        extra_keys_removed=("tail",),
        missing_defaults={"emaciated": 0.0},
    )


# ═══════════════════════════════════════════════════════════════════
# 1. ViolationRecord
# ═══════════════════════════════════════════════════════════════════

class TestViolationRecord:

    def test_delta(self):
        assert _rec("k", DB, 2.0, 1.5).delta == pytest.approx(-0.5)

    def test_to_dict_shape(self):
        d = _rec("k", ENVELOPE, bound=(0.0, 0.5)).to_dict()
        assert d["type"] == "shape_param"
        assert d["range"] == {"min": 0.0, "max": 0.5}
        assert d["priority"] == 1
        assert "rule" not in d

    def test_to_dict_limb_with_rule(self):
        d = _rec("gate", COHERENCE, 0.7, 1.0, group="limb",
                 rule="fixed_gate").to_dict()
        assert d["type"] == "limb_mass"
        assert d["rule"] == "fixed_gate"
        assert "range" not in d


# ═══════════════════════════════════════════════════════════════════
# 2. Derived views
# ═══════════════════════════════════════════════════════════════════

class TestAuditTrailViews:

    def test_source_lists(self, trail):
        assert trail.envelope_violations == ["pearFigure"]
        assert trail.db_violations == ["leftArm"]
        assert trail.gender_violations == ["pregnant"]
        assert trail.coherence_corrections == ["pearFigure"]

    def test_clamped_keys_deduplicated(self, trail):
        assert trail.clamped_keys == ["pearFigure", "leftArm", "pregnant"]

    def test_counts(self, trail):
        assert trail.out_of_range_count == 4
        assert trail.total_transformations == 6
        assert not trail.is_clean

    def test_empty_trail(self):
        t = AuditTrail()
        assert t.is_clean
        assert t.clamped_keys == []
        assert t.clamping_metadata()["validation_status"] == "no_transformations"

    def test_by_source(self, trail):
        assert [r.key for r in trail.by_source(DB)] == ["leftArm"]


# ═══════════════════════════════════════════════════════════════════
# 3. Serialisation
# ═══════════════════════════════════════════════════════════════════

class TestAuditTrailSerialisation:

    def test_clamping_metadata(self, trail):
        meta = trail.clamping_metadata()
        assert [r["key"] for r in meta["envelope_violations"]] == ["pearFigure"]
        assert [r["key"] for r in meta["semantic_corrections"]] == ["pearFigure"]
        assert meta["missing_keys"] == [{
            "key": "emaciated", "default_value": 0.0,
            "reason": "missing_from_ai_response"}]
        assert meta["removed_keys"] == ["tail"]
        assert meta["total_transformations"] == 6
        assert meta["validation_status"] == "transformations_applied"

    def test_coherence_only_is_no_transformations(self):
        t = AuditTrail(records=(_rec("gate", COHERENCE, 0.7, 1.0),))
        assert t.clamping_metadata()["validation_status"] == "no_transformations"

    def test_to_dict_fields(self, trail):
        d = trail.to_dict()
        assert set(d) == {
            "clamped_keys", "envelope_violations", "db_violations",
            "gender_violations", "missing_keys_added", "extra_keys_removed",
            "out_of_range_count", "clamping_metadata"}
        assert d["out_of_range_count"] == 4
        assert d["missing_keys_added"] == ["emaciated"]

    def test_summary_and_explain(self, trail):
        summary = trail.summary()
        assert "corrections=4" in summary
        assert "envelope=1" in summary
        text = trail.explain()
        assert "Removed keys: tail" in text
        assert "Completed keys:" in text
        assert "P3 gender" in text
        assert text.index("P1 envelope") < text.index("P4 coherence")
