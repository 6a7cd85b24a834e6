"""Tests for request-shape validation.

Covers:
1. RefinementRequest.from_dict — a valid payload
2. Every rejection path, with the field it names
3. UserMeasurements
"""

import copy

import pytest

from morph_refine.errors import RequestShapeError
from morph_refine.request import RefinementRequest, UserMeasurements


def _payload():
    return {
        "scan_id": "scan-001",
        "user_id": "user-42",
        "resolvedGender": "male",
        "photos": [
            {"view": "front", "url": "https://cdn.example/front.jpg"},
            {"view": "profile", "url": "https://cdn.example/profile.jpg"},
        ],
        "blend_shape_params": {"pearFigure": 0.3, "bodybuilderSize": 0.1},
        "blend_limb_masses": {"gate": 1.0, "leftArm": 1.05},
        "mapping_version": "v7",
        "k5_envelope": {
            "shape_params_envelope": {
                "pearFigure": {"min": 0.0, "max": 0.6}},
            "limb_masses_envelope": {
                "leftArm": {"min": 0.9, "max": 1.2}},
            "envelope_metadata": {"archetypes_used": ["a1", "a2"]},
        },
        "vision_classification": {
            "muscularity": "Normal", "obesity": "Surpoids",
            "morphotype": "endomorph", "level": "2",
        },
        "user_measurements": {
            "height_cm": 180, "weight_kg": 85, "estimated_bmi": 26.2,
            "raw_measurements": {"waist_cm": 92, "chest_cm": 104,
                                 "hips_cm": 100},
        },
    }


@pytest.fixture
def payload():
    return _payload()


def _reject(payload, match):
    with pytest.raises(RequestShapeError, match=match):
        RefinementRequest.from_dict(payload)


# ═══════════════════════════════════════════════════════════════════
# 1. Valid payload
# ═══════════════════════════════════════════════════════════════════

class TestValidRequest:

    def test_parsed(self, payload):
        req = RefinementRequest.from_dict(payload)
        assert req.scan_id == "scan-001"
        assert req.gender == "masculine"
        assert req.views == ("front", "profile")
        assert req.photo_urls[0].endswith("front.jpg")
        assert req.blend_limb == {"gate": 1.0, "leftArm": 1.05}
        assert req.k5.archetypes_used == ("a1", "a2")
        assert req.k5.shape["pearFigure"].max == 0.6
        assert req.vision.is_overweight
        assert req.measurements.waist_cm == 92.0
        assert req.measurements.estimated_bmi == 26.2

    def test_measurements_optional(self, payload):
        del payload["user_measurements"]
        assert RefinementRequest.from_dict(payload).measurements is None

    def test_payload_not_mutated(self, payload):
        original = copy.deepcopy(payload)
        RefinementRequest.from_dict(payload)
        assert payload == original


# ═══════════════════════════════════════════════════════════════════
# 2. Rejections
# ═══════════════════════════════════════════════════════════════════

class TestRejections:

    def test_not_an_object(self):
        _reject(None, "Request body is required")
        _reject([1, 2], "Request body is required")

    def test_scan_id(self, payload):
        payload["scan_id"] = "  "
        _reject(payload, "Scan ID is required")

    def test_user_id(self, payload):
        del payload["user_id"]
        _reject(payload, "User ID is required")

    def test_gender(self, payload):
        payload["resolvedGender"] = "unknown"
        _reject(payload, 'Gender must be "masculine" or "feminine"')

    def test_envelope_missing_group(self, payload):
        del payload["k5_envelope"]["shape_params_envelope"]
        _reject(payload, "K5 envelope must contain shape_params_envelope")

    def test_envelope_metadata(self, payload):
        payload["k5_envelope"]["envelope_metadata"] = {"archetypes_used": "a1"}
        _reject(payload, "archetypes_used array is required")

    def test_envelope_inverted_range(self, payload):
        payload["k5_envelope"]["shape_params_envelope"]["pearFigure"] = {
            "min": 1.0, "max": 0.0}
        _reject(payload, "K5 envelope: Inverted")

    def test_vision_field(self, payload):
        payload["vision_classification"]["level"] = ""
        _reject(payload, r"Vision classification\.level is required")

    @pytest.mark.parametrize("photos", [[], None, [{"view": "front",
                                                    "url": "u"}] * 5])
    def test_photo_count(self, payload, photos):
        payload["photos"] = photos
        _reject(payload, "between 1 and 4 photos")

    def test_photo_view(self, payload):
        payload["photos"][1]["view"] = "top"
        _reject(payload, "Photo 2: View must be one of front, profile, "
                         "side, back")

    def test_photo_url(self, payload):
        payload["photos"][0]["url"] = ""
        _reject(payload, "Photo 1: URL is required")

    def test_blend_key(self, payload):
        payload["blend_shape_params"]["bad key!"] = 0.1
        _reject(payload, "Blend shape params: invalid key")

    def test_blend_value(self, payload):
        payload["blend_limb_masses"]["leftArm"] = "heavy"
        _reject(payload, "Blend limb masses: value for 'leftArm'")

    def test_mapping_version(self, payload):
        payload["mapping_version"] = 7
        _reject(payload, "Mapping version is required")


# ═══════════════════════════════════════════════════════════════════
# 3. UserMeasurements
# ═══════════════════════════════════════════════════════════════════

class TestUserMeasurements:

    def test_raw_range(self, payload):
        payload["user_measurements"]["raw_measurements"]["waist_cm"] = 10
        _reject(payload, "Raw measurement waist_cm must be between 30 and "
                         "300 cm")

    def test_scalar_type(self, payload):
        payload["user_measurements"]["height_cm"] = "tall"
        _reject(payload, "height_cm must be a number")

    def test_ratios(self):
        m = UserMeasurements(waist_cm=80.0, chest_cm=100.0, hips_cm=100.0)
        assert m.has_raw
        assert m.hip_shoulder_ratio == pytest.approx(1.0)
        assert m.waist_hip_ratio == pytest.approx(0.8)
        assert m.chest_waist_ratio == pytest.approx(1.25)

    def test_partial_raw(self):
        m = UserMeasurements.from_dict(
            {"raw_measurements": {"waist_cm": 80}})
        assert not m.has_raw
        assert m.waist_hip_ratio is None
