"""Refinement request model and request-shape validation.

:meth:`RefinementRequest.from_dict` turns a decoded JSON payload into
typed objects or raises :class:`~morph_refine.errors.RequestShapeError`
with a message naming the offending field.  Nothing downstream
re-checks the shape of the request.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .bounds import BoundSet
from .classification import VisionClassification, normalize_gender
from .errors import BoundsContractError, RequestShapeError
from .vector import is_finite_number

__all__ = [
    "PHOTO_VIEWS",
    "PhotoRef",
    "UserMeasurements",
    "RefinementRequest",
]

PHOTO_VIEWS: Tuple[str, ...] = ("front", "profile", "side", "back")
MAX_PHOTOS = 4
RAW_MEASUREMENT_RANGE_CM: Tuple[float, float] = (30.0, 300.0)
VISION_FIELDS: Tuple[str, ...] = ("muscularity", "obesity", "morphotype",
                                  "level")

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_-]+$")


def _require_str(raw: Mapping, name: str, label: str) -> str:
    value = raw.get(name)
    if not isinstance(value, str) or not value.strip():
        raise RequestShapeError(f"{label} is required")
    return value


def _require_object(value: Any, label: str) -> Mapping:
    if not isinstance(value, Mapping):
        raise RequestShapeError(f"{label} must be an object")
    return value


def _parameter_map(value: Any, label: str) -> Dict[str, float]:
    obj = _require_object(value, label)
    out: Dict[str, float] = {}
    for k, v in obj.items():
        if not isinstance(k, str) or not _SAFE_KEY.match(k):
            raise RequestShapeError(f"{label}: invalid key {k!r}")
        if not is_finite_number(v):
            raise RequestShapeError(
                f"{label}: value for {k!r} must be a finite number")
        out[k] = float(v)
    return out


# ═══════════════════════════════════════════════════════════════════
# PhotoRef / UserMeasurements
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PhotoRef:
    view: str
    url: str

    def to_dict(self) -> Dict[str, str]:
        return {"view": self.view, "url": self.url}


@dataclass(frozen=True)
class UserMeasurements:
    """Optional body measurements derived from the photos."""

    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    estimated_bmi: Optional[float] = None
    waist_cm: Optional[float] = None
    chest_cm: Optional[float] = None
    hips_cm: Optional[float] = None

    @property
    def has_raw(self) -> bool:
        """Waist, chest and hips are all known."""
        return None not in (self.waist_cm, self.chest_cm, self.hips_cm)

    @property
    def hip_shoulder_ratio(self) -> Optional[float]:
        return self.hips_cm / self.chest_cm if self.has_raw else None

    @property
    def waist_hip_ratio(self) -> Optional[float]:
        return self.waist_cm / self.hips_cm if self.has_raw else None

    @property
    def chest_waist_ratio(self) -> Optional[float]:
        return self.chest_cm / self.waist_cm if self.has_raw else None

    @classmethod
    def from_dict(cls, raw: Any) -> "UserMeasurements":
        obj = _require_object(raw, "User measurements")
        scalars: Dict[str, Optional[float]] = {}
        for name in ("height_cm", "weight_kg", "estimated_bmi"):
            value = obj.get(name)
            if value is None:
                scalars[name] = None
            elif is_finite_number(value):
                scalars[name] = float(value)
            else:
                raise RequestShapeError(
                    f"User measurements {name} must be a number")

        raw_m = obj.get("raw_measurements")
        lo, hi = RAW_MEASUREMENT_RANGE_CM
        if raw_m is not None:
            raw_m = _require_object(raw_m, "Raw measurements")
            for name in ("waist_cm", "chest_cm", "hips_cm"):
                value = raw_m.get(name)
                if value is None:
                    scalars[name] = None
                    continue
                if not is_finite_number(value) or not lo <= value <= hi:
                    raise RequestShapeError(
                        f"Raw measurement {name} must be between "
                        f"{lo:g} and {hi:g} cm")
                scalars[name] = float(value)
        return cls(**scalars)


# ═══════════════════════════════════════════════════════════════════
# RefinementRequest
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RefinementRequest:
    """A validated refinement request."""

    scan_id: str
    user_id: str
    gender: str
    photos: Tuple[PhotoRef, ...]
    blend_shape: Dict[str, float]
    blend_limb: Dict[str, float]
    mapping_version: str
    k5: BoundSet
    vision: VisionClassification
    measurements: Optional[UserMeasurements] = None

    @property
    def views(self) -> Tuple[str, ...]:
        return tuple(p.view for p in self.photos)

    @property
    def photo_urls(self) -> Tuple[str, ...]:
        return tuple(p.url for p in self.photos)

    @classmethod
    def from_dict(cls, raw: Any) -> "RefinementRequest":
        """Validate and convert a decoded request payload.

        Raises
        ------
        RequestShapeError
            On the first field that violates the request contract.
        """
        if not isinstance(raw, Mapping):
            raise RequestShapeError("Request body is required")

        scan_id = _require_str(raw, "scan_id", "Scan ID")
        user_id = _require_str(raw, "user_id", "User ID")
        try:
            gender = normalize_gender(raw.get("resolvedGender"))
        except ValueError:
            raise RequestShapeError(
                'Gender must be "masculine" or "feminine"') from None

        k5 = cls._parse_envelope(raw.get("k5_envelope"))
        vision = cls._parse_vision(raw.get("vision_classification"))
        photos = cls._parse_photos(raw.get("photos"))
        blend_shape = _parameter_map(raw.get("blend_shape_params"),
                                     "Blend shape params")
        blend_limb = _parameter_map(raw.get("blend_limb_masses"),
                                    "Blend limb masses")
        mapping_version = _require_str(raw, "mapping_version",
                                       "Mapping version")

        measurements = None
        if raw.get("user_measurements") is not None:
            measurements = UserMeasurements.from_dict(
                raw["user_measurements"])

        return cls(
            scan_id=scan_id,
            user_id=user_id,
            gender=gender,
            photos=photos,
            blend_shape=blend_shape,
            blend_limb=blend_limb,
            mapping_version=mapping_version,
            k5=k5,
            vision=vision,
            measurements=measurements,
        )

    # ── field parsers ───────────────────────────────────────────

    @staticmethod
    def _parse_envelope(raw: Any) -> BoundSet:
        env = _require_object(raw, "K5 envelope")
        for name in ("shape_params_envelope", "limb_masses_envelope"):
            if not isinstance(env.get(name), Mapping):
                raise RequestShapeError(f"K5 envelope must contain {name}")
        meta = env.get("envelope_metadata")
        if (not isinstance(meta, Mapping)
                or not isinstance(meta.get("archetypes_used"), list)):
            raise RequestShapeError(
                "K5 envelope metadata with archetypes_used array "
                "is required")
        try:
            return BoundSet.from_dict(env)
        except BoundsContractError as e:
            raise RequestShapeError(f"K5 envelope: {e}") from e

    @staticmethod
    def _parse_vision(raw: Any) -> VisionClassification:
        obj = _require_object(raw, "Vision classification")
        for name in VISION_FIELDS:
            value = obj.get(name)
            if not isinstance(value, str) or not value:
                raise RequestShapeError(
                    f"Vision classification.{name} is required")
        return VisionClassification.from_dict(obj)

    @staticmethod
    def _parse_photos(raw: Any) -> Tuple[PhotoRef, ...]:
        if not isinstance(raw, list) or not 1 <= len(raw) <= MAX_PHOTOS:
            raise RequestShapeError(
                f"Photos: between 1 and {MAX_PHOTOS} photos are required")
        photos = []
        for i, p in enumerate(raw, start=1):
            if not isinstance(p, Mapping) or p.get("view") not in PHOTO_VIEWS:
                raise RequestShapeError(
                    f"Photo {i}: View must be one of {', '.join(PHOTO_VIEWS)}")
            url = p.get("url")
            if not isinstance(url, str) or not url:
                raise RequestShapeError(f"Photo {i}: URL is required")
            photos.append(PhotoRef(p["view"], url))
        return tuple(photos)
