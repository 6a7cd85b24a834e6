"""RefinementService — the end-to-end refinement flow.

::

    payload ──► RefinementRequest.from_dict          (400 on RequestShapeError)
                    │
    BoundsProvider.get_bounds(gender) ──► db         (503 on BoundsUnavailableError)
                    │
    derive_gender_constraints ──► PromptBuilder.build
                    │
    AIGateway.refine   (worker thread, wall-clock timeout)
        │ GatewayError / timeout ──► fallback payload (blend unchanged)
        ▼
    ConstraintValidator.validate ──► compute_refinement_deltas ──► response

The model call is the only step that may block; it runs on a worker
thread and is abandoned when the timeout expires.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, Optional, Sequence, Tuple

from .bounds import BoundsProvider
from .deltas import RefinementDeltas, compute_refinement_deltas
from .errors import (BoundsUnavailableError, GatewayError, ParseErrorKind,
                     RequestShapeError)
from .gateway import AIGateway, Candidate
from .gender import GenderRule, derive_gender_constraints
from .prompts import PromptBuilder
from .request import RefinementRequest
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry
from .validator import ConstraintValidator

logger = logging.getLogger(__name__)

__all__ = [
    "RefinementService",
]


class RefinementService:
    """Orchestrates one refinement request.

    Parameters
    ----------
    bounds_provider : BoundsProvider
        Supplies the physiological (db) bounds per gender.
    gateway : AIGateway
    validator : ConstraintValidator, optional
    prompt_builder : PromptBuilder, optional
    thresholds : ThresholdRegistry, optional
        Uses ``gateway.fallback_confidence`` and the ``deltas.*`` section.
    timeout_s : float
        Wall-clock limit for the model call.
    gender_rules : sequence of GenderRule, optional
        Replaces the default gender rule table.
    """

    def __init__(
        self,
        bounds_provider: BoundsProvider,
        gateway: AIGateway,
        validator: Optional[ConstraintValidator] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        thresholds: Optional[ThresholdRegistry] = None,
        timeout_s: float = 90.0,
        gender_rules: Optional[Sequence[GenderRule]] = None,
    ):
        self.bounds_provider = bounds_provider
        self.gateway = gateway
        self.thresholds = thresholds or DEFAULT_THRESHOLDS
        self.validator = validator or ConstraintValidator(self.thresholds)
        self.prompt_builder = prompt_builder or PromptBuilder(self.thresholds)
        self.timeout_s = timeout_s
        self.gender_rules = gender_rules
        self._executor = ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="morph-refine-gateway")

    def __repr__(self) -> str:
        return (f"RefinementService(timeout_s={self.timeout_s}, "
                f"{self.validator!r})")

    def close(self) -> None:
        """Release the worker threads without waiting for them."""
        self._executor.shutdown(wait=False)

    def __enter__(self) -> "RefinementService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ── model call ──────────────────────────────────────────────

    def _call_gateway(self, prompt: str,
                      photo_urls: Sequence[str]) -> Candidate:
        future = self._executor.submit(self.gateway.refine, prompt,
                                       photo_urls)
        try:
            return future.result(timeout=self.timeout_s)
        except FutureTimeout:
            future.cancel()
            raise GatewayError(
                ParseErrorKind.TRANSPORT,
                f"Model call exceeded {self.timeout_s:g}s") from None
        except GatewayError:
            raise
        except Exception as e:
            logger.exception("Unexpected error in the model call")
            raise GatewayError(
                ParseErrorKind.TRANSPORT,
                f"Unexpected {type(e).__name__}: {e}") from e

    # ── flow ────────────────────────────────────────────────────

    def refine(self, request: RefinementRequest) -> Dict[str, Any]:
        """Run the full flow for a validated request.

        Raises
        ------
        BoundsUnavailableError
            If the provider has no bounds for the request's gender.
        """
        start = time.perf_counter()
        _, db = self.bounds_provider.get_bounds(request.gender)
        k5 = request.k5
        constraints = derive_gender_constraints(
            request.gender, db, self.gender_rules)

        prompt = self.prompt_builder.build(
            blend_shape=request.blend_shape,
            blend_limb=request.blend_limb,
            k5=k5,
            db=db,
            constraints=constraints,
            vision=request.vision,
            views=request.views,
            measurements=request.measurements,
        )
        logger.info(f"[{request.scan_id}] prompt built "
                    f"({len(prompt)} chars, {len(request.photos)} photos)")

        try:
            candidate = self._call_gateway(prompt, request.photo_urls)
        except GatewayError as e:
            logger.warning(f"[{request.scan_id}] model refinement failed, "
                           f"returning blend: {e}")
            return self.fallback(request, str(e), start)

        result = self.validator.validate(
            candidate.shape, candidate.limb, k5, db, constraints,
            request.vision, confidence=candidate.confidence)
        deltas = compute_refinement_deltas(
            request.blend_shape, request.blend_limb,
            result.final_shape, result.final_limb,
            thresholds=self.thresholds)

        body = result.to_dict()
        body.update({
            "ai_refine": True,
            "mapping_version": request.mapping_version,
            "refinement_deltas": deltas.to_dict(),
            "refinement_notes": list(candidate.refinement_notes),
            "processing_time_ms": _elapsed_ms(start),
        })
        logger.info(f"[{request.scan_id}] refined: "
                    f"{result.audit.summary()}, "
                    f"active={result.active_key_count}")
        return body

    def fallback(self, request: RefinementRequest, message: str,
                 start: Optional[float] = None) -> Dict[str, Any]:
        """The response returned when the model call fails."""
        return {
            "final_shape_params": dict(request.blend_shape),
            "final_limb_masses": dict(request.blend_limb),
            "ai_refine": False,
            "mapping_version": request.mapping_version,
            "clamped_keys": [],
            "envelope_violations": [],
            "db_violations": [],
            "gender_violations": [],
            "missing_keys_added": [],
            "extra_keys_removed": [],
            "out_of_range_count": 0,
            "active_keys_count": 0,
            "refinement_deltas": RefinementDeltas().to_dict(),
            "refinement_notes": [],
            "ai_confidence": self.thresholds["gateway.fallback_confidence"],
            "processing_time_ms": _elapsed_ms(start),
            "error_occurred": True,
            "error_message": message,
        }

    def handle(self, payload: Any) -> Tuple[int, Dict[str, Any]]:
        """Validate *payload*, refine, and map errors to a status code."""
        try:
            request = RefinementRequest.from_dict(payload)
        except RequestShapeError as e:
            logger.warning(f"Rejected request: {e}")
            return 400, {"error": str(e)}
        try:
            return 200, self.refine(request)
        except BoundsUnavailableError as e:
            logger.error(f"[{request.scan_id}] bounds unavailable: {e}")
            return 503, {"error": str(e)}


def _elapsed_ms(start: Optional[float]) -> float:
    if start is None:
        return 0.0
    return round((time.perf_counter() - start) * 1000, 2)
