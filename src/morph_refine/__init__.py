"""morph-refine: constraint reconciliation for body-shape parameter vectors.

Takes a model-refined estimate of a body-shape vector (named shape
parameters plus per-limb mass multipliers) and reconciles it with the
archetype envelope, the physiological bounds, per-gender rules and
cross-parameter coherence rules.  The result carries a complete audit
trail of every correction.

The **ConstraintValidator** is the core; the gateway, prompt builder and
service wrap the model call around it.
"""
from .errors import (
    RefinementError, RequestShapeError, ParseErrorKind, GatewayError,
    BoundsUnavailableError, BoundsContractError, UnknownParameterError,
)
from .thresholds import ThresholdRegistry, DEFAULT_THRESHOLDS
from .bounds import (
    SHAPE, LIMB, BoundRange, EnvelopeBounds, BoundSet,
    BoundsProvider, StaticBoundsProvider,
)
from .vector import ParameterVector
from .classification import VisionClassification, normalize_gender

# Constraint tables
from .gender import GenderRule, GENDER_RULES, GenderConstraints, derive_gender_constraints
from .rules import (
    CoherenceKeys, CoherenceRule, COHERENCE_RULES,
    build_coherence_rules, apply_coherence_rules,
    coherence_target, replace_rules,
)

# Validation core
from .audit import ViolationRecord, AuditTrail
from .stages import (
    StageContext, Stage, EnvelopeClampStage, DbClampStage,
    GenderStage, CoherenceStage, ValidationPipeline, build_default_pipeline,
)
from .validator import ConstraintValidator, RefinementResult
from .deltas import RefinementDeltas, compute_refinement_deltas, count_active_keys

# Model call and orchestration
from .prompts import PromptBuilder, build_refinement_prompt
from .gateway import (
    GatewayConfig, ModelResponse, Transport, OpenAIChatTransport,
    Candidate, parse_refinement_response, AIGateway,
)
from .request import PhotoRef, UserMeasurements, RefinementRequest
from .service import RefinementService

__version__ = "0.3.0"

__all__ = [
    # Errors
    "RefinementError", "RequestShapeError", "ParseErrorKind", "GatewayError",
    "BoundsUnavailableError", "BoundsContractError", "UnknownParameterError",
    # Data model
    "ThresholdRegistry", "DEFAULT_THRESHOLDS",
    "SHAPE", "LIMB", "BoundRange", "EnvelopeBounds", "BoundSet",
    "BoundsProvider", "StaticBoundsProvider",
    "ParameterVector",
    "VisionClassification", "normalize_gender",
    # Constraint tables
    "GenderRule", "GENDER_RULES", "GenderConstraints", "derive_gender_constraints",
    "CoherenceKeys", "CoherenceRule", "COHERENCE_RULES",
    "build_coherence_rules", "apply_coherence_rules",
    "coherence_target", "replace_rules",
    # Validation core
    "ViolationRecord", "AuditTrail",
    "StageContext", "Stage", "EnvelopeClampStage", "DbClampStage",
    "GenderStage", "CoherenceStage", "ValidationPipeline", "build_default_pipeline",
    "ConstraintValidator", "RefinementResult",
    "RefinementDeltas", "compute_refinement_deltas", "count_active_keys",
    # Model call and orchestration
    "PromptBuilder", "build_refinement_prompt",
    "GatewayConfig", "ModelResponse", "Transport", "OpenAIChatTransport",
    "Candidate", "parse_refinement_response", "AIGateway",
    "PhotoRef", "UserMeasurements", "RefinementRequest",
    "RefinementService",
]
