"""Exception hierarchy for the refinement pipeline.

============================  ===========================================
Exception                     Meaning
============================  ===========================================
RequestShapeError             malformed / incomplete request (HTTP 400)
GatewayError                  model call or response parsing failed;
                              always recovered through the fallback path
BoundsUnavailableError        no physiological bounds for the request;
                              fatal, the key universe is undefined
BoundsContractError           bound data violates its contract (min > max,
                              empty key universe); a collaborator bug
UnknownParameterError         read / write outside a vector's key universe
============================  ===========================================
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

__all__ = [
    "RefinementError",
    "RequestShapeError",
    "ParseErrorKind",
    "GatewayError",
    "BoundsUnavailableError",
    "BoundsContractError",
    "UnknownParameterError",
]


class RefinementError(Exception):
    """Base class for every error raised by :mod:`morph_refine`."""


class RequestShapeError(RefinementError, ValueError):
    """The request is missing a required field or has the wrong shape."""


class ParseErrorKind(str, Enum):
    """Why a model response could not be turned into a candidate."""

    CAPACITY_EXHAUSTED = "capacity_exhausted"
    EMPTY_RESPONSE = "empty_response"
    MARKDOWN_STRIP_FAILURE = "markdown_strip_failure"
    SYNTAX_ERROR = "syntax_error"
    MISSING_FIELD = "missing_field"
    EMPTY_OBJECT = "empty_object"
    NON_FINITE_VALUE = "non_finite_value"
    TRANSPORT = "transport"


class GatewayError(RefinementError):
    """Typed failure from the model gateway.

    Parameters
    ----------
    kind : ParseErrorKind
        Machine-readable failure category.
    message : str
        Human-readable detail.
    field : str, optional
        Offending response field, when there is one.
    """

    def __init__(self, kind: ParseErrorKind, message: str,
                 field: Optional[str] = None):
        super().__init__(f"[{kind.value}] {message}")
        self.kind = kind
        self.message = message
        self.field = field


class BoundsUnavailableError(RefinementError):
    """The bounds provider cannot supply bounds for this request."""


class BoundsContractError(RefinementError, ValueError):
    """Bound data is structurally invalid."""


class UnknownParameterError(RefinementError, KeyError):
    """A key outside the vector's key universe was accessed."""
