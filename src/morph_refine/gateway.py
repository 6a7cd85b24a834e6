"""AIGateway — call the refinement model and parse its answer strictly.

Two layers:

* **Transport** — :class:`OpenAIChatTransport` posts the prompt and the
  photo URLs to a chat-completions endpoint with :mod:`requests`, bounded
  by a timeout and retried with exponential backoff on 429 / 5xx.  Any
  :class:`Transport` returning a :class:`ModelResponse` can replace it
  (tests use a mock).
* **Parsing** — :func:`parse_refinement_response` turns the raw text into
  a :class:`Candidate` or raises a typed
  :class:`~morph_refine.errors.GatewayError`.

Every failure surfaces as ``GatewayError``; callers recover through the
fallback path.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import (Any, Callable, Dict, List, Mapping, Optional, Protocol,
                    Sequence, Tuple, runtime_checkable)

import requests
from dotenv import load_dotenv

from .errors import GatewayError, ParseErrorKind
from .thresholds import DEFAULT_THRESHOLDS, ThresholdRegistry
from .vector import is_finite_number

logger = logging.getLogger(__name__)

__all__ = [
    "GatewayConfig",
    "ModelResponse",
    "Transport",
    "OpenAIChatTransport",
    "Candidate",
    "parse_refinement_response",
    "AIGateway",
]

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_ENDPOINT = "https://api.openai.com/v1/chat/completions"

DIAGNOSTIC_FIELDS: Tuple[str, ...] = (
    "clamped_keys",
    "envelope_violations",
    "db_violations",
    "gender_violations",
    "missing_keys_added",
    "extra_keys_removed",
)

_RETRY_STATUS = frozenset({429, 500, 502, 503, 504})


# ═══════════════════════════════════════════════════════════════════
# GatewayConfig
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GatewayConfig:
    """Connection settings for the refinement model."""

    api_key: str = ""
    model: str = DEFAULT_MODEL
    endpoint: str = DEFAULT_ENDPOINT
    timeout_s: float = 60.0
    max_completion_tokens: int = 10000
    max_retries: int = 3
    backoff_s: float = 2.0

    def __repr__(self) -> str:
        key = "set" if self.api_key else "missing"
        return (f"GatewayConfig(model={self.model!r}, "
                f"endpoint={self.endpoint!r}, api_key={key})")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None,
    ) -> "GatewayConfig":
        """Read settings from the environment (and a ``.env`` file).

        When *environ* is given it is used as-is and no ``.env`` file is
        loaded.
        """
        if environ is None:
            load_dotenv(dotenv_path=dotenv_path)
            environ = os.environ
        env = environ

        api_key = env.get("OPENAI_API_KEY", "")
        if not api_key:
            logger.warning("OPENAI_API_KEY is not set")
        return cls(
            api_key=api_key,
            model=env.get("MORPH_REFINE_MODEL", DEFAULT_MODEL),
            endpoint=env.get("MORPH_REFINE_ENDPOINT", DEFAULT_ENDPOINT),
            timeout_s=float(env.get("MORPH_REFINE_TIMEOUT_S", 60.0)),
            max_completion_tokens=int(
                env.get("MORPH_REFINE_MAX_COMPLETION_TOKENS", 10000)),
            max_retries=int(env.get("MORPH_REFINE_MAX_RETRIES", 3)),
            backoff_s=float(env.get("MORPH_REFINE_BACKOFF_S", 2.0)),
        )


# ═══════════════════════════════════════════════════════════════════
# Transport
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ModelResponse:
    """What the transport got back: text, stop reason, token usage."""

    content: Optional[str]
    finish_reason: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)

    def _usage(self, name: str, within: Optional[str] = None) -> int:
        usage = self.usage if isinstance(self.usage, dict) else {}
        if within is not None:
            usage = usage.get(within)
            if not isinstance(usage, dict):
                return 0
        value = usage.get(name)
        return int(value) if is_finite_number(value) else 0

    @property
    def completion_tokens(self) -> int:
        return self._usage("completion_tokens")

    @property
    def reasoning_tokens(self) -> int:
        return self._usage("reasoning_tokens", "completion_tokens_details")

    @property
    def reasoning_ratio(self) -> float:
        """Share of completion tokens spent on reasoning (0 if unknown)."""
        if self.completion_tokens <= 0:
            return 0.0
        return self.reasoning_tokens / self.completion_tokens


@runtime_checkable
class Transport(Protocol):
    """Sends one prompt (plus photo URLs) to the model."""

    def complete(self, prompt: str,
                 photo_urls: Sequence[str]) -> ModelResponse:
        ...


class OpenAIChatTransport:
    """Chat-completions transport over :mod:`requests`.

    Parameters
    ----------
    config : GatewayConfig
    session : requests.Session, optional
        Reused across calls; a new one is created by default.
    sleep : callable, optional
        Backoff sleep function (``time.sleep``).
    """

    def __init__(
        self,
        config: GatewayConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.session = session or requests.Session()
        self._sleep = sleep

    def __repr__(self) -> str:
        return f"OpenAIChatTransport({self.config!r})"

    def build_body(self, prompt: str,
                   photo_urls: Sequence[str]) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        content += [{"type": "image_url", "image_url": {"url": url}}
                    for url in photo_urls if url]
        return {
            "model": self.config.model,
            "messages": [{"role": "user", "content": content}],
            "max_completion_tokens": self.config.max_completion_tokens,
        }

    def complete(self, prompt: str,
                 photo_urls: Sequence[str]) -> ModelResponse:
        """POST the request; retry 429 / 5xx with exponential backoff.

        Raises
        ------
        GatewayError
            ``TRANSPORT`` on connection errors, timeouts, non-retryable
            HTTP errors, exhausted retries or an undecodable body.
        """
        cfg = self.config
        headers = {
            "Authorization": f"Bearer {cfg.api_key}",
            "Content-Type": "application/json",
        }
        body = self.build_body(prompt, photo_urls)
        attempts = max(1, cfg.max_retries)
        delay = cfg.backoff_s

        for attempt in range(attempts):
            try:
                resp = self.session.post(cfg.endpoint, headers=headers,
                                         json=body, timeout=cfg.timeout_s)
            except requests.RequestException as e:
                raise GatewayError(ParseErrorKind.TRANSPORT,
                                   f"{type(e).__name__}: {e}") from e
            if resp.status_code in _RETRY_STATUS:
                logger.warning(
                    f"Model endpoint returned {resp.status_code} "
                    f"(attempt {attempt + 1}/{attempts})")
                if attempt < attempts - 1:
                    self._sleep(delay)
                    delay *= 2
                continue
            if not resp.ok:
                raise GatewayError(
                    ParseErrorKind.TRANSPORT,
                    f"HTTP {resp.status_code}: {resp.text[:500]}")
            break
        else:
            raise GatewayError(
                ParseErrorKind.TRANSPORT,
                f"Model endpoint unavailable after {attempts} attempts "
                f"(last status {resp.status_code})")

        try:
            payload = resp.json()
            choice = payload["choices"][0]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise GatewayError(ParseErrorKind.TRANSPORT,
                               f"Unexpected response body: {e}") from e
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise GatewayError(ParseErrorKind.TRANSPORT,
                               "Unexpected response body: choices[0] has "
                               "no message object")
        usage = payload.get("usage")
        return ModelResponse(
            content=message.get("content"),
            finish_reason=choice.get("finish_reason"),
            usage=usage if isinstance(usage, dict) else {},
        )


# ═══════════════════════════════════════════════════════════════════
# Candidate + parsing
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Candidate:
    """A parsed model answer, not yet validated against bounds.

    ``diagnostics`` holds the model's self-reported audit arrays and
    ``out_of_range_count``; they are informational only.
    """

    shape: Dict[str, float]
    limb: Dict[str, float]
    confidence: float
    refinement_notes: Tuple[str, ...] = ()
    diagnostics: Dict[str, Any] = field(default_factory=dict)


_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def _strip_fences(text: str) -> str:
    text = text.strip()
    if not text.startswith("```"):
        return text
    inner = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text, count=1))
    if not inner.strip():
        raise GatewayError(ParseErrorKind.MARKDOWN_STRIP_FAILURE,
                           "Code fence contains no content")
    return inner


def _vector_field(parsed: Mapping[str, Any], name: str) -> Dict[str, float]:
    value = parsed.get(name)
    if not isinstance(value, dict):
        raise GatewayError(ParseErrorKind.MISSING_FIELD,
                           f"Missing or invalid {name}", field=name)
    if not value:
        raise GatewayError(ParseErrorKind.EMPTY_OBJECT,
                           f"{name} is empty", field=name)
    out: Dict[str, float] = {}
    for key, v in value.items():
        if not is_finite_number(v):
            raise GatewayError(
                ParseErrorKind.NON_FINITE_VALUE,
                f"{name}.{key} is not a finite number: {v!r}",
                field=f"{name}.{key}")
        out[key] = float(v)
    return out


def _string_list(value: Any) -> List[str]:
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    return []


def parse_refinement_response(
    content: Optional[str],
    finish_reason: Optional[str] = None,
    thresholds: Optional[ThresholdRegistry] = None,
) -> Candidate:
    """Parse raw model text into a :class:`Candidate`.

    Parameters
    ----------
    content : str or None
        The model's message content.
    finish_reason : str, optional
        ``"length"`` marks a response cut off for capacity.
    thresholds : ThresholdRegistry, optional
        Uses ``gateway.default_confidence``.

    Raises
    ------
    GatewayError
        ``CAPACITY_EXHAUSTED``, ``EMPTY_RESPONSE``,
        ``MARKDOWN_STRIP_FAILURE``, ``SYNTAX_ERROR``, ``MISSING_FIELD``,
        ``EMPTY_OBJECT`` or ``NON_FINITE_VALUE``.
    """
    t = thresholds or DEFAULT_THRESHOLDS
    if not isinstance(content, str) or not content.strip():
        if finish_reason == "length":
            raise GatewayError(
                ParseErrorKind.CAPACITY_EXHAUSTED,
                "Response truncated for capacity with no content")
        raise GatewayError(ParseErrorKind.EMPTY_RESPONSE,
                           "Model returned empty content")

    text = _strip_fences(content)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise GatewayError(ParseErrorKind.SYNTAX_ERROR,
                           "No JSON object in response")
    try:
        parsed = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise GatewayError(ParseErrorKind.SYNTAX_ERROR,
                           f"Invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise GatewayError(ParseErrorKind.SYNTAX_ERROR,
                           "Response JSON is not an object")

    shape = _vector_field(parsed, "final_shape_params")
    limb = _vector_field(parsed, "final_limb_masses")

    confidence = t["gateway.default_confidence"]
    for name in ("confidence", "ai_confidence"):
        if is_finite_number(parsed.get(name)):
            confidence = min(1.0, max(0.0, float(parsed[name])))
            break

    diagnostics: Dict[str, Any] = {
        name: _string_list(parsed.get(name)) for name in DIAGNOSTIC_FIELDS}
    count = parsed.get("out_of_range_count")
    diagnostics["out_of_range_count"] = (
        int(count) if is_finite_number(count) else 0)

    return Candidate(
        shape=shape,
        limb=limb,
        confidence=confidence,
        refinement_notes=tuple(_string_list(parsed.get("refinement_notes"))),
        diagnostics=diagnostics,
    )


# ═══════════════════════════════════════════════════════════════════
# AIGateway
# ═══════════════════════════════════════════════════════════════════

class AIGateway:
    """Transport + parsing: ``refine(prompt, photo_urls) -> Candidate``.

    Parameters
    ----------
    transport : Transport
    thresholds : ThresholdRegistry, optional
        Uses the ``gateway.*`` section.
    """

    def __init__(self, transport: Transport,
                 thresholds: Optional[ThresholdRegistry] = None):
        self.transport = transport
        self.thresholds = thresholds or DEFAULT_THRESHOLDS

    def __repr__(self) -> str:
        return f"AIGateway({self.transport!r})"

    @classmethod
    def from_env(cls, **kwargs) -> "AIGateway":
        """Gateway over :class:`OpenAIChatTransport` configured from env."""
        return cls(OpenAIChatTransport(GatewayConfig.from_env(**kwargs)))

    def refine(self, prompt: str,
               photo_urls: Sequence[str] = ()) -> Candidate:
        """Call the model and parse its answer.

        Raises
        ------
        GatewayError
            On any transport or parsing failure.
        """
        response = self.transport.complete(prompt, list(photo_urls))
        ratio = response.reasoning_ratio
        if not isinstance(response.content, str) or not response.content.strip():
            if response.finish_reason == "length":
                logger.error(
                    f"Reasoning consumed the completion budget: "
                    f"{response.reasoning_tokens}/"
                    f"{response.completion_tokens} tokens ({ratio:.0%})")
        elif ratio > self.thresholds["gateway.reasoning_warn_ratio"]:
            logger.warning(
                f"High reasoning token usage: {ratio:.0%} of "
                f"{response.completion_tokens} completion tokens")
        candidate = parse_refinement_response(
            response.content, response.finish_reason, self.thresholds)
        logger.info(f"Parsed candidate: {len(candidate.shape)} shape, "
                    f"{len(candidate.limb)} limb keys, "
                    f"confidence={candidate.confidence:.2f}")
        return candidate
