"""Tests for the AI gateway.

Covers:
1. parse_refinement_response — strict parsing and typed failures
2. OpenAIChatTransport — request body, retry / backoff, error mapping,
   malformed bodies; ModelResponse usage accounting
3. GatewayConfig.from_env
4. AIGateway — transport + parsing

No network: the HTTP session is a ``unittest.mock.Mock``.
"""

import json
from unittest import mock

import pytest
import requests

from morph_refine.errors import GatewayError, ParseErrorKind
from morph_refine.gateway import (
    AIGateway, GatewayConfig, ModelResponse, OpenAIChatTransport, Transport,
    parse_refinement_response,
)


VALID = {
    "final_shape_params": {"pearFigure": 0.4, "emaciated": 0},
    "final_limb_masses": {"gate": 1.0, "leftArm": 1.1},
    "ai_confidence": 0.9,
    "refinement_notes": ["hips widened"],
    "clamped_keys": ["pearFigure"],
    "out_of_range_count": 1,
}


def _kind(excinfo):
    return excinfo.value.kind


# ═══════════════════════════════════════════════════════════════════
# 1. Parsing
# ═══════════════════════════════════════════════════════════════════

class TestParseSuccess:

    def test_plain_json(self):
        c = parse_refinement_response(json.dumps(VALID))
        assert c.shape == {"pearFigure": 0.4, "emaciated": 0.0}
        assert c.limb["leftArm"] == 1.1
        assert c.confidence == 0.9
        assert c.refinement_notes == ("hips widened",)
        assert c.diagnostics["clamped_keys"] == ["pearFigure"]
        assert c.diagnostics["db_violations"] == []
        assert c.diagnostics["out_of_range_count"] == 1

    def test_fenced_json(self):
        c = parse_refinement_response("```json\n" + json.dumps(VALID) + "\n```")
        assert c.shape["pearFigure"] == 0.4

    def test_prose_around_object(self):
        text = "Here is the result:\n" + json.dumps(VALID) + "\nDone."
        assert parse_refinement_response(text).confidence == 0.9

    def test_confidence_default_and_clamp(self):
        body = dict(VALID)
        del body["ai_confidence"]
        assert parse_refinement_response(json.dumps(body)).confidence == 0.8
        body["confidence"] = 1.7
        assert parse_refinement_response(json.dumps(body)).confidence == 1.0
        body["confidence"] = "high"
        assert parse_refinement_response(json.dumps(body)).confidence == 0.8

    def test_malformed_diagnostics_default(self):
        body = dict(VALID, clamped_keys="all", out_of_range_count="3",
                    refinement_notes=[1, 2])
        c = parse_refinement_response(json.dumps(body))
        assert c.diagnostics["clamped_keys"] == []
        assert c.diagnostics["out_of_range_count"] == 0
        assert c.refinement_notes == ()


class TestParseFailures:

    @pytest.mark.parametrize("content", [None, "", "   \n"])
    def test_capacity_exhausted(self, content):
        with pytest.raises(GatewayError) as excinfo:
            parse_refinement_response(content, finish_reason="length")
        assert _kind(excinfo) is ParseErrorKind.CAPACITY_EXHAUSTED

    def test_empty_response(self):
        with pytest.raises(GatewayError) as excinfo:
            parse_refinement_response("", finish_reason="stop")
        assert _kind(excinfo) is ParseErrorKind.EMPTY_RESPONSE

    def test_empty_fence(self):
        with pytest.raises(GatewayError) as excinfo:
            parse_refinement_response("```json\n```")
        assert _kind(excinfo) is ParseErrorKind.MARKDOWN_STRIP_FAILURE

    @pytest.mark.parametrize("content", [
        "no json here", '{"final_shape_params": {', "[1, 2, 3]"])
    def test_syntax_error(self, content):
        with pytest.raises(GatewayError) as excinfo:
            parse_refinement_response(content)
        assert _kind(excinfo) is ParseErrorKind.SYNTAX_ERROR

    def test_missing_field(self):
        body = dict(VALID)
        del body["final_limb_masses"]
        with pytest.raises(GatewayError, match="final_limb_masses") as excinfo:
            parse_refinement_response(json.dumps(body))
        assert _kind(excinfo) is ParseErrorKind.MISSING_FIELD
        assert excinfo.value.field == "final_limb_masses"

    def test_empty_object(self):
        body = dict(VALID, final_shape_params={})
        with pytest.raises(GatewayError) as excinfo:
            parse_refinement_response(json.dumps(body))
        assert _kind(excinfo) is ParseErrorKind.EMPTY_OBJECT

    @pytest.mark.parametrize("bad", ["NaN", "Infinity", "true", '"0.5"', "null"])
    def test_non_finite_value(self, bad):
        text = ('{"final_shape_params": {"pearFigure": %s}, '
                '"final_limb_masses": {"gate": 1}}' % bad)
        with pytest.raises(GatewayError) as excinfo:
            parse_refinement_response(text)
        assert _kind(excinfo) is ParseErrorKind.NON_FINITE_VALUE
        assert excinfo.value.field == "final_shape_params.pearFigure"

    def test_error_message_carries_kind(self):
        with pytest.raises(GatewayError, match=r"^\[empty_response\]"):
            parse_refinement_response(None)


# ═══════════════════════════════════════════════════════════════════
# 2. Transport
# ═══════════════════════════════════════════════════════════════════

def _http(status, payload=None, text=""):
    resp = mock.Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text
    resp.json.return_value = payload
    return resp


def _completion(content="{}", finish="stop", usage=None):
    return {
        "choices": [{"message": {"content": content},
                     "finish_reason": finish}],
        "usage": usage or {},
    }


@pytest.fixture
def config():
    return GatewayConfig(api_key="sk-test", timeout_s=5.0, max_retries=3,
                         backoff_s=0.5)


class TestTransport:

    def test_body(self, config):
        transport = OpenAIChatTransport(config, session=mock.Mock())
        body = transport.build_body("prompt", ["u1", "", "u2"])
        content = body["messages"][0]["content"]
        assert content[0] == {"type": "text", "text": "prompt"}
        assert [c["image_url"]["url"] for c in content[1:]] == ["u1", "u2"]
        assert body["max_completion_tokens"] == 10000
        assert body["model"] == "gpt-5-mini"

    def test_success(self, config):
        session = mock.Mock()
        session.post.return_value = _http(200, _completion(
            "ok", "stop", {"completion_tokens": 100,
                           "completion_tokens_details":
                               {"reasoning_tokens": 40}}))
        response = OpenAIChatTransport(config, session=session).complete(
            "p", ["u"])
        assert response.content == "ok"
        assert response.finish_reason == "stop"
        assert response.reasoning_ratio == pytest.approx(0.4)
        _, kwargs = session.post.call_args
        assert kwargs["timeout"] == 5.0
        assert kwargs["headers"]["Authorization"] == "Bearer sk-test"

    def test_retry_then_success(self, config):
        session = mock.Mock()
        session.post.side_effect = [_http(429), _http(503),
                                    _http(200, _completion())]
        sleep = mock.Mock()
        OpenAIChatTransport(config, session=session, sleep=sleep).complete(
            "p", [])
        assert session.post.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [0.5, 1.0]

    def test_retries_exhausted(self, config):
        session = mock.Mock()
        session.post.return_value = _http(500)
        sleep = mock.Mock()
        with pytest.raises(GatewayError, match="after 3 attempts") as excinfo:
            OpenAIChatTransport(config, session=session,
                                sleep=sleep).complete("p", [])
        assert _kind(excinfo) is ParseErrorKind.TRANSPORT
        assert session.post.call_count == 3
        assert sleep.call_count == 2

    def test_client_error_not_retried(self, config):
        session = mock.Mock()
        session.post.return_value = _http(401, text="bad key")
        with pytest.raises(GatewayError, match="HTTP 401: bad key"):
            OpenAIChatTransport(config, session=session,
                                sleep=mock.Mock()).complete("p", [])
        assert session.post.call_count == 1

    def test_connection_error(self, config):
        session = mock.Mock()
        session.post.side_effect = requests.ConnectionError("refused")
        with pytest.raises(GatewayError, match="ConnectionError") as excinfo:
            OpenAIChatTransport(config, session=session).complete("p", [])
        assert _kind(excinfo) is ParseErrorKind.TRANSPORT

    def test_undecodable_body(self, config):
        session = mock.Mock()
        session.post.return_value = _http(200, {"choices": []})
        with pytest.raises(GatewayError, match="Unexpected response body"):
            OpenAIChatTransport(config, session=session).complete("p", [])

    @pytest.mark.parametrize("choice", [
        "text", {"message": "hi"}, {"finish_reason": "stop"}])
    def test_malformed_choice(self, config, choice):
        session = mock.Mock()
        session.post.return_value = _http(200, {"choices": [choice]})
        with pytest.raises(GatewayError, match="no message object") as excinfo:
            OpenAIChatTransport(config, session=session).complete("p", [])
        assert _kind(excinfo) is ParseErrorKind.TRANSPORT

    def test_non_object_usage_dropped(self, config):
        session = mock.Mock()
        body = _completion("ok")
        body["usage"] = 5
        session.post.return_value = _http(200, body)
        response = OpenAIChatTransport(config, session=session).complete(
            "p", [])
        assert response.usage == {}
        assert response.content == "ok"

    def test_satisfies_protocol(self, config):
        assert isinstance(OpenAIChatTransport(config, session=mock.Mock()),
                          Transport)


class TestModelResponse:

    @pytest.mark.parametrize("usage", [
        5, None, [],
        {"completion_tokens": 10, "completion_tokens_details": 5},
        {"completion_tokens": "ten",
         "completion_tokens_details": {"reasoning_tokens": 4}},
    ])
    def test_malformed_usage_gives_zero_ratio(self, usage):
        assert ModelResponse("{}", "stop", usage).reasoning_ratio == 0.0

    def test_non_object_details(self):
        usage = {"completion_tokens": 10, "completion_tokens_details": 5}
        response = ModelResponse("{}", "stop", usage)
        assert response.completion_tokens == 10
        assert response.reasoning_tokens == 0

    def test_reasoning_details(self):
        response = ModelResponse("{}", "stop", {
            "completion_tokens": 200,
            "completion_tokens_details": {"reasoning_tokens": 50}})
        assert response.reasoning_tokens == 50
        assert response.reasoning_ratio == pytest.approx(0.25)


# ═══════════════════════════════════════════════════════════════════
# 3. Configuration
# ═══════════════════════════════════════════════════════════════════

class TestGatewayConfig:

    def test_from_env(self):
        cfg = GatewayConfig.from_env({
            "OPENAI_API_KEY": "sk-x",
            "MORPH_REFINE_MODEL": "gpt-test",
            "MORPH_REFINE_TIMEOUT_S": "12.5",
            "MORPH_REFINE_MAX_RETRIES": "5",
        })
        assert cfg.api_key == "sk-x"
        assert cfg.model == "gpt-test"
        assert cfg.timeout_s == 12.5
        assert cfg.max_retries == 5
        assert cfg.max_completion_tokens == 10000

    def test_defaults_when_unset(self):
        cfg = GatewayConfig.from_env({})
        assert cfg.api_key == ""
        assert cfg.model == "gpt-5-mini"

    def test_repr_hides_key(self):
        assert "sk-secret" not in repr(GatewayConfig(api_key="sk-secret"))

    def test_dotenv_file(self, tmp_path, monkeypatch):
        # registered so teardown removes what load_dotenv sets
        monkeypatch.setenv("MORPH_REFINE_MODEL", "placeholder")
        monkeypatch.delenv("MORPH_REFINE_MODEL")
        env_file = tmp_path / ".env"
        env_file.write_text("MORPH_REFINE_MODEL=from-dotenv\n")
        cfg = GatewayConfig.from_env(dotenv_path=str(env_file))
        assert cfg.model == "from-dotenv"


# ═══════════════════════════════════════════════════════════════════
# 4. AIGateway
# ═══════════════════════════════════════════════════════════════════

class _FixedTransport:

    def __init__(self, response):
        self.response = response
        self.calls = []

    def complete(self, prompt, photo_urls):
        self.calls.append((prompt, photo_urls))
        return self.response


class TestAIGateway:

    def test_refine(self):
        transport = _FixedTransport(ModelResponse(json.dumps(VALID), "stop"))
        candidate = AIGateway(transport).refine("prompt", ("u1",))
        assert candidate.shape["pearFigure"] == 0.4
        assert transport.calls == [("prompt", ["u1"])]

    def test_capacity_exhausted_logged(self, caplog):
        usage = {"completion_tokens": 10000,
                 "completion_tokens_details": {"reasoning_tokens": 10000}}
        transport = _FixedTransport(ModelResponse(None, "length", usage))
        with pytest.raises(GatewayError) as excinfo:
            AIGateway(transport).refine("prompt")
        assert _kind(excinfo) is ParseErrorKind.CAPACITY_EXHAUSTED
        assert "consumed the completion budget" in caplog.text

    def test_malformed_usage_still_parses(self):
        usage = {"completion_tokens": 10, "completion_tokens_details": 5}
        transport = _FixedTransport(
            ModelResponse(json.dumps(VALID), "stop", usage))
        assert AIGateway(transport).refine("prompt").confidence == 0.9

    def test_high_reasoning_warning(self, caplog):
        usage = {"completion_tokens": 1000,
                 "completion_tokens_details": {"reasoning_tokens": 900}}
        transport = _FixedTransport(
            ModelResponse(json.dumps(VALID), "stop", usage))
        AIGateway(transport).refine("prompt")
        assert "High reasoning token usage" in caplog.text
