"""
Tests for backend strategies, wire codecs and error classification.
"""

import socket

import pytest
import requests

from ai_issue_enhancer.core.backends import (
    CODECS,
    STRATEGIES,
    Backend,
    WireShape,
    classify_error,
    detect_shape,
    get_strategy,
    is_authentication_failure,
)
from ai_issue_enhancer.core.errors import ErrorKind, ProviderError, ProviderTimeout, TranslationError
from ai_issue_enhancer.core.models import NormalizedRequest, Role, Segment, Turn


def make_request(**kwargs):
    return NormalizedRequest(
        turns=(
            Turn(Role.SYSTEM, "You are helpful."),
            Turn(Role.USER, "Hello"),
            Turn(Role.ASSISTANT, "Hi"),
            Turn(Role.USER, (Segment(type="text", text="Look"), Segment(type="image_url", image_url="https://x/img.png"))),
        ),
        **kwargs,
    )


class TestBackendEnum:
    """Test backend parsing and registry."""

    def test_parse_is_case_insensitive(self):
        """Test lookup by name."""
        assert Backend.parse(" OpenAI ") == Backend.OPENAI
        assert Backend.parse(Backend.XAI) == Backend.XAI

    def test_parse_unknown_raises(self):
        """Test unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown backend 'mistral'"):
            Backend.parse("mistral")

    def test_every_backend_has_a_strategy(self):
        """Test the strategy mapping is exhaustive."""
        assert set(STRATEGIES) == set(Backend)
        assert get_strategy(Backend.DEEPSEEK).shape == WireShape.OPENAI_CHAT
        assert get_strategy(Backend.ANTHROPIC).shape == WireShape.ANTHROPIC_MESSAGES
        assert get_strategy(Backend.GOOGLE).shape == WireShape.GEMINI_CONTENTS

    def test_gemini_endpoint_includes_model(self):
        """Test the model is placed in the Gemini URL."""
        url = get_strategy(Backend.GOOGLE).endpoint_for("gemini-1.5-flash")

        assert url.endswith("/models/gemini-1.5-flash:generateContent")

    def test_credential_shapes(self):
        """Test the local credential shape checks."""
        assert get_strategy(Backend.OPENAI).credential_looks_valid("sk-" + "a" * 20)
        assert not get_strategy(Backend.OPENAI).credential_looks_valid("sk-short")
        assert get_strategy(Backend.ANTHROPIC).credential_looks_valid("sk-ant-" + "a" * 20)
        assert get_strategy(Backend.GOOGLE).credential_looks_valid("AIza" + "b" * 30)
        assert not get_strategy(Backend.GOOGLE).credential_looks_valid("sk-" + "a" * 20)
        assert get_strategy(Backend.XAI).credential_looks_valid("xai-" + "c" * 20)


class TestWireShapes:
    """Test translation to and from each wire shape."""

    def test_openai_to_wire(self):
        """Test OpenAI messages keep every turn, system included."""
        wire = CODECS[WireShape.OPENAI_CHAT].to_wire(make_request(model="gpt-4o", temperature=0.2))

        assert wire["model"] == "gpt-4o"
        assert wire["temperature"] == 0.2
        assert "max_tokens" not in wire
        assert [m["role"] for m in wire["messages"]] == ["system", "user", "assistant", "user"]
        assert wire["messages"][3]["content"][1] == {
            "type": "image_url", "image_url": {"url": "https://x/img.png"}
        }

    def test_anthropic_lifts_system(self):
        """Test the system turn becomes a top-level field."""
        wire = CODECS[WireShape.ANTHROPIC_MESSAGES].to_wire(make_request(model="claude"))

        assert wire["system"] == "You are helpful."
        assert wire["max_tokens"] == 1024
        assert [m["role"] for m in wire["messages"]] == ["user", "assistant", "user"]
        assert wire["messages"][2]["content"][1]["type"] == "image"

    def test_gemini_uses_model_role(self):
        """Test Gemini contents, system instruction and config."""
        wire = CODECS[WireShape.GEMINI_CONTENTS].to_wire(make_request(model="gemini-1.5-pro", max_tokens=50))

        assert wire["system_instruction"] == {"parts": [{"text": "You are helpful."}]}
        assert [c["role"] for c in wire["contents"]] == ["user", "model", "user"]
        assert wire["generation_config"] == {"max_output_tokens": 50}
        assert wire["model"] == "gemini-1.5-pro"

    @pytest.mark.parametrize("shape", list(WireShape))
    def test_same_shape_round_trip_preserves_turns(self, shape):
        """Test to_wire then from_wire keeps turn count and role order."""
        request = make_request(model="m", temperature=0.5, max_tokens=100)
        codec = CODECS[shape]

        restored = codec.from_wire(codec.to_wire(request))

        assert [t.role for t in restored.turns] == [t.role for t in request.turns]
        assert restored.turns[1].text() == "Hello"
        assert restored.system_text == "You are helpful."
        assert restored.model == "m"
        assert restored.max_tokens == 100

    def test_openai_from_wire_rejects_unknown_role(self):
        """Test unknown roles raise TranslationError."""
        with pytest.raises(TranslationError, match="Unknown role"):
            CODECS[WireShape.OPENAI_CHAT].from_wire({"messages": [{"role": "tool", "content": "x"}]})

    def test_anthropic_from_wire_rejects_system_role_message(self):
        """Test system turns must use the top-level field in Anthropic shape."""
        with pytest.raises(TranslationError, match="not allowed"):
            CODECS[WireShape.ANTHROPIC_MESSAGES].from_wire(
                {"messages": [{"role": "system", "content": "x"}]}
            )


class TestDetectShape:
    """Test wire shape detection."""

    def test_detects_gemini(self):
        """Test 'contents' means Gemini."""
        assert detect_shape({"contents": []}) == WireShape.GEMINI_CONTENTS

    def test_detects_anthropic_by_system(self):
        """Test a top-level system field means Anthropic."""
        assert detect_shape({"system": "s", "messages": []}) == WireShape.ANTHROPIC_MESSAGES

    def test_detects_anthropic_by_image_block(self):
        """Test Anthropic image blocks are recognized."""
        payload = {"messages": [{"role": "user", "content": [{"type": "image", "source": {}}]}]}
        assert detect_shape(payload) == WireShape.ANTHROPIC_MESSAGES

    def test_defaults_to_openai(self):
        """Test plain messages mean OpenAI."""
        assert detect_shape({"messages": [{"role": "user", "content": "x"}]}) == WireShape.OPENAI_CHAT

    def test_unknown_payload_raises(self):
        """Test undetectable payloads raise TranslationError."""
        with pytest.raises(TranslationError):
            detect_shape({"prompt": "x"})
        with pytest.raises(TranslationError):
            detect_shape("plain text")


class TestParseReply:
    """Test reply parsing per backend."""

    def test_openai_reply(self):
        """Test OpenAI reply content and usage."""
        payload = {
            "model": "gpt-4o-2024",
            "choices": [{"message": {"content": "hi"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 10, "completion_tokens": 5},
        }
        response = get_strategy(Backend.OPENAI).parse_reply(payload, "gpt-4o")

        assert response.content == "hi"
        assert response.usage.total_tokens == 15
        assert response.model == "gpt-4o-2024"
        assert response.backend == Backend.OPENAI
        assert response.finish_reason == "stop"

    def test_anthropic_reply(self):
        """Test Anthropic text blocks and usage."""
        payload = {
            "content": [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}],
            "usage": {"input_tokens": 7, "output_tokens": 3},
            "stop_reason": "end_turn",
        }
        response = get_strategy(Backend.ANTHROPIC).parse_reply(payload, "claude")

        assert response.content == "ab"
        assert response.usage.prompt_tokens == 7
        assert response.usage.completion_tokens == 3
        assert response.model == "claude"

    def test_gemini_reply(self):
        """Test Gemini candidates and usage metadata."""
        payload = {
            "candidates": [{"content": {"parts": [{"text": "ok"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
        }
        response = get_strategy(Backend.GOOGLE).parse_reply(payload, "gemini-1.5-pro")

        assert response.content == "ok"
        assert response.usage.total_tokens == 6
        assert response.backend == Backend.GOOGLE

    def test_empty_reply_has_zero_usage(self):
        """Test missing fields parse to empty content and zero usage."""
        response = get_strategy(Backend.XAI).parse_reply({}, "grok-2")

        assert response.content == ""
        assert response.usage.total_tokens == 0


class TestClassifyError:
    """Test mapping transport failures to ProviderError kinds."""

    def test_timeouts(self):
        """Test all timeout flavours become ProviderTimeout."""
        for error in (TimeoutError("slow"), socket.timeout(), requests.Timeout("slow")):
            classified = classify_error(error, Backend.OPENAI)
            assert isinstance(classified, ProviderTimeout)
            assert classified.retryable

    def test_status_codes(self):
        """Test status codes pick the kind."""
        error = Exception("boom")
        error.status_code = 429
        assert classify_error(error).kind == ErrorKind.RATE_LIMIT

        error.status_code = 503
        classified = classify_error(error)
        assert classified.kind == ErrorKind.API
        assert classified.retryable

        error.status_code = 400
        assert not classify_error(error).retryable

    def test_auth_by_status_and_message(self):
        """Test authentication failures are recognized."""
        error = Exception("nope")
        error.status_code = 401
        assert is_authentication_failure(classify_error(error))

        assert is_authentication_failure(classify_error(RuntimeError("Incorrect API key provided")))
        assert is_authentication_failure(
            classify_error(ProviderError("403 Forbidden", backend="openai"))
        )

    def test_generic_network_error_is_retryable_api_error(self):
        """Test a plain connection error is a retryable API error."""
        classified = classify_error(ConnectionError("connection reset"), Backend.ANTHROPIC)

        assert classified.kind == ErrorKind.API
        assert classified.backend == "anthropic"
        assert classified.retryable
        assert not is_authentication_failure(classified)
