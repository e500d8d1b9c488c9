"""
Tests for the fallback chain executor.

Uses a recording stub transport in place of real backend calls.
"""
import json
from unittest.mock import Mock

import pytest

from ai_issue_enhancer.config.loader import CostControls, EnhancerConfig, default_profile
from ai_issue_enhancer.core.backends import Backend
from ai_issue_enhancer.core.errors import (
    AllProvidersFailed,
    CostLimitExceeded,
    ErrorKind,
    ProviderError,
    ProviderTimeout,
)
from ai_issue_enhancer.core.executor import FallbackChainExecutor
from ai_issue_enhancer.core.guardrails import CostGovernor
from ai_issue_enhancer.core.ledger import UsageLedger
from ai_issue_enhancer.core.models import NormalizedRequest, RequestOptions, Role, Turn
from ai_issue_enhancer.core.token_counter import CharacterTokenCounter

KEYS = {
    Backend.OPENAI: "sk-test000000000000000000",
    Backend.ANTHROPIC: "sk-ant-test0000000000000",
    Backend.GOOGLE: "AIzaTest0000000000000000",
}

REQUEST = NormalizedRequest(turns=(
    Turn(Role.SYSTEM, "You analyze crash reports."),
    Turn(Role.USER, "The app crashes on launch"),
))


class StubTransport:
    """Records every invocation and replays scripted replies per backend.

    A reply that is an exception is raised. The last scripted reply for a
    backend repeats once the others are used up.
    """

    def __init__(self, replies):
        self.replies = {backend: list(items) for backend, items in replies.items()}
        self.calls = []

    def invoke(self, backend, wire_request, timeout):
        self.calls.append((backend, wire_request, timeout))
        queue = self.replies[backend]
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def called(self, backend):
        return [c for c in self.calls if c[0] == backend]


def openai_reply(content="ok", prompt_tokens=100, completion_tokens=50):
    return {
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
        "model": "gpt-4o",
    }


def anthropic_reply(content="ok", input_tokens=80, output_tokens=40):
    return {
        "content": [{"type": "text", "text": content}],
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
        "model": "claude-3-5-sonnet-20241022",
        "stop_reason": "end_turn",
    }


def make_config(credentialed=(Backend.OPENAI, Backend.ANTHROPIC),
                fallbacks=(Backend.ANTHROPIC, Backend.GOOGLE), **kwargs):
    profiles = tuple(
        default_profile(b, credential=KEYS.get(b, "") if b in credentialed else "")
        for b in Backend
    )
    values = dict(
        enabled=True,
        primary_backend=Backend.OPENAI,
        fallback_backends=tuple(fallbacks),
        profiles=profiles,
        cost_controls=CostControls(),
    )
    values.update(kwargs)
    return EnhancerConfig(**values)


class TestFallbackChainExecutor:
    """Test chain ordering, failure handling and ledger updates."""

    def setup_method(self):
        """Set up ledger and sleep recorder."""
        self.ledger = UsageLedger()
        self.sleep = Mock()

    def executor(self, transport, config=None, **kwargs):
        config = config or make_config()
        governor = CostGovernor(config.cost_controls, CharacterTokenCounter())
        return FallbackChainExecutor(config, transport, governor, self.ledger,
                                     retry_backoff=0.0, sleep=self.sleep, **kwargs)

    def test_candidates_selected_first_without_repeats(self):
        """Test the selected backend leads and fallbacks are de-duplicated."""
        config = make_config(fallbacks=(Backend.ANTHROPIC, Backend.OPENAI, Backend.ANTHROPIC, Backend.XAI))
        executor = self.executor(StubTransport({}), config)

        order = executor.candidates(Backend.OPENAI, RequestOptions())

        assert order == [Backend.OPENAI, Backend.ANTHROPIC, Backend.XAI]

    def test_candidates_without_fallback(self):
        """Test disabling fallback leaves one candidate."""
        executor = self.executor(StubTransport({}))

        assert executor.candidates(Backend.ANTHROPIC, RequestOptions(enable_fallback=False)) == [Backend.ANTHROPIC]

    def test_first_candidate_success(self):
        """Test a successful first attempt returns and credits the ledger once."""
        transport = StubTransport({Backend.OPENAI: [openai_reply("hello")]})

        result = self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert result.backend == Backend.OPENAI
        assert result.response.content == "hello"
        assert result.response.cost == 0.00075  # (100 * 0.0025 + 50 * 0.01) / 1000
        assert len(result.outcomes) == 1
        assert len(transport.calls) == 1

        usage = self.ledger.snapshot()
        assert usage.total_requests == 1
        assert usage.total_tokens == 150
        assert usage.backends["openai"].requests == 1

    def test_wire_request_uses_profile_settings(self):
        """Test the wire request carries the profile's model, temperature and token limit."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})

        self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        _, wire, timeout = transport.calls[0]
        assert wire["model"] == "gpt-4o"
        assert wire["temperature"] == 0.7
        assert wire["max_tokens"] == 4000
        assert [m["role"] for m in wire["messages"]] == ["system", "user"]
        assert timeout == 30.0

    def test_wire_request_translated_per_backend(self):
        """Test an Anthropic candidate receives the messages shape with a system field."""
        transport = StubTransport({Backend.ANTHROPIC: [anthropic_reply()]})

        self.executor(transport).execute(REQUEST, RequestOptions(), Backend.ANTHROPIC)

        _, wire, _ = transport.calls[0]
        assert wire["system"] == "You analyze crash reports."
        assert wire["messages"] == [{"role": "user", "content": "The app crashes on launch"}]
        assert wire["model"] == "claude-3-5-sonnet-20241022"

    def test_options_override_model_and_timeout(self):
        """Test per-call model and timeout options reach the transport."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})

        self.executor(transport).execute(
            REQUEST, RequestOptions(model="gpt-4o-mini", timeout_seconds=5.0, temperature=0.1), Backend.OPENAI
        )

        _, wire, timeout = transport.calls[0]
        assert wire["model"] == "gpt-4o-mini"
        assert wire["temperature"] == 0.1
        assert timeout == 5.0

    def test_pass_through_payload_gets_model(self):
        """Test a wire payload is sent as-is with the candidate's model filled in."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})
        payload = {"messages": [{"role": "user", "content": "hi"}]}

        self.executor(transport).execute(payload, RequestOptions(), Backend.OPENAI)

        _, wire, _ = transport.calls[0]
        assert wire == {"messages": [{"role": "user", "content": "hi"}], "model": "gpt-4o"}
        assert "model" not in payload

    def test_network_failure_falls_back(self):
        """Test a generic failure advances the chain without crediting the failed backend."""
        transport = StubTransport({
            Backend.OPENAI: [ConnectionError("network unreachable")],
            Backend.ANTHROPIC: [anthropic_reply("from anthropic")],
        })

        result = self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert result.backend == Backend.ANTHROPIC
        assert [o.ok for o in result.outcomes] == [False, True]
        assert len(transport.called(Backend.OPENAI)) == 4  # first try + 3 retries

        usage = self.ledger.snapshot()
        assert usage.total_requests == 1
        assert usage.backends["anthropic"].requests == 1
        assert usage.backends["anthropic"].tokens == 120
        assert usage.backends["openai"].requests == 0
        assert usage.backends["openai"].tokens == 0
        assert usage.backends["openai"].cost == 0.0
        assert usage.backends["openai"].failures == 1
        assert usage.backends["openai"].attempts == 1
        assert usage.backends["openai"].retries == 3

    def test_retry_then_success_is_one_attempt(self):
        """Test retries inside one attempt update the ledger once."""
        transport = StubTransport({
            Backend.OPENAI: [
                ProviderError("rate limited", status=429, kind=ErrorKind.RATE_LIMIT),
                openai_reply(),
            ],
        })

        result = self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert result.response.retry_count == 1
        assert len(transport.calls) == 2
        usage = self.ledger.snapshot().backends["openai"]
        assert usage.attempts == 1
        assert usage.requests == 1
        assert usage.retries == 1

    def test_retry_backoff_sleeps(self):
        """Test retries wait with exponential backoff."""
        config = make_config()
        governor = CostGovernor(config.cost_controls, CharacterTokenCounter())
        executor = FallbackChainExecutor(config, StubTransport({
            Backend.OPENAI: [ProviderTimeout("slow"), ProviderTimeout("slow"), openai_reply()],
        }), governor, self.ledger, retry_backoff=0.5, sleep=self.sleep)

        executor.execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert [c.args[0] for c in self.sleep.call_args_list] == [0.5, 1.0]

    def test_invalid_request_not_retried(self):
        """Test non-retryable failures move on immediately."""
        transport = StubTransport({
            Backend.OPENAI: [ProviderError("bad request", status=400, kind=ErrorKind.INVALID_REQUEST)],
            Backend.ANTHROPIC: [anthropic_reply()],
        })

        self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert len(transport.called(Backend.OPENAI)) == 1

    def test_authentication_failure_aborts_chain(self):
        """Test a rejected credential stops the chain without trying fallbacks."""
        transport = StubTransport({
            Backend.OPENAI: [ProviderError("Incorrect API key provided", status=401,
                                           kind=ErrorKind.AUTHENTICATION)],
            Backend.ANTHROPIC: [anthropic_reply()],
        })

        with pytest.raises(AllProvidersFailed) as exc_info:
            self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert exc_info.value.aborted is True
        assert exc_info.value.last_error.kind == ErrorKind.AUTHENTICATION
        assert len(transport.called(Backend.OPENAI)) == 1
        assert transport.called(Backend.ANTHROPIC) == []

    def test_authentication_abort_is_configurable(self):
        """Test the chain continues past auth failures when the policy is off."""
        transport = StubTransport({
            Backend.OPENAI: [RuntimeError("403 Forbidden")],
            Backend.ANTHROPIC: [anthropic_reply()],
        })
        config = make_config(abort_chain_on_auth_failure=False)

        result = self.executor(transport, config).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert result.backend == Backend.ANTHROPIC

    def test_cost_limit_blocks_before_transport(self):
        """Test a per-run breach aborts the whole chain with zero transport calls."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()], Backend.ANTHROPIC: [anthropic_reply()]})
        config = make_config(cost_controls=CostControls(max_cost_per_run=0.000001))

        with pytest.raises(CostLimitExceeded):
            self.executor(transport, config).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert transport.calls == []
        assert self.ledger.snapshot().backends["openai"].attempts == 0

    def test_skip_cost_check(self):
        """Test skipping the cost check lets an over-budget call through."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})
        config = make_config(cost_controls=CostControls(max_cost_per_run=0.000001))

        result = self.executor(transport, config).execute(
            REQUEST, RequestOptions(skip_cost_check=True), Backend.OPENAI
        )

        assert result.backend == Backend.OPENAI

    def test_uncredentialed_candidate_skipped(self):
        """Test a fallback without a key is skipped without a transport call."""
        transport = StubTransport({
            Backend.OPENAI: [ProviderError("bad request", status=400, kind=ErrorKind.INVALID_REQUEST)],
            Backend.ANTHROPIC: [anthropic_reply()],
        })
        config = make_config(fallbacks=(Backend.GOOGLE, Backend.ANTHROPIC))

        result = self.executor(transport, config).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert result.backend == Backend.ANTHROPIC
        assert [o.backend for o in result.outcomes] == [Backend.OPENAI, Backend.GOOGLE, Backend.ANTHROPIC]
        assert result.outcomes[1].skipped is True
        assert transport.called(Backend.GOOGLE) == []
        assert self.ledger.snapshot().backends["google"].attempts == 0

    def test_only_candidate_uncredentialed_reports_why(self):
        """Test an explicit backend without a key fails with its skip reason."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})
        config = make_config(credentialed=(Backend.OPENAI,))

        with pytest.raises(AllProvidersFailed) as exc_info:
            self.executor(transport, config).execute(
                REQUEST, RequestOptions(backend="anthropic", enable_fallback=False), Backend.ANTHROPIC
            )

        error = exc_info.value.last_error
        assert isinstance(error, ProviderError)
        assert error.backend == "anthropic"
        assert error.kind == ErrorKind.AUTHENTICATION
        assert "API key not configured" in str(error)
        assert exc_info.value.aborted is False
        assert exc_info.value.outcomes[0].skipped is True
        assert transport.calls == []

    def test_all_candidates_fail(self):
        """Test exhaustion raises AllProvidersFailed with the last error."""
        transport = StubTransport({
            Backend.OPENAI: [ProviderError("server error", status=500)],
            Backend.ANTHROPIC: [ProviderError("overloaded", status=529)],
        })
        config = make_config(fallbacks=(Backend.ANTHROPIC,))

        with pytest.raises(AllProvidersFailed) as exc_info:
            self.executor(transport, config).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert exc_info.value.aborted is False
        assert "overloaded" in str(exc_info.value.last_error)
        assert len(exc_info.value.outcomes) == 2
        assert self.ledger.snapshot().total_requests == 0

    def test_malformed_reply_advances_chain(self):
        """Test an unparseable reply counts as a candidate failure."""
        transport = StubTransport({
            Backend.OPENAI: [{"choices": ["not a choice"]}],
            Backend.ANTHROPIC: [anthropic_reply()],
        })

        result = self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert result.backend == Backend.ANTHROPIC
        assert self.ledger.snapshot().backends["openai"].failures == 1

    def test_spent_deadline_stops_chain(self):
        """Test a spent caller deadline stops before any call."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})
        executor = self.executor(transport, clock=lambda: 100.0)

        with pytest.raises(AllProvidersFailed, match="deadline"):
            executor.execute(REQUEST, RequestOptions(deadline_seconds=0), Backend.OPENAI)

        assert transport.calls == []

    def test_deadline_clamps_attempt_timeout(self):
        """Test the remaining deadline bounds the per-attempt timeout."""
        transport = StubTransport({Backend.OPENAI: [openai_reply()]})
        executor = self.executor(transport, clock=lambda: 100.0)

        executor.execute(REQUEST, RequestOptions(deadline_seconds=2.5), Backend.OPENAI)

        assert transport.calls[0][2] == 2.5

    def test_structured_content_survives(self):
        """Test reply content reaches the caller unchanged."""
        body = json.dumps({"enhancedTitle": "X", "priority": "high", "labels": ["bug"]})
        transport = StubTransport({Backend.OPENAI: [openai_reply(body)]})

        result = self.executor(transport).execute(REQUEST, RequestOptions(), Backend.OPENAI)

        assert json.loads(result.response.content)["enhancedTitle"] == "X"
