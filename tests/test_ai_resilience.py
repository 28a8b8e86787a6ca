"""Tests for the AI resilience layer."""

from __future__ import annotations

import time
from unittest.mock import patch

import pytest

from ai_resilience import (
    CircuitBreaker,
    CostTracker,
    TTLCache,
    TransientLLMError,
    _is_transient,
    get_circuit_breaker,
    resilient_llm_call,
)
from cache_backend import get_cache
from errors import AIUnavailable


@pytest.fixture(autouse=True)
def api_key(monkeypatch):
    monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
    get_cache().clear()
    yield
    get_cache().clear()


# ── TTLCache Tests ──────────────────────────────────────────


class TestTTLCache:
    def test_set_and_get(self):
        cache = TTLCache()
        cache.set("k1", "v1", ttl_seconds=60)
        assert cache.get("k1") == "v1"

    def test_expired_entry_returns_none(self):
        cache = TTLCache()
        cache.set("k2", "v2", ttl_seconds=0)
        time.sleep(0.01)
        assert cache.get("k2") is None

    def test_missing_key_returns_none(self):
        cache = TTLCache()
        assert cache.get("nonexistent") is None

    def test_lru_eviction(self):
        cache = TTLCache()
        cache.MAX_ENTRIES = 3  # temporarily reduce for test
        cache.set("a", "1", ttl_seconds=10)
        cache.set("b", "2", ttl_seconds=20)
        cache.set("c", "3", ttl_seconds=30)
        cache.set("d", "4", ttl_seconds=40)  # should evict 'a' (earliest expiry)
        assert cache.get("a") is None
        assert cache.get("d") == "4"

    def test_cleanup_removes_expired(self):
        cache = TTLCache()
        cache.set("exp1", "val", ttl_seconds=0)
        cache.set("exp2", "val", ttl_seconds=0)
        cache.set("keep", "val", ttl_seconds=60)
        time.sleep(0.01)
        assert cache.cleanup() == 2
        assert cache.get("keep") == "val"

    def test_delete(self):
        cache = TTLCache()
        cache.set("x", "y", ttl_seconds=60)
        cache.delete("x")
        assert cache.get("x") is None

    def test_make_key_deterministic(self):
        assert TTLCache._make_key("prompt", "model", "opts") == TTLCache._make_key("prompt", "model", "opts")

    def test_make_key_depends_on_options(self):
        assert TTLCache._make_key("p", "m", "a") != TTLCache._make_key("p", "m", "b")

    def test_make_key_carries_cache_prefix(self):
        from cache_backend import KEY_PREFIX
        assert TTLCache._make_key("p", "m").startswith(KEY_PREFIX + "llm:")


# ── CircuitBreaker Tests ────────────────────────────────────


class TestCircuitBreaker:
    def test_starts_closed(self):
        cb = CircuitBreaker()
        assert not cb.is_open("test_provider")
        assert cb.get_state("test_provider") == "closed"

    def test_opens_after_threshold_failures(self):
        cb = CircuitBreaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("bad_provider")
        assert cb.is_open("bad_provider")
        assert cb.get_state("bad_provider") == "open"

    def test_success_resets(self):
        cb = CircuitBreaker()
        cb.record_failure("p1")
        cb.record_failure("p1")
        cb.record_success("p1")
        assert not cb.is_open("p1")
        assert cb.get_state("p1") == "closed"

    def test_recovery_timeout(self):
        cb = CircuitBreaker()
        cb.RECOVERY_TIMEOUT = 0.01  # 10ms for test
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("recover_provider")
        assert cb.is_open("recover_provider")
        time.sleep(0.02)
        assert not cb.is_open("recover_provider")  # half_open
        assert cb.get_state("recover_provider") == "half_open"

    def test_independent_providers(self):
        cb = CircuitBreaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("failing")
        assert cb.is_open("failing")
        assert not cb.is_open("healthy")


# ── CostTracker Tests ───────────────────────────────────────


class TestCostTracker:
    def test_estimate_tokens(self):
        assert CostTracker.estimate_tokens("") == 1  # min 1
        assert CostTracker.estimate_tokens("1234") == 1
        assert CostTracker.estimate_tokens("12345678") == 2

    def test_track_call(self):
        result = CostTracker.track_call(
            model="gemini-2.5-flash",
            input_text="Hello world",
            output_text="Response text here",
            latency_ms=150,
        )
        assert result["model"] == "gemini-2.5-flash"
        assert result["latency_ms"] == 150
        assert result["input_tokens_est"] > 0
        assert result["cost_estimate_usd"] >= 0

    def test_unknown_model_defaults_to_1(self):
        result = CostTracker.track_call(model="unknown-model", input_text="test", output_text="test", latency_ms=100)
        assert result["cost_estimate_usd"] > 0


class TestTransientDetection:
    @pytest.mark.parametrize("exc", [
        ConnectionError("reset"),
        TimeoutError(),
        RuntimeError("429 Resource exhausted"),
        RuntimeError("The model is overloaded"),
    ])
    def test_transient(self, exc):
        assert _is_transient(exc)

    def test_permanent(self):
        assert not _is_transient(ValueError("API key not valid"))


# ── resilient_llm_call Tests ────────────────────────────────


class TestResilientLLMCall:
    @patch("ai_resilience._call_with_retry")
    def test_basic_call(self, mock_retry):
        mock_retry.return_value = "LLM says hello"
        text, meta = resilient_llm_call("Hello", model="gemini-2.0-flash")
        assert text == "LLM says hello"
        assert meta["provider"] == "gemini"
        assert meta["model"] == "gemini-2.0-flash"
        assert meta["cache_hit"] is False
        assert "cost_estimate_usd" in meta

    @patch("ai_resilience._call_with_retry")
    def test_generation_config(self, mock_retry):
        mock_retry.return_value = "[]"
        resilient_llm_call("p", json_mode=True, response_schema={"type": "ARRAY"}, temperature=0.2, max_output_tokens=10)
        _, _, config = mock_retry.call_args.args
        assert config == {
            "response_mime_type": "application/json",
            "response_schema": {"type": "ARRAY"},
            "temperature": 0.2,
            "max_output_tokens": 10,
        }

    @patch("ai_resilience._call_with_retry")
    def test_cache_hit(self, mock_retry):
        mock_retry.return_value = "cached response"
        _, meta1 = resilient_llm_call("test prompt", cache_ttl=60)
        assert meta1["cache_hit"] is False

        text2, meta2 = resilient_llm_call("test prompt", cache_ttl=60)
        assert meta2["cache_hit"] is True
        assert text2 == "cached response"
        assert mock_retry.call_count == 1

    @patch("ai_resilience._call_with_retry")
    def test_options_are_part_of_cache_key(self, mock_retry):
        mock_retry.return_value = "x"
        resilient_llm_call("same prompt", cache_ttl=60, temperature=0.1)
        resilient_llm_call("same prompt", cache_ttl=60, temperature=0.9)
        assert mock_retry.call_count == 2

    def test_missing_key_is_unavailable(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_API_KEY")
        with pytest.raises(AIUnavailable):
            resilient_llm_call("prompt")

    def test_circuit_breaker_blocks_call(self):
        cb = get_circuit_breaker()
        for _ in range(cb.FAILURE_THRESHOLD):
            cb.record_failure("gemini")
        with pytest.raises(AIUnavailable, match="Circuit breaker open"):
            resilient_llm_call("prompt")

    @patch("ai_resilience._call_with_retry")
    def test_failure_records_to_circuit_breaker(self, mock_retry):
        mock_retry.side_effect = ValueError("Non-transient error")
        with pytest.raises(ValueError):
            resilient_llm_call("prompt")
        assert get_circuit_breaker().get_state("gemini") == "closed"  # only 1 failure

    @patch("ai_resilience._do_call")
    def test_permanent_error_is_not_retried(self, mock_call):
        mock_call.side_effect = ValueError("API key not valid")
        with pytest.raises(ValueError):
            resilient_llm_call("prompt")
        assert mock_call.call_count == 1

    @patch("ai_resilience._do_call")
    def test_transient_error_is_retried(self, mock_call):
        mock_call.side_effect = [ConnectionError("reset"), "recovered"]
        with patch("tenacity.nap.time.sleep"):
            text, _ = resilient_llm_call("prompt")
        assert text == "recovered"
        assert mock_call.call_count == 2

    @patch("ai_resilience._do_call")
    def test_retries_exhausted(self, mock_call):
        mock_call.side_effect = TimeoutError("deadline exceeded")
        with patch("tenacity.nap.time.sleep"), pytest.raises(TransientLLMError):
            resilient_llm_call("prompt")
        assert mock_call.call_count == 3
