"""AI Resilience Layer — Retry, Circuit Breaker, Cache, Cost Tracking.

Provides a unified resilient_llm_call() entry point that wraps every Gemini
call (schedule generation, question generation, message rephrasing) with
retry logic, circuit breaking, response caching, and cost tracking.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass

from flask import current_app, has_app_context
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cache_backend import KEY_PREFIX
from errors import AIUnavailable

logger = logging.getLogger(__name__)

PROVIDER = "gemini"
DEFAULT_MODEL = "gemini-2.5-flash"


# ── TTL Cache ───────────────────────────────────────────────

class TTLCache:
    """In-memory dict with expiry timestamps and LRU eviction at 1000 entries."""

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self._store: dict[str, tuple[str, float]] = {}  # key -> (value, expires_at)
        self._lock = threading.Lock()

    @staticmethod
    def _make_key(prompt: str, model: str, options: str = "") -> str:
        raw = f"{prompt}|{model}|{options}"
        return KEY_PREFIX + "llm:" + hashlib.sha256(raw.encode()).hexdigest()

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.time() > expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int = 86400) -> None:
        with self._lock:
            if len(self._store) >= self.MAX_ENTRIES:
                self._evict_oldest()
            self._store[key] = (value, time.time() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)

    def _evict_oldest(self) -> None:
        """Remove the entry with the earliest expiry."""
        if not self._store:
            return
        oldest_key = min(self._store, key=lambda k: self._store[k][1])
        del self._store[oldest_key]

    def cleanup(self) -> int:
        """Remove all expired entries. Returns count removed."""
        now = time.time()
        with self._lock:
            expired = [k for k, (_, exp) in self._store.items() if now > exp]
            for k in expired:
                del self._store[k]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


# ── Circuit Breaker ─────────────────────────────────────────

@dataclass
class _ProviderState:
    failures: int = 0
    state: str = "closed"  # closed | open | half_open
    last_failure_time: float = 0.0


class CircuitBreaker:
    """Per-provider state machine: closed -> open -> half_open -> closed."""

    FAILURE_THRESHOLD = 3
    RECOVERY_TIMEOUT = 60  # seconds

    def __init__(self) -> None:
        self._providers: dict[str, _ProviderState] = {}
        self._lock = threading.Lock()

    def _get_state(self, provider: str) -> _ProviderState:
        if provider not in self._providers:
            self._providers[provider] = _ProviderState()
        return self._providers[provider]

    def record_success(self, provider: str) -> None:
        with self._lock:
            state = self._get_state(provider)
            state.failures = 0
            state.state = "closed"

    def record_failure(self, provider: str) -> None:
        with self._lock:
            state = self._get_state(provider)
            state.failures += 1
            state.last_failure_time = time.time()
            if state.failures >= self.FAILURE_THRESHOLD:
                state.state = "open"

    def is_open(self, provider: str) -> bool:
        with self._lock:
            state = self._get_state(provider)
            if state.state == "closed":
                return False
            if state.state == "open":
                elapsed = time.time() - state.last_failure_time
                if elapsed >= self.RECOVERY_TIMEOUT:
                    state.state = "half_open"
                    return False  # allow one attempt
                return True
            # half_open — allow attempt
            return False

    def get_state(self, provider: str) -> str:
        with self._lock:
            return self._get_state(provider).state

    def reset(self) -> None:
        with self._lock:
            self._providers.clear()


# Module-level singleton
_circuit_breaker = CircuitBreaker()


# ── Cost Tracker ────────────────────────────────────────────

# Approximate pricing per 1M tokens (input + output averaged)
_MODEL_PRICING: dict[str, float] = {
    "gemini-2.5-flash": 0.30,
    "gemini-2.0-flash": 0.075,
    "gemini-1.5-flash": 0.075,
}


class CostTracker:
    """Estimates tokens from character count and applies model-specific pricing."""

    @staticmethod
    def estimate_tokens(text: str) -> int:
        """Rough estimate: 1 token ~ 4 characters."""
        return max(1, len(text) // 4)

    @staticmethod
    def track_call(model: str, input_text: str, output_text: str, latency_ms: int) -> dict:
        input_tokens = CostTracker.estimate_tokens(input_text)
        output_tokens = CostTracker.estimate_tokens(output_text)
        total_tokens = input_tokens + output_tokens

        price_per_million = _MODEL_PRICING.get(model, 1.0)
        cost_usd = (total_tokens / 1_000_000) * price_per_million

        return {
            "input_tokens_est": input_tokens,
            "output_tokens_est": output_tokens,
            "total_tokens_est": total_tokens,
            "cost_estimate_usd": round(cost_usd, 6),
            "model": model,
            "latency_ms": latency_ms,
        }


# ── Transient error detection ───────────────────────────────

_TRANSIENT_ERRORS = (
    ConnectionError,
    TimeoutError,
)


def _is_transient(exc: BaseException) -> bool:
    """Check if an exception is transient (worth retrying)."""
    if isinstance(exc, _TRANSIENT_ERRORS):
        return True
    msg = str(exc).lower()
    transient_patterns = [
        "rate limit",
        "429",
        "503",
        "502",
        "500",
        "overloaded",
        "temporarily unavailable",
        "timeout",
        "deadline exceeded",
    ]
    return any(p in msg for p in transient_patterns)


class TransientLLMError(Exception):
    """Wrapper for transient LLM errors that should be retried."""
    pass


# ── Main entry point ────────────────────────────────────────

def _api_key() -> str:
    if has_app_context():
        key = current_app.config.get("GOOGLE_API_KEY", "")
        if key:
            return key
    return os.getenv("GOOGLE_API_KEY", "")


def default_model() -> str:
    if has_app_context():
        return current_app.config.get("GEMINI_MODEL", DEFAULT_MODEL)
    return DEFAULT_MODEL


def _do_call(model: str, prompt: str, generation_config: dict) -> str:
    """Execute the actual Gemini call (no retry, no cache)."""
    import google.generativeai as genai

    genai.configure(api_key=_api_key())
    m = genai.GenerativeModel(model, generation_config=generation_config or None)
    response = m.generate_content(prompt)
    return response.text or ""


@retry(
    retry=retry_if_exception_type(TransientLLMError),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(3),
    reraise=True,
)
def _call_with_retry(model: str, prompt: str, generation_config: dict) -> str:
    """Call Gemini with tenacity retry on transient errors."""
    try:
        return _do_call(model, prompt, generation_config)
    except Exception as exc:
        if _is_transient(exc):
            raise TransientLLMError(str(exc)) from exc
        raise


def resilient_llm_call(
    prompt: str,
    *,
    model: str | None = None,
    json_mode: bool = False,
    response_schema: dict | None = None,
    temperature: float | None = None,
    max_output_tokens: int | None = None,
    cache_ttl: int = 0,
) -> tuple[str, dict]:
    """Main entry point for resilient Gemini calls.

    Args:
        prompt: The prompt text
        model: Model name (defaults to GEMINI_MODEL)
        json_mode: Ask for an application/json response
        response_schema: Optional response schema for JSON mode
        temperature, max_output_tokens: Generation parameters
        cache_ttl: Cache TTL in seconds (0 = no caching)

    Returns:
        (response_text, metadata_dict) where metadata includes tokens, cost,
        latency, cache_hit, provider, model.

    Raises:
        AIUnavailable: no API key configured or the circuit breaker is open.
    """
    model = model or default_model()
    if not _api_key():
        raise AIUnavailable("GOOGLE_API_KEY is not set.")
    if _circuit_breaker.is_open(PROVIDER):
        raise AIUnavailable(f"Circuit breaker open for provider: {PROVIDER}")

    generation_config: dict = {}
    if json_mode:
        generation_config["response_mime_type"] = "application/json"
    if response_schema:
        generation_config["response_schema"] = response_schema
    if temperature is not None:
        generation_config["temperature"] = temperature
    if max_output_tokens is not None:
        generation_config["max_output_tokens"] = max_output_tokens

    from cache_backend import get_cache as _get_cache_backend
    cache = _get_cache_backend()

    cache_key = TTLCache._make_key(prompt, model, repr(sorted(generation_config.items())))
    if cache_ttl > 0:
        cached = cache.get(cache_key)
        if isinstance(cached, dict) and "text" in cached:
            return cached["text"], {
                "cache_hit": True,
                "provider": PROVIDER,
                "model": model,
                "input_tokens_est": 0,
                "output_tokens_est": 0,
                "cost_estimate_usd": 0.0,
                "latency_ms": 0,
            }

    start = time.time()
    try:
        response_text = _call_with_retry(model, prompt, generation_config)
    except Exception:
        _circuit_breaker.record_failure(PROVIDER)
        raise

    latency_ms = int((time.time() - start) * 1000)
    _circuit_breaker.record_success(PROVIDER)

    if cache_ttl > 0:
        cache.set(cache_key, {"text": response_text}, cache_ttl)

    metrics = CostTracker.track_call(model, prompt, response_text, latency_ms)
    metrics["cache_hit"] = False
    metrics["provider"] = PROVIDER
    logger.info("gemini call model=%s latency=%dms tokens~%d", model, latency_ms, metrics["total_tokens_est"])

    return response_text, metrics


def get_circuit_breaker() -> CircuitBreaker:
    """Access the module-level circuit breaker singleton."""
    return _circuit_breaker
