from datetime import datetime, timezone

import groq
import httpx
import pytest

from voice_relay.config import GatewayConfig, PersonaConfig
from voice_relay.gateway import (
    DailyQuotaExceeded,
    GenerationGateway,
    RateLimited,
    UnknownGenerationError,
    classify,
    next_local_midnight_ms,
    parse_duration_ms,
)
from voice_relay.protocol import ContextTurn

from conftest import fake_groq_client

_REQUEST = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")


def _rate_limit(message: str, retry_after: str | None = None) -> groq.RateLimitError:
    headers = {"retry-after": retry_after} if retry_after is not None else {}
    response = httpx.Response(429, request=_REQUEST, headers=headers)
    return groq.RateLimitError(message, response=response, body=None)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def test_daily_limit_becomes_quota_error():
    exc = _rate_limit("Rate limit reached for model on tokens per day (TPD): Limit 100000")
    error = classify(exc, default_retry_after_ms=5000)

    assert isinstance(error, DailyQuotaExceeded)
    assert error.code == "DailyQuotaExceeded"
    assert error.resets_at_ms == next_local_midnight_ms()


def test_retry_after_header_wins():
    error = classify(_rate_limit("Rate limit reached, try again in 9s", retry_after="2"), 5000)

    assert isinstance(error, RateLimited)
    assert error.retry_after_ms == 2000


def test_retry_hint_in_message():
    error = classify(_rate_limit("Rate limit reached for requests. Please try again in 1m2.5s."), 5000)

    assert isinstance(error, RateLimited)
    assert error.retry_after_ms == 62500


def test_rate_limit_without_hint_uses_default():
    error = classify(_rate_limit("Too many requests"), 5000)

    assert isinstance(error, RateLimited)
    assert error.retry_after_ms == 5000


def test_timeout_and_connection_errors_are_unknown():
    timeout = classify(groq.APITimeoutError(request=_REQUEST), 5000)
    offline = classify(groq.APIConnectionError(request=_REQUEST), 5000)

    assert isinstance(timeout, UnknownGenerationError)
    assert "timed out" in str(timeout)
    assert timeout.code == "Unknown"
    assert "connectivity" in str(offline)


def test_other_errors_keep_their_message():
    error = classify(RuntimeError("model decommissioned"), 5000)
    assert isinstance(error, UnknownGenerationError)
    assert str(error) == "model decommissioned"


@pytest.mark.parametrize(
    "text, expected",
    [("37s", 37000), ("850ms", 850), ("1m2.5s", 62500), ("1h", 3_600_000), ("soon", None)],
)
def test_parse_duration_ms(text, expected):
    assert parse_duration_ms(text) == expected


def test_next_local_midnight():
    now = datetime(2024, 3, 9, 22, 15, tzinfo=timezone.utc)
    expected = datetime(2024, 3, 10, tzinfo=timezone.utc)
    assert next_local_midnight_ms(now) == int(expected.timestamp() * 1000)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

def _gateway(client=None, **overrides) -> GenerationGateway:
    return GenerationGateway(GatewayConfig(**overrides), PersonaConfig(), client=client)


def test_messages_are_system_history_then_user():
    history = [
        ContextTurn(role="user" if i % 2 == 0 else "assistant", text=f"turn {i}")
        for i in range(9)
    ]
    messages = _gateway(history_turns=6).build_messages("What is the price?", "ta-IN", history)

    assert messages[0]["role"] == "system"
    assert "Rev" in messages[0]["content"]
    assert "Revolt Motors" in messages[0]["content"]
    assert "Tamil" in messages[0]["content"]
    assert [m["content"] for m in messages[1:-1]] == [f"turn {i}" for i in range(3, 9)]
    assert messages[-1] == {"role": "user", "content": "What is the price?"}


def test_trailing_copy_of_current_text_is_not_repeated():
    history = [
        ContextTurn(role="assistant", text="Hi, ask me anything."),
        ContextTurn(role="user", text="Tell me about RV1"),
    ]
    messages = _gateway().build_messages("Tell me about RV1", "en-US", history)

    assert [m["content"] for m in messages[1:]] == ["Hi, ask me anything.", "Tell me about RV1"]


async def test_generate_returns_stripped_answer():
    client = fake_groq_client("  The RV1 costs about 85,000 rupees.  ")
    answer = await _gateway(client).generate(model="llama-3.1-8b-instant", text="Price?", language="en-US")

    assert answer == "The RV1 costs about 85,000 rupees."
    [call] = client.calls
    assert call["model"] == "llama-3.1-8b-instant"
    assert call["temperature"] == 0.7
    assert call["max_tokens"] == 150
    assert call["stream"] is False


async def test_generate_raises_classified_error():
    cause = _rate_limit("Rate limit reached, please try again in 3s")
    gateway = _gateway(fake_groq_client(error=cause))

    with pytest.raises(RateLimited) as info:
        await gateway.generate(model="llama-3.3-70b-versatile", text="hi", language="en-US")

    assert info.value.retry_after_ms == 3000
    assert info.value.__cause__ is cause


def test_backup_model():
    assert _gateway(backup_models=["gemma2-9b-it"]).backup_model == "gemma2-9b-it"
    assert _gateway(model="m", backup_models=[]).backup_model == "m"
