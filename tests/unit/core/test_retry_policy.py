import pytest

from app.shared.core.exceptions import DeliveryError, ProviderTransientError, ValidationError
from app.shared.core.retry import BackoffKind, RetryPolicy, compute_backoff_seconds, notification_policy


def test_exponential_backoff_doubles_per_attempt():
    assert [compute_backoff_seconds(BackoffKind.EXPONENTIAL, 2.0, n) for n in (1, 2, 3)] == [
        2.0,
        4.0,
        8.0,
    ]


def test_linear_backoff_grows_by_base():
    assert [compute_backoff_seconds("linear", 1.0, n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]


def test_backoff_respects_cap():
    assert compute_backoff_seconds(BackoffKind.EXPONENTIAL, 2.0, 10, max_seconds=30.0) == 30.0


def test_notification_policy_defaults():
    policy = notification_policy("notify_email")
    assert policy.max_attempts == 3
    assert policy.backoff == BackoffKind.EXPONENTIAL
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(2) == 4.0


def _instant(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(name="test", max_attempts=max_attempts, base_delay=0, max_delay=0)


@pytest.mark.asyncio
async def test_run_retries_until_success():
    calls = {"n": 0}

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ProviderTransientError("throttled")
        return "ok"

    outcome = await _instant().run(flaky)

    assert outcome.succeeded
    assert outcome.value == "ok"
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_run_stops_on_non_retryable_error():
    calls = {"n": 0}

    async def broken():
        calls["n"] += 1
        raise ValidationError("bad input")

    outcome = await _instant().run(broken)

    assert not outcome.succeeded
    assert outcome.attempts == 1
    assert calls["n"] == 1
    assert isinstance(outcome.error, ValidationError)


@pytest.mark.asyncio
async def test_run_returns_last_error_when_budget_exhausted():
    async def always_down():
        raise DeliveryError("503", code="webhook_http_error")

    outcome = await _instant(max_attempts=2).run(always_down)

    assert outcome.attempts == 2
    assert isinstance(outcome.error, DeliveryError)


@pytest.mark.asyncio
async def test_with_predicate_overrides_retry_decision():
    calls = {"n": 0}

    async def boom():
        calls["n"] += 1
        raise RuntimeError("never retry me")

    policy = _instant().with_predicate(lambda exc: False)
    outcome = await policy.run(boom)

    assert outcome.attempts == 1
    assert policy.max_attempts == 3
