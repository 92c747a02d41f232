import pytest

from app.core.retry import RetryPolicy, call_with_retry, exponential_backoff


class Flaky(Exception):
    def __init__(self, retry_after: float | None = None) -> None:
        super().__init__("flaky")
        self.retry_after = retry_after


def _failing(times: int, exc_factory=Flaky):
    calls = {"count": 0}

    def _operation() -> str:
        calls["count"] += 1
        if calls["count"] <= times:
            raise exc_factory()
        return "done"

    return _operation, calls


def test_returns_after_transient_failures() -> None:
    operation, calls = _failing(2)
    sleeps: list[float] = []

    result = call_with_retry(
        operation,
        RetryPolicy(limit=3, backoff=exponential_backoff(0.5)),
        retry_on=(Flaky,),
        sleep=sleeps.append,
    )

    assert result == "done"
    assert calls["count"] == 3
    assert sleeps == [0.5, 1.0]


def test_reraises_when_exhausted() -> None:
    operation, calls = _failing(10)
    retries: list[int] = []

    with pytest.raises(Flaky):
        call_with_retry(
            operation,
            RetryPolicy(limit=2),
            retry_on=(Flaky,),
            sleep=lambda _: None,
            on_retry=lambda retry, delay, exc: retries.append(retry),
        )

    assert calls["count"] == 3
    assert retries == [0, 1]


def test_retry_after_hint_overrides_backoff() -> None:
    operation, _ = _failing(1, exc_factory=lambda: Flaky(retry_after=9))
    sleeps: list[float] = []

    call_with_retry(
        operation,
        RetryPolicy(limit=1, backoff=exponential_backoff(1)),
        retry_on=(Flaky,),
        sleep=sleeps.append,
    )

    assert sleeps == [9]


def test_other_exceptions_are_not_retried() -> None:
    operation, calls = _failing(1, exc_factory=lambda: ValueError("bad"))

    with pytest.raises(ValueError):
        call_with_retry(operation, RetryPolicy(limit=5), retry_on=(Flaky,), sleep=lambda _: None)

    assert calls["count"] == 1


def test_policy_allows_below_limit() -> None:
    policy = RetryPolicy(limit=3)

    assert [policy.allows(failures) for failures in range(5)] == [True, True, True, False, False]
