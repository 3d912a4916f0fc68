import pytest

from payment_queue.results import Failure, Success, as_result
from payment_queue.retry import decide_retry, next_delay_ms


def test_next_delay_ms_doubles_then_caps():
    delays = [next_delay_ms(k) for k in range(1, 9)]
    assert delays == [2000, 4000, 8000, 16000, 32000, 60000, 60000, 60000]
    assert next_delay_ms(10_000) == 60000


def test_next_delay_ms_never_below_two_seconds_for_a_retry():
    assert min(next_delay_ms(k) for k in range(1, 50)) == 2000
    assert max(next_delay_ms(k) for k in range(1, 50)) == 60000


def test_decide_retry_first_failure_schedules_retry():
    d = decide_retry(0, 3, Failure(RuntimeError("boom")))
    assert d.should_retry is True
    assert d.next_retry_count == 1
    assert d.delay_ms == 2000
    assert d.error_type == "RuntimeError"


def test_decide_retry_exhausted_dead_letters():
    d = decide_retry(2, 3, Failure(RuntimeError("boom")))
    assert d.should_retry is False
    assert d.delay_ms == 0
    assert d.next_retry_count == 3


def test_decide_retry_non_retryable_dead_letters_immediately():
    d = decide_retry(0, 5, Failure("card declined permanently", retryable=False))
    assert d.should_retry is False
    assert d.strategy == "none"


def test_decide_retry_treats_missing_or_negative_count_as_zero():
    assert decide_retry(-3, 3).next_retry_count == 1


def test_decide_retry_rejects_zero_max_retries():
    with pytest.raises(ValueError):
        decide_retry(0, 0)


@pytest.mark.parametrize("max_retries", [1, 2, 3, 5])
def test_always_failing_message_handled_exactly_max_retries_times(max_retries):
    retry_count = 0
    attempts = 0
    while True:
        attempts += 1
        d = decide_retry(retry_count, max_retries, Failure(RuntimeError("x")))
        if not d.should_retry:
            break
        assert d.next_retry_count == retry_count + 1
        retry_count = d.next_retry_count
    assert attempts == max_retries


def test_as_result_normalizes_plain_returns():
    assert as_result(None) == Success()
    assert as_result({"ok": 1}) == Success({"ok": 1})
    failure = Failure("nope")
    assert as_result(failure) is failure
    assert failure.reason == "nope"
    assert Failure(ValueError("bad")).reason == "ValueError: bad"
