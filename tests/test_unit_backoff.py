import pytest

from billing_sync.utils.backoff import delay_for, retry_schedule


def test_retry_schedule_is_one_three_nine_seconds():
    assert delay_for(2) == 1
    assert delay_for(3) == 3
    assert delay_for(4) == 9
    assert retry_schedule() == [1.0, 3.0, 9.0]
    assert sum(retry_schedule()) == 13


@pytest.mark.parametrize("attempt", [0, 1, 5, 10])
def test_no_delay_outside_queued_attempts(attempt):
    # attempt 1 is the synchronous write; nothing exists after the ceiling
    with pytest.raises(ValueError):
        delay_for(attempt)


def test_overrides():
    assert delay_for(3, base=2, factor=2, max_attempts=5) == 4
    assert delay_for(5, base=2, factor=2, max_attempts=5) == 16
    assert retry_schedule(max_attempts=2) == [1.0]
