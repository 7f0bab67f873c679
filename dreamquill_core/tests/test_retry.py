import pytest

from dreamquill_core.domain.exceptions import StoreContention, StoreFailure
from dreamquill_core.infrastructure.storage.retry import retry_on_contention


def test_retries_contention_with_linear_backoff():
    delays = []
    attempts = {"n": 0}

    def action():
        attempts["n"] += 1
        if attempts["n"] < 3:
            raise StoreContention("database is locked")
        return "ok"

    assert retry_on_contention(action, max_retries=5, base_delay=0.1, sleep=delays.append) == "ok"
    assert attempts["n"] == 3
    assert delays == pytest.approx([0.1, 0.2])


def test_gives_up_after_max_retries():
    delays = []

    def action():
        raise StoreContention("busy")

    with pytest.raises(StoreContention):
        retry_on_contention(action, max_retries=5, base_delay=1.0, sleep=delays.append)
    assert delays == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_other_errors_are_not_retried():
    delays = []
    attempts = {"n": 0}

    def action():
        attempts["n"] += 1
        raise StoreFailure("corrupt")

    with pytest.raises(StoreFailure):
        retry_on_contention(action, max_retries=5, base_delay=1.0, sleep=delays.append)
    assert attempts["n"] == 1
    assert delays == []
