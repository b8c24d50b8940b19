import threading
import time

import pytest

from partner_sync.sync.concurrency import bounded_map, chunked
from partner_sync.sync.errors import ApiError


def test_outcomes_keep_input_order():
    def slow_echo(value):
        # Later items finish first.
        time.sleep(0.01 * (5 - value))
        return value * 10

    outcomes = bounded_map(slow_echo, range(5), max_workers=5)

    assert [outcome.item for outcome in outcomes] == [0, 1, 2, 3, 4]
    assert [outcome.value for outcome in outcomes] == [0, 10, 20, 30, 40]
    assert all(outcome.ok for outcome in outcomes)


def test_concurrency_is_bounded():
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def work(_):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.02)
        with lock:
            state["active"] -= 1

    bounded_map(work, range(12), max_workers=3)

    assert state["peak"] <= 3


def test_sync_errors_are_captured_per_item():
    def fetch(value):
        if value == 2:
            raise ApiError(500, f"/items/{value}")
        return value

    outcomes = bounded_map(fetch, [1, 2, 3], max_workers=2)

    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert outcomes[1].error.status_code == 500


def test_other_exceptions_propagate():
    def broken(_):
        raise KeyError("bug")

    with pytest.raises(KeyError):
        bounded_map(broken, [1], max_workers=4)


def test_empty_input():
    assert bounded_map(lambda value: value, []) == []


def test_chunked():
    assert [list(chunk) for chunk in chunked([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
    assert [list(chunk) for chunk in chunked([1], 0)] == [[1]]
