from __future__ import annotations

import math
from pathlib import Path
import random
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from scheduler import ArrivalScheduler, parse_request_rate


@pytest.mark.parametrize("value", ["inf", "INF", " inf ", "unbounded"])
def test_parse_request_rate_unbounded(value: str) -> None:
    assert math.isinf(parse_request_rate(value))


def test_parse_request_rate_finite() -> None:
    assert parse_request_rate("2.5") == pytest.approx(2.5)
    assert parse_request_rate(4) == pytest.approx(4.0)


@pytest.mark.parametrize("value", ["0", "-1", "abc", "", "nan"])
def test_parse_request_rate_rejects_invalid_values(value: str) -> None:
    with pytest.raises(ValueError, match="request_rate"):
        parse_request_rate(value)


def test_unbounded_scheduler_always_returns_zero() -> None:
    scheduler = ArrivalScheduler(math.inf)
    assert scheduler.unbounded
    assert [scheduler.next_delay() for _ in range(100)] == [0.0] * 100


def test_poisson_scheduler_mean_converges_to_inverse_rate() -> None:
    rate = 5.0
    scheduler = ArrivalScheduler(rate, seed=1234)
    samples = [scheduler.next_delay() for _ in range(20000)]

    assert not scheduler.unbounded
    assert all(sample >= 0.0 for sample in samples)
    assert sum(samples) / len(samples) == pytest.approx(1.0 / rate, rel=0.05)


def test_poisson_scheduler_produces_sub_second_delays() -> None:
    scheduler = ArrivalScheduler(100.0, seed=7)
    samples = [scheduler.next_delay() for _ in range(200)]
    assert any(0.0 < sample < 0.01 for sample in samples)


def test_scheduler_uses_injected_rng() -> None:
    first = ArrivalScheduler(2.0, rng=random.Random(42))
    second = ArrivalScheduler(2.0, rng=random.Random(42))
    assert [first.next_delay() for _ in range(5)] == [second.next_delay() for _ in range(5)]


def test_scheduler_rejects_non_positive_rate() -> None:
    with pytest.raises(ValueError):
        ArrivalScheduler(0.0)
