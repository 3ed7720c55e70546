from __future__ import annotations

import math
import random


UNBOUNDED_RATE_TOKENS = {"inf", "infinity", "unbounded"}


def parse_request_rate(value: str | float | int) -> float:
    """Parse ``"inf"`` or a positive number of requests per second."""
    if isinstance(value, str):
        text = value.strip().lower()
        if text in UNBOUNDED_RATE_TOKENS:
            return math.inf
        try:
            rate = float(text)
        except ValueError as exc:
            raise ValueError(
                f"request_rate must be 'inf' or a positive number, got {value!r}"
            ) from exc
    else:
        rate = float(value)

    if math.isnan(rate) or rate <= 0:
        raise ValueError(f"request_rate must be > 0, got {value!r}")
    return rate


class ArrivalScheduler:
    """Inter-submission delays for an open-loop arrival pattern.

    An unbounded rate sends every request back-to-back. A finite rate samples
    exponential gaps with mean ``1 / rate``, i.e. a Poisson arrival process.
    """

    def __init__(
        self,
        request_rate: float,
        rng: random.Random | None = None,
        seed: int | None = None,
    ) -> None:
        if math.isnan(request_rate) or request_rate <= 0:
            raise ValueError("request_rate must be > 0")
        self.request_rate = request_rate
        # Random() without a seed draws from OS entropy.
        self._rng = rng or random.Random(seed)

    @property
    def unbounded(self) -> bool:
        return math.isinf(self.request_rate)

    def next_delay(self) -> float:
        if self.unbounded:
            return 0.0
        return self._rng.expovariate(self.request_rate)

    def __repr__(self) -> str:
        rate = "inf" if self.unbounded else f"{self.request_rate:g}"
        return f"ArrivalScheduler(request_rate={rate})"
