import random
from datetime import datetime
from typing import Callable, Optional

from .config import Config
from .models import Outcome, RetryDecision, FAILED, ABANDONED
from .utils import iso_after_ms, utc_now


class RetryPolicy:
    """
    Decides whether a failed attempt is retried and when.

    Exponential backoff with jitter:
        delay = min(cap, base * 2**attempts) + uniform(0, base)
    Pure apart from the injected clock and RNG, so tests pin both.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_ms: int = 5000,
        backoff_cap_ms: int = 300000,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.backoff_cap_ms = backoff_cap_ms
        self.clock = clock
        self.rng = rng or random.Random()

    @classmethod
    def from_config(cls, config: Config, clock: Callable[[], datetime] = utc_now,
                    rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            backoff_cap_ms=config.backoff_cap_ms,
            clock=clock,
            rng=rng,
        )

    def delay_ms(self, attempts: int) -> float:
        backoff = min(self.backoff_cap_ms, self.base_delay_ms * (2 ** attempts))
        return backoff + self.rng.uniform(0, self.base_delay_ms)

    def on_failure(self, attempts: int, max_attempts: Optional[int] = None,
                   now: Optional[datetime] = None) -> RetryDecision:
        limit = self.max_attempts if max_attempts is None else max_attempts
        if attempts >= limit:
            return RetryDecision(retry=False)
        now = now or self.clock()
        return RetryDecision(retry=True, next_attempt_at=iso_after_ms(now, self.delay_ms(attempts)))

    def outcome_for_failure(self, attempts: int, error: str, max_attempts: Optional[int] = None,
                            now: Optional[datetime] = None) -> Outcome:
        decision = self.on_failure(attempts, max_attempts=max_attempts, now=now)
        if decision.retry:
            return Outcome(status=FAILED, error=error, next_attempt_at=decision.next_attempt_at)
        return Outcome(status=ABANDONED, error=error)
