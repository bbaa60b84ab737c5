from __future__ import annotations

import logging
from typing import Iterator

from milkman_keeper.common import log_event
from milkman_keeper.trading import Swap, SwapQueue


def drain_snapshot(queue: SwapQueue) -> Iterator[Swap]:
    """Pop at most as many swaps as were queued when draining started.

    Swaps pushed back during the drain wait for the next cycle instead of
    being retried in a tight loop. Once the caller is done with a swap it is
    released, so a swap that was neither pushed back nor moved is forgotten.
    """
    for _ in range(len(queue)):
        swap = queue.pop()
        if swap is None:
            return
        try:
            yield swap
        finally:
            queue.release(swap.swap_id)


class ExecutionCircuitBreaker:
    """Pauses pairing after repeated consecutive failures.

    ``max_consecutive_failures`` of 0 disables the breaker, which keeps the
    plain retry-every-cycle behaviour.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        max_consecutive_failures: int = 0,
        cooldown_seconds: float = 300.0,
    ) -> None:
        self._logger = logger
        self.max_consecutive_failures = max(0, int(max_consecutive_failures))
        self.cooldown_seconds = max(0.0, float(cooldown_seconds))
        self.consecutive_failures = 0
        self.open_until = 0.0

    @property
    def enabled(self) -> bool:
        return self.max_consecutive_failures > 0

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.open_until - now)

    def is_open(self, now: float) -> bool:
        return self.remaining_seconds(now) > 0

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def record_failure(self, *, now: float, error: str = "") -> bool:
        """Count a failure; return True when this failure opened the breaker."""
        self.consecutive_failures += 1
        if not self.enabled or self.consecutive_failures < self.max_consecutive_failures:
            return False

        self.open_until = now + self.cooldown_seconds
        log_event(
            self._logger,
            level="warning",
            event="execution_circuit_breaker_opened",
            message="Execution circuit breaker opened after repeated pairing failures",
            error=error,
            cooldown_seconds=self.cooldown_seconds,
            threshold=self.max_consecutive_failures,
        )
        self.consecutive_failures = 0
        return True
