import asyncio


class HealthGauge:
    """
    Makeshift health check used by the readiness probe.

    Unexpected errors (storage or wallet failures, unhandled exceptions) bump
    an error score, a background task decays it over time. A burst of errors
    pushes the score past the threshold and readiness fails until it settles.
    Expected outcomes such as unknown aliases or a locked instance do not count.
    """

    def __init__(self, error_score: int = 0, threshold: int = 100) -> None:
        self._error_score = error_score
        self._threshold = threshold
        self._lock = asyncio.Lock()

    async def womp(self, weight: int = 1) -> int:
        """Record an unexpected error and return the new score."""
        async with self._lock:
            self._error_score += weight
            return self._error_score

    async def tick(self) -> None:
        async with self._lock:
            self._error_score = max(0, self._error_score - 1)

    async def score(self) -> int:
        async with self._lock:
            return self._error_score

    async def is_healthy(self) -> bool:
        return await self.score() <= self._threshold
