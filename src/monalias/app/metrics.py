"""
Metrics for the Monalias service

Resolution outcomes, rate limiter rejections and identity checks are reported
through a small backend-agnostic interface so that handlers and tasks never
depend on a concrete metrics library.

- MetricsClient: what handlers, tasks and the watchdog talk to
- StatsdMetricsClient: forwards to aio_statsd's TelegrafStatsdClient
- NoOpMetricsClient: used when metrics are disabled and in tests
- create_metrics_client: picks a backend from the `metrics_backend` setting
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

logger = logging.getLogger(__name__)

Number = Union[int, float]
Tags = Optional[Dict[str, Any]]

BACKENDS = ("telegraf", "none")


class MetricsClient(ABC):
    """
    Abstract metrics sink.

    Tags are StatsD-style dictionaries and the backend stringifies their
    values. Metric names are dotted and prefixed with `monalias.`.
    """

    @abstractmethod
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        """Bump a counter, e.g. `monalias.resolve.result`."""

    @abstractmethod
    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        """Report a point-in-time value, e.g. `monalias.rate_limit.buckets`."""

    @abstractmethod
    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        """Report a duration in seconds."""

    async def connect(self) -> None:
        return None

    @abstractmethod
    async def close(self) -> None: ...


class StatsdMetricsClient(MetricsClient):
    def __init__(self, statsd_client: Any):
        self.client = statsd_client

    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        self.client.increment(name, value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.gauge(name, value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.timer(name, value, tag_dict=tag_dict or {})

    async def connect(self) -> None:
        await self.client.connect()

    async def close(self) -> None:
        # shutdown continues even if the UDP transport is already gone
        try:
            await self.client.close()
        except Exception as e:
            logger.warning("Error closing statsd client: %s", e)


class NoOpMetricsClient(MetricsClient):
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        return None

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        return None

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        return None

    async def close(self) -> None:
        return None


def create_metrics_client(
    backend: str,
    host: str = "localhost",
    port: int = 8125,
    debug: bool = False,
) -> MetricsClient:
    """
    Build the metrics client named by `backend` ('telegraf' or 'none', any case).

    Raises ValueError for any other name so a typo in MONALIAS_METRICS_BACKEND
    fails at startup instead of silently dropping metrics.
    """
    selected = backend.lower()

    if selected == "telegraf":
        return StatsdMetricsClient(
            TelegrafStatsdClient(host=host, port=port, debug=debug)
        )
    if selected == "none":
        logger.info("Metrics disabled, using no-op client")
        return NoOpMetricsClient()

    raise ValueError(
        f"Invalid metrics backend: {backend}. Expected one of {', '.join(BACKENDS)}"
    )
