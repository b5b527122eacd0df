"""
Metrics for the request chain.

The chain only talks to :class:`MetricsClient`. Which backend sits behind it is
decided once by :func:`create_metrics_client` from :class:`Settings`:

- ``telegraf``: :class:`StatsdMetricsClient` over aio_statsd's TelegrafStatsdClient
- ``noop``: :class:`NoOpMetricsClient`, for tests and for callers that do not
  collect metrics

Metric names emitted by this package:

- ``xrpc.request.count`` (counter, tagged by method, attempt and status)
- ``xrpc.request.exception`` (counter, tagged by exception class)
- ``xrpc.request.time`` (timer, seconds)
- ``xrpc.ratelimit.remaining`` (gauge, when the service reports rate limits)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from aio_statsd import TelegrafStatsdClient

from social.graze.xrpc.app.config import Settings

logger = logging.getLogger(__name__)

Number = Union[int, float]
Tags = Optional[Dict[str, Any]]

METRICS_BACKENDS = ("telegraf", "noop")


class MetricsClient(ABC):
    """Counters, gauges and timers with StatsD-style tag dictionaries."""

    @abstractmethod
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        pass

    @abstractmethod
    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    @abstractmethod
    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        """Record a duration. ``value`` is in seconds."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class StatsdMetricsClient(MetricsClient):
    def __init__(self, telegraf_client: TelegrafStatsdClient):
        self.client = telegraf_client

    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        self.client.increment(name, value, tag_dict=tag_dict or {})

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.gauge(name, value, tag_dict=tag_dict or {})

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        self.client.timer(name, value, tag_dict=tag_dict or {})

    async def close(self) -> None:
        try:
            await self.client.close()
        except Exception as e:
            logger.warning("Error closing statsd client: %s", e)


class NoOpMetricsClient(MetricsClient):
    def increment(self, name: str, value: Number = 1, tag_dict: Tags = None) -> None:
        pass

    def gauge(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    def timer(self, name: str, value: Number, tag_dict: Tags = None) -> None:
        pass

    async def close(self) -> None:
        pass


async def create_metrics_client(
    settings: Settings,
    telegraf_client: Optional[TelegrafStatsdClient] = None,
) -> MetricsClient:
    """
    Create the metrics client selected by ``settings.metrics_backend``.

    A ``telegraf_client`` that is passed in is assumed to be connected already;
    otherwise one is created for ``statsd_host``:``statsd_port`` and connected.

    Raises:
        ValueError: If the backend is not one of ``METRICS_BACKENDS``.
    """
    backend = settings.metrics_backend.lower()

    if backend == "noop":
        logger.debug("Metrics collection disabled")
        return NoOpMetricsClient()

    if backend == "telegraf":
        if telegraf_client is None:
            telegraf_client = TelegrafStatsdClient(
                host=settings.statsd_host, port=settings.statsd_port, debug=settings.debug
            )
            await telegraf_client.connect()
        return StatsdMetricsClient(telegraf_client)

    raise ValueError(
        f"Invalid metrics backend: {backend}. Supported backends: {', '.join(METRICS_BACKENDS)}"
    )
