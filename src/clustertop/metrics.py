"""Cluster metrics interface and its Prometheus implementation."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta

import httpx

from clustertop.errors import BadParameter, UnsupportedError
from clustertop.models import Series
from clustertop.query import QueryExecutor

logger = logging.getLogger(__name__)

QUERY_TOTAL_CPU = "cluster:cpu_total"
QUERY_TOTAL_MEMORY = "cluster:memory_total_bytes"
QUERY_CPU_RATE = "cluster:cpu_usage_rate"
QUERY_MEMORY_RATE = "cluster:memory_usage_rate"


def _check_time(name: str, moment: datetime) -> None:
    if not isinstance(moment, datetime):
        raise BadParameter(f"{name} must be a datetime, got {moment!r}")
    if moment.tzinfo is None or moment.utcoffset() is None:
        raise BadParameter(f"{name} must be timezone-aware, got {moment!r}")


def check_range(start: datetime, end: datetime, step: timedelta) -> None:
    """Validate the arguments of a range query."""
    _check_time("start", start)
    _check_time("end", end)
    if start > end:
        raise BadParameter(f"start {start} is after end {end}")
    if not isinstance(step, timedelta) or step <= timedelta(0):
        raise BadParameter(f"step must be a positive timedelta, got {step!r}")


def check_window(start: datetime, end: datetime) -> None:
    """Validate the arguments of a peak query; the window must not be empty."""
    _check_time("start", start)
    _check_time("end", end)
    if start >= end:
        raise BadParameter(f"empty window: start {start} is not before end {end}")


def max_over_window(query: str, start: datetime, end: datetime) -> str:
    """Wrap a query so that evaluating it at `end` gives its peak since `start`."""
    width_ms = int((end - start) / timedelta(milliseconds=1))
    if width_ms < 1:
        raise BadParameter(f"window {end - start} is shorter than a millisecond")
    return f"max_over_time({query}[{width_ms}ms])"


class Metrics(ABC):
    """
    Cluster metrics source.

    Any backend that implements the abstract operations can drive the
    display. The total memory and peak operations are optional: the base
    implementation validates arguments and raises UnsupportedError without
    contacting anything.

    All operations are coroutines and can be cancelled.
    """

    @abstractmethod
    async def get_total_cpu(self) -> int:
        """Get the total number of CPU cores in the cluster."""

    async def get_total_memory(self) -> int:
        """Get the total amount of RAM in the cluster, in bytes."""
        raise UnsupportedError("total memory is not supported by this backend")

    @abstractmethod
    async def get_cpu_rate(self, start: datetime, end: datetime, step: timedelta) -> Series:
        """Get CPU usage rate over [start, end] sampled every step."""

    @abstractmethod
    async def get_memory_rate(self, start: datetime, end: datetime, step: timedelta) -> Series:
        """Get RAM usage rate over [start, end] sampled every step."""

    @abstractmethod
    async def get_current_cpu_rate(self) -> int:
        """Get the instantaneous CPU usage rate."""

    @abstractmethod
    async def get_current_memory_rate(self) -> int:
        """Get the instantaneous RAM usage rate."""

    async def get_max_cpu_rate(self, start: datetime, end: datetime) -> int:
        """Get the highest CPU usage rate within [start, end]."""
        check_window(start, end)
        raise UnsupportedError("peak CPU rate is not supported by this backend")

    async def get_max_memory_rate(self, start: datetime, end: datetime) -> int:
        """Get the highest RAM usage rate within [start, end]."""
        check_window(start, end)
        raise UnsupportedError("peak memory rate is not supported by this backend")

    async def aclose(self) -> None:
        """Release resources held by the source."""


class PrometheusMetrics(Metrics):
    """Metrics backed by the recording rules of an in-cluster Prometheus."""

    def __init__(self, executor: QueryExecutor) -> None:
        self._executor = executor

    @classmethod
    def from_address(cls, address: str, timeout: float = 10.0) -> "PrometheusMetrics":
        """
        Create a client for the Prometheus at `address`.

        Args:
            address: host:port or a full http(s) URL.
            timeout: Per-request timeout in seconds.

        Raises:
            BadParameter: The address cannot be turned into a URL.
        """
        base_url = normalize_address(address)
        client = httpx.AsyncClient(base_url=base_url, timeout=timeout)
        logger.info("Using Prometheus at %s (timeout=%.1fs)", base_url, timeout)
        return cls(QueryExecutor(client))

    async def aclose(self) -> None:
        """Release the HTTP client."""
        await self._executor.client.aclose()

    async def __aenter__(self) -> "PrometheusMetrics":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def get_total_cpu(self) -> int:
        return await self._executor.instant(QUERY_TOTAL_CPU)

    async def get_total_memory(self) -> int:
        return await self._executor.instant(QUERY_TOTAL_MEMORY)

    async def get_cpu_rate(self, start: datetime, end: datetime, step: timedelta) -> Series:
        check_range(start, end, step)
        return await self._executor.range(QUERY_CPU_RATE, start, end, step)

    async def get_memory_rate(self, start: datetime, end: datetime, step: timedelta) -> Series:
        check_range(start, end, step)
        return await self._executor.range(QUERY_MEMORY_RATE, start, end, step)

    async def get_current_cpu_rate(self) -> int:
        return await self._executor.instant(QUERY_CPU_RATE)

    async def get_current_memory_rate(self) -> int:
        return await self._executor.instant(QUERY_MEMORY_RATE)

    async def get_max_cpu_rate(self, start: datetime, end: datetime) -> int:
        check_window(start, end)
        return await self._executor.instant(max_over_window(QUERY_CPU_RATE, start, end), at=end)

    async def get_max_memory_rate(self, start: datetime, end: datetime) -> int:
        check_window(start, end)
        return await self._executor.instant(
            max_over_window(QUERY_MEMORY_RATE, start, end), at=end
        )


def normalize_address(address: str) -> str:
    """Turn host:port or a URL into a base URL for the HTTP client."""
    address = address.strip()
    if not address:
        raise BadParameter("backend address is empty")
    if "://" not in address:
        address = f"http://{address}"
    try:
        url = httpx.URL(address)
    except httpx.InvalidURL as exc:
        raise BadParameter(f"invalid backend address {address!r}: {exc}") from exc
    if url.scheme not in ("http", "https") or not url.host:
        raise BadParameter(f"invalid backend address {address!r}")
    return str(url).rstrip("/")
