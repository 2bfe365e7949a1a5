"""Tests for the Metrics interface and PrometheusMetrics."""

from datetime import datetime, timedelta

import httpx
import pytest

from clustertop.errors import BackendError, BadParameter, ShapeError, UnsupportedError
from clustertop.metrics import (
    QUERY_CPU_RATE,
    QUERY_MEMORY_RATE,
    QUERY_TOTAL_CPU,
    QUERY_TOTAL_MEMORY,
    Metrics,
    PrometheusMetrics,
    max_over_window,
    normalize_address,
)
from clustertop.query import format_timestamp
from fakes import T0, json_reply, matrix_response, prometheus, samples, vector_response

HOUR = timedelta(hours=1)
STEP = timedelta(seconds=15)


class Recorder:
    """Mock backend answering by query string and recording requests."""

    def __init__(self, replies: dict[str, dict]) -> None:
        self.replies = replies
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return json_reply(self.replies[request.url.params["query"]])


def backend_must_not_be_called(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request {request.url}")


class TestInstantQueries:
    """Tests for total and current value operations."""

    @pytest.mark.asyncio
    async def test_total_cpu(self):
        """Test a single-element vector [{value: 4}] gives 4 cores."""
        backend = Recorder({QUERY_TOTAL_CPU: vector_response(4)})
        metrics = prometheus(backend)

        assert await metrics.get_total_cpu() == 4
        assert backend.requests[0].url.path == "/api/v1/query"

    @pytest.mark.asyncio
    async def test_total_memory(self):
        """Test total memory is queried from its own recording rule."""
        backend = Recorder({QUERY_TOTAL_MEMORY: vector_response(17179869184)})
        assert await prometheus(backend).get_total_memory() == 16 * 1024**3

    @pytest.mark.asyncio
    async def test_current_rates(self):
        """Test current rates use the usage rate rules and truncate values."""
        backend = Recorder(
            {QUERY_CPU_RATE: vector_response("37.9"), QUERY_MEMORY_RATE: vector_response("52.1")}
        )
        metrics = prometheus(backend)

        assert await metrics.get_current_cpu_rate() == 37
        assert await metrics.get_current_memory_rate() == 52

    @pytest.mark.asyncio
    async def test_multi_element_vector(self):
        """Test several series for a current value is a ShapeError."""
        backend = Recorder({QUERY_TOTAL_CPU: vector_response(2, 2)})
        with pytest.raises(ShapeError):
            await prometheus(backend).get_total_cpu()


class TestRangeQueries:
    """Tests for usage rate series."""

    @pytest.mark.asyncio
    async def test_cpu_rate(self):
        """Test the CPU rate series is decoded in order."""
        backend = Recorder({QUERY_CPU_RATE: matrix_response(samples(4))})
        result = await prometheus(backend).get_cpu_rate(T0 - HOUR, T0, STEP)

        assert result.values() == [0, 10, 20, 30]
        params = backend.requests[0].url.params
        assert backend.requests[0].url.path == "/api/v1/query_range"
        assert params["step"] == "15.000"

    @pytest.mark.asyncio
    async def test_memory_rate(self):
        """Test the memory rate series uses the memory rule."""
        backend = Recorder({QUERY_MEMORY_RATE: matrix_response(samples(2))})
        result = await prometheus(backend).get_memory_rate(T0 - HOUR, T0, STEP)
        assert len(result) == 2

    @pytest.mark.asyncio
    async def test_start_equals_end_is_allowed(self):
        """Test a zero-width range is a valid range query."""
        backend = Recorder({QUERY_CPU_RATE: matrix_response(samples(1))})
        assert len(await prometheus(backend).get_cpu_rate(T0, T0, STEP)) == 1

    @pytest.mark.asyncio
    async def test_two_rows(self):
        """Test a matrix with two rows is a ShapeError."""
        backend = Recorder({QUERY_CPU_RATE: matrix_response(samples(2), samples(2))})
        with pytest.raises(ShapeError):
            await prometheus(backend).get_cpu_rate(T0 - HOUR, T0, STEP)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "start, end, step",
        [
            (T0, T0 - HOUR, STEP),
            (T0 - HOUR, T0, timedelta(0)),
            (T0 - HOUR, T0, -STEP),
            (T0 - HOUR, T0, 15),
            (datetime(2026, 10, 17, 11, 0), T0, STEP),
        ],
    )
    async def test_bad_parameters_never_reach_backend(self, start, end, step):
        """Test precondition violations fail fast with BadParameter."""
        metrics = prometheus(backend_must_not_be_called)
        with pytest.raises(BadParameter):
            await metrics.get_cpu_rate(start, end, step)
        with pytest.raises(BadParameter):
            await metrics.get_memory_rate(start, end, step)


class TestPeakQueries:
    """Tests for peak rate operations."""

    @pytest.mark.asyncio
    async def test_max_cpu_rate(self):
        """Test the peak is an instant max_over_time query evaluated at end."""
        query = max_over_window(QUERY_CPU_RATE, T0 - HOUR, T0)
        backend = Recorder({query: vector_response("91.4")})

        assert await prometheus(backend).get_max_cpu_rate(T0 - HOUR, T0) == 91
        params = backend.requests[0].url.params
        assert params["query"] == "max_over_time(cluster:cpu_usage_rate[3600000ms])"
        assert params["time"] == format_timestamp(T0)

    @pytest.mark.asyncio
    async def test_max_memory_rate(self):
        """Test the memory peak uses the memory rule."""
        query = "max_over_time(cluster:memory_usage_rate[300000ms])"
        backend = Recorder({query: vector_response(63)})
        start = T0 - timedelta(minutes=5)
        assert await prometheus(backend).get_max_memory_rate(start, T0) == 63

    @pytest.mark.asyncio
    async def test_start_equals_end(self):
        """Test an empty peak window is a BadParameter and is never sent."""
        metrics = prometheus(backend_must_not_be_called)
        with pytest.raises(BadParameter):
            await metrics.get_max_cpu_rate(T0, T0)
        with pytest.raises(BadParameter):
            await metrics.get_max_memory_rate(T0, T0 - HOUR)

    def test_sub_millisecond_window(self):
        """Test windows shorter than the query resolution are rejected."""
        with pytest.raises(BadParameter):
            max_over_window(QUERY_CPU_RATE, T0, T0 + timedelta(microseconds=10))


class TestOptionalCapabilities:
    """Tests for the optional operations of the Metrics base class."""

    class MinimalMetrics(Metrics):
        async def get_total_cpu(self) -> int:
            return 1

        async def get_cpu_rate(self, start, end, step):
            raise AssertionError

        async def get_memory_rate(self, start, end, step):
            raise AssertionError

        async def get_current_cpu_rate(self) -> int:
            return 2

        async def get_current_memory_rate(self) -> int:
            return 3

    @pytest.mark.asyncio
    async def test_unsupported_is_distinct_error(self):
        """Test missing optional metrics raise UnsupportedError, not zero."""
        metrics = self.MinimalMetrics()
        with pytest.raises(UnsupportedError):
            await metrics.get_total_memory()
        with pytest.raises(UnsupportedError):
            await metrics.get_max_cpu_rate(T0 - HOUR, T0)
        with pytest.raises(UnsupportedError):
            await metrics.get_max_memory_rate(T0 - HOUR, T0)

    @pytest.mark.asyncio
    async def test_unsupported_still_validates(self):
        """Test the base peak operations still reject an empty window."""
        with pytest.raises(BadParameter):
            await self.MinimalMetrics().get_max_cpu_rate(T0, T0)

    def test_interface_is_abstract(self):
        """Test the interface cannot be instantiated without the required operations."""
        with pytest.raises(TypeError):
            Metrics()


class TestConstruction:
    """Tests for building a client from an address."""

    @pytest.mark.parametrize(
        "address, expected",
        [
            ("192.168.121.97:30198", "http://192.168.121.97:30198"),
            ("prometheus:9090", "http://prometheus:9090"),
            ("https://prom.example.com/", "https://prom.example.com"),
            ("  http://localhost:9090  ", "http://localhost:9090"),
        ],
    )
    def test_normalize_address(self, address, expected):
        """Test host:port and URLs become a base URL."""
        assert normalize_address(address) == expected

    @pytest.mark.parametrize("address", ["", "   ", "ftp://prometheus:21", "http://"])
    def test_invalid_address(self, address):
        """Test unusable addresses are a BadParameter."""
        with pytest.raises(BadParameter):
            normalize_address(address)

    @pytest.mark.asyncio
    async def test_from_address(self):
        """Test from_address builds a client with the right base URL and timeout."""
        async with PrometheusMetrics.from_address("prometheus:9090", timeout=3.0) as metrics:
            client = metrics._executor.client
            assert client.base_url.host == "prometheus"
            assert client.base_url.port == 9090
            assert client.timeout.read == 3.0
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_backend_error_passes_through(self):
        """Test transport failures surface as BackendError from the client."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BackendError):
            await prometheus(handler).get_total_cpu()
