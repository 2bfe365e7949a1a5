"""
Query execution and result decoding for the Prometheus HTTP API.

Every call is a single request/decode transaction: it either returns a
fully decoded value or raises. There is no retry and no partial result.
Transport problems surface as BackendError, results of the wrong shape
as ShapeError, so callers can tell "ask again later" apart from "the
query itself is wrong".
"""

import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from clustertop.errors import BackendError, ShapeError
from clustertop.models import Point, Series

logger = logging.getLogger(__name__)

INSTANT_PATH = "/api/v1/query"
RANGE_PATH = "/api/v1/query_range"

VECTOR = "vector"
MATRIX = "matrix"


def format_timestamp(moment: datetime) -> str:
    """Format a timezone-aware datetime as unix seconds for the query API."""
    return f"{moment.timestamp():.3f}"


def parse_envelope(text: str) -> tuple[str, Any, str]:
    """
    Parse a query API response body.

    Returns:
        The declared result type, the undecoded result and the raw body.

    Raises:
        BackendError: The body is not a successful response envelope.
    """
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise BackendError(f"malformed response payload: {text[:200]!r}") from exc

    if not isinstance(payload, dict):
        raise BackendError(f"malformed response payload: {text[:200]!r}")

    status = payload.get("status")
    if status == "error":
        raise BackendError(
            f"query failed: {payload.get('error', 'unknown error')}",
            error_type=payload.get("errorType"),
        )
    data = payload.get("data")
    if status != "success" or not isinstance(data, dict) or "resultType" not in data:
        raise BackendError(f"malformed response payload: {text[:200]!r}")

    return data["resultType"], data.get("result"), text


def _check_pair(sample: Any, result_type: str, raw: str) -> None:
    if not isinstance(sample, list) or len(sample) != 2:
        raise ShapeError("malformed sample", result_type, raw)


def _sample_value(sample: Any, result_type: str, raw: str) -> int:
    _check_pair(sample, result_type, raw)
    try:
        value = float(sample[1])
    except (TypeError, ValueError, IndexError, KeyError) as exc:
        raise ShapeError("malformed sample", result_type, raw) from exc
    if not math.isfinite(value):
        raise ShapeError(f"non-finite sample value {sample[1]}", result_type, raw)
    # int() truncates toward zero, sub-unit precision is dropped on purpose
    return int(value)


def _sample_time(sample: Any, result_type: str, raw: str) -> datetime:
    _check_pair(sample, result_type, raw)
    try:
        return datetime.fromtimestamp(float(sample[0]), tz=timezone.utc)
    except (TypeError, ValueError, IndexError, KeyError, OverflowError, OSError) as exc:
        raise ShapeError("malformed sample timestamp", result_type, raw) from exc


def decode_vector(result_type: str, result: Any, raw: str) -> int:
    """
    Decode an instant query result into a single integer.

    The result must be a vector with exactly one element; anything else
    is a ShapeError. Values are never averaged or picked among several
    elements.
    """
    if result_type != VECTOR:
        raise ShapeError("expected vector", result_type, raw)
    if not isinstance(result, list) or len(result) != 1:
        raise ShapeError("expected single-element vector", result_type, raw)
    element = result[0]
    if not isinstance(element, dict) or "value" not in element:
        raise ShapeError("malformed vector element", result_type, raw)
    return _sample_value(element["value"], result_type, raw)


def decode_matrix(result_type: str, result: Any, raw: str) -> Series:
    """
    Decode a range query result into a Series.

    The result must be a matrix with exactly one row. Samples are kept in
    the order the backend sent them.
    """
    if result_type != MATRIX:
        raise ShapeError("expected matrix", result_type, raw)
    if not isinstance(result, list) or len(result) != 1:
        raise ShapeError("expected single-row matrix", result_type, raw)
    row = result[0]
    if not isinstance(row, dict) or not isinstance(row.get("values"), list):
        raise ShapeError("malformed matrix row", result_type, raw)
    return Series.of(
        Point(
            time=_sample_time(sample, result_type, raw),
            value=_sample_value(sample, result_type, raw),
        )
        for sample in row["values"]
    )


class QueryExecutor:
    """
    Runs queries against a Prometheus-compatible HTTP API.

    The executor only holds the HTTP client and is safe to share between
    concurrent queries.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        """
        Initialize the QueryExecutor.

        Args:
            client: HTTP client with base_url pointing at the backend.
        """
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the underlying HTTP client."""
        return self._client

    async def instant(self, query: str, at: datetime | None = None) -> int:
        """Run an instant query and decode it to one integer."""
        params = {"query": query}
        if at is not None:
            params["time"] = format_timestamp(at)
        result_type, result, raw = await self._fetch(INSTANT_PATH, params)
        return decode_vector(result_type, result, raw)

    async def range(
        self,
        query: str,
        start: datetime,
        end: datetime,
        step: timedelta,
    ) -> Series:
        """Run a range query and decode it to a Series."""
        params = {
            "query": query,
            "start": format_timestamp(start),
            "end": format_timestamp(end),
            "step": f"{step.total_seconds():.3f}",
        }
        result_type, result, raw = await self._fetch(RANGE_PATH, params)
        return decode_matrix(result_type, result, raw)

    async def _fetch(self, path: str, params: dict[str, str]) -> tuple[str, Any, str]:
        """Send one request and unwrap the response envelope."""
        logger.debug("GET %s %s", path, params)
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise BackendError(f"request to {path} failed: {exc!r}") from exc

        try:
            return parse_envelope(response.text)
        except BackendError as exc:
            if response.is_error and exc.error_type is None:
                # Error body was not a query API envelope, report the HTTP status
                raise BackendError(
                    f"{path} returned HTTP {response.status_code}: {response.text[:200]!r}"
                ) from None
            raise
