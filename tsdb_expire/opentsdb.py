"""Minimal OpenTSDB HTTP client.

Only the parts of the `/api/query` contract the retention engine needs are modelled:
a request carries a start/end and one or more sub-queries, and the store answers with
one result per distinct tag combination. Deletion is the same request with
`"delete": true`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from .otel import record_store_request
from .timeutil import to_unix

logger = logging.getLogger(__name__)


class TSDBError(Exception):
    """Base error for store failures."""


class QueryError(TSDBError):
    """Raised when a query, delete or suggest call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_tags(tags: dict[str, str]) -> str:
    """Canonical `{k1=v1,k2=v2}` form with keys sorted."""
    return "{" + ",".join(f"{k}={tags[k]}" for k in sorted(tags)) + "}"


@dataclass
class Query:
    metric: str
    aggregator: str = "sum"
    downsample: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"metric": self.metric, "aggregator": self.aggregator}
        if self.downsample:
            body["downsample"] = self.downsample
        if self.tags:
            body["tags"] = dict(self.tags)
        return body


@dataclass
class Request:
    """A `[start, end)` request.

    The store treats `end` as inclusive, so one second is taken off on the wire to
    keep adjacent windows from overlapping.
    """

    start: datetime
    end: datetime
    queries: list[Query]
    delete: bool = False

    def to_json(self) -> dict[str, Any]:
        start = to_unix(self.start)
        end = max(start, to_unix(self.end) - 1)
        body: dict[str, Any] = {
            "start": start,
            "end": end,
            "queries": [q.to_json() for q in self.queries],
        }
        if self.delete:
            body["delete"] = True
        return body


@dataclass
class Response:
    metric: str
    tags: dict[str, str] = field(default_factory=dict)
    aggregate_tags: list[str] = field(default_factory=list)
    dps: dict[str, float] = field(default_factory=dict)

    @property
    def tag_key(self) -> str:
        return format_tags(self.tags)

    @staticmethod
    def from_json(item: dict[str, Any]) -> "Response":
        raw_dps = item.get("dps") or {}
        dps: dict[str, float] = {}
        if isinstance(raw_dps, dict):
            for ts, v in raw_dps.items():
                dps[str(int(ts))] = float(v)
        else:
            # `arrays=true` style: [[ts, value], ...]
            for pair in raw_dps:
                dps[str(int(pair[0]))] = float(pair[1])
        return Response(
            metric=str(item.get("metric") or ""),
            tags={str(k): str(v) for k, v in (item.get("tags") or {}).items()},
            aggregate_tags=[str(k) for k in (item.get("aggregateTags") or [])],
            dps=dps,
        )


class TSDBClient:
    """Blocking client for one OpenTSDB endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 60.0,
        http: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_s, connect=10.0),
        )

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "TSDBClient":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _send(self, method: str, path: str, *, kind: str, **kwargs: Any) -> Any:
        try:
            resp = self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            record_store_request(kind=kind, ok=False)
            raise QueryError(f"{kind} timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            record_store_request(kind=kind, ok=False)
            raise QueryError(f"{kind} failed: {type(exc).__name__}: {exc}") from exc

        ok = 200 <= resp.status_code < 300
        record_store_request(kind=kind, ok=ok)
        if not ok:
            raise QueryError(
                f"{kind} failed: {resp.status_code} {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if resp.status_code == 204 or not resp.content:
            return []
        try:
            return resp.json()
        except ValueError as exc:
            raise QueryError(f"{kind} returned invalid JSON: {resp.text[:200]}") from exc

    def _post_query(self, request: Request, *, kind: str) -> list[Response]:
        body = request.to_json()
        logger.debug("POST /api/query %s", json.dumps(body, separators=(",", ":")))
        data = self._send("POST", "/api/query", kind=kind, json=body)
        if not isinstance(data, list):
            raise QueryError(f"{kind} returned unexpected payload: {str(data)[:200]}")
        try:
            return [Response.from_json(item) for item in data if isinstance(item, dict)]
        except (TypeError, ValueError, IndexError, AttributeError) as exc:
            raise QueryError(f"{kind} returned malformed payload: {exc}") from exc

    def query(self, request: Request) -> list[Response]:
        return self._post_query(request, kind="query")

    def delete(self, request: Request) -> list[Response]:
        request.delete = True
        return self._post_query(request, kind="delete")

    def suggest_metrics(self, *, prefix: str = "", max_results: int = 1_000_000) -> list[str]:
        params = {"type": "metrics", "q": prefix, "max": int(max_results)}
        data = self._send("GET", "/api/suggest", kind="suggest", params=params)
        if not isinstance(data, list):
            raise QueryError(f"suggest returned unexpected payload: {str(data)[:200]}")
        return [str(name) for name in data]
