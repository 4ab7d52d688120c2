"""
PostgREST Data Service Client
=============================

Asynchronous HTTP client for a PostgREST-compatible data service (the REST
layer of a hosted Postgres backend). Implements the DataService protocol.

ARCHITECTURAL CONTEXT
---------------------
```
BatchQueryExecutor → [PostgRESTDataService] → /rest/v1/<resource>
                                            → /rest/v1/rpc/<function>
```

KEY DESIGN DECISIONS
--------------------

1. **{data, error} results, not exceptions, for HTTP errors**
   A 4xx/5xx response is returned as ``QueryResult(error=...)`` with a typed
   error (auth / validation / not-found / unavailable), matching the shape
   callers already handle. Only transport failures raise
   (DataServiceTimeoutError, DataServiceConnectionError); the executor turns
   those into error values after its retries.

2. **No retries here**
   Retry policy lives in the executor so coalesced callers share one retry
   sequence and the fetch guard sees every attempt.

3. **Reusable HTTP client**
   One httpx.AsyncClient per service; context manager ensures cleanup.

USAGE
-----
```python
async with PostgRESTDataService(PostgRESTConfig(base_url=url, api_key=key)) as service:
    result = await service.query(descriptor)
    result = await service.rpc("get_dashboard_stats", {"org_id": "org1"})
```
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

import httpx
import orjson
from pydantic import BaseModel, Field

from querysync.core.config.constants import Stage
from querysync.core.exceptions import (
    DataServiceAuthError,
    DataServiceConnectionError,
    DataServiceError,
    DataServiceNotFoundError,
    DataServiceTimeoutError,
    DataServiceUnavailableError,
    DataServiceValidationError,
)
from querysync.core.logging.logger import get_logger, log_stage
from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult

logger = get_logger(__name__)

_RESERVED_CHARS = set(',()"\\: ')
_AUTH_ERROR_CODES = {"PGRST301", "PGRST302", "42501"}


class PostgRESTConfig(BaseModel):
    """
    Configuration for the PostgREST client.

    Attributes:
        base_url: Service URL (the client appends /rest/v1)
        api_key: Project API key, sent as ``apikey`` and default bearer token
        schema_name: Schema selected through Accept-Profile / Content-Profile
        timeout: HTTP request timeout in seconds
        max_connections: Maximum HTTP connections in pool
    """

    model_config = {"frozen": True}

    base_url: str = Field(default="http://localhost:54321", min_length=1)
    api_key: str | None = None
    schema_name: str = "public"
    timeout: float = Field(default=10.0, gt=0, le=120)
    max_connections: int = Field(default=20, ge=1, le=200)

    @classmethod
    def from_settings(cls, settings) -> PostgRESTConfig:
        section = settings.data_service
        return cls(
            base_url=section.DATA_SERVICE_URL,
            api_key=section.DATA_SERVICE_API_KEY,
            schema_name=section.DATA_SERVICE_SCHEMA,
            timeout=section.DATA_SERVICE_TIMEOUT,
            max_connections=section.DATA_SERVICE_MAX_CONNECTIONS,
        )

    @property
    def rest_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/rest/v1"


# =============================================================================
# REQUEST ENCODING
# =============================================================================


def _format_value(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def _quote_list_item(value: Any) -> str:
    text = _format_value(value)
    if isinstance(value, str) and (any(ch in _RESERVED_CHARS for ch in text) or text == ""):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def encode_filter(value: Any) -> str:
    """
    PostgREST operator expression for a filter value.

        "org1"        -> eq.org1
        None          -> is.null
        True          -> is.true
        ["a", "b,c"]  -> in.(a,"b,c")
    """
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return f"is.{_format_value(value)}"
    if isinstance(value, (list, tuple, set, frozenset)):
        return f"in.({','.join(_quote_list_item(v) for v in value)})"
    return f"eq.{_format_value(value)}"


def build_query_params(descriptor: QueryDescriptor) -> list[tuple[str, str]]:
    """Query string parameters for a descriptor (ordered, filters sorted)."""
    params: list[tuple[str, str]] = [("select", "".join(descriptor.projection.split()) or "*")]
    for field in sorted(descriptor.filters):
        params.append((field, encode_filter(descriptor.filters[field])))

    options = descriptor.options
    if options.order_by:
        terms = []
        for term in options.order_by:
            text = f"{term.column}.{'asc' if term.ascending else 'desc'}"
            if term.nulls_first is not None:
                text += ".nullsfirst" if term.nulls_first else ".nullslast"
            terms.append(text)
        params.append(("order", ",".join(terms)))
    if options.limit is not None:
        params.append(("limit", str(options.limit)))
    if options.offset is not None:
        params.append(("offset", str(options.offset)))
    return params


def parse_content_range(header: str | None) -> int | None:
    """Total row count from a Content-Range header (``0-24/3573``)."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


def error_from_response(response: httpx.Response, resource: str) -> DataServiceError:
    """Typed error for a non-2xx response."""
    try:
        body = orjson.loads(response.content) if response.content else {}
    except orjson.JSONDecodeError:
        body = {"message": response.text[:500]}
    if not isinstance(body, dict):
        body = {"message": str(body)[:500]}

    status = response.status_code
    code = body.get("code")
    message = body.get("message") or f"Data service returned HTTP {status}"
    details = {
        "status_code": status,
        "code": code,
        "resource": resource,
        "hint": body.get("hint"),
        "details": body.get("details"),
    }

    if status in (401, 403) or code in _AUTH_ERROR_CODES:
        return DataServiceAuthError(message, details=details)
    if status == 404:
        return DataServiceNotFoundError(message, details=details)
    if status == 408:
        return DataServiceTimeoutError(message, details=details)
    if status == 429 or status >= 500:
        return DataServiceUnavailableError(message, details=details)
    return DataServiceValidationError(message, details=details)


# =============================================================================
# CLIENT
# =============================================================================


class PostgRESTDataService:
    """
    httpx-based DataService implementation.

    The HTTP client is created lazily (or in ``__aenter__``) and can be
    injected for tests with ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: PostgRESTConfig | None = None,
        client: httpx.AsyncClient | None = None,
        access_token: str | None = None,
    ):
        self.config = config or PostgRESTConfig()
        self._client = client
        self._owns_client = client is None
        self._access_token = access_token

        logger.info(
            "Data service client initialized",
            base_url=self.config.base_url,
            timeout=self.config.timeout,
            max_connections=self.config.max_connections,
        )

    async def __aenter__(self) -> PostgRESTDataService:
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout),
                limits=httpx.Limits(
                    max_connections=self.config.max_connections,
                    max_keepalive_connections=max(self.config.max_connections // 2, 1),
                ),
            )
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            logger.debug("Data service HTTP client closed")
        self._client = None

    def set_access_token(self, token: str | None) -> None:
        """Bearer token for row-level security (falls back to the API key)."""
        self._access_token = token

    def _headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Profile": self.config.schema_name,
            "Content-Profile": self.config.schema_name,
        }
        if self.config.api_key:
            headers["apikey"] = self.config.api_key
        token = self._access_token or self.config.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    async def _send(self, method: str, url: str, resource: str, **kwargs) -> httpx.Response:
        client = self._ensure_client()
        try:
            return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise DataServiceTimeoutError(
                f"Data service request timed out after {self.config.timeout}s",
                details={"url": url, "resource": resource, "timeout": self.config.timeout},
            ) from e
        except httpx.TransportError as e:
            raise DataServiceConnectionError.from_exception(
                e,
                message=f"Cannot reach data service at {self.config.base_url}",
                url=url,
                resource=resource,
            ) from e

    async def query(self, descriptor: QueryDescriptor) -> QueryResult:
        url = f"{self.config.rest_url}/{descriptor.resource_name}"
        options = descriptor.options
        extra_headers = {}
        if options.count_mode:
            extra_headers["Prefer"] = f"count={options.count_mode}"

        start = time.perf_counter()
        response = await self._send(
            "HEAD" if options.head else "GET",
            url,
            descriptor.resource_name,
            params=build_query_params(descriptor),
            headers=self._headers(extra_headers),
        )
        elapsed_ms = (time.perf_counter() - start) * 1000

        count = parse_content_range(response.headers.get("content-range")) if options.count_mode else None
        if response.is_error:
            error = error_from_response(response, descriptor.resource_name)
            log_stage(
                logger,
                Stage.DATA_SERVICE,
                "Query failed",
                level="warning",
                resource=descriptor.resource_name,
                status_code=response.status_code,
                error_type=type(error).__name__,
                duration_ms=round(elapsed_ms, 2),
            )
            return QueryResult.failure(error)

        data = None if options.head or not response.content else orjson.loads(response.content)
        log_stage(
            logger,
            Stage.DATA_SERVICE,
            "Query succeeded",
            level="debug",
            resource=descriptor.resource_name,
            rows=len(data) if isinstance(data, list) else None,
            duration_ms=round(elapsed_ms, 2),
        )
        return QueryResult(data=data, count=count)

    async def rpc(self, function_name: str, params: Mapping[str, Any]) -> QueryResult:
        url = f"{self.config.rest_url}/rpc/{function_name}"
        response = await self._send(
            "POST",
            url,
            function_name,
            content=orjson.dumps(dict(params)),
            headers=self._headers({"Content-Type": "application/json"}),
        )
        if response.is_error:
            error = error_from_response(response, function_name)
            log_stage(
                logger,
                Stage.DATA_SERVICE,
                "RPC failed",
                level="warning",
                function=function_name,
                status_code=response.status_code,
                error_type=type(error).__name__,
            )
            return QueryResult.failure(error)

        data = orjson.loads(response.content) if response.content else None
        return QueryResult(data=data)
