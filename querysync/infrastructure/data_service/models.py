"""
Data Service Models

Immutable descriptions of remote calls and the {data, error, count} result
shape both primitives return.

A QueryDescriptor is the single source for two things:
- the remote call (resource, projection, filters, ordering, paging, count)
- the cache key (canonical structured key, see key_builder)

Two descriptors that would issue the same request always share a cache key,
whatever their caller-facing ``key`` label or dict ordering.
"""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field

from querysync.infrastructure.cache.key_builder import build_key, fingerprint

CountMode = Literal["exact", "planned", "estimated"]


class OrderBy(BaseModel):
    """One ORDER BY term."""

    model_config = {"frozen": True}

    column: str = Field(min_length=1)
    ascending: bool = True
    nulls_first: bool | None = None


class QueryOptions(BaseModel):
    """Paging, ordering and row-count options of a query."""

    model_config = {"frozen": True}

    limit: int | None = Field(default=None, ge=0)
    offset: int | None = Field(default=None, ge=0)
    order_by: tuple[OrderBy, ...] = ()
    count_mode: CountMode | None = None
    head: bool = Field(default=False, description="Only count rows, return no data")


class QueryDescriptor(BaseModel):
    """
    Immutable query description.

    Attributes:
        key: Caller-facing label used to key batch results (defaults to the cache key)
        resource_name: Table or view name
        projection: Column projection (PostgREST select syntax)
        filters: field → value (equality) or list of values (inclusion)
        options: Paging / ordering / count options

    Example:
        QueryDescriptor(
            key="active-members",
            resource_name="organization_memberships",
            projection="id, role, user_id",
            filters={"organization_id": "org1", "status": "active"},
            options=QueryOptions(order_by=(OrderBy(column="created_at", ascending=False),)),
        )
    """

    model_config = {"frozen": True}

    key: str | None = None
    resource_name: str = Field(min_length=1)
    projection: str = "*"
    filters: dict[str, Any] = Field(default_factory=dict)
    options: QueryOptions = Field(default_factory=QueryOptions)

    @property
    def cache_key(self) -> str:
        return build_key(
            self.resource_name,
            self.projection,
            self.filters,
            self.options.model_dump(mode="json", exclude_defaults=True),
        )

    @property
    def result_key(self) -> str:
        return self.key or self.cache_key

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.cache_key)


class RpcCall(BaseModel):
    """Remote procedure call: named function plus parameter map."""

    model_config = {"frozen": True}

    key: str | None = None
    function_name: str = Field(min_length=1)
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def cache_key(self) -> str:
        return build_key("rpc", self.function_name, self.params)

    @property
    def result_key(self) -> str:
        return self.key or self.function_name


@dataclass
class QueryResult:
    """
    Result of one query or RPC call.

    Exactly one of ``data`` / ``error`` is meaningful: ``error`` is a
    QuerySyncError (or the exception that ended the call) and ``data`` is
    None in that case. ``stale`` marks data served past its stale time.
    """

    data: Any = None
    error: BaseException | None = None
    count: int | None = None
    stale: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, error: BaseException) -> "QueryResult":
        return cls(data=None, error=error)

    def to_dict(self) -> dict[str, Any]:
        error = None
        if self.error is not None:
            to_dict = getattr(self.error, "to_dict", None)
            error = to_dict() if callable(to_dict) else {
                "error_type": type(self.error).__name__,
                "message": str(self.error),
            }
        return {"data": self.data, "error": error, "count": self.count, "stale": self.stale}
