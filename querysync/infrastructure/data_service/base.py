"""
Data Service Protocol

The two primitives the engine consumes from the backend. Both return
{data, error}; HTTP-level failures come back as ``QueryResult.error``
while transport failures (timeouts, refused connections) may raise.
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult


@runtime_checkable
class DataService(Protocol):
    """
    Protocol defining the data service interface.

    Callers type-hint to the protocol so tests can pass any object with the
    same two coroutines (see tests/test_fixtures/data_service_factory.py).
    """

    async def query(self, descriptor: QueryDescriptor) -> QueryResult:
        """Run a filtered, projected, ordered query."""
        ...

    async def rpc(self, function_name: str, params: Mapping[str, Any]) -> QueryResult:
        """Call a named remote function."""
        ...
