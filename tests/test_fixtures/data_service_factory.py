"""
Data Service Test Factory

Scripted DataService double and descriptor helpers.
"""

import asyncio
from collections.abc import Mapping
from typing import Any

from querysync.infrastructure.data_service.models import QueryDescriptor, QueryResult


class FakeDataService:
    """
    In-memory DataService with a call log.

    Outcomes are scripted per resource (or RPC function name). Each call
    consumes the next scripted outcome; the last one repeats. An outcome is a
    QueryResult, an exception (raised) or a callable receiving the descriptor.
    Unscripted resources answer ``QueryResult(data=[{"resource": name}])``.

    Usage:
        service = FakeDataService()
        service.respond("users", DataServiceTimeoutError("slow"), QueryResult(data=[1]))
        service.gate = asyncio.Event()   # hold every call until gate.set()
    """

    def __init__(self, gate: asyncio.Event | None = None):
        self.gate = gate
        self._outcomes: dict[str, list[Any]] = {}
        self.calls: list[QueryDescriptor] = []
        self.rpc_calls: list[tuple[str, dict[str, Any]]] = []

    def respond(self, name: str, *outcomes: Any) -> "FakeDataService":
        self._outcomes[name] = list(outcomes)
        return self

    def calls_for(self, resource: str) -> int:
        return sum(1 for d in self.calls if d.resource_name == resource)

    async def query(self, descriptor: QueryDescriptor) -> QueryResult:
        self.calls.append(descriptor)
        if self.gate is not None:
            await self.gate.wait()
        return self._next(descriptor.resource_name, descriptor)

    async def rpc(self, function_name: str, params: Mapping[str, Any]) -> QueryResult:
        self.rpc_calls.append((function_name, dict(params)))
        if self.gate is not None:
            await self.gate.wait()
        return self._next(function_name, dict(params))

    def _next(self, name: str, argument: Any) -> QueryResult:
        scripted = self._outcomes.get(name)
        if not scripted:
            return QueryResult(data=[{"resource": name}])
        outcome = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(argument)
        return outcome


class QueryFactory:
    """Factory for query descriptors used across the tests."""

    @staticmethod
    def users(org_id: str = "org1", key: str | None = None) -> QueryDescriptor:
        return QueryDescriptor(
            key=key,
            resource_name="users",
            projection="id,name,email",
            filters={"organization_id": org_id},
        )

    @staticmethod
    def memberships(org_id: str = "org1", user_id: str | None = None) -> QueryDescriptor:
        filters: dict[str, Any] = {"organization_id": org_id}
        if user_id is not None:
            filters["user_id"] = user_id
        return QueryDescriptor(resource_name="organization_memberships", projection="id,role", filters=filters)

    @staticmethod
    def notifications(user_id: str = "u1") -> QueryDescriptor:
        return QueryDescriptor(resource_name="notifications", filters={"user_id": user_id, "read": False})
