"""
Push Event Payloads

Typed change notification delivered on a push channel. Accepts both the
engine's own field names and the row-change shape emitted by hosted Postgres
realtime services (table / eventType / new / old).
"""

import time
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator


class ChangeOperation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"

    @property
    def past_tense(self) -> str:
        return {"INSERT": "created", "UPDATE": "updated", "DELETE": "deleted"}[self.value]


class ChangeEvent(BaseModel):
    """
    One server-pushed change.

    Attributes:
        category: Event category (table / resource name)
        scope: Tenant scope the change belongs to (organization id)
        operation: INSERT, UPDATE or DELETE
        record: Row after the change (empty for DELETE)
        old_record: Row before the change (UPDATE / DELETE)
        received_at: Epoch milliseconds when the event was decoded
    """

    category: str = Field(min_length=1, validation_alias=AliasChoices("category", "table"))
    scope: str | None = Field(default=None, validation_alias=AliasChoices("scope", "organization_id"))
    operation: ChangeOperation = Field(validation_alias=AliasChoices("operation", "eventType", "type"))
    record: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("record", "new"))
    old_record: dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("old_record", "old"))
    received_at: float = Field(default_factory=lambda: time.time() * 1000)

    @field_validator("operation", mode="before")
    @classmethod
    def normalise_operation(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("record", "old_record", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return {} if v is None else v

    @property
    def row(self) -> dict[str, Any]:
        """The row the event is about (old row for deletes)."""
        return self.record or self.old_record
