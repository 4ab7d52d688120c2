"""
Typed Cache Key Builder

Structured keys (tuples of parts) are turned into one canonical string so
equal structures always produce equal keys, whatever the dict ordering or
tuple/list spelling of the caller:

    build_key("users", "org1")                     -> '["users","org1"]'
    build_key("users", {"b": 1, "a": [1, 2]})      -> '["users",{"a":[1,2],"b":1}]'

Invalidation works on the structure, not on substrings: a KeyPattern is a
prefix of parts where

    "{org_id}"   placeholder resolved from the mutation context
    "*"          matches any single part
    {...}        dict part, matches a key dict containing these items

A pattern whose placeholders cannot all be resolved is dropped rather than
widened, so a mutation never evicts outside its declared scope.
"""

import hashlib
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

import orjson

from querysync.core.exceptions import InvalidCacheKeyError

WILDCARD = "*"

_PLACEHOLDER_RE = re.compile(r"^\{(\w+)\}$")
_KEY_OPTIONS = orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS


def _normalise(part: Any) -> Any:
    if isinstance(part, Enum):
        return part.value
    if isinstance(part, (list, tuple)):
        return [_normalise(p) for p in part]
    if isinstance(part, (set, frozenset)):
        return sorted((_normalise(p) for p in part), key=repr)
    if isinstance(part, Mapping):
        return {str(k): _normalise(v) for k, v in part.items()}
    return part


def build_key(*parts: Any) -> str:
    """Canonical string for a structured key."""
    if not parts:
        raise InvalidCacheKeyError("Cache key needs at least one part")
    try:
        return orjson.dumps([_normalise(p) for p in parts], option=_KEY_OPTIONS).decode()
    except TypeError as e:
        raise InvalidCacheKeyError.from_exception(e, parts=repr(parts)) from e


def parse_key(key: str) -> tuple:
    """
    Structured parts of a canonical key.

    Keys that were not produced by build_key() are treated as a single part.
    """
    if key.startswith("["):
        try:
            parsed = orjson.loads(key)
        except orjson.JSONDecodeError:
            return (key,)
        if isinstance(parsed, list):
            return tuple(parsed)
    return (key,)


def fingerprint(key: str) -> str:
    """Stable short hash of a canonical key."""
    return hashlib.sha1(key.encode()).hexdigest()


def _resolve_part(part: Any, context: Mapping[str, Any]) -> tuple[bool, Any]:
    if isinstance(part, str):
        match = _PLACEHOLDER_RE.match(part)
        if match:
            value = context.get(match.group(1))
            return (value is not None, _normalise(value))
        return True, part
    if isinstance(part, Mapping):
        resolved = {}
        for name, value in part.items():
            ok, resolved_value = _resolve_part(value, context)
            if not ok:
                return False, None
            resolved[str(name)] = resolved_value
        return True, resolved
    return True, _normalise(part)


def _part_matches(pattern: Any, actual: Any) -> bool:
    if pattern == WILDCARD:
        return True
    if isinstance(pattern, dict):
        if not isinstance(actual, dict):
            return False
        return all(name in actual and _part_matches(value, actual[name]) for name, value in pattern.items())
    return pattern == actual


@dataclass(frozen=True)
class KeyPattern:
    """
    Prefix (or exact) pattern over structured cache keys.

    Usage:
        pattern = KeyPattern.of("users", "{org_id}")
        concrete = pattern.resolve({"org_id": "org1"})
        concrete.matches(build_key("users", "org1", "detail"))   # True
        concrete.matches(build_key("users", "org2"))             # False
    """

    parts: tuple
    exact: bool = False

    @classmethod
    def of(cls, *parts: Any, exact: bool = False) -> "KeyPattern":
        return cls(tuple(parts), exact=exact)

    @property
    def placeholders(self) -> set[str]:
        found: set[str] = set()

        def collect(part: Any) -> None:
            if isinstance(part, str):
                match = _PLACEHOLDER_RE.match(part)
                if match:
                    found.add(match.group(1))
            elif isinstance(part, Mapping):
                for value in part.values():
                    collect(value)

        for part in self.parts:
            collect(part)
        return found

    def resolve(self, context: Mapping[str, Any]) -> "KeyPattern | None":
        """Substitute placeholders; None when a placeholder has no value."""
        resolved = []
        for part in self.parts:
            ok, value = _resolve_part(part, context)
            if not ok:
                return None
            resolved.append(value)
        return KeyPattern(tuple(resolved), exact=self.exact)

    def matches(self, key: str | tuple) -> bool:
        key_parts = parse_key(key) if isinstance(key, str) else tuple(_normalise(list(key)))
        if self.exact and len(key_parts) != len(self.parts):
            return False
        if len(key_parts) < len(self.parts):
            return False
        return all(_part_matches(p, a) for p, a in zip(self.parts, key_parts))

    def __str__(self) -> str:
        suffix = "" if self.exact else "*"
        return f"{list(self.parts)}{suffix}"
