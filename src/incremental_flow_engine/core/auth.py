"""Process-wide registry of connection and credential material.

Operation specs never embed credentials. They hold an `AuthEntryReference`
that carries only a key, and components resolve the key when they are
instantiated at execution time. The key is the identity of the backend:
re-adding a key with a different payload reconfigures the same backend,
removing it removes the logical backend.

Entries are never expired automatically. A setup or drop pass removes
keys no longer referenced by any flow or recorded target.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from .errors import AuthEntryNotFoundError

AUTH_REF_TAG = "$auth"


@dataclass(frozen=True)
class AuthEntryReference:
    """Reference to an auth entry by key."""
    key: str

    def to_config(self) -> dict[str, str]:
        return {AUTH_REF_TAG: self.key}

    @classmethod
    def of(cls, key_or_ref: "str | AuthEntryReference") -> "AuthEntryReference":
        if isinstance(key_or_ref, AuthEntryReference):
            return key_or_ref
        return cls(key_or_ref)


class AuthRegistry:
    """
    Keyed store of auth entries.

    Reads take the current immutable snapshot without locking. Writes copy
    the snapshot under a single registry-wide lock and swap it in.
    """

    _instance: "AuthRegistry | None" = None

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Mapping[str, Any] = MappingProxyType({})

    @classmethod
    def get_instance(cls) -> "AuthRegistry":
        """Get the singleton registry instance."""
        if cls._instance is None:
            cls._instance = AuthRegistry()
        return cls._instance

    def add_entry(self, key: str, value: Any) -> AuthEntryReference:
        """Add or overwrite an entry; returns a reference to it."""
        if not key:
            raise ValueError("Auth entry key must be a non-empty string")
        with self._lock:
            updated = dict(self._entries)
            updated[key] = value
            self._entries = MappingProxyType(updated)
        return AuthEntryReference(key)

    def remove(self, key: str) -> bool:
        """Remove an entry. Returns False if it did not exist."""
        with self._lock:
            if key not in self._entries:
                return False
            updated = dict(self._entries)
            del updated[key]
            self._entries = MappingProxyType(updated)
        return True

    def resolve(self, ref: "str | AuthEntryReference") -> Any:
        """Resolve a key or reference to its payload."""
        key = AuthEntryReference.of(ref).key
        snapshot = self._entries
        if key not in snapshot:
            raise AuthEntryNotFoundError(key)
        return snapshot[key]

    def list_keys(self) -> set[str]:
        return set(self._entries)

    def snapshot(self) -> Mapping[str, Any]:
        """Immutable view of all entries at this instant."""
        return self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries = MappingProxyType({})


def add_auth_entry(key: str, value: Any) -> AuthEntryReference:
    """Register an auth entry in the process-wide registry."""
    return AuthRegistry.get_instance().add_entry(key, value)


def ref_auth_entry(key: str) -> AuthEntryReference:
    """Reference an auth entry by key without touching the registry."""
    return AuthEntryReference(key)


def encode_auth_refs(value: Any) -> Any:
    """Replace AuthEntryReference objects in a config with tagged dicts."""
    if isinstance(value, AuthEntryReference):
        return value.to_config()
    if isinstance(value, dict):
        return {k: encode_auth_refs(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_auth_refs(v) for v in value]
    return value


def resolve_auth_refs(value: Any, registry: AuthRegistry | None = None) -> Any:
    """Replace tagged auth references in a config with resolved payloads."""
    registry = registry or AuthRegistry.get_instance()
    if isinstance(value, dict):
        if len(value) == 1 and AUTH_REF_TAG in value:
            return registry.resolve(value[AUTH_REF_TAG])
        return {k: resolve_auth_refs(v, registry) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_auth_refs(v, registry) for v in value]
    return value


def collect_auth_keys(value: Any) -> set[str]:
    """All auth keys referenced by an encoded config."""
    keys: set[str] = set()
    if isinstance(value, dict):
        if len(value) == 1 and AUTH_REF_TAG in value:
            keys.add(value[AUTH_REF_TAG])
        else:
            for v in value.values():
                keys |= collect_auth_keys(v)
    elif isinstance(value, list):
        for v in value:
            keys |= collect_auth_keys(v)
    return keys
