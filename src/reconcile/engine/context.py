"""
Context - the per-workflow key/value store passed from step to step.

A Task owns exactly one Context for its whole traversal. Steps read
their inputs from it and write intermediate results (API responses,
computed specs, flags) into it for the steps that follow.

Manifesto:
    Steps need to share state without knowing about each other. The
    engine imposes no key conventions; business steps define their own,
    preferably as ``ContextKey`` constants so the key name, its default
    and its meaning live in one place.

    Collaborators (the cluster API client, a logger, a clock) are not
    data. They live in a separate component registry that survives
    ``fork()`` unchanged, replacing process-wide static lookups.

Thread-safety:
    None. A Context is exclusively owned by its Task. During fan-out the
    parent decides per branch whether children share it (read-mostly) or
    get a ``fork()``; concurrent writers must synchronize themselves.

Example::

    POD = ContextKey("pod")
    ATTEMPTS = ContextKey("attempts", default=0)

    ctx = Context({"namespace": "ns1"})
    ctx[POD] = {"metadata": {"name": "server-1"}}
    ctx[ATTEMPTS] = ctx.get(ATTEMPTS) + 1

    ctx.add_component("api", client)
    child = ctx.fork()            # own data, same "api" component

Tags:
    reconcile, engine, context, shared-state

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, MutableMapping
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from reconcile.core.errors import ComponentNotFoundError
from reconcile.core.logging import get_logger

T = TypeVar("T")

_MISSING: Any = object()


@dataclass(frozen=True)
class ContextKey(Generic[T]):
    """A named, typed Context key with an optional default.

    Two keys with the same name address the same entry, and a plain
    string with that name does too.
    """

    name: str
    default: T | None = None

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ContextKey):
            return self.name == other.name
        return NotImplemented

    def __repr__(self) -> str:
        return f"ContextKey({self.name!r})"


def _key_name(key: str | ContextKey[Any]) -> str:
    if isinstance(key, ContextKey):
        return key.name
    if isinstance(key, str):
        return key
    raise TypeError(f"Context keys must be str or ContextKey, not {type(key).__name__}")


class Context(MutableMapping):
    """Mutable mapping of workflow data plus a registry of components."""

    __slots__ = ("_data", "_components")

    def __init__(
        self,
        data: Mapping[Any, Any] | None = None,
        *,
        components: Mapping[str, Any] | None = None,
    ) -> None:
        self._data: dict[str, Any] = {}
        self._components: dict[str, Any] = dict(components or {})
        if data:
            self.update(data)

    # =========================================================================
    # Mapping protocol
    # =========================================================================

    def __getitem__(self, key: str | ContextKey[Any]) -> Any:
        return self._data[_key_name(key)]

    def __setitem__(self, key: str | ContextKey[Any], value: Any) -> None:
        self._data[_key_name(key)] = value

    def __delitem__(self, key: str | ContextKey[Any]) -> None:
        del self._data[_key_name(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, (str, ContextKey)):
            return _key_name(key) in self._data
        return False

    def get(self, key: str | ContextKey[Any], default: Any = _MISSING) -> Any:
        """Look up ``key``; a ContextKey falls back to its own default."""
        name = _key_name(key)
        if name in self._data:
            return self._data[name]
        if default is not _MISSING:
            return default
        if isinstance(key, ContextKey):
            return key.default
        return None

    def __repr__(self) -> str:
        return f"Context(keys={sorted(self._data)}, components={sorted(self._components)})"

    # =========================================================================
    # Copies
    # =========================================================================

    def fork(self) -> Context:
        """Return a shallow copy: new data map, same components."""
        forked = Context(components=self._components)
        forked._data = dict(self._data)
        return forked

    def snapshot(self) -> dict[str, Any]:
        """Plain dict copy of the data, for logging and assertions."""
        return dict(self._data)

    # =========================================================================
    # Components
    # =========================================================================

    def add_component(self, name: str, component: Any) -> Context:
        """Register a collaborator handle under ``name`` (fluent)."""
        self._components[name] = component
        return self

    def component(self, name: str) -> Any:
        try:
            return self._components[name]
        except KeyError:
            raise ComponentNotFoundError(name) from None

    def has_component(self, name: str) -> bool:
        return name in self._components

    @property
    def logger(self) -> Any:
        """The ``"logger"`` component, or the engine's step logger."""
        if "logger" in self._components:
            return self._components["logger"]
        return get_logger("reconcile.step")


def as_context(value: Context | Mapping[Any, Any] | None) -> Context:
    """Coerce ``None`` or a plain mapping into a Context; pass Contexts through."""
    if value is None:
        return Context()
    if isinstance(value, Context):
        return value
    return Context(value)


__all__ = ["Context", "ContextKey", "as_context"]
