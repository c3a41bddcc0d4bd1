"""Thread-safe registers of named values, optionally grouped by namespace."""

from __future__ import annotations

import threading
from typing import Any


class Untyped:
    """A simple name to value register, safe for concurrent access."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def register(self, name: str, value: Any) -> None:
        """Store value under name, replacing any previous value."""
        with self._lock:
            self._data[name] = value

    def get(self, name: str) -> Any:
        """Return the value stored under name; raise KeyError if there is none."""
        with self._lock:
            return self._data[name]

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._data

    def clone(self) -> dict[str, Any]:
        """Return a snapshot of the register contents."""
        with self._lock:
            return dict(self._data)


class Namespaced:
    """A register keeping values under a namespace and a name."""

    def __init__(self) -> None:
        self._data = Untyped()
        self._lock = threading.Lock()

    def get(self, namespace: str) -> Untyped:
        """Return the register of namespace; raise KeyError if there is none."""
        found = self._data.get(namespace)
        if not isinstance(found, Untyped):
            raise KeyError(namespace)
        return found

    def _get_or_create(self, namespace: str) -> Untyped:
        with self._lock:
            try:
                return self.get(namespace)
            except KeyError:
                created = Untyped()
                self._data.register(namespace, created)
                return created

    def register(self, namespace: str, name: str, value: Any) -> None:
        """Store value at name in the register of namespace, creating it if needed."""
        self._get_or_create(namespace).register(name, value)

    def add_namespace(self, namespace: str) -> None:
        """Add an empty register for namespace unless it already exists."""
        self._get_or_create(namespace)