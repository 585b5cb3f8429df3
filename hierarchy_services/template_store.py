"""In-memory form template registry."""

from __future__ import annotations

import threading


class InMemoryTemplateStore:
    """``TemplateStore`` keyed by (state, vertical).

    A template activated with ``vertical=None`` covers every vertical of
    the state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[tuple[str, str | None]] = set()

    def activate(self, state: str, vertical: str | None = None) -> None:
        with self._lock:
            self._active.add((state, vertical))

    def deactivate(self, state: str, vertical: str | None = None) -> None:
        with self._lock:
            self._active.discard((state, vertical))

    def has_active_template(self, state: str, vertical: str | None) -> bool:
        with self._lock:
            return (state, vertical) in self._active or (state, None) in self._active
