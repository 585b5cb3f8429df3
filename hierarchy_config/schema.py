"""
Engine settings schema.

Frozen dataclasses that YAML settings are parsed into.  The kernel never
sees these types directly; ``hierarchy_services`` reads the fields it needs
and passes plain values into kernel constructors.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# State / vertical catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StateVerticals:
    """Verticals available in one state."""

    state: str
    verticals: tuple[str, ...]
    priority_verticals: tuple[str, ...] = ()


@dataclass(frozen=True)
class StateVerticalCatalog:
    """Which subject verticals exist in which state."""

    entries: tuple[StateVerticals, ...] = ()
    default_verticals: tuple[str, ...] = ()

    def _entry(self, state: str) -> StateVerticals | None:
        for entry in self.entries:
            if entry.state == state:
                return entry
        return None

    def verticals_for(self, state: str) -> tuple[str, ...]:
        entry = self._entry(state)
        return entry.verticals if entry else ()

    def priority_verticals_for(self, state: str) -> tuple[str, ...]:
        """Priority verticals, falling back to all of the state's verticals."""
        entry = self._entry(state)
        if entry is None:
            return self.default_verticals
        return entry.priority_verticals or entry.verticals

    def states_for_vertical(self, vertical: str) -> tuple[str, ...]:
        return tuple(e.state for e in self.entries if vertical in e.verticals)

    def all_states(self) -> tuple[str, ...]:
        return tuple(e.state for e in self.entries)

    def as_mapping(self) -> dict[str, frozenset[str]]:
        return {e.state: frozenset(e.verticals) for e in self.entries}


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineSettings:
    """Runtime knobs for the workflow engine."""

    max_rollback_count: int = 3
    directory_timeout_seconds: float = 2.0
    template_timeout_seconds: float = 2.0
    event_timeout_seconds: float = 1.0
    collaborator_max_concurrency: int = 8
    worker_pool_size: int = 4
    lock_timeout_seconds: float = 5.0
    upcoming_window_hours: int = 24
    enforce_state_verticals: bool = False
    state_verticals: StateVerticalCatalog = field(default_factory=StateVerticalCatalog)
