"""
YAML loading and parsing for engine settings.

Parsing is strict: unknown keys and wrong value types raise ``ValueError``
so a typo in a settings file fails loudly at startup instead of silently
falling back to a default.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

import yaml

from hierarchy_config.schema import EngineSettings, StateVerticalCatalog, StateVerticals

_CATALOG_KEYS = frozenset({"state_verticals", "default_verticals"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file and return its contents as a dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at the top level of {path}")
    return data


def _check_type(key: str, value: Any, expected: type) -> Any:
    # bool is an int subclass; reject it for numeric fields
    if expected is bool:
        if not isinstance(value, bool):
            raise ValueError(f"Setting '{key}' must be a boolean, got {value!r}")
        return value
    if isinstance(value, bool):
        raise ValueError(f"Setting '{key}' must be {expected.__name__}, got {value!r}")
    if expected is float and isinstance(value, int):
        return float(value)
    if not isinstance(value, expected):
        raise ValueError(f"Setting '{key}' must be {expected.__name__}, got {value!r}")
    return value


def _string_list(key: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValueError(f"Setting '{key}' must be a list of strings")
    return tuple(v.strip() for v in value if v.strip())


def parse_state_verticals(
    raw: Any,
    default_verticals: tuple[str, ...] = (),
) -> StateVerticalCatalog:
    """Build the catalog; a state listed without verticals gets the defaults."""
    if raw is None:
        return StateVerticalCatalog(default_verticals=default_verticals)
    if not isinstance(raw, dict):
        raise ValueError("Setting 'state_verticals' must be a mapping of state to verticals")

    entries = []
    for state, body in raw.items():
        if not isinstance(state, str) or not state.strip():
            raise ValueError(f"Invalid state name in 'state_verticals': {state!r}")
        body = body or {}
        if not isinstance(body, dict):
            raise ValueError(f"Entry for state '{state}' must be a mapping")
        unknown = set(body) - {"verticals", "priority"}
        if unknown:
            raise ValueError(f"Unknown keys for state '{state}': {sorted(unknown)}")
        verticals = _string_list(f"{state}.verticals", body.get("verticals")) or default_verticals
        priority = _string_list(f"{state}.priority", body.get("priority"))
        stray = [p for p in priority if p not in verticals]
        if stray:
            raise ValueError(f"Priority verticals for '{state}' not in its verticals: {stray}")
        entries.append(StateVerticals(
            state=state.strip(),
            verticals=verticals,
            priority_verticals=priority,
        ))
    return StateVerticalCatalog(entries=tuple(entries), default_verticals=default_verticals)


def parse_engine_settings(data: dict[str, Any]) -> EngineSettings:
    """Parse a raw settings mapping into ``EngineSettings``."""
    scalar_fields = {
        f.name: f.type for f in fields(EngineSettings) if f.name != "state_verticals"
    }
    unknown = set(data) - set(scalar_fields) - _CATALOG_KEYS
    if unknown:
        raise ValueError(f"Unknown settings keys: {sorted(unknown)}")

    kwargs: dict[str, Any] = {}
    for name, annotation in scalar_fields.items():
        if name not in data:
            continue
        # annotations are strings under postponed evaluation
        expected = {"int": int, "float": float, "bool": bool}[str(annotation)]
        kwargs[name] = _check_type(name, data[name], expected)

    for name in ("max_rollback_count", "collaborator_max_concurrency", "worker_pool_size"):
        if name in kwargs and kwargs[name] < 1:
            raise ValueError(f"Setting '{name}' must be at least 1")
    for name in (
        "directory_timeout_seconds", "template_timeout_seconds",
        "event_timeout_seconds", "lock_timeout_seconds",
    ):
        if name in kwargs and kwargs[name] <= 0:
            raise ValueError(f"Setting '{name}' must be positive")

    defaults = _string_list("default_verticals", data.get("default_verticals"))
    kwargs["state_verticals"] = parse_state_verticals(data.get("state_verticals"), defaults)
    return EngineSettings(**kwargs)


def compute_checksum(settings: EngineSettings) -> str:
    """SHA-256 of the canonical JSON form of the effective settings."""
    canonical = json.dumps(asdict(settings), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
