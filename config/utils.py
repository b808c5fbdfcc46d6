"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from typing import Any, Dict


def _plain(value: Any) -> Any:
    to_dict = getattr(value, 'to_dict', None)
    if callable(to_dict):
        return to_dict()
    return value


def get_config_section(source: Any, section: str) -> Dict:
    """Return a dictionary section from Config, SectionProxy, or plain dict objects."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = _plain(source.get(section, {}))
        return dict(candidate) if isinstance(candidate, dict) else {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = _plain(getter(section, {}))
        if isinstance(candidate, dict):
            return dict(candidate)

    return {}
