"""Helper utilities for pulling configuration sections out of whatever the caller injected."""
from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Dict


def _as_dict(candidate: Any) -> Dict:
    if isinstance(candidate, dict):
        return candidate
    to_dict = getattr(candidate, 'to_dict', None)
    if callable(to_dict):
        data = to_dict()
        if isinstance(data, dict):
            return data
    if isinstance(candidate, Mapping):
        return dict(candidate)
    return {}


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy, or dict objects.

    Missing sections come back as an empty dict so constructors can fall back to defaults.
    """
    if source is None:
        return {}

    if isinstance(source, dict):
        return _as_dict(source.get(section, {}))

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, None)
        if candidate is not None:
            return _as_dict(candidate)

    return {}
