"""Common utilities and types for the reconciliation engine."""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """Result returned by a single backend-bound step."""
    success: bool
    message: str = ''
    duration: float = 0.0
    attempts: int = 0
    state_updates: dict = field(default_factory=dict)


def canonical_json(data: Any) -> str:
    """Serialize data with sorted keys and compact separators."""
    return json.dumps(data, sort_keys=True, separators=(',', ':'), ensure_ascii=False, default=str)


def content_hash(data: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of data."""
    return hashlib.sha256(canonical_json(data).encode('utf-8')).hexdigest()


def flatten_attributes(attrs: dict, prefix: str = '') -> dict[str, Any]:
    """Flatten nested mappings into dotted attribute paths.

    Lists are kept whole (compared as a single value).
    Empty nested mappings are kept as a leaf so that adding or removing
    an empty block still shows up as a change.
    """
    flat: dict[str, Any] = {}
    for key, value in attrs.items():
        path = f'{prefix}.{key}' if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_attributes(value, path))
        else:
            flat[path] = value
    return flat


def path_matches(path: str, patterns) -> bool:
    """True if path equals a pattern or lies beneath one (dotted prefix)."""
    for pattern in patterns:
        if path == pattern or path.startswith(pattern + '.'):
            return True
    return False


def elapsed(start: float, now: Optional[float] = None) -> float:
    """Seconds since start, rounded for reporting."""
    return round((now if now is not None else time.time()) - start, 3)
