"""Backlog loading from a PRD JSON file."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .errors import ConfigurationError
from .models import WorkItem


def _raw_items(data: Any) -> list[dict[str, Any]]:
    if isinstance(data, dict):
        data = data.get("userStories", data.get("user_stories"))
    if not isinstance(data, list):
        raise ConfigurationError('Backlog must be a list or an object with "userStories"')
    return data


def load_backlog(path: Path) -> list[WorkItem]:
    """Read work items from ``path``, ordered by priority (stable for ties)."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Backlog not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Backlog is not valid JSON: {path}: {e}") from e

    items = []
    for raw in _raw_items(data):
        try:
            items.append(WorkItem.from_dict(raw))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid work item in {path}: {raw!r}") from e
    return sorted(items, key=lambda item: item.priority)


def pending_items(items: list[WorkItem]) -> list[WorkItem]:
    return [item for item in items if not item.passes]


def save_backlog(path: Path, items: list[WorkItem]) -> None:
    """Write items back, keeping any other top-level keys of the original file."""
    path = Path(path)
    document: Any = {"userStories": []}
    if path.exists():
        existing = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(existing, list):
            document = []
        elif isinstance(existing, dict):
            document = existing

    stories = [item.to_dict() for item in items]
    if isinstance(document, list):
        document = stories
    else:
        document["userStories"] = stories
    path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
