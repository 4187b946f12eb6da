"""
Dependency and file-conflict analysis over work-item text.

All functions are pure: they only look at the text of the items handed in.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

from .models import DependencyMap, WorkItem

DEFAULT_ID_PREFIXES: tuple[str, ...] = ("US", "GH")

SOURCE_EXTENSIONS: tuple[str, ...] = (
    "ts",
    "js",
    "tsx",
    "jsx",
    "json",
    "css",
    "scss",
    "html",
    "vue",
    "svelte",
    "py",
    "go",
    "rs",
    "java",
    "rb",
    "php",
)

# A path token starts at the beginning of the text or after whitespace, a
# backtick or a quote, and ends on a known extension at a word boundary.
FILE_PATH_PATTERN = re.compile(
    r"(?:^|(?<=[\s`\"']))([a-zA-Z0-9._/-]+\.(?:" + "|".join(SOURCE_EXTENSIONS) + r"))\b"
)

# Two items must share more than this many files to be considered conflicting.
# A single shared file is treated as coincidental.
CONFLICT_THRESHOLD = 1


def _id_pattern(prefixes: Iterable[str]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(p) for p in prefixes)
    return re.compile(rf"\b(?:{alternatives})-\d+")


def extract_referenced_ids(
    text: str, prefixes: Iterable[str] = DEFAULT_ID_PREFIXES
) -> set[str]:
    """Return the unique work-item ids (e.g. ``US-001``) mentioned in ``text``."""
    return set(_id_pattern(prefixes).findall(text))


def build_dependency_map(
    items: Sequence[WorkItem], prefixes: Iterable[str] = DEFAULT_ID_PREFIXES
) -> DependencyMap:
    """Map every item id to the ids of other backlog items it references."""
    prefixes = tuple(prefixes)
    known_ids = {item.id for item in items}
    deps: DependencyMap = {}
    for item in items:
        referenced = extract_referenced_ids(item.searchable_text(), prefixes)
        deps[item.id] = {ref for ref in referenced if ref != item.id and ref in known_ids}
    return deps


def extract_file_references(text: str) -> set[str]:
    """Return the unique path-like tokens ending in a source-file extension."""
    return set(FILE_PATH_PATTERN.findall(text))


def shared_files(a: WorkItem, b: WorkItem) -> set[str]:
    return extract_file_references(a.searchable_text()) & extract_file_references(
        b.searchable_text()
    )


def conflicts(a: WorkItem, b: WorkItem) -> bool:
    """True when two items likely touch the same files (more than one in common)."""
    return len(shared_files(a, b)) > CONFLICT_THRESHOLD
