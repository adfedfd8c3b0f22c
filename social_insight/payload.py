"""
Helpers for walking provider JSON payloads.

Provider payloads are kept as plain decoded JSON (dicts, lists, strings,
numbers, booleans, None). Lookups never raise on missing or mistyped keys;
absence is the normal case.
"""

from typing import Any, Callable, Iterable, Optional

Extractor = Callable[[Any], Any]

_MISSING = object()


def dig(tree: Any, *path: str) -> Any:
    """
    Follow a key path through nested dicts.

    Returns None as soon as a step is missing or the current node is
    not a dict.
    """
    node = tree
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key, _MISSING)
        if node is _MISSING:
            return None
    return node


def is_empty(value: Any) -> bool:
    """Empty means None, an empty/blank string, or an empty container."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def path(*keys: str) -> Extractor:
    """Build an extractor for a key path."""
    return lambda tree: dig(tree, *keys)


def first_match(extractors: Iterable[Extractor], tree: Any) -> Any:
    """Run extractors in order and return the first non-empty result."""
    for extractor in extractors:
        value = extractor(tree)
        if not is_empty(value):
            return value
    return None


def first_text(extractors: Iterable[Extractor], tree: Any) -> Optional[str]:
    """Like first_match, but only accepts scalar values and returns them as str."""
    for extractor in extractors:
        value = extractor(tree)
        if isinstance(value, bool) or isinstance(value, (dict, list)):
            continue
        if not is_empty(value):
            return str(value)
    return None


def as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []
