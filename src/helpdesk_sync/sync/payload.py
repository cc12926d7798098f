"""
Helpers for JSON mutation payloads.

Payloads are plain dicts in JSON form. Append-only collections (ticket
history and chat) are merged by entry id so that overlaying a payload
never drops or reorders entries already present.
"""

from typing import Any

from helpdesk_sync.types import is_temp_id

APPEND_ONLY_FIELDS = frozenset({"history", "chat_history"})


def append_entries(existing: list[Any], new: list[Any]) -> list[Any]:
    """
    Append entries of `new` that are not already in `existing`.

    Entries are matched by their "id" key; entries without an id are
    always appended.
    """
    merged = list(existing)
    seen = {entry.get("id") for entry in existing if isinstance(entry, dict)}
    for entry in new:
        entry_id = entry.get("id") if isinstance(entry, dict) else None
        if entry_id is not None and entry_id in seen:
            continue
        merged.append(entry)
        if entry_id is not None:
            seen.add(entry_id)
    return merged


def merge_payload(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """
    Overlay `update` on `base` and return a new dict.

    Later fields win, except append-only collections which are merged.
    """
    merged = dict(base)
    for key, value in update.items():
        if key in APPEND_ONLY_FIELDS:
            merged[key] = append_entries(base.get(key) or [], value or [])
        else:
            merged[key] = value
    return merged


def replace_id(value: Any, old_id: str, new_id: str) -> Any:
    """Return a copy of `value` with every string equal to `old_id` replaced."""
    if isinstance(value, str):
        return new_id if value == old_id else value
    if isinstance(value, dict):
        return {key: replace_id(item, old_id, new_id) for key, item in value.items()}
    if isinstance(value, list):
        return [replace_id(item, old_id, new_id) for item in value]
    return value


def find_temp_ids(value: Any) -> set[str]:
    """Collect every temporary (local-) id referenced anywhere in `value`."""
    found: set[str] = set()
    if isinstance(value, str):
        if is_temp_id(value):
            found.add(value)
    elif isinstance(value, dict):
        for item in value.values():
            found |= find_temp_ids(item)
    elif isinstance(value, list):
        for item in value:
            found |= find_temp_ids(item)
    return found


def changed_fields(
    before: dict[str, Any], after: dict[str, Any], ignore: frozenset[str] = frozenset()
) -> list[str]:
    """Names of keys whose value differs between two entity dicts."""
    keys = (set(before) | set(after)) - ignore
    return sorted(key for key in keys if before.get(key) != after.get(key))
