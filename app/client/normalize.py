"""
Semantic view of a workspace snapshot.

Two snapshots that differ only in screen layout (table position, size,
z-order, selection) normalize to equal values, so such differences never
surface as a sync conflict.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

# Per-device settings that never take part in comparison and survive a pull
CLIENT_ONLY_SETTINGS_KEYS = ("visibleSpaceIds",)

# Table fields that only describe how the table is laid out on screen
UI_ONLY_TABLE_FIELDS = ("position", "size", "zIndex", "selected")

SHARED_MARKER = "_shared"


def _sort_key(item: Any) -> str:
    if isinstance(item, dict):
        return str(item.get("id", ""))
    return str(item)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _number(value: Any) -> float | int:
    if isinstance(value, bool):
        return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    if number.is_integer():
        return int(number)
    return number


def _normalize_task(task: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {
        "id": task.get("id"),
        "title": _text(task.get("title")),
        "duration": _number(task.get("duration")),
        "selected": bool(task.get("selected")),
    }
    if task.get("group") not in (None, ""):
        normalized["group"] = task["group"]
    if task.get("notebook") not in (None, ""):
        normalized["notebook"] = task["notebook"]
    return normalized


def _normalize_table(table: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {
        "id": table.get("id"),
        "type": table.get("type"),
        "title": _text(table.get("title")),
        "date": table.get("date"),
        "startTime": _text(table.get("startTime")),
        "tasks": sorted(
            (_normalize_task(task) for task in table.get("tasks") or []),
            key=_sort_key,
        ),
    }
    if table.get("spaceId") not in (None, ""):
        normalized["spaceId"] = table["spaceId"]
    return normalized


def _strip_ui(table: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in table.items() if k not in UI_ONLY_TABLE_FIELDS}


def tables_for_sync(tables: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Tables that belong in the workspace payload; shared copies stay local."""
    return [t for t in tables or [] if not t.get(SHARED_MARKER)]


def merge_shared_tables(
    remote_tables: Optional[List[Dict[str, Any]]],
    local_tables: Optional[List[Dict[str, Any]]]
) -> List[Dict[str, Any]]:
    """Remote tables plus the local shared copies that remote does not override."""
    remote_tables = list(remote_tables or [])
    remote_ids = {t.get("id") for t in remote_tables}
    shared = [
        t for t in local_tables or []
        if t.get(SHARED_MARKER) and t.get("id") not in remote_ids
    ]
    return remote_tables + shared


def normalize_snapshot(snapshot: Optional[Dict[str, Any]], exclude_shared: bool = True) -> Optional[Dict[str, Any]]:
    """
    Reduce a snapshot to its semantic content.

    Strips UI-only fields, trims strings, coerces durations to numbers, drops
    client-only settings and sorts every collection by id. Idempotent.
    """
    if snapshot is None:
        return None

    settings = {
        k: v for k, v in (snapshot.get("settings") or {}).items()
        if k not in CLIENT_ONLY_SETTINGS_KEYS
    }
    tables = snapshot.get("tables") or []
    if exclude_shared:
        tables = tables_for_sync(tables)

    notebooks = snapshot.get("notebooks") or {}
    return {
        "tables": sorted((_normalize_table(t) for t in tables), key=_sort_key),
        "settings": settings,
        "taskGroups": sorted(snapshot.get("taskGroups") or [], key=_sort_key),
        "notebooks": {
            "workspace": _text(notebooks.get("workspace")),
            "tasks": {str(k): _text(v) for k, v in (notebooks.get("tasks") or {}).items()},
        },
        "diaries": {str(k): _text(v) for k, v in (snapshot.get("diaries") or {}).items()},
        "archivedTables": sorted(
            (_strip_ui(t) if isinstance(t, dict) else t for t in snapshot.get("archivedTables") or []),
            key=_sort_key,
        ),
    }


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality on JSON-like trees. bool and int are different types."""
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, dict):
        if not isinstance(b, dict) or a.keys() != b.keys():
            return False
        return all(deep_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)):
        if not isinstance(b, (list, tuple)) or len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))
    return type(a) is type(b) and a == b


def is_snapshot_empty(snapshot: Optional[Dict[str, Any]]) -> bool:
    """True when no table has a task with a non-blank title."""
    if not snapshot:
        return True
    for table in tables_for_sync(snapshot.get("tables")):
        for task in table.get("tasks") or []:
            if _text(task.get("title")):
                return False
    return True


def is_only_empty_remote_vs_nonempty_local(
    normalized_local: Optional[Dict[str, Any]],
    normalized_remote: Optional[Dict[str, Any]]
) -> bool:
    """
    True when the snapshots differ only in task titles that are blank remotely
    and filled in locally, i.e. the user typed into a task that was synced empty.
    """
    if not normalized_local or not normalized_remote:
        return False

    local_titles = {
        (table["id"], task["id"]): task["title"]
        for table in normalized_local.get("tables", [])
        for task in table.get("tasks", [])
    }

    patched_tables = []
    filled_in = 0
    for table in normalized_remote.get("tables", []):
        tasks = []
        for task in table.get("tasks", []):
            local_title = local_titles.get((table["id"], task["id"]))
            if task["title"] == "" and local_title:
                task = dict(task, title=local_title)
                filled_in += 1
            tasks.append(task)
        patched_tables.append(dict(table, tasks=tasks))

    if filled_in == 0:
        return False
    return deep_equal(normalized_local, dict(normalized_remote, tables=patched_tables))
