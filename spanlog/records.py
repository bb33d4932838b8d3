"""Row-level helpers shared by spans and the background logger.

Rows are plain JSON-compatible dicts. Merge rows (``_is_merge=True``) for the
same row key are folded into the row that precedes them before upload, and
the serialized rows are bin-packed into request-sized batches.
"""

from __future__ import annotations

import copy
import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

IS_MERGE_FIELD = "_is_merge"
MERGE_PATHS_FIELD = "_merge_paths"
AUDIT_SOURCE_FIELD = "_audit_source"
AUDIT_METADATA_FIELD = "_audit_metadata"
DELETE_FIELD = "_object_delete"
VALID_SOURCES: tuple[str, ...] = ("app", "api", "external")

# Fields that, together with ``id``, identify one logical row.
_ROW_KEY_FIELDS: tuple[str, ...] = (
    "experiment_id",
    "dataset_id",
    "prompt_session_id",
    "project_id",
    "log_id",
    "id",
)

LOGS3_API_VERSION = 2


def merge_dicts(into: dict[str, Any], from_: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge ``from_`` into ``into`` in place; ``from_`` wins on conflicts."""
    for key, value in from_.items():
        existing = into.get(key)
        if isinstance(existing, dict) and isinstance(value, Mapping):
            merge_dicts(existing, value)
        else:
            into[key] = value
    return into


def _row_key(row: Mapping[str, Any]) -> tuple[Any, ...]:
    return tuple(row.get(field) for field in _ROW_KEY_FIELDS)


def merge_row_batch(rows: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Fold merge rows into earlier rows with the same key.

    Rows without an ``id`` pass through untouched. When a merge row lands on a
    non-merge row the result stays a full replacement, so ``_is_merge`` is
    dropped from it. Output preserves first-seen order.
    """
    out: list[dict[str, Any]] = []
    groups: dict[tuple[Any, ...], dict[str, Any]] = {}
    for row in rows:
        row = copy.deepcopy(dict(row))
        if row.get("id") is None:
            out.append(row)
            continue
        key = _row_key(row)
        existing = groups.get(key)
        if existing is not None and row.get(IS_MERGE_FIELD):
            preserve_nomerge = not existing.get(IS_MERGE_FIELD)
            merge_dicts(existing, row)
            if preserve_nomerge:
                existing.pop(IS_MERGE_FIELD, None)
        else:
            groups[key] = row
    out.extend(groups.values())
    return out


def batch_items(
    items: list[str],
    *,
    batch_max_num_items: int | None = None,
    batch_max_num_bytes: int | None = None,
) -> list[list[str]]:
    """Greedily pack serialized rows into batches, in order.

    A batch closes when adding the next item would exceed either limit. The
    byte limit applies to the whole logs3 request body, separators and
    wrapper included. An item that is larger than the byte budget on its own
    is never split or dropped; it goes out as a single-item batch.
    """
    overhead = len(construct_logs3_data([]))
    batches: list[list[str]] = []
    current: list[str] = []
    current_bytes = overhead
    for item in items:
        # One separator per item; the first one is counted but never written.
        item_bytes = len(item.encode("utf-8")) + 1
        if current and (
            (batch_max_num_items is not None and len(current) >= batch_max_num_items)
            or (batch_max_num_bytes is not None and current_bytes + item_bytes > batch_max_num_bytes)
        ):
            batches.append(current)
            current = []
            current_bytes = overhead
        if batch_max_num_bytes is not None and overhead + item_bytes > batch_max_num_bytes:
            logger.warning(
                "Row of %d bytes exceeds the %d byte batch budget; sending it in its own request",
                item_bytes,
                batch_max_num_bytes,
            )
        current.append(item)
        current_bytes += item_bytes
    if current:
        batches.append(current)
    return batches


def construct_json_array(items: Iterable[str]) -> str:
    return "[" + ",".join(items) + "]"


def construct_logs3_data(items: Iterable[str]) -> str:
    return f'{{"rows": {construct_json_array(items)}, "api_version": {LOGS3_API_VERSION}}}'


def make_legacy_event(event: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a row into the shape accepted by the older ``logs`` endpoint.

    Older servers stored dataset ``expected`` values under ``output``; every
    other row shape is unchanged.
    """
    legacy = dict(event)
    if "dataset_id" not in legacy or "expected" not in legacy:
        return legacy
    legacy["output"] = legacy.pop("expected")
    merge_paths = legacy.get(MERGE_PATHS_FIELD)
    if merge_paths:
        legacy[MERGE_PATHS_FIELD] = [
            ["output", *path[1:]] if path and path[0] == "expected" else list(path) for path in merge_paths
        ]
    return legacy


def legacy_payload(items: Iterable[str]) -> str:
    return construct_json_array(json.dumps(make_legacy_event(json.loads(item))) for item in items)
