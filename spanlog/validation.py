"""Shape checks and normalization for user-supplied log events.

Everything here is pure and synchronous: a violation raises
``ValidationError`` to the caller before any record is queued.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from numbers import Real
from typing import Any

from spanlog.errors import ValidationError


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def validate_tags(tags: Any) -> None:
    if isinstance(tags, (str, bytes)) or not isinstance(tags, (list, tuple, set, frozenset)):
        raise ValidationError("tags must be a list of strings")
    seen: set[str] = set()
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError("tags must be strings")
        if tag in seen:
            raise ValidationError(f"duplicate tag: {tag}")
        seen.add(tag)


def _sanitize_scores(scores: Any) -> dict[str, Any]:
    if isinstance(scores, (list, tuple)):
        raise ValidationError("scores must be an object, not an array")
    if not isinstance(scores, Mapping):
        raise ValidationError("scores must be an object")
    out: dict[str, Any] = {}
    for name, score in scores.items():
        if not isinstance(name, str):
            raise ValidationError("score names must be strings")
        if score is None:
            out[name] = None
            continue
        if isinstance(score, bool):
            score = 1 if score else 0
        if not _is_number(score):
            raise ValidationError(f"score values must be numbers (got {type(score).__name__} for {name!r})")
        if not math.isfinite(score):
            raise ValidationError(f"score values must be finite (got {score} for {name!r})")
        if score < 0 or score > 1:
            raise ValidationError(f"score values must be between 0 and 1 (got {score} for {name!r})")
        out[name] = score
    return out


def _check_string_keys(value: Any, field: str) -> None:
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field} must be an object")
    for key in value:
        if not isinstance(key, str):
            raise ValidationError(f"{field} keys must be strings")


def validate_and_sanitize_partial(event: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a partial event and return a normalized copy.

    Boolean scores become 0/1 and the deprecated ``inputs`` field is folded
    into ``input``. Applying this to its own output returns an equal dict.
    """
    sanitized = dict(event)

    if sanitized.get("scores") is not None:
        sanitized["scores"] = _sanitize_scores(sanitized["scores"])

    if sanitized.get("metadata") is not None:
        _check_string_keys(sanitized["metadata"], "metadata")

    if sanitized.get("metrics") is not None:
        _check_string_keys(sanitized["metrics"], "metric")
        for key, value in sanitized["metrics"].items():
            if value is not None and not _is_number(value):
                raise ValidationError(f"metric values must be numbers (got {type(value).__name__} for {key!r})")
            if value is not None and not math.isfinite(value):
                raise ValidationError(f"metric values must be finite (got {value} for {key!r})")

    if sanitized.get("input") is not None and sanitized.get("inputs") is not None:
        raise ValidationError("Only one of input or inputs (deprecated) can be specified. Prefer input.")

    if sanitized.get("tags") is not None:
        validate_tags(sanitized["tags"])
        sanitized["tags"] = list(sanitized["tags"])

    if "inputs" in sanitized:
        inputs = sanitized.pop("inputs")
        if inputs is not None or "input" not in sanitized:
            sanitized["input"] = inputs

    return sanitized


def validate_full(event: Mapping[str, Any], *, has_dataset: bool) -> Mapping[str, Any]:
    """Checks that only apply to complete events (``Experiment.log``).

    Partial validation still has to run afterwards.
    """
    has_input = event.get("input") is not None
    has_inputs = event.get("inputs") is not None
    if (has_input and has_inputs) or ("input" not in event and "inputs" not in event):
        raise ValidationError("Exactly one of input or inputs (deprecated) must be specified. Prefer input.")

    if event.get("output") is None:
        raise ValidationError("output must be specified")
    if event.get("scores") is None:
        raise ValidationError("scores must be specified")

    if has_dataset and event.get("dataset_record_id") is None:
        raise ValidationError("dataset_record_id must be specified when using a dataset")
    if not has_dataset and event.get("dataset_record_id") is not None:
        raise ValidationError("dataset_record_id cannot be specified when not using a dataset")

    return event
