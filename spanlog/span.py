"""Spans: the unit of traced work and the records they emit.

A span enqueues a full (non-merge) row when it is created and merge rows for
every later ``log``/``set_attributes``/``end`` call. Ids are generated client
side, so children can be started long before anything has been flushed::

    span = logger.start_span(name="answer", input=question)
    with span.start_span(name="retrieve") as child:
        child.log(output=docs)
    span.log(output=answer, scores={"quality": 1})
    span.end()

The ambient "current span" lives in a ``ContextVar``: it follows awaits and
copied task contexts and never leaks into sibling tasks.
"""

from __future__ import annotations

import copy
import inspect
import itertools
import json
import logging
import os
import time
import traceback
import uuid
from contextvars import ContextVar, Token
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from spanlog.deferred import DeferredValue
from spanlog.errors import ProtocolInvariantError, ValidationError
from spanlog.identity import ParentSpanIds, SpanIdentity
from spanlog.metadata import compute_logger_metadata
from spanlog.records import (
    AUDIT_METADATA_FIELD,
    AUDIT_SOURCE_FIELD,
    IS_MERGE_FIELD,
    VALID_SOURCES,
    merge_dicts,
)
from spanlog.span_components import SpanComponents, SpanObjectType
from spanlog.validation import validate_and_sanitize_partial

if TYPE_CHECKING:
    from spanlog.state import SessionState

logger = logging.getLogger(__name__)

_PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))
_PLACEHOLDER_KINDS = frozenset({"span", "logger", "experiment", "dataset"})

_exec_counter = itertools.count()

_current_span: ContextVar[Span | NoopSpan | None] = ContextVar("spanlog_current_span", default=None)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> float:
    return time.time()


def _payload_default(obj: Any) -> Any:
    """JSON fallback for values logged inside events."""
    kind = getattr(type(obj), "kind", None)
    if kind in _PLACEHOLDER_KINDS:
        return f"<{kind}>"
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    return str(obj)


def snapshot_payload(record: Mapping[str, Any]) -> dict[str, Any]:
    """Deep copy through JSON so later mutation of user objects cannot change what gets logged."""
    return json.loads(json.dumps(record, default=_payload_default))


def _caller_location() -> dict[str, Any] | None:
    """First frame outside this package, as ``caller_*`` fields."""
    frame = inspect.currentframe()
    try:
        while frame is not None:
            filename = os.path.abspath(frame.f_code.co_filename)
            if not filename.startswith(_PACKAGE_DIR + os.sep):
                return {
                    "caller_functionname": frame.f_code.co_name,
                    "caller_filename": frame.f_code.co_filename,
                    "caller_lineno": frame.f_lineno,
                }
            frame = frame.f_back
        return None
    finally:
        del frame


def _derive_name(name: str | None, is_root: bool, location: dict[str, Any] | None) -> str:
    if name:
        return name
    if is_root:
        return "root"
    if location:
        filename = os.path.basename(location["caller_filename"])
        parts = [location["caller_functionname"]]
        if filename:
            parts.append(f"{filename}:{location['caller_lineno']}")
        return ":".join(parts)
    return "subspan"


def _split_logging_data(
    event: Mapping[str, Any] | None,
    internal_data: Mapping[str, Any] | None,
) -> tuple[dict[str, Any], dict[str, DeferredValue[Any]]]:
    """Sanitize ``event``, overlay it on ``internal_data``, and pull out pending values.

    Fields holding a ``DeferredValue`` or any awaitable are resolved at flush
    time instead of being serialized now.
    """
    sanitized = validate_and_sanitize_partial(event or {})
    combined: dict[str, Any] = {}
    merge_dicts(combined, copy.deepcopy(dict(internal_data or {})))
    merge_dicts(combined, sanitized)

    serializable: dict[str, Any] = {}
    pending: dict[str, DeferredValue[Any]] = {}
    for key, value in combined.items():
        if isinstance(value, DeferredValue):
            pending[key] = value
        elif inspect.isawaitable(value):
            pending[key] = DeferredValue(_awaiting(value))
        else:
            serializable[key] = value
    return serializable, pending


def _awaiting(awaitable: Awaitable[Any]) -> Callable[[], Awaitable[Any]]:
    async def _get() -> Any:
        return await awaitable

    return _get


async def _object_id_fields(object_type: SpanObjectType, object_id: DeferredValue[str]) -> dict[str, str]:
    return SpanComponents(object_type=object_type, object_id=await object_id.get()).object_id_fields()


def log_error(span: Span | NoopSpan, error: BaseException) -> None:
    """Log ``error`` (message and traceback) to ``span``."""
    message = str(error) or type(error).__name__
    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    span.log(error=f"{message}\n\n{stack}")


def run_traced(
    span: Span | NoopSpan,
    callback: Callable[..., Any],
    *,
    set_current: bool = True,
    after_async: Callable[[], Awaitable[None]] | None = None,
) -> Any:
    """Run ``callback(span)`` inside ``span``; always ends the span.

    When the callback returns an awaitable (an ``async def``, a lambda around
    one, an object with ``async __call__``), a coroutine is returned instead
    that keeps ``span`` current while awaiting it, then ends the span and
    awaits ``after_async``, if given. Errors are logged to the span and
    re-raised.
    """
    token = _current_span.set(span) if set_current else None
    is_async = False
    try:
        result = callback(span)
        is_async = inspect.isawaitable(result)
    except Exception as exc:
        log_error(span, exc)
        raise
    finally:
        if token is not None:
            _current_span.reset(token)
        if not is_async:
            span.end()

    if is_async:
        return _run_awaitable(span, result, set_current=set_current, after_async=after_async)
    return result


async def _run_awaitable(
    span: Span | NoopSpan,
    awaitable: Awaitable[Any],
    *,
    set_current: bool,
    after_async: Callable[[], Awaitable[None]] | None,
) -> Any:
    token = _current_span.set(span) if set_current else None
    try:
        result = await awaitable
    except Exception as exc:
        log_error(span, exc)
        raise
    finally:
        if token is not None:
            _current_span.reset(token)
        span.end()
    if after_async is not None:
        await after_async()
    return result


def get_current_span() -> Span | NoopSpan:
    return _current_span.get() or NOOP_SPAN


# ---------------------------------------------------------------------------
# Resolving parents from export tokens
# ---------------------------------------------------------------------------


def span_components_to_object_id_lambda(
    state: SessionState, components: SpanComponents
) -> Callable[[], Awaitable[str]]:
    """Producer for the object id a token refers to.

    Tokens carrying compute arguments resolve through ``compute_logger_metadata``,
    the same function a ``Logger`` uses, so both ends agree on the project id.
    """
    if components.object_id:
        object_id = components.object_id

        async def _known() -> str:
            return object_id

        return _known

    args = components.compute_object_metadata_args or {}
    if components.object_type != SpanObjectType.PROJECT_LOGS:
        raise ProtocolInvariantError(
            f"compute_object_metadata_args are not supported for {components.object_type.name}"
        )

    async def _compute() -> str:
        metadata = await compute_logger_metadata(
            state,
            project_name=args.get("project_name"),
            project_id=args.get("project_id"),
        )
        return metadata.project.id

    return _compute


def start_span_parent_args(
    state: SessionState,
    *,
    parent: str | None,
    parent_object_type: SpanObjectType,
    parent_object_id: DeferredValue[str],
    parent_compute_object_metadata_args: dict[str, Any] | None,
    parent_span_ids: ParentSpanIds | None,
) -> dict[str, Any]:
    """Constructor arguments for a span, optionally re-parented under an export token.

    The token's object type must match the destination immediately; its object
    id is compared lazily, when the row is resolved at flush time.
    """
    if not parent:
        return {
            "parent_object_type": parent_object_type,
            "parent_object_id": parent_object_id,
            "parent_compute_object_metadata_args": parent_compute_object_metadata_args,
            "parent_span_ids": parent_span_ids,
        }

    if parent_span_ids is not None:
        raise ProtocolInvariantError("Cannot specify both parent and parent_span_ids")
    components = SpanComponents.from_str(parent)
    if components.object_type != parent_object_type:
        raise ProtocolInvariantError(
            f"Mismatch between expected span parent object type {parent_object_type.name} "
            f"and provided type {components.object_type.name}"
        )

    token_object_id = span_components_to_object_id_lambda(state, components)

    async def _checked_object_id() -> str:
        expected = await parent_object_id.get()
        provided = await token_object_id()
        if expected != provided:
            raise ProtocolInvariantError(
                f"Mismatch between expected span parent object id {expected} and provided id {provided}"
            )
        return expected

    row_ids = components.row_ids
    return {
        "parent_object_type": parent_object_type,
        "parent_object_id": DeferredValue(_checked_object_id),
        "parent_compute_object_metadata_args": parent_compute_object_metadata_args,
        "parent_span_ids": (
            ParentSpanIds(span_id=row_ids.span_id, root_span_id=row_ids.root_span_id) if row_ids else None
        ),
    }


# ---------------------------------------------------------------------------
# Feedback and out-of-band updates
# ---------------------------------------------------------------------------


def log_feedback_impl(
    state: SessionState,
    parent_object_type: SpanObjectType,
    parent_object_id: DeferredValue[str],
    *,
    id: str,
    scores: Mapping[str, Any] | None = None,
    expected: Any = None,
    tags: list[str] | None = None,
    comment: str | None = None,
    metadata: Mapping[str, Any] | None = None,
    source: str | None = None,
) -> None:
    source = source or "external"
    if source not in VALID_SOURCES:
        raise ValidationError(f"source must be one of {', '.join(VALID_SOURCES)}")
    if scores is None and expected is None and tags is None and comment is None:
        raise ValidationError("At least one of scores, expected, tags, or comment must be specified")

    validated = validate_and_sanitize_partial(
        {"scores": scores, "metadata": metadata, "expected": expected, "tags": tags}
    )
    audit_metadata = validated.pop("metadata", None)
    update_event = {k: v for k, v in validated.items() if v is not None}
    bg_logger = state.bg_logger()

    if update_event:

        async def _feedback_record() -> dict[str, Any]:
            return {
                "id": id,
                **update_event,
                **(await _object_id_fields(parent_object_type, parent_object_id)),
                AUDIT_SOURCE_FIELD: source,
                AUDIT_METADATA_FIELD: audit_metadata,
                IS_MERGE_FIELD: True,
            }

        bg_logger.log([DeferredValue(_feedback_record)])

    if comment is not None:
        comment_id = str(uuid.uuid4())
        created = datetime.now(timezone.utc).isoformat()

        async def _comment_record() -> dict[str, Any]:
            return {
                "id": comment_id,
                "created": created,
                "origin": {"id": id},
                "comment": {"text": comment},
                **(await _object_id_fields(parent_object_type, parent_object_id)),
                AUDIT_SOURCE_FIELD: source,
                AUDIT_METADATA_FIELD: audit_metadata,
            }

        bg_logger.log([DeferredValue(_comment_record)])


def update_span_impl(
    state: SessionState,
    parent_object_type: SpanObjectType,
    parent_object_id: DeferredValue[str],
    id: str,
    event: Mapping[str, Any],
) -> None:
    update_event = validate_and_sanitize_partial({**event, "id": id})

    async def _update_record() -> dict[str, Any]:
        return {
            **update_event,
            "id": id,
            **(await _object_id_fields(parent_object_type, parent_object_id)),
            IS_MERGE_FIELD: True,
        }

    state.bg_logger().log([DeferredValue(_update_record)])


# ---------------------------------------------------------------------------
# Span
# ---------------------------------------------------------------------------


class Span:
    """A live span writing to one experiment or project log stream.

    Do not construct directly; use ``start_span``/``traced`` on a logger,
    experiment, or another span.
    """

    kind = "span"

    def __init__(
        self,
        state: SessionState,
        *,
        parent_object_type: SpanObjectType,
        parent_object_id: DeferredValue[str],
        parent_compute_object_metadata_args: dict[str, Any] | None = None,
        parent_span_ids: ParentSpanIds | None = None,
        name: str | None = None,
        type: str | None = None,
        span_attributes: Mapping[str, Any] | None = None,
        start_time: float | None = None,
        event: Mapping[str, Any] | None = None,
        default_root_type: str | None = None,
    ) -> None:
        self._state = state
        self._parent_object_type = parent_object_type
        self._parent_object_id = parent_object_id
        self._parent_compute_object_metadata_args = parent_compute_object_metadata_args
        self._logged_end_time: float | None = None
        self._context_tokens: list[Token[Any]] = []

        event = dict(event or {})
        self._identity = SpanIdentity.create(row_id=event.pop("id", None), parent=parent_span_ids)

        if type is None and parent_span_ids is None:
            type = default_root_type
        location = _caller_location()
        attributes: dict[str, Any] = {"name": _derive_name(name, parent_span_ids is None, location)}
        if type is not None:
            attributes["type"] = type
        attributes.update(span_attributes or {})
        attributes["exec_counter"] = next(_exec_counter)

        internal_data = {
            "metrics": {"start": start_time if start_time is not None else _now()},
            "context": dict(location or {}),
            "span_attributes": attributes,
            "created": datetime.now(timezone.utc).isoformat(),
        }

        # The creation row replaces; every later row for this span merges into it.
        self._is_merge = False
        self._log_internal(event=event, internal_data=internal_data)
        self._is_merge = True

    def __repr__(self) -> str:
        return f"Span(id={self.id!r}, span_id={self.span_id!r}, root_span_id={self.root_span_id!r})"

    @property
    def id(self) -> str:
        return self._identity.id

    @property
    def span_id(self) -> str:
        return self._identity.span_id

    @property
    def root_span_id(self) -> str:
        return self._identity.root_span_id

    @property
    def span_parents(self) -> list[str]:
        return list(self._identity.span_parents)

    # -- logging ------------------------------------------------------------

    def log(self, **event: Any) -> None:
        """Merge ``event`` into this span's row (``input``, ``output``, ``scores``, ...)."""
        self._log_internal(event=event)

    def set_attributes(
        self,
        *,
        name: str | None = None,
        type: str | None = None,
        span_attributes: Mapping[str, Any] | None = None,
    ) -> None:
        attributes = {k: v for k, v in (("name", name), ("type", type)) if v is not None}
        attributes.update(span_attributes or {})
        self._log_internal(internal_data={"span_attributes": attributes})

    def log_feedback(self, **event: Any) -> None:
        log_feedback_impl(
            self._state,
            self._parent_object_type,
            self._parent_object_id,
            id=self.id,
            **event,
        )

    def _log_internal(
        self,
        *,
        event: Mapping[str, Any] | None = None,
        internal_data: Mapping[str, Any] | None = None,
    ) -> None:
        serializable, pending = _split_logging_data(event, internal_data)

        partial_record = snapshot_payload(
            {**self._identity.row_fields(), **serializable, IS_MERGE_FIELD: self._is_merge}
        )

        if partial_record.get("tags") and self._identity.span_parents:
            raise ProtocolInvariantError("Tags can only be logged to the root span")

        end_time = (partial_record.get("metrics") or {}).get("end")
        if end_time is not None:
            self._logged_end_time = end_time

        object_type = self._parent_object_type
        object_id = self._parent_object_id

        async def _compute_record() -> dict[str, Any]:
            resolved = {key: await value.get() for key, value in pending.items()}
            return {
                **partial_record,
                **resolved,
                **(await _object_id_fields(object_type, object_id)),
            }

        self._state.bg_logger().log([DeferredValue(_compute_record)])

    # -- children -----------------------------------------------------------

    def start_span(
        self,
        *,
        name: str | None = None,
        type: str | None = None,
        span_attributes: Mapping[str, Any] | None = None,
        start_time: float | None = None,
        parent: str | None = None,
        **event: Any,
    ) -> Span:
        parent_span_ids = None if parent else self._identity.as_parent()
        return Span(
            self._state,
            name=name,
            type=type,
            span_attributes=span_attributes,
            start_time=start_time,
            event=event,
            **start_span_parent_args(
                self._state,
                parent=parent,
                parent_object_type=self._parent_object_type,
                parent_object_id=self._parent_object_id,
                parent_compute_object_metadata_args=self._parent_compute_object_metadata_args,
                parent_span_ids=parent_span_ids,
            ),
        )

    def traced(self, callback: Callable[..., Any], *, set_current: bool = True, **kwargs: Any) -> Any:
        """Run ``callback(child)`` in a new child span; see ``run_traced``."""
        return run_traced(self.start_span(**kwargs), callback, set_current=set_current)

    # -- lifecycle ----------------------------------------------------------

    def end(self, end_time: float | None = None) -> float:
        """Record ``metrics.end`` once and return it; later calls return the same time."""
        if self._logged_end_time is not None:
            return self._logged_end_time
        end_time = end_time if end_time is not None else _now()
        self._log_internal(internal_data={"metrics": {"end": end_time}})
        return end_time

    def close(self, end_time: float | None = None) -> float:
        return self.end(end_time)

    async def export(self) -> str:
        """Token that lets another process attach children under this span."""
        object_id = None
        compute_args = None
        if self._parent_compute_object_metadata_args and not self._parent_object_id.has_computed:
            compute_args = self._parent_compute_object_metadata_args
        else:
            object_id = await self._parent_object_id.get()
        return SpanComponents(
            object_type=self._parent_object_type,
            object_id=object_id,
            compute_object_metadata_args=compute_args,
            row_ids={"row_id": self.id, "span_id": self.span_id, "root_span_id": self.root_span_id},
        ).to_str()

    async def flush(self) -> None:
        await self._state.bg_logger().flush()

    def __enter__(self) -> Span:
        self._context_tokens.append(_current_span.set(self))
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        try:
            if exc is not None and isinstance(exc, Exception):
                log_error(self, exc)
        finally:
            _current_span.reset(self._context_tokens.pop())
            self.end()


class NoopSpan:
    """Stand-in used when there is nothing to log to; every call is a no-op."""

    kind = "span"
    id = ""
    span_id = ""
    root_span_id = ""
    span_parents: list[str] = []

    def __repr__(self) -> str:
        return "NoopSpan()"

    def log(self, **event: Any) -> None:
        pass

    def set_attributes(self, **kwargs: Any) -> None:
        pass

    def log_feedback(self, **event: Any) -> None:
        pass

    def start_span(self, **kwargs: Any) -> NoopSpan:
        return self

    def traced(self, callback: Callable[..., Any], *, set_current: bool = True, **kwargs: Any) -> Any:
        return run_traced(self, callback, set_current=set_current)

    def end(self, end_time: float | None = None) -> float:
        return end_time if end_time is not None else _now()

    def close(self, end_time: float | None = None) -> float:
        return self.end(end_time)

    async def export(self) -> str:
        return ""

    async def flush(self) -> None:
        pass

    def __enter__(self) -> NoopSpan:
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        pass


NOOP_SPAN = NoopSpan()
