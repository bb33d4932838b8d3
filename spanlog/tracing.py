"""Top-level tracing entry points that pick their parent from context.

Parent precedence for a new span: an explicit ``parent`` export token, then
the current span, then the current experiment, then the current logger. With
none of those the span is ``NOOP_SPAN`` and nothing is logged.

Usage::

    @wrap_traced
    async def retrieve(query: str) -> list[str]:
        ...

    with start_span(name="pipeline") as span:
        span.log(input=query)
"""

from __future__ import annotations

import functools
import inspect
from typing import TYPE_CHECKING, Any, Callable, Mapping, TypeVar, overload

from spanlog.deferred import DeferredValue
from spanlog.errors import ValidationError
from spanlog.identity import ParentSpanIds
from spanlog.span import (
    NOOP_SPAN,
    NoopSpan,
    Span,
    get_current_span,
    run_traced,
    span_components_to_object_id_lambda,
    update_span_impl,
)
from spanlog.span_components import SpanComponents, SpanObjectType
from spanlog.state import SessionState, get_global_state

if TYPE_CHECKING:
    from spanlog.logger import Experiment, Logger

F = TypeVar("F", bound=Callable[..., Any])


def current_span() -> Span | NoopSpan:
    """The span set by the innermost enclosing ``traced``/``with span``, or ``NOOP_SPAN``."""
    return get_current_span()


def current_logger(state: SessionState | None = None) -> Logger | None:
    return (state or get_global_state()).current_logger


def current_experiment(state: SessionState | None = None) -> Experiment | None:
    return (state or get_global_state()).current_experiment


def get_span_parent_object(state: SessionState | None = None) -> Span | NoopSpan | Experiment | Logger:
    state = state or get_global_state()
    span = current_span()
    if span is not NOOP_SPAN:
        return span
    if state.current_experiment is not None:
        return state.current_experiment
    if state.current_logger is not None:
        return state.current_logger
    return NOOP_SPAN


def _start_span_and_is_logger(
    *,
    parent: str | None,
    async_flush: bool,
    state: SessionState | None,
    span_kwargs: Mapping[str, Any],
) -> tuple[Span | NoopSpan, bool]:
    """Start a span under the resolved parent; also report whether it belongs to a sync-flush logger."""
    state = state or get_global_state()
    if parent:
        components = SpanComponents.from_str(parent)
        row_ids = components.row_ids
        span = Span(
            state,
            parent_object_type=components.object_type,
            parent_object_id=DeferredValue(span_components_to_object_id_lambda(state, components)),
            parent_compute_object_metadata_args=components.compute_object_metadata_args,
            parent_span_ids=(
                ParentSpanIds(span_id=row_ids.span_id, root_span_id=row_ids.root_span_id) if row_ids else None
            ),
            name=span_kwargs.get("name"),
            type=span_kwargs.get("type"),
            span_attributes=span_kwargs.get("span_attributes"),
            start_time=span_kwargs.get("start_time"),
            event=span_kwargs.get("event"),
        )
        return span, components.object_type == SpanObjectType.PROJECT_LOGS and not async_flush

    parent_object = get_span_parent_object(state)
    kwargs = dict(span_kwargs)
    event = kwargs.pop("event", None) or {}
    span = parent_object.start_span(**kwargs, **event)
    is_sync_flush_logger = parent_object.kind == "logger" and not getattr(parent_object, "async_flush", True)
    return span, is_sync_flush_logger


def start_span(
    *,
    name: str | None = None,
    type: str | None = None,
    span_attributes: Mapping[str, Any] | None = None,
    start_time: float | None = None,
    parent: str | None = None,
    state: SessionState | None = None,
    **event: Any,
) -> Span | NoopSpan:
    """Start a span under the current parent (see module docstring). End it yourself."""
    span, _ = _start_span_and_is_logger(
        parent=parent,
        async_flush=True,
        state=state,
        span_kwargs={
            "name": name,
            "type": type,
            "span_attributes": span_attributes,
            "start_time": start_time,
            "event": event,
        },
    )
    return span


def traced(
    callback: Callable[..., Any],
    *,
    name: str | None = None,
    type: str | None = None,
    span_attributes: Mapping[str, Any] | None = None,
    start_time: float | None = None,
    parent: str | None = None,
    set_current: bool = True,
    async_flush: bool = True,
    state: SessionState | None = None,
    **event: Any,
) -> Any:
    """Run ``callback(span)`` in a new span under the current parent.

    Coroutine functions return a coroutine. When the span belongs to a logger
    created with ``async_flush=False`` that coroutine flushes before returning.
    """
    span, is_sync_flush_logger = _start_span_and_is_logger(
        parent=parent,
        async_flush=async_flush,
        state=state,
        span_kwargs={
            "name": name,
            "type": type,
            "span_attributes": span_attributes,
            "start_time": start_time,
            "event": event,
        },
    )
    return run_traced(
        span,
        callback,
        set_current=set_current,
        after_async=span.flush if is_sync_flush_logger else None,
    )


@overload
def wrap_traced(fn: F) -> F: ...


@overload
def wrap_traced(
    fn: None = None,
    *,
    name: str | None = None,
    type: str = "function",
    **traced_kwargs: Any,
) -> Callable[[F], F]: ...


def wrap_traced(
    fn: Callable[..., Any] | None = None,
    *,
    name: str | None = None,
    type: str = "function",
    **traced_kwargs: Any,
) -> Any:
    """Decorator that traces every call of a function.

    The bound arguments are logged as ``input`` and the return value as
    ``output`` unless the decorator supplies them explicitly. Works on plain
    and ``async def`` functions, bare or with keyword arguments::

        @wrap_traced
        def tokenize(text): ...

        @wrap_traced(name="rerank", span_attributes={"model": "small"})
        async def rerank(docs): ...
    """
    if fn is None:
        return functools.partial(wrap_traced, name=name, type=type, **traced_kwargs)

    span_name = name or fn.__name__
    has_explicit_input = traced_kwargs.get("input") is not None
    has_explicit_output = traced_kwargs.get("output") is not None
    signature = inspect.signature(fn)

    def _log_input(span: Span | NoopSpan, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        if has_explicit_input:
            return
        bound = signature.bind(*args, **kwargs)
        bound.apply_defaults()
        span.log(input=dict(bound.arguments))

    if inspect.iscoroutinefunction(fn):

        @functools.wraps(fn)
        async def _async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async def _body(span: Span | NoopSpan) -> Any:
                _log_input(span, args, kwargs)
                result = await fn(*args, **kwargs)
                if not has_explicit_output:
                    span.log(output=result)
                return result

            return await traced(_body, name=span_name, type=type, **traced_kwargs)

        return _async_wrapper

    @functools.wraps(fn)
    def _wrapper(*args: Any, **kwargs: Any) -> Any:
        def _body(span: Span | NoopSpan) -> Any:
            _log_input(span, args, kwargs)
            result = fn(*args, **kwargs)
            if not has_explicit_output:
                span.log(output=result)
            return result

        return traced(_body, name=span_name, type=type, **traced_kwargs)

    return _wrapper


async def flush(state: SessionState | None = None) -> None:
    """Flush the background logger of ``state`` (or the default state)."""
    await (state or get_global_state()).bg_logger().flush()


def update_span(exported: str, *, state: SessionState | None = None, **event: Any) -> None:
    """Merge ``event`` into the row behind an exported span token.

    Only resume updating once the original span has been flushed, otherwise
    the two writes may conflict.
    """
    state = state or get_global_state()
    components = SpanComponents.from_str(exported)
    if components.row_ids is None:
        raise ValidationError("Exported span must have a row id")
    update_span_impl(
        state,
        components.object_type,
        DeferredValue(span_components_to_object_id_lambda(state, components)),
        components.row_ids.row_id,
        event,
    )
