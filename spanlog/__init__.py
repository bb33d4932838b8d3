"""Client-side span logging: capture traced work and ship it in the background.

Logging calls never block on the network. Rows are queued on the session's
background logger and uploaded in batches, with retry and optional on-disk
spill of undeliverable payloads.

Usage:
    from spanlog import init_logger, traced, wrap_traced, flush

    logger = init_logger(project_name="support-bot")

    # One-shot rows
    logger.log(input={"question": "hi"}, output="hello", scores={"polite": 1})

    # Spans (sync or async callbacks)
    def answer(span):
        span.log(input=question)
        with span.start_span(name="retrieve") as child:
            child.log(output=docs)
        return reply

    traced(answer, name="answer")

    # Decorator
    @wrap_traced
    async def rerank(docs):
        ...

    # Resume a trace in another process
    token = await span.export()
    traced(work, parent=token)

    # Make sure everything is uploaded
    await flush()

Configuration comes from SPANLOG_* environment variables (see spanlog.config)
or an explicit SessionState(config=LoggerConfig(...)).
"""

from spanlog.background import BackgroundLogger
from spanlog.config import LoggerConfig, LoginSettings
from spanlog.connection import HTTPConnection
from spanlog.deferred import DeferredValue
from spanlog.errors import (
    FlushError,
    LoginError,
    MalformedToken,
    ProtocolInvariantError,
    ResolutionError,
    SpanLogError,
    TransportError,
    ValidationError,
)
from spanlog.identity import SpanIdentity
from spanlog.logger import (
    Dataset,
    Experiment,
    Logger,
    init_dataset,
    init_experiment,
    init_logger,
    with_experiment,
    with_logger,
)
from spanlog.span import NOOP_SPAN, NoopSpan, Span, log_error
from spanlog.span_components import SpanComponents, SpanObjectType, SpanRowIds
from spanlog.state import SessionState, get_global_state, set_global_state
from spanlog.tracing import (
    current_experiment,
    current_logger,
    current_span,
    flush,
    get_span_parent_object,
    start_span,
    traced,
    update_span,
    wrap_traced,
)

__all__ = [
    # Destinations
    "init_logger",
    "init_experiment",
    "init_dataset",
    "with_logger",
    "with_experiment",
    "Logger",
    "Experiment",
    "Dataset",
    # Tracing
    "traced",
    "wrap_traced",
    "start_span",
    "current_span",
    "current_logger",
    "current_experiment",
    "get_span_parent_object",
    "update_span",
    "flush",
    "log_error",
    "Span",
    "NoopSpan",
    "NOOP_SPAN",
    # Identity & tokens
    "SpanIdentity",
    "SpanComponents",
    "SpanObjectType",
    "SpanRowIds",
    # Plumbing
    "DeferredValue",
    "BackgroundLogger",
    "HTTPConnection",
    "SessionState",
    "get_global_state",
    "set_global_state",
    # Config
    "LoggerConfig",
    "LoginSettings",
    # Errors
    "SpanLogError",
    "ValidationError",
    "ProtocolInvariantError",
    "MalformedToken",
    "ResolutionError",
    "TransportError",
    "FlushError",
    "LoginError",
]
