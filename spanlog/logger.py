"""Log destinations: project log streams (``Logger``), experiments and datasets.

All of them resolve their object id lazily through a ``DeferredValue``, so creating
one and logging to it never blocks on the network.

Usage::

    logger = init_logger(project_name="support-bot")
    logger.log(input={"q": "hi"}, output="hello", scores={"polite": 1})

    experiment = init_experiment(project="support-bot", experiment="prompt-v2")
    experiment.log(input=..., output=..., scores={"accuracy": 0.5})
    await experiment.flush()

    dataset = init_dataset(project="support-bot", dataset="golden")
    row_id = dataset.insert(input={"q": "hi"}, expected="hello")
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping

from spanlog.deferred import DeferredValue
from spanlog.errors import ProtocolInvariantError, ValidationError
from spanlog.metadata import (
    ObjectMetadata,
    OrgProjectMetadata,
    ProjectDatasetMetadata,
    ProjectExperimentMetadata,
    compute_dataset_metadata,
    compute_experiment_metadata,
    compute_logger_metadata,
)
from spanlog.records import DELETE_FIELD
from spanlog.span import (
    Span,
    log_feedback_impl,
    run_traced,
    snapshot_payload,
    start_span_parent_args,
    update_span_impl,
)
from spanlog.span_components import SpanComponents, SpanObjectType
from spanlog.state import SessionState, get_global_state
from spanlog.validation import validate_and_sanitize_partial, validate_full

logger = logging.getLogger(__name__)


class _SpanParent:
    """Shared behavior of objects that own root spans."""

    kind: str
    object_type: SpanObjectType
    default_root_type: str

    def __init__(self, state: SessionState, object_id: DeferredValue[str]) -> None:
        self.state = state
        self._lazy_id = object_id
        self._last_start_time = time.time()
        self._called_start_span = False

    def _compute_metadata_args(self) -> dict[str, Any] | None:
        return None

    def _start_span_impl(
        self,
        *,
        name: str | None = None,
        type: str | None = None,
        span_attributes: Mapping[str, Any] | None = None,
        start_time: float | None = None,
        parent: str | None = None,
        event: Mapping[str, Any] | None = None,
    ) -> Span:
        return Span(
            self.state,
            name=name,
            type=type,
            span_attributes=span_attributes,
            start_time=start_time,
            event=event,
            default_root_type=self.default_root_type,
            **start_span_parent_args(
                self.state,
                parent=parent,
                parent_object_type=self.object_type,
                parent_object_id=self._lazy_id,
                parent_compute_object_metadata_args=self._compute_metadata_args(),
                parent_span_ids=None,
            ),
        )

    def _log_row(self, event: Mapping[str, Any], allow_concurrent_with_spans: bool) -> str:
        if self._called_start_span and not allow_concurrent_with_spans:
            raise ProtocolInvariantError(
                f"Cannot run toplevel `log` method while using spans. To log to the span, call "
                f"`{self.kind}.traced` and then log with `span.log`"
            )
        span = self._start_span_impl(start_time=self._last_start_time, event=event)
        self._last_start_time = span.end()
        return span.id

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
        """Start a root span (or a child of ``parent``, an exported span token)."""
        self._called_start_span = True
        return self._start_span_impl(
            name=name,
            type=type,
            span_attributes=span_attributes,
            start_time=start_time,
            parent=parent,
            event=event,
        )

    def log_feedback(self, *, id: str, **event: Any) -> None:
        """Attach scores, expected values, tags or a comment to an existing row."""
        log_feedback_impl(self.state, self.object_type, self._lazy_id, id=id, **event)

    def update_span(self, *, id: str, **event: Any) -> None:
        """Merge ``event`` into the row ``id`` logged earlier to this destination."""
        if not id:
            raise ValidationError("Span id is required to update a span")
        update_span_impl(self.state, self.object_type, self._lazy_id, id, event)

    async def flush(self) -> None:
        await self.state.bg_logger().flush()


class Logger(_SpanParent):
    """Project log stream. Create with ``init_logger``."""

    kind = "logger"
    object_type = SpanObjectType.PROJECT_LOGS
    default_root_type = "task"

    def __init__(
        self,
        state: SessionState,
        lazy_metadata: DeferredValue[OrgProjectMetadata],
        *,
        async_flush: bool = True,
        compute_metadata_args: dict[str, Any] | None = None,
    ) -> None:
        self._lazy_metadata = lazy_metadata
        self.async_flush = async_flush
        self.compute_metadata_args = compute_metadata_args

        async def _project_id() -> str:
            return (await lazy_metadata.get()).project.id

        super().__init__(state, DeferredValue(_project_id))

    def __repr__(self) -> str:
        return f"Logger(async_flush={self.async_flush}, compute_metadata_args={self.compute_metadata_args!r})"

    def _compute_metadata_args(self) -> dict[str, Any] | None:
        return self.compute_metadata_args

    async def get_org_id(self) -> str | None:
        return (await self._lazy_metadata.get()).org_id

    async def get_project(self) -> ObjectMetadata:
        return (await self._lazy_metadata.get()).project

    async def get_id(self) -> str:
        return await self._lazy_id.get()

    def log(self, *, allow_concurrent_with_spans: bool = False, **event: Any) -> str:
        """Log one complete row as a root span that is ended immediately; returns its id."""
        return self._log_row(event, allow_concurrent_with_spans)

    def traced(self, callback: Callable[..., Any], *, set_current: bool = True, **kwargs: Any) -> Any:
        """Run ``callback(span)`` in a new root span.

        With ``async_flush=False`` an async callback's coroutine also flushes
        the background logger before returning.
        """
        span = self.start_span(**kwargs)
        return run_traced(
            span,
            callback,
            set_current=set_current,
            after_async=None if self.async_flush else self.flush,
        )

    async def export(self) -> str:
        """Token for attaching spans to this log stream from elsewhere.

        Until the project id has been resolved the token carries the
        arguments needed to resolve it instead.
        """
        if self.compute_metadata_args and not self._lazy_id.has_computed:
            return SpanComponents(
                object_type=self.object_type,
                compute_object_metadata_args=self.compute_metadata_args,
            ).to_str()
        return SpanComponents(object_type=self.object_type, object_id=await self._lazy_id.get()).to_str()


class Experiment(_SpanParent):
    """An experiment run. Create with ``init_experiment``."""

    kind = "experiment"
    object_type = SpanObjectType.EXPERIMENT
    default_root_type = "eval"

    def __init__(
        self,
        state: SessionState,
        lazy_metadata: DeferredValue[ProjectExperimentMetadata],
        *,
        dataset_id: str | None = None,
    ) -> None:
        self._lazy_metadata = lazy_metadata
        self.dataset_id = dataset_id

        async def _experiment_id() -> str:
            return (await lazy_metadata.get()).experiment.id

        super().__init__(state, DeferredValue(_experiment_id))

    def __repr__(self) -> str:
        return f"Experiment(dataset_id={self.dataset_id!r})"

    async def get_project(self) -> ObjectMetadata:
        return (await self._lazy_metadata.get()).project

    async def get_experiment(self) -> ObjectMetadata:
        return (await self._lazy_metadata.get()).experiment

    async def get_id(self) -> str:
        return await self._lazy_id.get()

    def log(self, *, allow_concurrent_with_spans: bool = False, **event: Any) -> str:
        """Log one complete evaluation row.

        Requires exactly one of ``input``/``inputs``, an ``output`` and
        ``scores``; ``dataset_record_id`` must be given exactly when the
        experiment was created with a dataset.
        """
        validate_full(event, has_dataset=self.dataset_id is not None)
        return self._log_row(event, allow_concurrent_with_spans)

    def traced(self, callback: Callable[..., Any], *, set_current: bool = True, **kwargs: Any) -> Any:
        return run_traced(self.start_span(**kwargs), callback, set_current=set_current)

    async def export(self) -> str:
        return SpanComponents(object_type=self.object_type, object_id=await self._lazy_id.get()).to_str()

    async def close(self) -> str:
        """Flush everything logged so far and return the experiment id."""
        await self.flush()
        return await self.get_id()


class Dataset:
    """Rows of test cases in a project. Create with ``init_dataset``.

    Datasets do not own spans. ``insert`` and ``delete`` enqueue rows on the
    session's background logger, linked through ``dataset_id``.
    """

    kind = "dataset"

    def __init__(self, state: SessionState, lazy_metadata: DeferredValue[ProjectDatasetMetadata]) -> None:
        self.state = state
        self._lazy_metadata = lazy_metadata

    def __repr__(self) -> str:
        return "Dataset()"

    async def get_id(self) -> str:
        return (await self._lazy_metadata.get()).dataset.id

    async def get_name(self) -> str:
        return (await self._lazy_metadata.get()).dataset.name

    async def get_project(self) -> ObjectMetadata:
        return (await self._lazy_metadata.get()).project

    def insert(
        self,
        *,
        input: Any = None,
        expected: Any = None,
        tags: list[str] | None = None,
        metadata: Mapping[str, Any] | None = None,
        id: str | None = None,
        output: Any = None,
    ) -> str:
        """Queue one record and return its id. An existing ``id`` is overwritten.

        ``output`` is the deprecated spelling of ``expected``.
        """
        if expected is not None and output is not None:
            raise ValidationError("Only one of expected or output (deprecated) can be specified. Prefer expected.")
        validated = validate_and_sanitize_partial({"metadata": metadata, "tags": tags})

        row_id = id or str(uuid.uuid4())
        record = snapshot_payload(
            {
                "id": row_id,
                "input": input,
                "expected": output if expected is None else expected,
                "tags": validated["tags"],
                "metadata": metadata,
                "created": datetime.now(timezone.utc).isoformat(),
            }
        )

        async def _compute_record() -> dict[str, Any]:
            return {**record, "dataset_id": await self.get_id()}

        self.state.bg_logger().log([DeferredValue(_compute_record)])
        return row_id

    def delete(self, id: str) -> str:
        """Queue a deletion of record ``id``; returns ``id``."""
        created = datetime.now(timezone.utc).isoformat()

        async def _compute_record() -> dict[str, Any]:
            return {
                "id": id,
                "dataset_id": await self.get_id(),
                "created": created,
                DELETE_FIELD: True,
            }

        self.state.bg_logger().log([DeferredValue(_compute_record)])
        return id

    async def flush(self) -> None:
        await self.state.bg_logger().flush()

    async def close(self) -> str:
        """Flush everything inserted so far and return the dataset id."""
        await self.flush()
        return await self.get_id()


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def init_logger(
    *,
    project_name: str | None = None,
    project_id: str | None = None,
    async_flush: bool = True,
    set_current: bool = True,
    api_key: str | None = None,
    app_url: str | None = None,
    org_name: str | None = None,
    force_login: bool = False,
    state: SessionState | None = None,
) -> Logger:
    """Create a logger for a project's log stream.

    Nothing touches the network here: login and project registration happen
    the first time a row is flushed or the logger's id is requested.
    """
    state = state or get_global_state()
    compute_args = {"project_name": project_name, "project_id": project_id}

    async def _metadata() -> OrgProjectMetadata:
        await state.login(api_key=api_key, app_url=app_url, org_name=org_name, force_login=force_login)
        return await compute_logger_metadata(state, project_name=project_name, project_id=project_id)

    result = Logger(
        state,
        DeferredValue(_metadata),
        async_flush=async_flush,
        compute_metadata_args=compute_args,
    )
    logger.debug("Initialized logger for project %s", project_name or project_id or "<default>")
    if set_current:
        state.current_logger = result
    return result


def init_experiment(
    *,
    project: str | None = None,
    experiment: str | None = None,
    project_id: str | None = None,
    dataset_id: str | None = None,
    description: str | None = None,
    update: bool = False,
    metadata: dict[str, Any] | None = None,
    set_current: bool = True,
    api_key: str | None = None,
    app_url: str | None = None,
    org_name: str | None = None,
    state: SessionState | None = None,
) -> Experiment:
    """Create (or, with ``update=True``, continue) an experiment in a project."""
    if project is None and project_id is None:
        raise ValidationError("Must specify at least one of project or project_id")
    state = state or get_global_state()

    async def _metadata() -> ProjectExperimentMetadata:
        await state.login(api_key=api_key, app_url=app_url, org_name=org_name)
        return await compute_experiment_metadata(
            state,
            project_name=project,
            project_id=project_id,
            experiment_name=experiment,
            description=description,
            dataset_id=dataset_id,
            update=update,
            metadata=metadata,
        )

    result = Experiment(state, DeferredValue(_metadata), dataset_id=dataset_id)
    logger.debug("Initialized experiment %s in project %s", experiment, project or project_id)
    if set_current:
        state.current_experiment = result
    return result


def init_dataset(
    *,
    project: str | None = None,
    dataset: str | None = None,
    project_id: str | None = None,
    description: str | None = None,
    api_key: str | None = None,
    app_url: str | None = None,
    org_name: str | None = None,
    force_login: bool = False,
    state: SessionState | None = None,
) -> Dataset:
    """Create (or open, if the name exists) a dataset in a project.

    Registration is deferred until the first inserted row is flushed or the
    id is requested.
    """
    if project is None and project_id is None:
        raise ValidationError("Must specify at least one of project or project_id")
    state = state or get_global_state()

    async def _metadata() -> ProjectDatasetMetadata:
        await state.login(api_key=api_key, app_url=app_url, org_name=org_name, force_login=force_login)
        return await compute_dataset_metadata(
            state,
            project_name=project,
            project_id=project_id,
            dataset_name=dataset,
            description=description,
        )

    logger.debug("Initialized dataset %s in project %s", dataset, project or project_id)
    return Dataset(state, DeferredValue(_metadata))


# ---------------------------------------------------------------------------
# Scoped destinations
# ---------------------------------------------------------------------------


@contextmanager
def with_logger(**kwargs: Any) -> Iterator[Logger]:
    """Make a new logger current for the block, then restore the previous one.

    Accepts the keyword arguments of ``init_logger`` except ``set_current``.
    Rows stay queued on exit; await ``logger.flush()`` to send them.
    """
    state = kwargs.get("state") or get_global_state()
    previous = state.current_logger
    result = init_logger(set_current=True, **{**kwargs, "state": state})
    try:
        yield result
    finally:
        state.current_logger = previous


@contextmanager
def with_experiment(**kwargs: Any) -> Iterator[Experiment]:
    """Make a new experiment current for the block, then restore the previous one.

    Accepts the keyword arguments of ``init_experiment`` except ``set_current``.
    """
    state = kwargs.get("state") or get_global_state()
    previous = state.current_experiment
    result = init_experiment(set_current=True, **{**kwargs, "state": state})
    try:
        yield result
    finally:
        state.current_experiment = previous
