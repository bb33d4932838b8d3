"""Tests for spanlog.tracing: top-level entry points and parent selection."""

from __future__ import annotations

import json

import pytest

from spanlog.config import LoggerConfig, LoginSettings
from spanlog.deferred import DeferredValue
from spanlog.errors import ValidationError
from spanlog.logger import Logger
from spanlog.metadata import ObjectMetadata, OrgProjectMetadata
from spanlog.span import NOOP_SPAN
from spanlog.span_components import SpanComponents, SpanObjectType
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
from tests.conftest import PROJECT_ID, RecordingConnection, drain


@pytest.fixture
def empty_state() -> SessionState:
    return SessionState(
        LoginSettings(api_key="k", api_url="https://api.spanlog.test"),
        config=LoggerConfig(sync_flush=True),
        exit_flush=False,
    )


# ---------------------------------------------------------------------------
# Parent selection
# ---------------------------------------------------------------------------


class TestParentSelection:
    def test_noop_without_destination(self, empty_state):
        assert get_span_parent_object(empty_state) is NOOP_SPAN
        span = start_span(name="x", state=empty_state)
        assert span is NOOP_SPAN
        span.log(output=1)
        assert empty_state.bg_logger().queue_size == 0

    def test_current_logger_is_parent(self, state, project_logger):
        assert current_logger(state) is project_logger
        assert current_experiment(state) is None
        assert get_span_parent_object(state) is project_logger

    def test_experiment_takes_precedence_over_logger(self, state, project_logger, experiment):
        state.current_experiment = experiment
        assert get_span_parent_object(state) is experiment

    def test_current_span_takes_precedence(self, state, project_logger):
        def body(span):
            assert get_span_parent_object(state) is span
            child = start_span(name="inner", state=state)
            assert child.span_parents == [span.span_id]
            child.end()

        traced(body, name="outer", state=state)
        assert current_span() is NOOP_SPAN

    def test_global_state_default(self, state, project_logger):
        previous = set_global_state(state)
        try:
            assert get_global_state() is state
            assert current_logger() is project_logger
        finally:
            set_global_state(previous)


# ---------------------------------------------------------------------------
# traced / wrap_traced
# ---------------------------------------------------------------------------


class TestTraced:
    @pytest.mark.asyncio
    async def test_traced_sync(self, state, project_logger):
        result = traced(lambda span: span.log(output="done") or 7, name="task", state=state)
        assert result == 7
        rows = await drain(state)
        assert rows[0]["span_attributes"]["name"] == "task"
        assert rows[1]["output"] == "done"
        assert "end" in rows[2]["metrics"]

    @pytest.mark.asyncio
    async def test_traced_with_parent_token(self, state, project_logger):
        root = project_logger.start_span()
        await drain(state)
        token = await root.export()

        def body(span):
            return span.span_parents

        assert traced(body, parent=token, state=state) == [root.span_id]

    @pytest.mark.asyncio
    async def test_sync_flush_logger_flushes_after_async_callback(self, state):
        conn = RecordingConnection()
        state.bg_logger().internal_replace_api_conn(conn)
        metadata = OrgProjectMetadata(project=ObjectMetadata(id=PROJECT_ID, name="support-bot"))
        state.current_logger = Logger(state, DeferredValue.resolved(metadata), async_flush=False)

        async def body(span):
            span.log(output="hi")
            return "ok"

        assert await traced(body, state=state) == "ok"
        assert conn.paths() == ["logs3"]
        assert state.bg_logger().queue_size == 0

    @pytest.mark.asyncio
    async def test_wrap_traced_sync(self, state, project_logger):
        @wrap_traced(state=state)
        def add(a, b=2):
            return a + b

        assert add(1) == 3
        rows = await drain(state)
        assert rows[0]["span_attributes"] == {
            "name": "add",
            "type": "function",
            "exec_counter": rows[0]["span_attributes"]["exec_counter"],
        }
        assert rows[1]["input"] == {"a": 1, "b": 2}
        assert rows[2]["output"] == 3

    @pytest.mark.asyncio
    async def test_wrap_traced_async_records_error(self, state, project_logger):
        @wrap_traced(name="lookup", state=state)
        async def lookup(key):
            raise LookupError(key)

        with pytest.raises(LookupError):
            await lookup("missing")
        rows = await drain(state)
        assert rows[0]["span_attributes"]["name"] == "lookup"
        assert any(r.get("error", "").startswith("missing\n\n") for r in rows)

    def test_wrap_traced_bare_preserves_metadata(self):
        @wrap_traced
        def documented():
            """Docs."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docs."


# ---------------------------------------------------------------------------
# flush / update_span
# ---------------------------------------------------------------------------


class TestFlushAndUpdate:
    @pytest.mark.asyncio
    async def test_flush_uploads_queue(self, state, project_logger):
        conn = RecordingConnection()
        state.bg_logger().internal_replace_api_conn(conn)
        project_logger.log(input="q", output="a")
        await flush(state)
        rows = json.loads(conn.calls[0][1])["rows"]
        assert len(rows) == 1
        assert rows[0]["input"] == "q"
        assert "end" in rows[0]["metrics"]

    @pytest.mark.asyncio
    async def test_update_span_from_token(self, state, project_logger):
        span = project_logger.start_span()
        await drain(state)
        update_span(await span.export(), state=state, output="late")
        (row,) = await drain(state)
        assert row["id"] == span.id
        assert row["output"] == "late"
        assert row["project_id"] == PROJECT_ID

    def test_update_span_requires_row_ids(self, state):
        token = SpanComponents(object_type=SpanObjectType.PROJECT_LOGS, object_id="p").to_str()
        with pytest.raises(ValidationError, match="row id"):
            update_span(token, state=state, output="x")
