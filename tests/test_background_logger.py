"""Tests for spanlog.background: queueing, batching, retry and spill."""

from __future__ import annotations

import asyncio
import json
import logging

import pytest

from spanlog.deferred import DeferredValue
from spanlog.errors import FlushError, ResolutionError, TransportError
from tests.conftest import RecordingConnection, make_bg_logger


def _row(i: int, **extra) -> DeferredValue:
    return DeferredValue.resolved({"id": f"row-{i}", "project_id": "p", "log_id": "g", **extra})


def _posted_rows(conn: RecordingConnection) -> list[dict]:
    rows = []
    for path, body in conn.calls:
        if path == "logs3":
            rows.extend(json.loads(body)["rows"])
    return rows


# ---------------------------------------------------------------------------
# Queue and backpressure
# ---------------------------------------------------------------------------


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_overflow_is_dropped_and_counted(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True, queue_drop_exceeding_maxsize=100)

        bg.log([_row(i) for i in range(250)])
        assert bg.queue_size == 100
        assert bg.dropped_item_count == 150

        await bg.flush()
        assert len(_posted_rows(conn)) == 100

    def test_never_evicts_queued_items(self):
        bg = make_bg_logger(RecordingConnection(), sync_flush=True, queue_drop_exceeding_maxsize=2)
        first = [_row(0), _row(1)]
        bg.log(first)
        bg.log([_row(2)])
        assert bg._items == first
        assert bg.dropped_item_count == 1

    def test_drop_warning_is_rate_limited(self, caplog):
        bg = make_bg_logger(
            RecordingConnection(),
            sync_flush=True,
            queue_drop_exceeding_maxsize=1,
            queue_drop_logging_period=60,
        )
        with caplog.at_level(logging.WARNING, logger="spanlog.background"):
            bg.log([_row(0), _row(1)])
            bg.log([_row(2)])
            bg.log([_row(3)])
        warnings = [r for r in caplog.records if "due to full queue" in r.getMessage()]
        assert len(warnings) == 1
        assert bg.dropped_item_count == 3

    @pytest.mark.asyncio
    async def test_dropped_items_dumped_to_payload_dir(self, tmp_path):
        bg = make_bg_logger(
            RecordingConnection(),
            sync_flush=True,
            queue_drop_exceeding_maxsize=1,
            failed_publish_payloads_dir=str(tmp_path),
        )
        bg.log([_row(0), _row(1), _row(2)])
        await asyncio.gather(*bg._background_tasks)

        files = list(tmp_path.glob("payload_*.json"))
        assert len(files) == 1
        dumped = json.loads(files[0].read_text())
        assert [r["id"] for r in dumped["rows"]] == ["row-1", "row-2"]

    def test_no_loop_log_only_queues(self):
        bg = make_bg_logger(RecordingConnection())
        bg.log([_row(0)])
        assert bg.queue_size == 1
        assert bg._active_flush is None


# ---------------------------------------------------------------------------
# Flush
# ---------------------------------------------------------------------------


class TestFlush:
    @pytest.mark.asyncio
    async def test_rows_merged_and_posted(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True)
        bg.log([_row(0, output=1), _row(0, _is_merge=True, scores={"q": 1}), _row(1)])
        await bg.flush()

        assert conn.paths() == ["logs3"]
        payload = json.loads(conn.calls[0][1])
        assert payload["api_version"] == 2
        assert payload["rows"][0]["scores"] == {"q": 1}
        assert payload["rows"][0]["output"] == 1
        assert bg.queue_size == 0

    @pytest.mark.asyncio
    async def test_byte_budget_splits_requests(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True, max_request_size=2048)
        bg.log([_row(i, payload="x" * 300) for i in range(10)])
        await bg.flush()

        bodies = [body for path, body in conn.calls if path == "logs3"]
        assert len(bodies) >= 2
        assert len(_posted_rows(conn)) == 10
        for body in bodies:
            assert len(body.encode()) <= 1024

    @pytest.mark.asyncio
    async def test_concurrent_flushes_share_one_pass(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True)
        bg.log([_row(0)])
        await asyncio.gather(bg.flush(), bg.flush(), bg.flush())
        assert conn.paths() == ["logs3"]

    @pytest.mark.asyncio
    async def test_async_mode_flushes_in_background(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn)
        bg.log([_row(0)])
        assert bg._active_flush is not None
        await bg.flush()
        assert [r["id"] for r in _posted_rows(conn)] == ["row-0"]

    @pytest.mark.asyncio
    async def test_items_logged_during_flush_are_picked_up(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True)

        async def late_row():
            bg.log([_row(1)])
            return {"id": "row-0", "project_id": "p", "log_id": "g"}

        bg.log([DeferredValue(late_row)])
        await bg.flush()
        assert sorted(r["id"] for r in _posted_rows(conn)) == ["row-0", "row-1"]
        assert bg.queue_size == 0


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    @pytest.mark.asyncio
    async def test_retries_then_drops_and_spills(self, tmp_path):
        conn = RecordingConnection(fail_paths={"logs3", "logs"})
        bg = make_bg_logger(conn, sync_flush=True, num_tries=3, failed_publish_payloads_dir=str(tmp_path))
        bg.log([_row(0)])

        with pytest.raises(FlushError) as exc_info:
            await bg.flush()

        assert conn.paths().count("logs3") == 3
        assert conn.paths().count("logs") == 3
        assert isinstance(exc_info.value.errors[0], TransportError)
        files = list(tmp_path.glob("payload_*.json"))
        assert len(files) == 1
        assert json.loads(files[0].read_text())["rows"][0]["id"] == "row-0"

        # The batch was dropped, not requeued, and the error is reported once.
        await bg.flush()
        assert conn.paths().count("logs3") == 3

    @pytest.mark.asyncio
    async def test_legacy_fallback_within_attempt(self):
        conn = RecordingConnection(fail_paths={"logs3"})
        bg = make_bg_logger(conn, sync_flush=True)
        bg.log([_row(0)])
        await bg.flush()
        assert conn.paths() == ["logs3", "logs"]
        assert json.loads(conn.calls[1][1]) == [{"id": "row-0", "project_id": "p", "log_id": "g"}]

    @pytest.mark.asyncio
    async def test_async_mode_swallows_errors(self, caplog):
        conn = RecordingConnection(fail_paths={"logs3", "logs"})
        bg = make_bg_logger(conn, num_tries=2)
        with caplog.at_level(logging.WARNING, logger="spanlog.background"):
            bg.log([_row(0)])
            await bg.flush()
        assert conn.paths().count("logs3") == 2
        assert any("Dropping batch" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_resolution_failure_drops_only_failing_rows(self):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True, num_tries=2)
        attempts = 0

        async def broken():
            nonlocal attempts
            attempts += 1
            raise ValueError("cannot compute")

        bg.log([_row(0), DeferredValue(broken), _row(1)])
        with pytest.raises(FlushError) as exc_info:
            await bg.flush()

        assert isinstance(exc_info.value.errors[0], ResolutionError)
        assert sorted(r["id"] for r in _posted_rows(conn)) == ["row-0", "row-1"]
        # A failed cell is not recomputed.
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_all_payloads_dir_records_every_request(self, tmp_path):
        conn = RecordingConnection()
        bg = make_bg_logger(conn, sync_flush=True, all_publish_payloads_dir=str(tmp_path))
        bg.log([_row(0)])
        await bg.flush()
        assert len(list(tmp_path.glob("payload_*.json"))) == 1


# ---------------------------------------------------------------------------
# Connection hot-swap
# ---------------------------------------------------------------------------


class TestReplaceConnection:
    @pytest.mark.asyncio
    async def test_queued_items_use_new_connection(self):
        old, new = RecordingConnection(), RecordingConnection()
        bg = make_bg_logger(old, sync_flush=True)
        bg.log([_row(0)])
        bg.internal_replace_api_conn(new)
        await bg.flush()

        assert old.calls == []
        assert [r["id"] for r in _posted_rows(new)] == ["row-0"]
