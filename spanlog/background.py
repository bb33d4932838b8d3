"""Background queue that batches log rows and ships them to the API.

Callers hand over ``DeferredValue`` rows with ``log()`` and never wait on the
network. Rows are resolved, merged, bin-packed and posted by a single-flight
flush pass: in async mode a pass is scheduled on the running event loop after
every ``log()``; in sync-flush mode passes only run when someone awaits
``flush()``.

There must be exactly one instance per ``SessionState``. Two loggers writing
to the same destination cannot guarantee any relative order of their rows.
"""

from __future__ import annotations

import asyncio
import atexit
import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any

from spanlog.config import LoggerConfig
from spanlog.connection import HTTPConnection
from spanlog.deferred import DeferredValue
from spanlog.errors import FlushError, ResolutionError, TransportError, error_text, wrap_error
from spanlog.records import batch_items, construct_logs3_data, legacy_payload, merge_row_batch

logger = logging.getLogger(__name__)

Row = dict[str, Any]


def _json_default(obj: Any) -> Any:
    return str(obj)


class BackgroundLogger:
    def __init__(
        self,
        api_conn: DeferredValue[HTTPConnection],
        config: LoggerConfig | None = None,
        *,
        exit_flush: bool = True,
    ) -> None:
        config = config or LoggerConfig.from_env()
        self._api_conn = api_conn
        self._items: list[DeferredValue[Row]] = []
        self._active_flush: asyncio.Task[None] | None = None
        self._active_flush_resolved = True
        self._active_flush_error: BaseException | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._pending_dumps: list[DeferredValue[Row]] = []

        self.sync_flush = config.sync_flush
        self.max_request_size = config.max_request_size
        self.default_batch_size = config.default_batch_size
        self.num_tries = max(1, config.num_tries)
        self.queue_drop_exceeding_maxsize = config.queue_drop_exceeding_maxsize
        self.queue_drop_logging_period = config.queue_drop_logging_period
        self.failed_publish_payloads_dir = config.failed_publish_payloads_dir
        self.all_publish_payloads_dir = config.all_publish_payloads_dir
        self.retry_delay_s = config.retry_delay_s

        self.dropped_item_count = 0
        self._queue_drop_logging_state = {"num_dropped": 0, "last_logged_timestamp": 0.0}

        if exit_flush:
            atexit.register(self._exit_flush)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    @property
    def queue_size(self) -> int:
        return len(self._items)

    def log(self, items: list[DeferredValue[Row]]) -> None:
        if self.queue_drop_exceeding_maxsize is None:
            added, dropped = items, []
        else:
            room = max(self.queue_drop_exceeding_maxsize - len(self._items), 0)
            num_to_add = min(room, len(items))
            added, dropped = items[:num_to_add], items[num_to_add:]

        self._items.extend(added)
        if not self.sync_flush:
            self._trigger_active_flush()

        if dropped:
            self._register_dropped_item_count(len(dropped))
            if self.all_publish_payloads_dir or self.failed_publish_payloads_dir:
                if self._spawn(self._dump_dropped_events(dropped)) is None:
                    self._pending_dumps.extend(dropped)

    def _register_dropped_item_count(self, num_items: int) -> None:
        if num_items <= 0:
            return
        self.dropped_item_count += num_items
        state = self._queue_drop_logging_state
        state["num_dropped"] += num_items
        now = time.time()
        if now - state["last_logged_timestamp"] > self.queue_drop_logging_period:
            logger.warning("Dropped %d elements due to full queue", state["num_dropped"])
            if self.failed_publish_payloads_dir:
                self._log_failed_payloads_dir()
            state["num_dropped"] = 0
            state["last_logged_timestamp"] = now

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Run (or join) a flush pass and raise its error, once, if it failed."""
        task = self._trigger_active_flush()
        if task is not None:
            await asyncio.shield(task)
        if self._active_flush_error is not None:
            err = self._active_flush_error
            self._active_flush_error = None
            raise err

    def _trigger_active_flush(self) -> asyncio.Task[None] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        if self._active_flush is not None and not self._active_flush_resolved:
            if self._active_flush.get_loop() is loop:
                return self._active_flush
            # The loop that owned the previous pass is gone.
            self._active_flush_resolved = True
        self._active_flush_resolved = False
        self._active_flush_error = None
        self._active_flush = loop.create_task(self._run_active_flush())
        return self._active_flush

    async def _run_active_flush(self) -> None:
        try:
            await self._flush_once()
        except Exception as exc:
            if self.sync_flush:
                self._active_flush_error = exc
            else:
                logger.warning("Background flush failed: %s", exc)
        finally:
            self._active_flush_resolved = True

    async def _flush_once(self, batch_size: int | None = None) -> None:
        batch_size = batch_size or self.default_batch_size

        # Swap in a fresh queue so rows logged during this pass are kept for the next one.
        wrapped_items, self._items = self._items, []
        if self._pending_dumps:
            pending, self._pending_dumps = self._pending_dumps, []
            await self._dump_dropped_events(pending)

        errors: list[BaseException] = []
        all_items, resolution_error = await self._unwrap_deferred(wrapped_items)
        if resolution_error is not None:
            errors.append(resolution_error)

        if all_items:
            item_strs = [json.dumps(item, default=_json_default) for item in all_items]
            batches = batch_items(
                item_strs,
                batch_max_num_items=batch_size,
                batch_max_num_bytes=self.max_request_size // 2,
            )
            logger.debug("Flushing %d rows in %d batches", len(item_strs), len(batches))
            results = await asyncio.gather(
                *(self._submit_logs_request(batch) for batch in batches),
                return_exceptions=True,
            )
            errors.extend(r for r in results if isinstance(r, BaseException))

        if errors:
            raise FlushError("Encountered the following errors while logging:", errors)

        if self._items:
            await self._flush_once(batch_size)

    async def _unwrap_deferred(
        self, wrapped_items: list[DeferredValue[Row]]
    ) -> tuple[list[Row], ResolutionError | None]:
        """Resolve queued rows, retrying failed ones; rows that never resolve are dropped."""
        pending = list(enumerate(wrapped_items))
        resolved: dict[int, Row] = {}
        last_exc: BaseException | None = None

        for i in range(self.num_tries):
            results = await asyncio.gather(*(item.get() for _, item in pending), return_exceptions=True)
            still_failing = []
            for (pos, item), result in zip(pending, results):
                if isinstance(result, BaseException):
                    last_exc = result
                    still_failing.append((pos, item))
                else:
                    resolved[pos] = result
            pending = still_failing
            if not pending:
                break

            is_retrying = i + 1 < self.num_tries
            logger.warning(
                "Encountered error when constructing records to flush%s: %s",
                ". Retrying" if is_retrying else "",
                error_text(last_exc),
            )
            if is_retrying:
                await asyncio.sleep(self.retry_delay_s)

        rows = merge_row_batch(resolved[pos] for pos in sorted(resolved))
        if not pending or last_exc is None:
            return rows, None

        logger.warning(
            "Failed to construct %d log records after %d attempts. Dropping them",
            len(pending),
            self.num_tries,
        )
        if not self.sync_flush:
            return rows, None
        return rows, ResolutionError(
            f"Failed to construct {len(pending)} log records: {error_text(last_exc)}",
            original=last_exc if isinstance(last_exc, Exception) else None,
        )

    async def _submit_logs_request(self, items: list[str]) -> None:
        conn = await self._api_conn.get()
        data_str = construct_logs3_data(items)
        if self.all_publish_payloads_dir:
            self._write_payload_to_dir(self.all_publish_payloads_dir, data_str)

        for i in range(self.num_tries):
            start_time = time.monotonic()
            error: Exception | None = None
            try:
                await conn.post_json("logs3", data_str)
            except Exception:
                # Older servers only know the legacy endpoint.
                try:
                    await conn.post_json("logs", legacy_payload(items))
                except Exception as exc:
                    error = exc
            if error is None:
                return

            is_retrying = i + 1 < self.num_tries
            err_msg = (
                f"log request failed. Elapsed time: {time.monotonic() - start_time:.3f} seconds. "
                f"Payload size: {len(data_str)}.{' Retrying' if is_retrying else ''}\n"
                f"Error: {error_text(error)}"
            )

            if not is_retrying and self.failed_publish_payloads_dir:
                self._write_payload_to_dir(self.failed_publish_payloads_dir, data_str)
                self._log_failed_payloads_dir()

            if not is_retrying and self.sync_flush:
                wrapped = wrap_error(error)
                raise TransportError(
                    err_msg,
                    status=getattr(wrapped, "status", None),
                    status_text=getattr(wrapped, "status_text", None),
                    body=getattr(wrapped, "body", None),
                    original=error,
                ) from error

            logger.warning(err_msg)
            if is_retrying:
                await asyncio.sleep(self.retry_delay_s)

        logger.warning("log request failed after %d retries. Dropping batch", self.num_tries)

    # ------------------------------------------------------------------
    # Payload dumps
    # ------------------------------------------------------------------

    async def _dump_dropped_events(self, wrapped_items: list[DeferredValue[Row]]) -> None:
        payload_dirs = [d for d in (self.all_publish_payloads_dir, self.failed_publish_payloads_dir) if d]
        if not (wrapped_items and payload_dirs):
            return
        try:
            all_items, _ = await self._unwrap_deferred(wrapped_items)
            data_str = construct_logs3_data(json.dumps(item, default=_json_default) for item in all_items)
            for payload_dir in payload_dirs:
                self._write_payload_to_dir(payload_dir, data_str)
        except Exception:
            logger.exception("Failed to dump dropped log records")

    @staticmethod
    def _write_payload_to_dir(payload_dir: str, payload: str) -> Path | None:
        payload_file = Path(payload_dir) / f"payload_{time.time()}_{uuid.uuid4().hex[:8]}.json"
        try:
            payload_file.parent.mkdir(parents=True, exist_ok=True)
            payload_file.write_text(payload, encoding="utf-8")
        except OSError:
            logger.exception("Failed to write failed payload to output file %s", payload_file)
            return None
        return payload_file

    def _log_failed_payloads_dir(self) -> None:
        logger.warning("Logging failed payloads to %s", self.failed_publish_payloads_dir)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    def _exit_flush(self) -> None:
        """Best-effort flush at interpreter exit; not a durability guarantee."""
        if not self._items and not self._pending_dumps:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            return
        try:
            asyncio.run(self.flush())
        except Exception:
            logger.warning("Failed to flush pending log records at exit", exc_info=True)

    def internal_replace_api_conn(self, api_conn: HTTPConnection) -> None:
        """Swap the upload connection; queued rows are kept and in-flight requests keep theirs."""
        self._api_conn = DeferredValue.resolved(api_conn)
