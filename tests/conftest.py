"""Shared fixtures: an isolated session state and a recording connection."""

from __future__ import annotations

from typing import Any

import pytest

from spanlog.background import BackgroundLogger
from spanlog.config import LoggerConfig, LoginSettings
from spanlog.deferred import DeferredValue
from spanlog.logger import Dataset, Experiment, Logger
from spanlog.metadata import (
    ObjectMetadata,
    OrgProjectMetadata,
    ProjectDatasetMetadata,
    ProjectExperimentMetadata,
)
from spanlog.state import SessionState

PROJECT_ID = "3d6c0b57-6ac1-4b39-9a8f-0f6b3f3a9f10"
EXPERIMENT_ID = "8a1f7c52-1e0b-4a58-b2c4-5b7f0b9d2e31"
DATASET_ID = "c4e2a9d0-5f3b-4e71-8d26-7a9b1c0e4f58"


class RecordingConnection:
    """Stands in for HTTPConnection; records every post_json call."""

    def __init__(self, fail_paths: set[str] | None = None) -> None:
        self.fail_paths = set(fail_paths or ())
        self.calls: list[tuple[str, Any]] = []

    async def post_json(self, path: str, body: Any = None) -> Any:
        self.calls.append((path, body))
        if path in self.fail_paths:
            raise RuntimeError(f"{path} unavailable")
        return None

    def paths(self) -> list[str]:
        return [path for path, _ in self.calls]


async def drain(state: SessionState) -> list[dict[str, Any]]:
    """Resolve and remove everything queued on the state's background logger."""
    bg = state.bg_logger()
    items, bg._items = bg._items, []
    return [await item.get() for item in items]


def make_bg_logger(conn: Any, **config: Any) -> BackgroundLogger:
    config.setdefault("retry_delay_s", 0)
    return BackgroundLogger(DeferredValue.resolved(conn), LoggerConfig(**config), exit_flush=False)


@pytest.fixture
def state() -> SessionState:
    return SessionState(
        LoginSettings(api_key="test-key", api_url="https://api.spanlog.test"),
        config=LoggerConfig(sync_flush=True, retry_delay_s=0),
        exit_flush=False,
    )


@pytest.fixture
def project_logger(state: SessionState) -> Logger:
    metadata = OrgProjectMetadata(org_id="org-1", project=ObjectMetadata(id=PROJECT_ID, name="support-bot"))
    result = Logger(
        state,
        DeferredValue.resolved(metadata),
        compute_metadata_args={"project_name": "support-bot", "project_id": None},
    )
    state.current_logger = result
    return result


@pytest.fixture
def experiment(state: SessionState) -> Experiment:
    metadata = ProjectExperimentMetadata(
        project=ObjectMetadata(id=PROJECT_ID, name="support-bot"),
        experiment=ObjectMetadata(id=EXPERIMENT_ID, name="prompt-v2"),
    )
    return Experiment(state, DeferredValue.resolved(metadata))


@pytest.fixture
def dataset(state: SessionState) -> Dataset:
    metadata = ProjectDatasetMetadata(
        project=ObjectMetadata(id=PROJECT_ID, name="support-bot"),
        dataset=ObjectMetadata(id=DATASET_ID, name="golden"),
    )
    return Dataset(state, DeferredValue.resolved(metadata))
