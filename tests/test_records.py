"""Tests for spanlog.records: row merging, batching and legacy payloads."""

from __future__ import annotations

import json

from spanlog.records import (
    IS_MERGE_FIELD,
    batch_items,
    construct_logs3_data,
    legacy_payload,
    make_legacy_event,
    merge_dicts,
    merge_row_batch,
)


class TestMergeDicts:
    def test_nested_merge(self):
        into = {"metrics": {"start": 1}, "output": "a"}
        merge_dicts(into, {"metrics": {"end": 2}, "output": "b"})
        assert into == {"metrics": {"start": 1, "end": 2}, "output": "b"}


class TestMergeRowBatch:
    def test_merge_rows_fold_into_create_row(self):
        rows = [
            {"id": "a", "project_id": "p", "log_id": "g", IS_MERGE_FIELD: False, "metrics": {"start": 1}},
            {"id": "a", "project_id": "p", "log_id": "g", IS_MERGE_FIELD: True, "scores": {"quality": 1}},
            {"id": "a", "project_id": "p", "log_id": "g", IS_MERGE_FIELD: True, "metrics": {"end": 2}},
        ]
        merged = merge_row_batch(rows)
        assert merged == [
            {
                "id": "a",
                "project_id": "p",
                "log_id": "g",
                "metrics": {"start": 1, "end": 2},
                "scores": {"quality": 1},
            }
        ]

    def test_merge_rows_stay_merges(self):
        rows = [
            {"id": "a", IS_MERGE_FIELD: True, "output": 1},
            {"id": "a", IS_MERGE_FIELD: True, "scores": {"q": 0}},
        ]
        assert merge_row_batch(rows) == [{"id": "a", IS_MERGE_FIELD: True, "output": 1, "scores": {"q": 0}}]

    def test_non_merge_row_replaces(self):
        rows = [{"id": "a", "output": 1}, {"id": "a", "output": 2}]
        assert merge_row_batch(rows) == [{"id": "a", "output": 2}]

    def test_different_destinations_not_merged(self):
        rows = [
            {"id": "a", "experiment_id": "e1", "output": 1},
            {"id": "a", "experiment_id": "e2", IS_MERGE_FIELD: True, "output": 2},
        ]
        assert len(merge_row_batch(rows)) == 2

    def test_does_not_mutate_inputs(self):
        create = {"id": "a", "metrics": {"start": 1}}
        merge_row_batch([create, {"id": "a", IS_MERGE_FIELD: True, "metrics": {"end": 2}}])
        assert create == {"id": "a", "metrics": {"start": 1}}


class TestBatchItems:
    def test_item_count_limit(self):
        batches = batch_items([str(i) for i in range(250)], batch_max_num_items=100)
        assert [len(b) for b in batches] == [100, 100, 50]

    def test_byte_limit_splits(self):
        items = [json.dumps({"payload": "x" * 400}) for _ in range(10)]
        budget = 1024
        batches = batch_items(items, batch_max_num_items=100, batch_max_num_bytes=budget)
        assert len(batches) >= 2
        assert sum(len(b) for b in batches) == len(items)
        for batch in batches:
            assert sum(len(item.encode()) for item in batch) <= budget

    def test_byte_limit_covers_whole_request_body(self):
        items = [json.dumps({"id": str(i), "v": "y" * 40}) for i in range(12)]
        budget = 190
        batches = batch_items(items, batch_max_num_bytes=budget)
        assert sum(len(b) for b in batches) == len(items)
        for batch in batches:
            assert len(construct_logs3_data(batch).encode()) <= budget

    def test_oversized_item_goes_alone(self):
        items = ["a" * 10, "b" * 5000, "c" * 10]
        batches = batch_items(items, batch_max_num_bytes=100)
        assert batches == [["a" * 10], ["b" * 5000], ["c" * 10]]


class TestPayloads:
    def test_logs3_payload(self):
        data = json.loads(construct_logs3_data(['{"id": "a"}', '{"id": "b"}']))
        assert data == {"rows": [{"id": "a"}, {"id": "b"}], "api_version": 2}

    def test_legacy_dataset_row(self):
        event = {"id": "a", "dataset_id": "d", "expected": 3, "_merge_paths": [["expected", "x"], ["input"]]}
        legacy = make_legacy_event(event)
        assert legacy["output"] == 3
        assert "expected" not in legacy
        assert legacy["_merge_paths"] == [["output", "x"], ["input"]]

    def test_legacy_other_rows_unchanged(self):
        event = {"id": "a", "experiment_id": "e", "expected": 3}
        assert make_legacy_event(event) == event

    def test_legacy_payload_is_array(self):
        payload = json.loads(legacy_payload(['{"id": "a"}']))
        assert payload == [{"id": "a"}]
