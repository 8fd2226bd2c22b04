"""Unit tests for core infrastructure components."""

import json
import logging
import pytest
from datetime import datetime
from unittest.mock import MagicMock, patch

from pymongo.errors import CursorNotFound, OperationFailure

from gastos_analytics.db.schemas import COLLECTION_INDEXES, COLLECTION_VALIDATORS, create_all_collections
from gastos_analytics.db.store_client import InMemoryRecordStore, MongoRecordStore, UpsertOp, matches_filter
from gastos_analytics.models import Anomaly, ExpectedRange
from gastos_analytics.orchestrator.retry_handler import retry_with_exponential_backoff
from gastos_analytics.utils.config_loader import load_config, save_config, get_stage_config
from gastos_analytics.utils.errors import AnalyticsPipelineError, ConfigurationError, StoreConnectionError
from gastos_analytics.utils.logging import JSONFormatter, get_logger


def test_load_default_config():
    config = load_config("config/pipeline.yaml")

    assert config["version"] == 4
    assert config["anomaly_detection"]["price_spike"]["high_value_threshold"] == 100000
    assert config["patterns"]["top_items"] == 15
    assert config["pipeline"]["stage_order"][0] == "amounts"


def test_load_config_missing_file():
    with pytest.raises(ConfigurationError):
        load_config("/nonexistent/pipeline.yaml")


def test_load_config_missing_keys(tmp_path):
    path = tmp_path / "pipeline.yaml"
    path.write_text("version: 1\npipeline: {}\n")

    with pytest.raises(ConfigurationError, match="Missing required configuration keys"):
        load_config(str(path))


def test_save_and_reload_config(tmp_path):
    config = load_config("config/pipeline.yaml")
    config["pipeline"]["batch_size"] = 250
    path = tmp_path / "nested" / "pipeline.yaml"

    save_config(str(path), config)

    assert load_config(str(path))["pipeline"]["batch_size"] == 250


def test_stage_config_merges_pipeline_defaults():
    config = {"pipeline": {"batch_size": 1000, "batch_timeout_seconds": 60, "stages": {"anomalies": {"batch_size": 500}}}}

    assert get_stage_config(config, "anomalies") == {"batch_size": 500, "batch_timeout_seconds": 60}
    assert get_stage_config(config, "suppliers")["batch_size"] == 1000


def test_json_formatter_includes_context():
    record = logging.LogRecord("gastos", logging.INFO, __file__, 1, "Batch done", (), None)
    record.context = {"stage": "amounts", "processed": 100, "total": 1000}

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Batch done"
    assert payload["stage"] == "amounts"
    assert payload["processed"] == 100
    assert payload["level"] == "INFO"


def test_logger_accepts_keyword_context():
    logger = get_logger("tests.infrastructure")
    logger.info("Structured message", stage="suppliers", started=datetime(2024, 1, 1))
    # A second get_logger call must not stack handlers
    assert len(get_logger("tests.infrastructure").logger.handlers) == 1


def test_retry_handler():
    """Test retry logic with exponential backoff"""
    attempts = []

    def failing_func():
        attempts.append(1)
        if len(attempts) < 3:
            raise Exception("Test failure")
        return "success"

    result = retry_with_exponential_backoff(failing_func, max_retries=5, base_delay=0)
    assert result == "success"
    assert len(attempts) == 3


def test_retry_handler_exhaustion():
    """Test that retry handler raises error after max attempts"""
    def always_fail():
        raise Exception("Always fails")

    with pytest.raises(AnalyticsPipelineError):
        retry_with_exponential_backoff(always_fail, max_retries=3, base_delay=0)


def test_retry_handler_passes_through_unlisted_errors():
    def bad_input():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        retry_with_exponential_backoff(bad_input, 3, 0, retry_on=(ConnectionError,))


def test_state_manager_save_restore_in_memory(monkeypatch):
    monkeypatch.setenv("STATE_BACKEND", "memory")
    from gastos_analytics.orchestrator.state_manager import (
        save_workflow_state,
        restore_workflow_state,
        mark_run_complete,
    )

    save_workflow_state("run-1", {"status": "in_progress", "completed_stages": ["amounts"]})
    save_workflow_state("run-1", {"pending_stages": ["report"]})
    mark_run_complete("run-1", {"records_processed": 10})

    restored = restore_workflow_state("run-1")
    assert restored["completed_stages"] == ["amounts"]
    assert restored["pending_stages"] == ["report"]
    assert restored["status"] == "completed"
    assert "completed_at" in restored
    assert restore_workflow_state("unknown-run") == {}


def test_state_manager_health_check():
    """Test Redis health check."""
    from gastos_analytics.orchestrator.state_manager import check_redis_health

    with patch("gastos_analytics.orchestrator.state_manager.get_redis_client", return_value=None):
        assert check_redis_health() is False


def test_schemas_cover_every_collection():
    assert set(COLLECTION_VALIDATORS) == set(COLLECTION_INDEXES)
    for name, indexes in COLLECTION_INDEXES.items():
        assert any(options.get("unique") for _, options in indexes), name


def test_create_all_collections_sets_validators():
    class FakeCollection:
        def __init__(self):
            self.indexes = []

        def create_index(self, keys, **options):
            self.indexes.append((keys, options))

    class FakeDatabase:
        def __init__(self):
            self.created = {}
            self.commands = []
            self.collections = {}

        def list_collection_names(self):
            return ["releases"]

        def create_collection(self, name, **options):
            self.created[name] = options

        def command(self, *args, **kwargs):
            self.commands.append((args, kwargs))

        def __getitem__(self, name):
            return self.collections.setdefault(name, FakeCollection())

    db = FakeDatabase()
    create_all_collections(db)

    assert db.commands[0][0] == ("collMod", "releases")
    assert "$jsonSchema" in db.created["anomalies"]["validator"]
    assert db["supplier_patterns"].indexes[0] == ([("supplierId", 1)], {"unique": True})


def test_filter_matching_subset():
    document = {"id": "r1", "amount": {"version": 2}, "tags": ["a", "b"], "status": "active"}

    assert matches_filter(document, {"amount.version": 2})
    assert matches_filter(document, {"tags": "a"})
    assert matches_filter(document, {"status": {"$ne": "superseded"}, "missing": {"$exists": False}})
    assert matches_filter(document, {"amount.version": {"$in": [1, 2]}})
    assert not matches_filter(document, {"amount.version": {"$gt": 2}})
    assert matches_filter(document, {"$or": [{"id": "x"}, {"id": "r1"}]})


def test_in_memory_bulk_upsert_isolates_invalid_documents():
    store = InMemoryRecordStore()
    ops = [
        UpsertOp(filter={"year": 2022}, set_fields={"year": 2022, "totalAmount": 10.0, "totalTransactions": 1}),
        UpsertOp(filter={"year": 2023}, set_fields={"year": 2023, "totalAmount": -5.0, "totalTransactions": 1}),
        UpsertOp(filter={"year": 2024}, set_fields={"year": 2024, "totalAmount": 7.0, "totalTransactions": 2}),
    ]

    summary = store.bulk_upsert("expense_insights", ops)

    assert summary.upserted == 2
    assert summary.failed == 1
    assert summary.errors[0]["index"] == 1
    assert "totalAmount" in summary.errors[0]["message"]
    assert store.count("expense_insights") == 2

    rerun = store.bulk_upsert("expense_insights", [ops[0]])
    assert rerun.matched == 1
    assert rerun.modified == 0
    assert store.count("expense_insights") == 2


def test_in_memory_iter_batches_with_projection():
    store = InMemoryRecordStore()
    store.insert_many("releases", [{"id": f"r{n}", "awards": [], "noise": n} for n in range(5)])

    batches = list(store.iter_batches("releases", projection={"id": 1, "awards": 1}, batch_size=2))

    assert [len(batch) for batch in batches] == [2, 2, 1]
    assert "noise" not in batches[0][0]
    assert "_id" in batches[0][0]


def test_null_filter_matches_missing_or_null_field():
    assert matches_filter({"releaseId": "r1"}, {"awardId": None})
    assert matches_filter({"releaseId": "r1", "awardId": None}, {"awardId": None})
    assert not matches_filter({"releaseId": "r1", "awardId": "a1"}, {"awardId": None})


def spike(award_id, amount):
    return Anomaly(
        severity="high",
        release_id="R",
        award_id=award_id,
        description=f"Unusual price detected for Tomografo: {amount} UYU (avg: 1547619.05 UYU)",
        detected_value=amount,
        expected_range=ExpectedRange(min=773809.5, max=3095238.1),
        confidence=0.8,
    )


def test_award_less_anomaly_does_not_overwrite_awarded_one():
    store = InMemoryRecordStore()
    anomalies = [spike("a1", 30000000), spike(None, 29000000)]
    ops = [UpsertOp(filter=a.natural_key(), set_fields=a.to_document()) for a in anomalies]

    first = store.bulk_upsert("anomalies", ops)
    rerun = store.bulk_upsert("anomalies", ops)

    assert first.upserted == 2
    assert first.failed == 0
    assert rerun.matched == 2
    stored = sorted((d.get("awardId") or "", d["detectedValue"]) for d in store.find("anomalies"))
    assert stored == [("", 29000000), ("a1", 30000000)]


class LostCursor:
    def __init__(self, error):
        self.error = error
        self.closed = False

    def sort(self, *args):
        return self

    def __iter__(self):
        yield {"id": "r1"}
        raise self.error

    def close(self):
        self.closed = True


def mongo_store_with_cursor(cursor):
    with patch("gastos_analytics.db.store_client.MongoClient"):
        store = MongoRecordStore("mongodb://localhost:27017", "gastos")
    store.db = MagicMock()
    store.db.__getitem__.return_value.find.return_value = cursor
    return store


def test_mongo_lost_cursor_raises_store_connection_error():
    cursor = LostCursor(CursorNotFound("cursor id 42 not found", 43))
    store = mongo_store_with_cursor(cursor)

    with pytest.raises(StoreConnectionError):
        list(store.iter_batches("releases", batch_size=10))
    assert cursor.closed


def test_mongo_read_failure_is_a_pipeline_error():
    cursor = LostCursor(OperationFailure("operation exceeded time limit", 50))
    store = mongo_store_with_cursor(cursor)

    with pytest.raises(AnalyticsPipelineError) as excinfo:
        list(store.iter_batches("releases", batch_size=10))
    assert not isinstance(excinfo.value, StoreConnectionError)
    assert cursor.closed
