"""Tests for the population orchestrator and main workflow"""

import copy
import pytest
from datetime import datetime

from gastos_analytics.db.schemas import COLLECTION_VALIDATORS
from gastos_analytics.db.store_client import InMemoryRecordStore
from gastos_analytics.models import RateTable
from gastos_analytics.orchestrator.population_orchestrator import AnalyticsOrchestrator
from gastos_analytics.orchestrator.state_manager import restore_workflow_state
from gastos_analytics.utils.config_loader import load_config
from gastos_analytics.utils.errors import (
    ConfigurationError,
    RunBudgetExceeded,
    StageExecutionError,
    StoreConnectionError,
)

RATES = RateTable(rates={"USD": 40.0}, indexed_unit_rate=6.0, as_of=datetime(2024, 1, 1))


@pytest.fixture(autouse=True)
def in_memory_state(monkeypatch):
    monkeypatch.setenv("STATE_BACKEND", "memory")


def release(record_id, supplier_id, buyer_id, amount, currency="UYU", quantity=1, description="Tomografo"):
    return {
        "id": record_id,
        "date": "2023-04-10T00:00:00",
        "buyer": {"id": buyer_id, "name": f"Buyer {buyer_id}"},
        "awards": [{
            "id": f"{record_id}-award",
            "suppliers": [{"id": supplier_id, "name": f"Supplier {supplier_id}"}],
            "items": [{
                "quantity": quantity,
                "classification": {"scheme": "CATALOGO", "id": "77", "description": description},
                "unit": {"name": "Unidad", "value": {"amount": amount, "currency": currency}},
            }],
        }],
    }


def seeded_store(validators=None):
    store = InMemoryRecordStore(validators=validators)
    documents = [release(f"r{n:02d}", "s1", "b1", 150000) for n in range(19)]
    documents.append(release("r19", "s2", "b2", 30000000))
    documents.append(release("r20", "s1", "b1", 10, currency="USD", quantity=3, description="Guantes"))
    documents.append({"awards": [], "buyer": {"name": "No id"}})
    store.insert_many("releases", documents)
    return store


def make_config(**pipeline_overrides):
    config = load_config("config/pipeline.yaml")
    config["pipeline"].update(pipeline_overrides)
    return config


def test_orchestrator_initialization():
    """Test that orchestrator initializes correctly"""
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=InMemoryRecordStore(), rates=RATES)
    assert orchestrator.run_id is not None
    assert orchestrator.config is not None
    assert orchestrator.start_time is None


def test_full_population_cycle():
    """Integration test - every stage over the in-memory store"""
    store = seeded_store()
    orchestrator = AnalyticsOrchestrator(config=make_config(batch_size=5), store=store, rates=RATES)

    results = orchestrator.run_population_cycle()

    assert results["status"] == "completed"
    assert list(results["stages"]) == ["amounts", "anomalies", "insights", "suppliers", "buyers", "report"]
    assert results["records_processed"] == 22
    assert results["documents_skipped"]["amounts"] == 1
    assert results["stages"]["amounts"]["upserted"] == 21
    assert results["anomalies_found"] == 1
    assert results["entities_upserted"] == 4

    usd_record = store.find("releases", {"id": "r20"})[0]
    assert usd_record["amount"]["totalAmounts"] == {"USD": 30}
    assert usd_record["amount"]["primaryAmount"] == 1200

    anomaly = store.find("anomalies")[0]
    assert anomaly["releaseId"] == "r19"
    assert anomaly["severity"] == "high"
    assert anomaly["status"] == "active"
    assert anomaly["detectionRunId"] == orchestrator.run_id

    supplier = store.find("supplier_patterns", {"supplierId": "s1"})[0]
    assert supplier["totalContracts"] == 20
    assert supplier["counterparts"] == ["b1"]
    assert supplier["dataVersion"] == 4
    assert supplier["totalCanonicalAmount"] == 19 * 150000 + 1200

    report = results["report"]
    assert report["total_records"] == 22
    assert report["records_with_amounts"] == 21
    assert report["suppliers"] == 2
    assert report["buyers"] == 2
    assert report["insights"] == 1
    assert report["anomalies_by_severity"]["high"] == 1
    assert report["top_supplier"]["id"] == "s2"

    assert restore_workflow_state(orchestrator.run_id)["status"] == "completed"


def test_partial_failure_isolation():
    """One document rejected by the store, the rest of the batch persists"""
    validators = copy.deepcopy(COLLECTION_VALIDATORS)
    validators["releases"]["properties"]["amount"]["properties"]["primaryAmount"]["maximum"] = 1e9
    store = InMemoryRecordStore(validators=validators)
    store.insert_many("releases", [
        release("ok-1", "s1", "b1", 100),
        release("too-big", "s1", "b1", 5e9),
        release("ok-2", "s1", "b1", 200),
    ])
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES)

    results = orchestrator.run_population_cycle(["amounts"])

    assert results["documents_failed"]["amounts"] == 1
    assert results["stages"]["amounts"]["upserted"] == 2
    assert "primaryAmount" in results["stages"]["amounts"]["errors"][0]
    assert store.count("releases", {"amount": {"$exists": True}}) == 2
    assert store.find("releases", {"id": "too-big"})[0].get("amount") is None


def test_rerun_converges():
    store = seeded_store()
    first = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES).run_population_cycle()
    suppliers_before = {d["supplierId"]: d for d in store.find("supplier_patterns")}

    second = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES).run_population_cycle()

    assert second["stages"]["amounts"]["unchanged"] == 21
    assert second["stages"]["amounts"]["upserted"] == 0
    assert store.count("supplier_patterns") == first["report"]["suppliers"]
    assert store.count("anomalies") == 1
    assert store.count("anomalies", {"status": "superseded"}) == 0

    def strip(document):
        return {k: v for k, v in document.items() if k not in ("lastUpdated", "_id")}

    for document in store.find("supplier_patterns"):
        assert strip(document) == strip(suppliers_before[document["supplierId"]])


def test_stale_anomalies_are_superseded_not_deleted():
    store = seeded_store()
    store.insert_many("anomalies", [{
        "type": "price_spike",
        "severity": "low",
        "releaseId": "corrected-record",
        "description": "Unusual price detected for Sillas: 900000 UYU (avg: 150000 UYU)",
        "detectedValue": 900000,
        "expectedRange": {"min": 75000, "max": 300000},
        "confidence": 0.8,
        "status": "active",
        "detectionRunId": "previous-run",
    }])
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES)

    results = orchestrator.run_population_cycle(["anomalies"])

    assert results["stages"]["anomalies"]["superseded"] == 1
    stale = store.find("anomalies", {"releaseId": "corrected-record"})[0]
    assert stale["status"] == "superseded"
    assert stale["supersededByRunId"] == orchestrator.run_id
    assert store.count("anomalies", {"status": "active"}) == 1


def test_stop_between_batches():
    store = seeded_store()
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES, batch_size=5)
    original_upsert = store.bulk_upsert

    def upsert_then_stop(collection, ops):
        result = original_upsert(collection, ops)
        orchestrator.request_stop()
        return result

    store.bulk_upsert = upsert_then_stop

    results = orchestrator.run_population_cycle()

    assert results["status"] == "stopped"
    assert list(results["stages"]) == ["amounts"]
    assert results["stages"]["amounts"]["processed"] == 5
    assert store.count("releases", {"amount": {"$exists": True}}) == 5


def test_store_loss_aborts_run_and_keeps_committed_batches():
    store = seeded_store()
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES, batch_size=5)
    original_upsert = store.bulk_upsert

    def upsert_then_disconnect(collection, ops):
        result = original_upsert(collection, ops)
        store.available = False
        return result

    store.bulk_upsert = upsert_then_disconnect

    with pytest.raises(StageExecutionError) as excinfo:
        orchestrator.run_population_cycle()

    assert excinfo.value.stage == "amounts"
    assert isinstance(excinfo.value.__cause__, StoreConnectionError)
    assert restore_workflow_state(orchestrator.run_id)["status"] == "failed"

    store.available = True
    assert store.count("releases", {"amount": {"$exists": True}}) == 5
    assert store.count("supplier_patterns") == 0


def test_unknown_stage_rejected():
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=InMemoryRecordStore(), rates=RATES)

    with pytest.raises(ConfigurationError):
        orchestrator.run_population_cycle(["amounts", "forecasts"])


def test_requested_stages_follow_configured_order():
    store = seeded_store()
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES)

    results = orchestrator.run_population_cycle(["buyers", "amounts"])

    assert list(results["stages"]) == ["amounts", "buyers"]
    assert store.count("buyer_patterns") == 2


def test_run_budget_exceeded():
    orchestrator = AnalyticsOrchestrator(
        config=make_config(run_timeout_seconds=-1),
        store=seeded_store(),
        rates=RATES
    )

    with pytest.raises(RunBudgetExceeded):
        orchestrator.run_population_cycle()


def test_aggregation_stages_share_one_streaming_pass():
    store = seeded_store()
    orchestrator = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES, batch_size=5)
    original_iter = store.iter_batches
    reads = []

    def counting_iter(collection, *args, **kwargs):
        reads.append(collection)
        return original_iter(collection, *args, **kwargs)

    store.iter_batches = counting_iter

    results = orchestrator.run_population_cycle()

    # One pass for amounts, one shared by anomalies, insights, suppliers and buyers
    assert reads == ["releases", "releases"]
    assert results["stages"]["suppliers"]["processed"] == 22
    assert results["stages"]["buyers"]["entities"] == 2
    assert orchestrator._reducers == {}


def test_award_less_anomaly_is_stored_beside_awarded_one():
    store = InMemoryRecordStore()
    documents = [release(f"p{n:02d}", "s1", "b1", 150000) for n in range(40)]
    outlier_item = {
        "quantity": 1,
        "classification": {"scheme": "CATALOGO", "id": "77", "description": "Tomografo"},
        "unit": {"name": "Unidad", "value": {"amount": 30000000, "currency": "UYU"}},
    }
    documents.append({
        "id": "R",
        "date": "2023-04-10T00:00:00",
        "awards": [
            {"id": "a1", "suppliers": [{"id": "s2", "name": "Supplier s2"}], "items": [outlier_item]},
            {"suppliers": [{"id": "s3", "name": "Supplier s3"}],
             "items": [{**outlier_item, "unit": {"name": "Unidad", "value": {"amount": 29000000, "currency": "UYU"}}}]},
        ],
    })
    store.insert_many("releases", documents)

    for _ in range(2):
        results = AnalyticsOrchestrator(config=make_config(), store=store, rates=RATES).run_population_cycle(["anomalies"])
        assert results["anomalies_found"] == 2
        assert results["documents_failed"]["anomalies"] == 0

    stored = sorted((d.get("awardId") or "", d["detectedValue"], d["status"]) for d in store.find("anomalies"))
    assert stored == [("", 29000000, "active"), ("a1", 30000000, "active")]
