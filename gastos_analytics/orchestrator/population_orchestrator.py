"""Population orchestrator - drives the analytics stages over the record store"""

import time
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from gastos_analytics.constants import (
    AnomalyStatus,
    AnomalyType,
    EntityRole,
    RunStatus,
    SeverityLevel,
    Stage,
    AMOUNT_CALCULATION_VERSION,
    CANONICAL_CURRENCY,
    DATA_VERSION,
    DEFAULT_BATCH_SIZE,
    DEFAULT_HIGH_VALUE_THRESHOLD,
    DEFAULT_WRITE_BATCH_SIZE,
    DEFAULT_STAGE_ORDER,
    DEFAULT_TOP_CATEGORIES,
    DEFAULT_TOP_INSIGHTS,
    DEFAULT_TOP_ITEMS,
    BATCH_TIMEOUT_SECONDS,
    RUN_TIMEOUT_SECONDS,
)
from gastos_analytics.db.store_client import BulkWriteSummary, RecordStore, UpsertOp, get_record_store
from gastos_analytics.models.rates import RateTable
from gastos_analytics.models.record import ProcurementRecord
from gastos_analytics.orchestrator.retry_handler import retry_with_exponential_backoff
from gastos_analytics.orchestrator.state_manager import save_workflow_state, mark_run_complete
from gastos_analytics.tools.amount_tools import needs_amount_update, summarize_record
from gastos_analytics.tools.anomaly_tools import SpikeCandidates, detect_price_spikes
from gastos_analytics.tools.insight_tools import YearlyInsightAccumulator
from gastos_analytics.tools.item_frame import flatten_items
from gastos_analytics.tools.pattern_tools import EntityAccumulator
from gastos_analytics.tools.rate_client import build_rate_table
from gastos_analytics.utils.config_loader import load_config, get_stage_config
from gastos_analytics.utils.errors import (
    AnalyticsPipelineError,
    ConfigurationError,
    RunBudgetExceeded,
    StageExecutionError,
    StateManagerError,
    StoreConnectionError,
)
from gastos_analytics.utils.logging import get_logger
from gastos_analytics.utils.metrics import (
    anomalies_detected,
    batch_execution_time,
    documents_failed,
    documents_skipped,
    documents_upserted,
    entity_patterns_upserted,
    records_processed,
    run_completion_time,
    stage_execution_time,
)

logger = get_logger(__name__)

RECORD_PROJECTION = {
    "id": 1, "date": 1, "sourceYear": 1, "buyer": 1, "parties": 1, "awards": 1, "amount": 1,
}

# Stages that aggregate over the item rows of every record
AGGREGATION_STAGES = (
    Stage.ANOMALIES.value,
    Stage.INSIGHTS.value,
    Stage.SUPPLIERS.value,
    Stage.BUYERS.value,
)

# Failed-document messages kept per stage report
MAX_REPORTED_ERRORS = 20

DEFAULT_COLLECTIONS = {
    "releases_collection": "releases",
    "supplier_patterns_collection": "supplier_patterns",
    "buyer_patterns_collection": "buyer_patterns",
    "anomalies_collection": "anomalies",
    "expense_insights_collection": "expense_insights",
}


class AnalyticsOrchestrator:
    """Runs the population stages in order over the full record set"""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        store: Optional[RecordStore] = None,
        rates: Optional[RateTable] = None,
        batch_size: Optional[int] = None
    ):
        self.run_id = str(uuid.uuid4())
        self.config = config or load_config()
        self.store = store or get_record_store()
        self.rates = rates
        self.start_time = None
        self.stage_reports: Dict[str, Dict[str, Any]] = {}

        pipeline = self.config.get("pipeline", {})
        self.batch_size_override = batch_size
        self.write_batch_size = pipeline.get("write_batch_size", DEFAULT_WRITE_BATCH_SIZE)
        self.batch_timeout = pipeline.get("batch_timeout_seconds", BATCH_TIMEOUT_SECONDS)
        self.run_timeout = pipeline.get("run_timeout_seconds", RUN_TIMEOUT_SECONDS)
        self.health_check_retries = pipeline.get("health_check_retries", 3)
        store_config = self.config.get("store") or {}
        self.collections = {**DEFAULT_COLLECTIONS, **store_config}
        self.ensure_indexes = store_config.get("ensure_indexes", False)

        patterns = self.config.get("patterns", {})
        self.data_version = patterns.get("data_version", DATA_VERSION)

        self._stop_requested = False
        self._reducers: Dict[str, Any] = {}
        self._reduced_records = 0
        self._pending_stages: List[str] = []

        self._stage_handlers: Dict[str, Callable[[], Dict[str, Any]]] = {
            Stage.AMOUNTS.value: self.run_amounts_stage,
            Stage.ANOMALIES.value: self.run_anomalies_stage,
            Stage.INSIGHTS.value: self.run_insights_stage,
            Stage.SUPPLIERS.value: self.run_suppliers_stage,
            Stage.BUYERS.value: self.run_buyers_stage,
            Stage.REPORT.value: self.run_report_stage,
        }

    def request_stop(self) -> None:
        """Finish the current batch, then stop. Committed batches stay valid."""
        logger.info("Stop requested", run_id=self.run_id)
        self._stop_requested = True

    def run_population_cycle(self, stages: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """
        Execute the population stages in order

        Args:
            stages: Stage names to run; defaults to the configured stage order

        Returns:
            Run summary with per-stage counters and the data-quality report

        Raises:
            StageExecutionError: If a stage hits an unrecoverable error
            RunBudgetExceeded: If a batch or the run exceeds its wall-clock budget
        """
        stage_order = self._resolve_stages(stages)
        self.start_time = time.time()
        self._reducers = {}
        status = RunStatus.COMPLETED
        logger.info(f"🚀 Starting population run: {self.run_id}", stages=stage_order)

        try:
            self._ensure_store_available()
            if self.ensure_indexes:
                self.store.ensure_indexes()

            self._save_state({
                'status': RunStatus.IN_PROGRESS.value,
                'started_at': datetime.now().isoformat(),
                'completed_stages': [],
                'pending_stages': list(stage_order)
            })

            for position, stage in enumerate(stage_order):
                if self._stop_requested:
                    status = RunStatus.STOPPED
                    break

                self._check_run_budget()
                self._pending_stages = stage_order[position + 1:]
                report = self._run_stage(stage)
                self.stage_reports[stage] = report

                self._save_state({
                    'status': RunStatus.IN_PROGRESS.value,
                    'completed_stages': stage_order[:position + 1],
                    'pending_stages': stage_order[position + 1:],
                    'stage_reports': self.stage_reports
                })

                if report['status'] == RunStatus.STOPPED.value:
                    status = RunStatus.STOPPED
                    break

            duration = time.time() - self.start_time
            summary = self._build_summary(status, duration)
            try:
                mark_run_complete(self.run_id, summary, status=status.value)
            except StateManagerError as e:
                logger.warning(f"Final run state not saved: {e}", run_id=self.run_id)
            run_completion_time.observe(duration)

            logger.info(f"✅ Population run {status.value}: {self.run_id} ({duration:.1f}s)")
            return summary

        except AnalyticsPipelineError as e:
            logger.error(f"Population run failed: {e}", run_id=self.run_id)
            self._save_state({
                'status': RunStatus.FAILED.value,
                'error': str(e),
                'stage_reports': self.stage_reports,
                'timestamp': datetime.now().isoformat()
            })
            raise
        except Exception as e:
            logger.error(f"Population run failed unexpectedly: {e}", run_id=self.run_id)
            self._save_state({
                'status': RunStatus.FAILED.value,
                'error': str(e),
                'timestamp': datetime.now().isoformat()
            })
            raise AnalyticsPipelineError(f"Run {self.run_id} failed: {e}") from e

    def _resolve_stages(self, stages: Optional[Sequence[str]]) -> List[str]:
        configured = self.config.get("pipeline", {}).get("stage_order") or DEFAULT_STAGE_ORDER
        requested = list(stages) if stages else list(configured)
        unknown = [stage for stage in requested if stage not in self._stage_handlers]
        if unknown:
            raise ConfigurationError(f"Unknown stages: {unknown}")
        # Requested stages always run in the configured order
        order = [stage for stage in configured if stage in requested]
        return order + [stage for stage in requested if stage not in order]

    def _run_stage(self, stage: str) -> Dict[str, Any]:
        logger.info(f"➡️ Running stage: {stage}", run_id=self.run_id)
        stage_start = time.time()
        try:
            report = self._stage_handlers[stage]()
        except (RunBudgetExceeded, StageExecutionError):
            raise
        except AnalyticsPipelineError as e:
            raise StageExecutionError(stage, str(e)) from e

        report['duration_seconds'] = round(time.time() - stage_start, 3)
        stage_execution_time.labels(stage=stage).observe(report['duration_seconds'])
        logger.info(
            f"Stage {stage} {report['status']}",
            **{key: value for key, value in report.items() if key not in ('errors', 'report')}
        )
        return report

    def _ensure_store_available(self) -> None:
        def ping():
            if not self.store.ping():
                raise StoreConnectionError("Record store did not answer ping")
            return True

        try:
            retry_with_exponential_backoff(ping, self.health_check_retries, 1, 8, retry_on=(StoreConnectionError,))
        except AnalyticsPipelineError as e:
            raise StoreConnectionError(f"Record store unavailable: {e}")

    def _save_state(self, state: Dict[str, Any]) -> None:
        try:
            save_workflow_state(self.run_id, state)
        except StateManagerError as e:
            logger.warning(f"Workflow state not saved: {e}", run_id=self.run_id)

    def _stage_batch_size(self, stage: str) -> int:
        if self.batch_size_override:
            return self.batch_size_override
        return get_stage_config(self.config, stage).get('batch_size') or DEFAULT_BATCH_SIZE

    def _check_run_budget(self) -> None:
        elapsed = time.time() - self.start_time
        if elapsed > self.run_timeout:
            raise RunBudgetExceeded(f"Run {self.run_id} exceeded its {self.run_timeout}s budget ({elapsed:.1f}s)")

    def _after_batch(self, stage: str, batch_start: float) -> bool:
        """Apply the batch and run budgets; False when a stop was requested"""
        elapsed = time.time() - batch_start
        batch_execution_time.labels(stage=stage).observe(elapsed)
        if elapsed > self.batch_timeout:
            raise RunBudgetExceeded(
                f"Batch in stage '{stage}' took {elapsed:.1f}s, budget is {self.batch_timeout}s"
            )
        self._check_run_budget()
        return not self._stop_requested

    @staticmethod
    def _new_report(stage: str, total: int = 0) -> Dict[str, Any]:
        return {
            'stage': stage,
            'status': RunStatus.COMPLETED.value,
            'total': total,
            'processed': 0,
            'upserted': 0,
            'modified': 0,
            'skipped': 0,
            'failed': 0,
            'errors': [],
        }

    def _record_write(self, stage: str, report: Dict[str, Any], result: BulkWriteSummary) -> None:
        report['upserted'] += result.written
        report['modified'] += result.modified
        report['failed'] += result.failed
        documents_upserted.labels(stage=stage).inc(result.written)

        if result.failed:
            documents_failed.labels(stage=stage).inc(result.failed)
            for error in result.errors:
                logger.warning(
                    "Document failed store validation, skipped",
                    stage=stage,
                    filter=error.get('filter'),
                    cause=error.get('message')
                )
            remaining = MAX_REPORTED_ERRORS - len(report['errors'])
            if remaining > 0:
                report['errors'].extend(error.get('message') for error in result.errors[:remaining])

    def _write_in_batches(self, stage: str, collection: str, ops: List[UpsertOp], report: Dict[str, Any]) -> None:
        """Unordered bulk upserts in write-sized chunks, with progress and budgets"""
        for start in range(0, len(ops), self.write_batch_size):
            batch_start = time.time()
            chunk = ops[start:start + self.write_batch_size]
            self._record_write(stage, report, self.store.bulk_upsert(collection, chunk))

            written = start + len(chunk)
            logger.info(
                f"📊 {stage}: {written}/{len(ops)} ({written / len(ops) * 100:.1f}%)",
                stage=stage, written=written, total=len(ops)
            )
            if not self._after_batch(stage, batch_start) and written < len(ops):
                report['status'] = RunStatus.STOPPED.value
                return

    def run_amounts_stage(self) -> Dict[str, Any]:
        """Compute or refresh the amount summary of every record that needs it"""
        stage = Stage.AMOUNTS.value
        collection = self.collections['releases_collection']
        if self.rates is None:
            self.rates = build_rate_table(self.config.get('currency'))
        # Summaries change below; later stages must re-read them
        self._reducers = {}

        total = self.store.count(collection)
        report = self._new_report(stage, total)
        report['unchanged'] = 0
        report['items_skipped'] = 0

        for batch in self.store.iter_batches(collection, projection=RECORD_PROJECTION, batch_size=self._stage_batch_size(stage)):
            batch_start = time.time()
            ops: List[UpsertOp] = []

            for document in batch:
                record = self._parse_record(stage, document, report)
                if record is None:
                    continue
                if not needs_amount_update(record, AMOUNT_CALCULATION_VERSION):
                    report['unchanged'] += 1
                    continue

                summary = summarize_record(record, self.rates)
                report['items_skipped'] += summary.skipped_items
                ops.append(UpsertOp(filter={'id': record.id}, set_fields={'amount': summary.to_document()}))

            if ops:
                self._record_write(stage, report, self.store.bulk_upsert(collection, ops))

            report['processed'] += len(batch)
            records_processed.labels(stage=stage).inc(len(batch))
            logger.info(
                f"📊 {stage}: {report['processed']}/{total}",
                stage=stage, processed=report['processed'], total=total
            )
            if not self._after_batch(stage, batch_start):
                report['status'] = RunStatus.STOPPED.value
                break

        return report

    def _parse_record(self, stage: str, document: Dict[str, Any], report: Dict[str, Any]) -> Optional[ProcurementRecord]:
        try:
            return ProcurementRecord.from_document(document)
        except ValidationError as e:
            report['skipped'] += 1
            documents_skipped.labels(stage=stage).inc()
            logger.warning(
                "Skipping malformed record",
                stage=stage,
                document_id=str(document.get('id', document.get('_id'))),
                cause=str(e.errors()[0]['msg']) if e.errors() else str(e)
            )
            return None

    def _new_reducer(self, stage: str) -> Any:
        if stage == Stage.ANOMALIES.value:
            params = (self.config.get('anomaly_detection') or {}).get('price_spike', {})
            return SpikeCandidates(params.get('high_value_threshold', DEFAULT_HIGH_VALUE_THRESHOLD))
        if stage == Stage.INSIGHTS.value:
            return YearlyInsightAccumulator()
        if stage == Stage.SUPPLIERS.value:
            return EntityAccumulator(EntityRole.SUPPLIER)
        return EntityAccumulator(EntityRole.BUYER)

    def _reduce_records(self, stage: str, report: Dict[str, Any]) -> Optional[Any]:
        """
        Stream records in batches and fold each batch into the reducers.

        One pass feeds this stage and every aggregation stage still pending
        in the run; only the reducers' partial aggregates outlive a batch.
        A stage takes its reducer out of the cache, releasing it once the
        stage is done. Returns None when a stop was requested before the
        stream finished.
        """
        if stage in self._reducers:
            report['processed'] = self._reduced_records
            report['total'] = self._reduced_records
            return self._reducers.pop(stage)

        wanted = [stage] + [
            pending for pending in self._pending_stages
            if pending in AGGREGATION_STAGES and pending != stage
        ]
        reducers = {name: self._new_reducer(name) for name in wanted}

        collection = self.collections['releases_collection']
        canonical = (self.config.get('currency') or {}).get('canonical', CANONICAL_CURRENCY)
        total = self.store.count(collection)
        report['total'] = total

        for batch in self.store.iter_batches(collection, projection=RECORD_PROJECTION, batch_size=self._stage_batch_size(stage)):
            batch_start = time.time()
            records = []
            for document in batch:
                record = self._parse_record(stage, document, report)
                if record is not None:
                    records.append(record)

            items = flatten_items(records, canonical)
            items = items[items['amount'] > 0]
            for reducer in reducers.values():
                reducer.add(items)

            report['processed'] += len(batch)
            records_processed.labels(stage=stage).inc(len(batch))
            logger.info(
                f"📊 {stage}: {report['processed']}/{total} records read",
                stage=stage, processed=report['processed'], total=total
            )
            if not self._after_batch(stage, batch_start):
                report['status'] = RunStatus.STOPPED.value
                return None

        self._reduced_records = report['processed']
        reducer = reducers.pop(stage)
        self._reducers = reducers
        return reducer

    def _timed_compute(self, stage: str, compute: Callable[[], Any]) -> Any:
        """Run a whole-population grouping step under the batch budget"""
        compute_start = time.time()
        result = compute()
        self._after_batch(stage, compute_start)
        return result

    def run_anomalies_stage(self) -> Dict[str, Any]:
        """Detect price spikes and upsert them by (record, award, type)"""
        stage = Stage.ANOMALIES.value
        collection = self.collections['anomalies_collection']
        report = self._new_report(stage)

        candidates = self._reduce_records(stage, report)
        if candidates is None:
            return report

        params = (self.config.get('anomaly_detection') or {}).get('price_spike', {})
        anomalies = self._timed_compute(stage, lambda: detect_price_spikes(candidates.frame(), **params))
        report['detected'] = len(anomalies)
        report['by_severity'] = {level.value: 0 for level in SeverityLevel}

        detected_at = datetime.now()
        ops: List[UpsertOp] = []
        for anomaly in anomalies:
            anomaly.detection_run_id = self.run_id
            anomaly.status = AnomalyStatus.ACTIVE.value
            anomaly.detected_at = detected_at
            report['by_severity'][anomaly.severity] += 1
            anomalies_detected.labels(severity=anomaly.severity).inc()
            ops.append(UpsertOp(
                filter=anomaly.natural_key(),
                set_fields=anomaly.to_document(),
                set_on_insert={'firstDetectedAt': detected_at}
            ))

        self._write_in_batches(stage, collection, ops, report)

        if report['status'] == RunStatus.COMPLETED.value and report['failed'] == 0:
            if (self.config.get('anomaly_detection') or {}).get('mark_superseded', True):
                report['superseded'] = self.store.update_many(
                    collection,
                    {
                        'type': AnomalyType.PRICE_SPIKE.value,
                        'detectionRunId': {'$ne': self.run_id},
                        'status': {'$ne': AnomalyStatus.SUPERSEDED.value},
                    },
                    {
                        'status': AnomalyStatus.SUPERSEDED.value,
                        'supersededAt': detected_at,
                        'supersededByRunId': self.run_id,
                    }
                )
                logger.info(f"Marked {report['superseded']} stale anomalies superseded", stage=stage)
        else:
            logger.warning("Detection incomplete, stale anomalies left untouched", stage=stage, failed=report['failed'])

        return report

    def run_insights_stage(self) -> Dict[str, Any]:
        """Upsert one spending insight per source year"""
        stage = Stage.INSIGHTS.value
        collection = self.collections['expense_insights_collection']
        report = self._new_report(stage)

        accumulator = self._reduce_records(stage, report)
        if accumulator is None:
            return report

        top_n = (self.config.get('insights') or {}).get('top_n', DEFAULT_TOP_INSIGHTS)
        insights = self._timed_compute(stage, lambda: accumulator.insights(top_n, self.data_version))
        ops = [
            UpsertOp(filter={'year': insight.year}, set_fields={**insight.to_document(), 'lastUpdated': datetime.now()})
            for insight in insights
        ]
        self._write_in_batches(stage, collection, ops, report)
        report['insights'] = len(insights)
        return report

    def _run_patterns_stage(self, stage: str, role: EntityRole, collection: str) -> Dict[str, Any]:
        report = self._new_report(stage)

        accumulator = self._reduce_records(stage, report)
        if accumulator is None:
            return report

        patterns_config = self.config.get('patterns') or {}
        patterns = self._timed_compute(stage, lambda: accumulator.patterns(
            data_version=self.data_version,
            top_items=patterns_config.get('top_items', DEFAULT_TOP_ITEMS),
            top_categories=patterns_config.get('top_categories', DEFAULT_TOP_CATEGORIES),
        ))

        updated_at = datetime.now()
        ops = []
        for pattern in patterns:
            pattern.last_updated = updated_at
            ops.append(UpsertOp(filter=pattern.natural_key(), set_fields=pattern.to_document()))

        self._write_in_batches(stage, collection, ops, report)
        entity_patterns_upserted.labels(role=role.value).inc(report['upserted'])
        report['entities'] = len(patterns)
        return report

    def run_suppliers_stage(self) -> Dict[str, Any]:
        """Recompute every supplier profile"""
        return self._run_patterns_stage(
            Stage.SUPPLIERS.value, EntityRole.SUPPLIER, self.collections['supplier_patterns_collection']
        )

    def run_buyers_stage(self) -> Dict[str, Any]:
        """Recompute every buyer profile"""
        return self._run_patterns_stage(
            Stage.BUYERS.value, EntityRole.BUYER, self.collections['buyer_patterns_collection']
        )

    def run_report_stage(self) -> Dict[str, Any]:
        """Data-quality report over the committed outputs"""
        stage = Stage.REPORT.value
        report = self._new_report(stage)
        store = self.store
        anomalies = self.collections['anomalies_collection']
        by_value = [('totalValue', -1)]

        top_supplier = store.find_one(self.collections['supplier_patterns_collection'], sort=by_value)
        top_buyer = store.find_one(self.collections['buyer_patterns_collection'], sort=by_value)

        report['report'] = {
            'total_records': store.count(self.collections['releases_collection']),
            'records_with_amounts': store.count(
                self.collections['releases_collection'],
                {'amount.version': AMOUNT_CALCULATION_VERSION}
            ),
            'suppliers': store.count(self.collections['supplier_patterns_collection']),
            'buyers': store.count(self.collections['buyer_patterns_collection']),
            'insights': store.count(self.collections['expense_insights_collection']),
            'anomalies': store.count(anomalies, {'status': {'$ne': AnomalyStatus.SUPERSEDED.value}}),
            'anomalies_by_severity': {
                level.value: store.count(
                    anomalies,
                    {'severity': level.value, 'status': {'$ne': AnomalyStatus.SUPERSEDED.value}}
                )
                for level in SeverityLevel
            },
            'top_supplier': self._entity_summary(top_supplier, 'supplierId'),
            'top_buyer': self._entity_summary(top_buyer, 'buyerId'),
            'data_version': self.data_version,
            'amount_calculation_version': AMOUNT_CALCULATION_VERSION,
        }

        logger.info("📋 Data quality report", **report['report'])
        return report

    @staticmethod
    def _entity_summary(document: Optional[Dict[str, Any]], id_field: str) -> Optional[Dict[str, Any]]:
        if not document:
            return None
        return {
            'id': document.get(id_field),
            'name': document.get('name'),
            'total_value': document.get('totalValue'),
        }

    def _build_summary(self, status: RunStatus, duration: float) -> Dict[str, Any]:
        reports = self.stage_reports
        pattern_stages = (Stage.SUPPLIERS.value, Stage.BUYERS.value)
        return {
            'run_id': self.run_id,
            'status': status.value,
            'stages': {
                stage: {key: value for key, value in report.items() if key != 'report'}
                for stage, report in reports.items()
            },
            'records_processed': reports.get(Stage.AMOUNTS.value, {}).get('processed', self._reduced_records),
            'entities_upserted': sum(reports.get(stage, {}).get('upserted', 0) for stage in pattern_stages),
            'anomalies_found': reports.get(Stage.ANOMALIES.value, {}).get('detected', 0),
            'documents_skipped': {stage: report['skipped'] for stage, report in reports.items()},
            'documents_failed': {stage: report['failed'] for stage, report in reports.items()},
            'report': reports.get(Stage.REPORT.value, {}).get('report'),
            'duration_seconds': round(duration, 3),
        }
