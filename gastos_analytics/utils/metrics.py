"""Prometheus metrics definitions"""

from prometheus_client import Counter, Histogram, Gauge


# Run health metrics
run_completion_time = Histogram(
    'analytics_run_completion_time_seconds',
    'Time to complete a full population run',
    buckets=[60, 300, 900, 1800, 3600, 7200, 14400]
)

stage_execution_time = Histogram(
    'analytics_stage_execution_time_seconds',
    'Execution time per pipeline stage',
    labelnames=['stage'],
    buckets=[5, 30, 60, 300, 900, 1800, 3600]
)

batch_execution_time = Histogram(
    'analytics_batch_execution_time_seconds',
    'Execution time per batch',
    labelnames=['stage'],
    buckets=[0.5, 1, 5, 15, 30, 60, 300]
)

workflow_state_saves = Counter(
    'analytics_workflow_state_saves_total',
    'Number of workflow state saves',
    labelnames=['status']  # success, failure
)

# Business metrics
records_processed = Counter(
    'analytics_records_processed_total',
    'Total procurement records scanned',
    labelnames=['stage']
)

documents_upserted = Counter(
    'analytics_documents_upserted_total',
    'Documents written by bulk upserts',
    labelnames=['stage']
)

documents_failed = Counter(
    'analytics_documents_failed_total',
    'Documents rejected by the store during bulk upserts',
    labelnames=['stage']
)

documents_skipped = Counter(
    'analytics_documents_skipped_total',
    'Source documents skipped because of input defects',
    labelnames=['stage']
)

anomalies_detected = Counter(
    'analytics_anomalies_detected_total',
    'Price anomalies detected',
    labelnames=['severity']
)

entity_patterns_upserted = Counter(
    'analytics_entity_patterns_upserted_total',
    'Supplier/buyer profiles written',
    labelnames=['role']
)

# Infrastructure metrics
store_connection_healthy = Gauge(
    'analytics_store_connection_healthy',
    'Whether the record store connection is alive (0/1)'
)

rate_source_fallbacks = Counter(
    'analytics_rate_source_fallbacks_total',
    'Times fallback exchange rates replaced a live feed',
    labelnames=['source']
)
