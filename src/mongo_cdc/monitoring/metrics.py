"""
Prometheus metrics for the replication engine.
"""

from prometheus_client import Counter, Gauge, Histogram


cdc_events_received = Counter(
    'mongo_cdc_events_total',
    'Change events received from the source',
    ['collection', 'operation']
)

cdc_apply_results = Counter(
    'mongo_cdc_apply_results_total',
    'Upserts applied to the target by outcome',
    ['collection', 'result']
)

cdc_batch_duration = Histogram(
    'mongo_cdc_batch_seconds',
    'Time to apply and checkpoint a batch',
    ['collection']
)

cdc_errors_total = Counter(
    'mongo_cdc_errors_total',
    'Errors by type',
    ['collection', 'error_type']
)

cdc_lag_seconds = Gauge(
    'mongo_cdc_lag_seconds',
    'Delay between source cluster time and apply',
    ['collection']
)

cdc_state = Gauge(
    'mongo_cdc_state',
    'Current controller state (1 for the active state)',
    ['collection', 'state']
)

checkpoint_saves_total = Counter(
    'mongo_cdc_checkpoint_saves_total',
    'Total checkpoint saves',
    ['status']
)

checkpoint_loads_total = Counter(
    'mongo_cdc_checkpoint_loads_total',
    'Total checkpoint loads',
    ['status']
)

health_status = Gauge(
    'mongo_cdc_healthy',
    'Result of the last health check (1 healthy, 0 unhealthy)'
)

health_seconds_behind = Gauge(
    'mongo_cdc_seconds_behind',
    'Age of the last checkpoint at the last health check'
)
