"""
Prometheus metrics for the change stream consumer.
"""

from prometheus_client import Counter, Gauge

cdc_events_dispatched = Counter(
    'mongowatch_cdc_events_total',
    'Total change events handed to the dispatch pipeline',
    ['collection', 'operation']
)

cdc_checkpoint_ops = Counter(
    'mongowatch_cdc_checkpoint_ops_total',
    'Checkpoint store operations',
    ['action', 'status']
)

cdc_restarts_total = Counter(
    'mongowatch_cdc_restarts_total',
    'Watch restarts by reason',
    ['collection', 'reason']
)

cdc_errors_total = Counter(
    'mongowatch_cdc_errors_total',
    'Total CDC errors',
    ['collection', 'error_type']
)

cdc_last_checkpoint_time = Gauge(
    'mongowatch_cdc_last_checkpoint_seconds',
    'Cluster time (seconds) of the last stored checkpoint',
    ['collection']
)
