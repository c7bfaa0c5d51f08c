from .metrics import (
    cdc_events_dispatched,
    cdc_checkpoint_ops,
    cdc_restarts_total,
    cdc_errors_total,
    cdc_last_checkpoint_time,
)

__all__ = [
    "cdc_events_dispatched",
    "cdc_checkpoint_ops",
    "cdc_restarts_total",
    "cdc_errors_total",
    "cdc_last_checkpoint_time",
]
