"""Operational sweeps and alert delivery."""

from .alerts import SlackAlertSink, resolve_alert_target
from .stale_run_detector import StaleRunDetector, StaleSweepReport

__all__ = [
    'SlackAlertSink',
    'StaleRunDetector',
    'StaleSweepReport',
    'resolve_alert_target',
]
