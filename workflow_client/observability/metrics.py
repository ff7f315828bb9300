from typing import Optional

from prometheus_client import Counter, Histogram, Gauge


class Metrics:
    """Custom Prometheus metrics for the workflow client"""

    def __init__(self):
        # Counters
        self.transitions_total = Counter(
            'workflow_transitions_total',
            'Total number of workflow transitions attempted',
            ['transition', 'status']  # status: success/failure/rejected/stale
        )

        self.remote_calls_total = Counter(
            'workflow_remote_calls_total',
            'Total number of backend calls issued',
            ['service', 'operation', 'status']  # status: success/network_error/service_error/malformed_response
        )

        self.cache_lookups_total = Counter(
            'workflow_cache_lookups_total',
            'Stage cache lookups',
            ['artifact', 'result']  # result: hit/miss
        )

        # Histograms
        self.transition_duration_seconds = Histogram(
            'workflow_transition_duration_seconds',
            'Time spent in workflow transitions that reach a backend',
            ['transition'],
            buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0]
        )

        self.remote_call_duration_seconds = Histogram(
            'workflow_remote_call_duration_seconds',
            'Time spent on individual backend calls',
            ['operation'],
            buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0]
        )

        # Gauges
        self.transitions_in_flight = Gauge(
            'workflow_transitions_in_flight',
            'Number of transitions currently awaiting a backend'
        )


_metrics: Optional[Metrics] = None


def setup_metrics() -> Metrics:
    """Setup Prometheus metrics once per process"""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics
