import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

_PHASE_VALUES = {
    'idle': 0,
    'watching': 1,
    'armed': 2,
    'order_pending': 3,
    'holding': 4,
}


class MetricsCollector:
    def __init__(self):
        self.bars_processed = Counter('bars_processed_total', 'Total bars processed', ['symbol'])
        self.bars_skipped = Counter('bars_skipped_total', 'Bars ignored as stale or duplicate', ['symbol'])
        self.bar_latency = Histogram('bar_processing_latency_seconds', 'Time spent handling one bar')
        self.dropped_bars = Counter('dropped_bars_total', 'Bars dropped by a full per-symbol queue', ['symbol'])
        self.queue_depth = Gauge('bar_queue_depth', 'Pending bars per symbol queue', ['symbol'])

        self.transitions = Counter('monitor_transitions_total', 'Monitoring state transitions', ['action'])
        self.monitor_phase = Gauge('monitor_phase', 'Monitoring phase per symbol (0 idle .. 4 holding)', ['symbol'])

        self.orders_placed = Counter('orders_placed_total', 'Bracket orders placed')
        self.orders_failed = Counter('orders_failed_total', 'Bracket order placements that failed', ['reason'])
        self.orders_cancelled = Counter('orders_cancelled_total', 'Bracket orders cancelled', ['reason'])
        self.order_send_latency = Histogram('order_send_latency_seconds', 'Latency from order send to acknowledgement')
        self.gateway_query_failures = Counter('gateway_query_failures_total', 'Order status queries that failed')

        self.persistence_failures = Counter('state_persistence_failures_total', 'State writes that exhausted retries', ['symbol'])
        self.recompute_runs = Counter('pivot_recompute_runs_total', 'Pivot recompute cycles', ['outcome'])
        self.cleanup_runs = Counter('eod_cleanup_runs_total', 'End-of-day cleanup runs', ['outcome'])

        self.reconnect_count = Counter('websocket_reconnects_total', 'Total WebSocket reconnects')
        self.stream_connected = Gauge('bar_stream_connected', 'Bar stream connection flag')

    def record_bar(self, symbol: str, latency_seconds: Optional[float] = None):
        self.bars_processed.labels(symbol=symbol).inc()
        if latency_seconds is not None:
            self.bar_latency.observe(latency_seconds)

    def record_bar_skipped(self, symbol: str):
        self.bars_skipped.labels(symbol=symbol).inc()

    def record_drop(self, symbol: str):
        self.dropped_bars.labels(symbol=symbol).inc()

    def update_queue_depth(self, symbol: str, depth: int):
        self.queue_depth.labels(symbol=symbol).set(depth)

    def record_transition(self, action: str):
        self.transitions.labels(action=action).inc()

    def update_phase(self, symbol: str, phase: str):
        self.monitor_phase.labels(symbol=symbol).set(_PHASE_VALUES.get(phase, 0))

    def record_order_placed(self):
        self.orders_placed.inc()

    def record_order_failed(self, reason: str):
        self.orders_failed.labels(reason=reason).inc()

    def record_order_cancelled(self, reason: str):
        self.orders_cancelled.labels(reason=reason).inc()

    def record_order_send_latency(self, latency_seconds: float):
        self.order_send_latency.observe(latency_seconds)

    def record_gateway_query_failure(self):
        self.gateway_query_failures.inc()

    def record_persistence_failure(self, symbol: str):
        self.persistence_failures.labels(symbol=symbol).inc()

    def record_recompute(self, outcome: str):
        self.recompute_runs.labels(outcome=outcome).inc()

    def record_cleanup(self, outcome: str):
        self.cleanup_runs.labels(outcome=outcome).inc()

    def record_reconnect(self):
        self.reconnect_count.inc()

    def mark_stream(self, connected: bool):
        self.stream_connected.set(1 if connected else 0)


def start_metrics_server(port: int = 9108, port_scan_limit: int = 0):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error


metrics = MetricsCollector()
