"""
Prometheus Metrics Exporter module for cl-fakechan-audit

Exposes the result of the most recent audit for scraping.

This module provides a lightweight, thread-safe Prometheus metrics exporter
using only the Python standard library (no prometheus_client or flask).

All metric names are prefixed with 'cl_fakechan_' to avoid collisions.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class PrometheusExporter:
    """
    Lightweight Prometheus metrics exporter.

    Thread-safe implementation using standard library only.
    Supports gauges (set value) and counters (increment value) with labels.

    Usage:
        exporter = PrometheusExporter(port=9810)
        exporter.start_server()
        exporter.set_gauge(
            "cl_fakechan_channel_balance_change_msat",
            -99900,
            {"channel_id": "123x1x1"},
            "Net balance change attributed to a fake channel"
        )
    """

    def __init__(self, port: int = 9810, plugin=None):
        """
        Initialize the Prometheus exporter.

        Args:
            port: HTTP server port (default: 9810)
            plugin: Optional plugin instance for logging
        """
        self.port = port
        self.plugin = plugin

        self._lock = threading.Lock()

        # {name: {"type": ..., "help": ..., "values": {frozenset(labels.items()): value}}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        """Log a message using the plugin logger if available."""
        if self.plugin:
            self.plugin.log(message, level=level)

    def _ensure(self, name: str, metric_type: str, help_text: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": help_text,
                "values": {}
            }
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        """
        Set a gauge metric value.

        Args:
            name: Metric name (should start with 'cl_fakechan_')
            value: The value to set
            labels: Optional dict of labels (e.g., {"channel_id": "123x1x1"})
            help_text: Description of the metric (only used on first set)
        """
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._ensure(name, MetricType.GAUGE, help_text)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        """Increment a counter metric."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._ensure(name, MetricType.COUNTER, help_text)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Get the current value of a metric, or None if not found."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def clear_metric(self, name: str) -> None:
        """Drop every label combination of a metric (keeps type and help)."""
        with self._lock:
            if name in self._metrics:
                self._metrics[name]["values"] = {}

    def format_prometheus(self) -> str:
        """
        Format all metrics in Prometheus text format.

        Returns:
            String in Prometheus text exposition format
        """
        lines = []

        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric.get("help"):
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")

                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(x[0])):
                    if label_key:
                        label_strs = [f'{k}="{v}"' for k, v in sorted(label_key)]
                        lines.append(f"{name}{{{', '.join(label_strs)}}} {value}")
                    else:
                        lines.append(f"{name} {value}")

                lines.append("")

        return "\n".join(lines)

    def _create_request_handler(self):
        """Create a request handler class with access to the exporter."""
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):
            """HTTP request handler for /metrics endpoint."""

            def log_message(self, format, *args):
                # Suppress default stderr logging
                pass

            def do_GET(self):
                try:
                    if self.path in ('/', '/metrics'):
                        content = exporter.format_prometheus().encode('utf-8')
                        self.send_response(200)
                        self.send_header('Content-Type', 'text/plain; charset=utf-8')
                        self.send_header('Content-Length', str(len(content)))
                        self.end_headers()
                        self.wfile.write(content)
                    else:
                        self.send_response(404)
                        self.send_header('Content-Type', 'text/plain')
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                except (BrokenPipeError, ConnectionResetError):
                    # Client disconnected before we finished
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP server in a background thread.

        Returns:
            True if server started successfully, False otherwise
        """
        if self._running:
            self._log("Prometheus server already running")
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

            self._server_thread = threading.Thread(
                target=self._run_server,
                daemon=True,
                name="prometheus-exporter"
            )
            self._server_thread.start()
            self._running = True

            self._log(f"Prometheus metrics server started on port {self.port}")
            return True

        except OSError as e:
            self._log(
                f"Failed to start Prometheus server on port {self.port}: {e}. "
                "Plugin continues without metrics.",
                level='error'
            )
            return False

    def _run_server(self):
        """Run the HTTP server (called in background thread)."""
        try:
            self._server.serve_forever()
        except OSError as e:
            self._log(f"Prometheus server error: {e}", level='error')
            self._running = False

    def is_running(self) -> bool:
        return self._running


class MetricNames:
    """
    Standard metric names for cl-fakechan-audit.

    All names are prefixed with 'cl_fakechan_' to avoid collisions.
    """
    AFFECTED = "cl_fakechan_affected"
    CHANNELS_CHECKED = "cl_fakechan_channels_checked"
    INVALID_CHANNELS = "cl_fakechan_invalid_channels"
    CHANNEL_BALANCE_CHANGE_MSAT = "cl_fakechan_channel_balance_change_msat"
    TOTAL_BALANCE_CHANGE_MSAT = "cl_fakechan_total_balance_change_msat"
    LOOKUP_FAILURES = "cl_fakechan_lookup_failures"
    AUDITS_TOTAL = "cl_fakechan_audits_total"
    LAST_AUDIT_TIMESTAMP = "cl_fakechan_last_audit_timestamp_seconds"


METRIC_HELP = {
    MetricNames.AFFECTED: "1 if the last audit found invalid channels, 0 otherwise",
    MetricNames.CHANNELS_CHECKED: "Open channels checked against the channel graph in the last audit",
    MetricNames.INVALID_CHANNELS: "Channels whose capacity could not be confirmed by the channel graph",
    MetricNames.CHANNEL_BALANCE_CHANGE_MSAT: "Net balance change attributed to an invalid channel in msat",
    MetricNames.TOTAL_BALANCE_CHANGE_MSAT: "Net balance change over all invalid channels in msat",
    MetricNames.LOOKUP_FAILURES: "Channel graph lookups that failed in the last audit",
    MetricNames.AUDITS_TOTAL: "Completed audits since plugin start",
    MetricNames.LAST_AUDIT_TIMESTAMP: "Unix timestamp of the last completed audit",
}


def publish_audit_result(exporter: PrometheusExporter, result) -> None:
    """Replace the exported values with those of `result` (an AuditResult)."""
    def gauge(name, value, labels=None):
        exporter.set_gauge(name, value, labels, METRIC_HELP[name])

    gauge(MetricNames.AFFECTED, 1 if result.affected else 0)
    gauge(MetricNames.CHANNELS_CHECKED, result.channels_checked)
    gauge(MetricNames.INVALID_CHANNELS, len(result.invalid_channels))
    gauge(MetricNames.LOOKUP_FAILURES, result.lookup_failures)
    gauge(MetricNames.LAST_AUDIT_TIMESTAMP, int(result.started_at + result.duration))

    exporter.clear_metric(MetricNames.CHANNEL_BALANCE_CHANGE_MSAT)
    for scid, amount in (result.loss_ledger or {}).items():
        gauge(MetricNames.CHANNEL_BALANCE_CHANGE_MSAT, amount, {"channel_id": str(scid)})
    gauge(MetricNames.TOTAL_BALANCE_CHANGE_MSAT, result.total_loss_msat or 0)

    exporter.inc_counter(
        MetricNames.AUDITS_TOTAL, 1, None, METRIC_HELP[MetricNames.AUDITS_TOTAL]
    )
