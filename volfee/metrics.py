"""
Prometheus Metrics Exporter module for cl-volatility-fee

Exposes per-entity controller state for dashboards:
- Gauges: current fee, volatility estimate, last position
- Counters: observations committed, bootstraps

Lightweight, thread-safe exporter built on the Python standard library
(http.server), same as the rest of the plugin's observability surface.
All metric names are prefixed with 'cl_volfee_' to avoid collisions.
"""

import socket
import threading
from dataclasses import dataclass, field
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, FrozenSet, Optional, Tuple

from .events import ObservationRecord


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


LabelKey = FrozenSet[Tuple[str, str]]


@dataclass
class _MetricFamily:
    type: str
    help: str = ""
    values: Dict[LabelKey, float] = field(default_factory=dict)


class PrometheusExporter:
    """
    Prometheus text-format exporter with an optional background HTTP server.

    Usage:
        exporter = PrometheusExporter(port=9810, plugin=plugin)
        exporter.start_server()
        exporter.set_gauge(MetricNames.ENTITY_FEE, 3282, {"entity_id": "pool-1"})
    """

    def __init__(self, port: int = 9810, plugin=None):
        """
        Args:
            port: HTTP server port
            plugin: Optional plugin instance for logging
        """
        self.port = port
        self.plugin = plugin

        self._lock = threading.Lock()
        self._metrics: Dict[str, _MetricFamily] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _family(self, name: str, metric_type: str, help_text: str) -> _MetricFamily:
        family = self._metrics.get(name)
        if family is None:
            family = _MetricFamily(type=metric_type, help=help_text or METRIC_HELP.get(name, ""))
            self._metrics[name] = family
        return family

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        """Set a gauge to an absolute value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._family(name, MetricType.GAUGE, help_text).values[label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        """Increment a counter (counters only go up)."""
        if value < 0:
            raise ValueError(f"counter {name} cannot be decremented")
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._family(name, MetricType.COUNTER, help_text).values
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value for an exact label set, or None."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            family = self._metrics.get(name)
            if family is None:
                return None
            return family.values.get(label_key)

    def format_prometheus(self) -> str:
        """Render every metric in Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, family in sorted(self._metrics.items()):
                if family.help:
                    lines.append(f"# HELP {name} {family.help}")
                lines.append(f"# TYPE {name} {family.type}")
                for label_key, value in sorted(family.values.items(), key=lambda x: sorted(x[0])):
                    if label_key:
                        label_part = ",".join(f'{k}="{_escape(v)}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")
        return "\n".join(lines)

    def _create_request_handler(self):
        """Build a handler class bound to this exporter."""
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                # Access logs would go to lightningd's stderr
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.end_headers()
                        self.wfile.write(b'Not Found. Try /metrics')
                        return
                    body = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; version=0.0.4; charset=utf-8')
                    self.send_header('Content-Length', str(len(body)))
                    self.end_headers()
                    self.wfile.write(body)
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP server in a background thread.

        Returns:
            True if the server is running, False if it could not bind
        """
        if self._running:
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(f"Failed to start Prometheus server on port {self.port}: {e}. "
                      "Continuing without metrics export.", level='error')
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="volfee-prometheus"
        )
        self._server_thread.start()
        self._running = True
        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        """Stop the HTTP server."""
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running


def _escape(value: str) -> str:
    return str(value).replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')


class MetricNames:
    """Standard metric names for cl-volatility-fee."""

    # Per-entity gauges
    ENTITY_FEE = "cl_volfee_entity_fee"
    ENTITY_VOLATILITY = "cl_volfee_entity_volatility"
    ENTITY_LAST_POSITION = "cl_volfee_entity_last_position"
    ENTITY_LAST_DISPLACEMENT = "cl_volfee_entity_last_displacement"

    # Counters
    OBSERVATIONS_TOTAL = "cl_volfee_observations_total"
    BOOTSTRAPS_TOTAL = "cl_volfee_bootstraps_total"

    # System health
    ENTITIES_TRACKED = "cl_volfee_entities_tracked"


METRIC_HELP = {
    MetricNames.ENTITY_FEE: "Fee quoted for the next transaction (hundredths of a bp)",
    MetricNames.ENTITY_VOLATILITY: "EWMA of squared position displacement",
    MetricNames.ENTITY_LAST_POSITION: "Most recently observed position",
    MetricNames.ENTITY_LAST_DISPLACEMENT: "Displacement of the most recent observation",
    MetricNames.OBSERVATIONS_TOTAL: "Total committed observations",
    MetricNames.BOOTSTRAPS_TOTAL: "Total bootstrap observations",
    MetricNames.ENTITIES_TRACKED: "Number of entities with a controller record",
}


class MetricsListener:
    """
    EventDispatcher listener that mirrors observations into the exporter.

    The last position is not part of an ObservationRecord, so it is read
    back from the registry's committed record when a registry is given.
    """

    def __init__(self, exporter: PrometheusExporter, registry=None):
        self.exporter = exporter
        self.registry = registry

    def __call__(self, record: ObservationRecord) -> None:
        labels = {"entity_id": str(record.entity_id)}
        self.exporter.set_gauge(MetricNames.ENTITY_FEE, record.fee, labels)
        self.exporter.set_gauge(MetricNames.ENTITY_VOLATILITY, record.estimate, labels)
        self.exporter.set_gauge(MetricNames.ENTITY_LAST_DISPLACEMENT, record.displacement, labels)
        self.exporter.inc_counter(MetricNames.OBSERVATIONS_TOTAL, 1, labels)
        if record.bootstrap:
            self.exporter.inc_counter(MetricNames.BOOTSTRAPS_TOTAL, 1, labels)

        if self.registry is not None and self.registry.has_entity(record.entity_id):
            last_position, _, _, _ = self.registry.get_metrics(record.entity_id)
            self.exporter.set_gauge(MetricNames.ENTITY_LAST_POSITION, last_position, labels)
            self.exporter.set_gauge(MetricNames.ENTITIES_TRACKED, len(self.registry.entity_ids()))
