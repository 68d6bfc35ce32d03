"""Prometheus metrics exporter for sshmon.

Metrics exposed:
- Connection attempts by admission result
- Active sessions and session duration
- Authentication attempts by method
- Commands by outcome (known, unknown, error)
- Malware download attempts
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Optional

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from . import __version__

logger = logging.getLogger(__name__)

RESULT_ACCEPTED = "accepted"
RESULT_REJECTED_FILTER = "rejected_filter"
RESULT_REJECTED_CAPACITY = "rejected_capacity"

OUTCOME_KNOWN = "known"
OUTCOME_UNKNOWN = "unknown"
OUTCOME_ERROR = "error"

# =============================================================================
# Metric Definitions
# =============================================================================

connections_total = Counter(
    "sshmon_connections_total",
    "Total number of connection attempts",
    ["result"],  # accepted, rejected_filter, rejected_capacity
)

sessions_active = Gauge(
    "sshmon_sessions_active",
    "Currently active sessions",
)

session_duration = Histogram(
    "sshmon_session_duration_seconds",
    "Session duration in seconds",
    buckets=[10, 30, 60, 300, 600, 1800, 3600, 7200],
)

auth_attempts = Counter(
    "sshmon_auth_attempts_total",
    "Total authentication attempts",
    ["method"],
)

commands_total = Counter(
    "sshmon_commands_total",
    "Total number of commands executed",
    ["outcome"],  # known, unknown, error
)

downloads_total = Counter(
    "sshmon_malware_downloads_total",
    "Download attempts captured from wget/curl",
    ["tool"],
)

system_info = Info(
    "sshmon_system",
    "sshmon system information",
)

uptime_seconds = Gauge(
    "sshmon_uptime_seconds",
    "Honeypot uptime in seconds",
)


# =============================================================================
# Metrics Collector Class
# =============================================================================


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, profile: str = ""):
        self._lock = Lock()
        self._start_time = time.time()
        self._active = 0

        system_info.info({"version": __version__, "profile": profile})
        logger.debug("Prometheus metrics collector initialized")

    def record_connection(self, result: str):
        """Record a connection attempt.

        Args:
            result: 'accepted', 'rejected_filter' or 'rejected_capacity'
        """
        connections_total.labels(result=result).inc()

    def record_session_start(self):
        with self._lock:
            self._active += 1
        sessions_active.inc()

    def record_session_end(self, duration_seconds: float):
        """Record the end of a session.

        Args:
            duration_seconds: Session duration in seconds
        """
        with self._lock:
            self._active = max(0, self._active - 1)
        sessions_active.dec()
        session_duration.observe(duration_seconds)

    def record_auth_attempt(self, method: str):
        auth_attempts.labels(method=method).inc()

    def record_command(self, outcome: str):
        """Record a command execution.

        Args:
            outcome: 'known', 'unknown' or 'error'
        """
        commands_total.labels(outcome=outcome).inc()

    def record_download(self, tool: str):
        downloads_total.labels(tool=tool).inc()

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return self._active

    def update_uptime(self):
        uptime_seconds.set(time.time() - self._start_time)

    def get_metrics(self) -> bytes:
        """Generate Prometheus metrics in text format."""
        self.update_uptime()
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# =============================================================================
# Global Metrics Instance
# =============================================================================

_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(profile: str = "") -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(profile=profile)
    return _metrics_collector


def reset_metrics_collector():
    """Reset the global metrics collector (for testing)."""
    global _metrics_collector
    _metrics_collector = None


# =============================================================================
# HTTP Server for Metrics Endpoint
# =============================================================================


def start_metrics_server(port: int = 9090, host: str = "0.0.0.0"):
    """Start HTTP server for the Prometheus metrics endpoint.

    Serves ``/metrics`` and ``/health``; returns the running server.
    """
    from http.server import HTTPServer, BaseHTTPRequestHandler
    from threading import Thread

    collector = get_metrics_collector()

    class MetricsHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/metrics":
                self.send_response(200)
                self.send_header("Content-Type", collector.get_content_type())
                self.end_headers()
                self.wfile.write(collector.get_metrics())
            elif self.path == "/health":
                self.send_response(200)
                self.send_header("Content-Type", "text/plain")
                self.end_headers()
                self.wfile.write(b"OK\n")
            else:
                self.send_response(404)
                self.end_headers()
                self.wfile.write(b"Not Found\n")

        def log_message(self, format, *args):
            logger.debug("metrics endpoint: " + format, *args)

    server = HTTPServer((host, port), MetricsHandler)

    def serve():
        logger.info("Metrics server started on http://%s:%d/metrics", host, port)
        server.serve_forever()

    thread = Thread(target=serve, daemon=True, name="MetricsServer")
    thread.start()

    return server
