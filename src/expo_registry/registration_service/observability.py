# -*- coding: utf-8 -*-
"""Prometheus exporter lifecycle for registration metrics."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from prometheus_client import start_http_server

from .metrics import DEFAULT_METERS, RegistrationMeters


class MetricsServer:
    """Starts and stops the exporter, mirroring its state into health gauges."""

    def __init__(self, meters: RegistrationMeters | None = None, *, host: str = "0.0.0.0") -> None:  # nosec B104
        self._meters = meters or DEFAULT_METERS
        self._host = host
        self._lock = threading.Lock()
        self._server: Any = None
        self._thread: Optional[threading.Thread] = None

    def start(self, port: int) -> int:
        with self._lock:
            if self._server is None:
                self._server, self._thread = start_http_server(
                    port, addr=self._host, registry=self._meters.registry
                )
                self._meters.http_started(1.0)
                self._meters.exporter_health(1.0)
            return int(self._server.server_address[1])

    def stop(self) -> None:
        with self._lock:
            if self._server is None:
                return
            server, thread = self._server, self._thread
            self._server = None
            self._thread = None
            server.shutdown()
            server.server_close()
            if thread is not None:
                thread.join(timeout=5)
            self._meters.exporter_health(0.0)
            self._meters.http_started(0.0)

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return int(self._server.server_address[1])


@contextmanager
def metrics_server(port: int, meters: RegistrationMeters | None = None) -> Iterator[MetricsServer]:
    server = MetricsServer(meters)
    server.start(port)
    try:
        yield server
    finally:
        server.stop()
