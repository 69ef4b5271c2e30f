# -*- coding: utf-8 -*-
from __future__ import annotations

import socket
import time
import urllib.request

import pytest
from prometheus_client import CollectorRegistry

from expo_registry.registration_service.metrics import RegistrationMeters
from expo_registry.registration_service.observability import MetricsServer, metrics_server


def _gauge_value(gauge):
    return gauge._value.get()  # type: ignore[attr-defined]


def _reserve_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _fetch_metrics(port: int) -> str:
    deadline = time.time() + 2
    url = f"http://127.0.0.1:{port}/metrics"
    while time.time() < deadline:
        try:
            with urllib.request.urlopen(url, timeout=0.5) as response:
                return response.read().decode("utf-8")
        except OSError:
            time.sleep(0.05)
    raise AssertionError("metrics endpoint not reachable")


@pytest.fixture()
def isolated_meters() -> RegistrationMeters:
    return RegistrationMeters(CollectorRegistry())


def test_metrics_server_sets_gauges(isolated_meters: RegistrationMeters):
    server = MetricsServer(isolated_meters)
    server.start(_reserve_port())
    assert _gauge_value(isolated_meters._exporter_health) == 1.0
    assert _gauge_value(isolated_meters._http_started) == 1.0
    server.stop()
    assert _gauge_value(isolated_meters._exporter_health) == 0.0
    assert _gauge_value(isolated_meters._http_started) == 0.0


def test_metrics_server_idempotent_start(isolated_meters: RegistrationMeters):
    server = MetricsServer(isolated_meters)
    port = _reserve_port()
    assert server.start(port) == port
    assert server.start(port) == port
    server.stop()
    server.stop()
    assert server.port is None


def test_metrics_endpoint_serves_registration_counters(isolated_meters: RegistrationMeters):
    isolated_meters.record_registration("success")
    isolated_meters.record_reconciler_mutation("orphan_visitors", 3)
    with metrics_server(_reserve_port(), meters=isolated_meters) as server:
        payload = _fetch_metrics(server.port)
    assert 'registration_submissions_total{result="success"} 1.0' in payload
    assert 'registration_reconciler_mutations_total{operation="orphan_visitors"} 3.0' in payload
    assert _gauge_value(isolated_meters._exporter_health) == 0.0


def test_reconciler_mutation_ignores_zero_counts(isolated_meters: RegistrationMeters):
    isolated_meters.record_reconciler_mutation("custom_fields", 0)
    assert isolated_meters.registry.get_sample_value(
        "registration_reconciler_mutations_total", {"operation": "custom_fields"}
    ) is None
