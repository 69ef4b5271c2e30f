# -*- coding: utf-8 -*-
"""Prometheus metrics for the registration service."""
from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, REGISTRY

from .types import MeterLike


class RegistrationMeters(MeterLike):
    """Wraps Prometheus primitives behind a friendly interface."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or REGISTRY
        self._registrations = Counter(
            "registration_submissions_total",
            "Registration submissions by outcome",
            ("result",),
            registry=self._registry,
        )
        self._allocations = Counter(
            "registration_sequence_allocations_total",
            "Sequence allocations by outcome",
            ("result",),
            registry=self._registry,
        )
        self._conflicts = Counter(
            "registration_conflict_total",
            "Storage conflicts observed and retried",
            ("type",),
            registry=self._registry,
        )
        self._identity = Counter(
            "registration_identity_resolutions_total",
            "Visitor identity resolutions by outcome",
            ("result",),
            registry=self._registry,
        )
        self._validation = Counter(
            "registration_validation_errors_total",
            "Rejected registration payloads",
            ("code",),
            registry=self._registry,
        )
        self._hook_failures = Counter(
            "registration_hook_failures_total",
            "Post-commit hook failures (never block a registration)",
            ("hook",),
            registry=self._registry,
        )
        self._reconciler = Counter(
            "registration_reconciler_mutations_total",
            "Mutations applied by integrity reconciliation",
            ("operation",),
            registry=self._registry,
        )
        self._exporter_health = Gauge(
            "registration_exporter_health",
            "Exporter health gauge (1=healthy)",
            registry=self._registry,
        )
        self._http_started = Gauge(
            "registration_metrics_http_started",
            "Number of active metrics HTTP servers",
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        """Return the registry backing the meters."""

        return self._registry

    def record_registration(self, result: str) -> None:
        self._registrations.labels(result=result).inc()

    def record_allocation(self, result: str) -> None:
        self._allocations.labels(result=result).inc()

    def record_conflict(self, conflict_type: str) -> None:
        self._conflicts.labels(type=conflict_type).inc()

    def record_identity(self, result: str) -> None:
        self._identity.labels(result=result).inc()

    def record_validation_error(self, code: str) -> None:
        self._validation.labels(code=code).inc()

    def record_hook_failure(self, hook: str) -> None:
        self._hook_failures.labels(hook=hook).inc()

    def record_reconciler_mutation(self, operation: str, count: int = 1) -> None:
        if count > 0:
            self._reconciler.labels(operation=operation).inc(count)

    def exporter_health(self, value: float) -> None:
        self._exporter_health.set(value)

    def http_started(self, value: float) -> None:
        self._http_started.set(value)


DEFAULT_METERS = RegistrationMeters()
