# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics exposed by the sync engine."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class SyncMetrics:
    """Wrapper around the Prometheus registry used by the engine."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.attempts = Counter(
            "vvm_sync_attempts_total", "Total sync attempts", ["account_id", "action"], registry=self.registry
        )
        self.failures = Counter(
            "vvm_sync_failures_total", "Total failed sync attempts", ["account_id", "reason"], registry=self.registry
        )
        self.network_failures = Counter(
            "vvm_network_failures_total", "Total network request failures", ["account_id", "reason"],
            registry=self.registry,
        )
        self.mutations = Counter(
            "vvm_local_mutations_total", "Local store mutations applied by sync", ["account_id", "kind"],
            registry=self.registry,
        )
        self.retries_scheduled = Counter(
            "vvm_retries_scheduled_total", "Deferred retries scheduled", ["account_id"], registry=self.registry
        )
        self.pending_retries = Gauge("vvm_pending_retries", "Currently pending deferred retries", registry=self.registry)

    def inc_attempt(self, account_id: str, action: str):
        """Increase the ``attempts`` counter for the given account and action."""
        self.attempts.labels(account_id=account_id or "default", action=action).inc()

    def inc_failure(self, account_id: str, reason: str):
        """Increase the ``failures`` counter for the given account."""
        self.failures.labels(account_id=account_id or "default", reason=reason).inc()

    def inc_network_failure(self, account_id: str, reason: str):
        """Increase the ``network_failures`` counter for the given account."""
        self.network_failures.labels(account_id=account_id or "default", reason=reason).inc()

    def inc_mutation(self, account_id: str, kind: str, amount: int = 1):
        """Count local inserts, deletes and updates applied by a sync."""
        if amount > 0:
            self.mutations.labels(account_id=account_id or "default", kind=kind).inc(amount)

    def inc_retry_scheduled(self, account_id: str):
        """Increase the ``retries_scheduled`` counter for the given account."""
        self.retries_scheduled.labels(account_id=account_id or "default").inc()

    def set_pending_retries(self, value: int):
        """Update the gauge tracking pending deferred retries."""
        self.pending_retries.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
