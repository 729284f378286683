"""
Audit Metrics
=============
Prometheus counters for ledger writes, session terminations and integrity
checks, kept in a dedicated registry.

Expose them from the host application with:

    from prometheus_client import make_asgi_app
    app.mount("/metrics/audit", make_asgi_app(registry=AUDIT_REGISTRY))
"""

from prometheus_client import CollectorRegistry, Counter

AUDIT_REGISTRY = CollectorRegistry()

AUDIT_RECORDS_WRITTEN = Counter(
    name="audit_records_written_total",
    documentation="Ledger records appended",
    labelnames=["entity_type", "operation"],
    registry=AUDIT_REGISTRY,
)

AUDIT_WRITE_FAILURES = Counter(
    name="audit_write_failures_total",
    documentation="Ledger writes that failed and were dropped",
    labelnames=["entity_type", "operation"],
    registry=AUDIT_REGISTRY,
)

SESSIONS_TERMINATED = Counter(
    name="audit_sessions_terminated_total",
    documentation="Sessions deactivated, by logout method",
    labelnames=["logout_method"],
    registry=AUDIT_REGISTRY,
)

INTEGRITY_CHECKS = Counter(
    name="audit_integrity_checks_total",
    documentation="Record integrity verifications, by result",
    labelnames=["result"],
    registry=AUDIT_REGISTRY,
)
