"""Prometheus counters for security decisions"""

from prometheus_client import Counter

AUTH_DECISIONS = Counter(
    "sessionguard_auth_decisions_total",
    "Authentication decisions by operation and outcome",
    ["operation", "outcome"],
)
BREACH_DETECTIONS = Counter(
    "sessionguard_session_reuse_detected_total",
    "Stale session credentials presented again (token family revoked)",
)
AUDIT_WRITE_FAILURES = Counter(
    "sessionguard_audit_write_failures_total",
    "Audit events that could not be persisted",
)
RATE_LIMIT_REJECTIONS = Counter(
    "sessionguard_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["action"],
)


def record_decision(operation: str, outcome) -> None:
    """Count an Outcome under its error kind, or "success"."""
    label = outcome.kind.value if outcome.kind is not None else "success"
    AUTH_DECISIONS.labels(operation, label).inc()
