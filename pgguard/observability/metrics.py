"""Prometheus metric definitions for pgguard self-instrumentation.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

CYCLE_DURATION_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)

# ---------------------------------------------------------------------------
# Poll cycle metrics
# ---------------------------------------------------------------------------

POLL_CYCLES_TOTAL = Counter(
    "pgguard_poll_cycles_total",
    "Total number of poll cycles",
    labelnames=["status"],
)

POLL_CYCLE_DURATION = Histogram(
    "pgguard_poll_cycle_duration_seconds",
    "Duration of a full poll cycle in seconds",
    buckets=CYCLE_DURATION_BUCKETS,
)

POOL_USAGE_PERCENT = Gauge(
    "pgguard_pool_usage_percent",
    "Share of non-reserved connection capacity in use at the last poll",
)

TRACKED_SESSIONS = Gauge(
    "pgguard_tracked_sessions",
    "Number of idle-in-transaction sessions currently tracked",
)

# ---------------------------------------------------------------------------
# Alerting / remediation metrics
# ---------------------------------------------------------------------------

ALERTS_TOTAL = Counter(
    "pgguard_alerts_total",
    "Total number of alert events emitted",
    labelnames=["kind", "severity"],
)

ALERT_DISPATCH_FAILURES = Counter(
    "pgguard_alert_dispatch_failures_total",
    "Total number of failed deliveries to an alert channel",
    labelnames=["channel"],
)

TERMINATIONS_TOTAL = Counter(
    "pgguard_terminations_total",
    "Sessions terminated (or that would have been, in dry-run mode)",
    labelnames=["mode"],
)

# ---------------------------------------------------------------------------
# Info
# ---------------------------------------------------------------------------

APP_INFO = Info(
    "pgguard_build",
    "pgguard build information",
)
