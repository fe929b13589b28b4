"""One-shot status report for the `pgguard status` command.

Builds a structured report from a single snapshot, then renders it either as
JSON or as a plain-text table. The overall status maps onto the process exit
code so the command can be used from cron jobs and health checks.
"""

from datetime import datetime
from typing import NotRequired, TypedDict

from pgguard.config import Settings
from pgguard.monitor.thresholds import Level, classify
from pgguard.postgres.models import PoolSnapshot, Session
from pgguard.util import format_duration, truncate, truncate_query

STATUS_NAMES = {Level.NONE: "ok", Level.WARNING: "warning", Level.CRITICAL: "critical"}
SEVERITY_MARKERS = {Level.NONE: "", Level.WARNING: "[WARN]", Level.CRITICAL: "[CRIT]"}


# ---------------------------------------------------------------------------
# Structured data types
# ---------------------------------------------------------------------------


class PoolStatus(TypedDict):
    max_connections: int
    total_connections: int
    active_connections: int
    idle_connections: int
    idle_in_transaction: int
    available_connections: int
    usage_percent: float


class IdleTransactionStatus(TypedDict):
    pid: int
    application: str
    duration: str
    duration_seconds: float
    query: str
    severity: str  # "", "warning" or "critical"


class ConnectionStatus(TypedDict):
    pid: int
    state: str
    application: str
    client_addr: str
    duration: str


class ThresholdStatus(TypedDict):
    idle_warning: str
    idle_critical: str
    pool_warning_percent: int
    pool_critical_percent: int


class StatusReport(TypedDict):
    status: str
    pool: PoolStatus
    idle_transactions: list[IdleTransactionStatus]
    thresholds: ThresholdStatus
    connections: NotRequired[list[ConnectionStatus]]


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def overall_level(pool: PoolSnapshot, idle_sessions: list[Session], settings: Settings, now: datetime) -> Level:
    """Worst of the pool level and every idle transaction's level."""
    level = classify(
        pool.usage_percent, float(settings.pool_warning_percent), float(settings.pool_critical_percent)
    )
    for session in idle_sessions:
        level = max(level, classify(session.idle_duration(now), settings.idle_warning, settings.idle_critical))
    return level


def build_status(
    pool: PoolSnapshot,
    connections: list[Session],
    settings: Settings,
    now: datetime,
    verbose: bool = False,
) -> StatusReport:
    idle_sessions = [c for c in connections if c.is_idle_in_transaction]
    level = overall_level(pool, idle_sessions, settings, now)

    idle_transactions: list[IdleTransactionStatus] = []
    for session in idle_sessions:
        duration = session.idle_duration(now)
        session_level = classify(duration, settings.idle_warning, settings.idle_critical)
        idle_transactions.append(
            {
                "pid": session.pid,
                "application": session.application_name,
                "duration": format_duration(duration),
                "duration_seconds": duration.total_seconds(),
                "query": truncate_query(session.query, 200),
                "severity": "" if session_level is Level.NONE else STATUS_NAMES[session_level],
            }
        )

    report: StatusReport = {
        "status": STATUS_NAMES[level],
        "pool": {
            "max_connections": pool.max_connections,
            "total_connections": pool.total,
            "active_connections": pool.active,
            "idle_connections": pool.idle,
            "idle_in_transaction": pool.idle_in_transaction,
            "available_connections": pool.available,
            "usage_percent": pool.usage_percent,
        },
        "idle_transactions": idle_transactions,
        "thresholds": {
            "idle_warning": format_duration(settings.idle_warning),
            "idle_critical": format_duration(settings.idle_critical),
            "pool_warning_percent": settings.pool_warning_percent,
            "pool_critical_percent": settings.pool_critical_percent,
        },
    }
    if verbose:
        report["connections"] = [
            {
                "pid": c.pid,
                "state": c.state.value,
                "application": c.application_name,
                "client_addr": c.client_addr,
                "duration": format_duration(c.idle_duration(now)),
            }
            for c in connections
        ]
    return report


def exit_code(report: StatusReport) -> int:
    return {"ok": 0, "warning": 1, "critical": 2}[report["status"]]


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------


def _table(headers: list[str], rows: list[list[str]]) -> list[str]:
    widths = [max(len(h), *(len(r[i]) for r in rows)) for i, h in enumerate(headers)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths, strict=True)).rstrip()]
    for row in rows:
        lines.append("  ".join(v.ljust(w) for v, w in zip(row, widths, strict=True)).rstrip())
    return lines


def format_status(report: StatusReport, settings: Settings) -> str:
    pool = report["pool"]
    lines: list[str] = ["", f"Connection Pool (max: {pool['max_connections']})", "-" * 44]
    lines.append(f"Active:               {pool['active_connections']:3d}")
    lines.append(f"Idle:                 {pool['idle_connections']:3d}")
    marker = "  [!]" if pool["idle_in_transaction"] > 0 else ""
    lines.append(f"Idle in transaction:  {pool['idle_in_transaction']:3d}{marker}")
    lines.append(f"Available:            {pool['available_connections']:3d}")

    usage = pool["usage_percent"]
    usage_level = classify(usage, float(settings.pool_warning_percent), float(settings.pool_critical_percent))
    usable = pool["total_connections"] + pool["available_connections"]
    usage_marker = f" {SEVERITY_MARKERS[usage_level]}" if usage_level is not Level.NONE else ""
    lines.append("")
    lines.append(f"Usage: {usage:.1f}% ({pool['total_connections']}/{usable}){usage_marker}")

    lines.append("")
    if report["idle_transactions"]:
        lines.append("Idle Transactions")
        lines.append("-" * 80)
        rows = [
            [
                str(t["pid"]),
                t["duration"],
                truncate(t["application"], 15),
                f"{truncate(t['query'], 40)} {_marker(t['severity'])}".rstrip(),
            ]
            for t in report["idle_transactions"]
        ]
        lines.extend(_table(["PID", "Age", "Application", "Query"], rows))
    else:
        lines.append("No idle transactions.")

    connections = report.get("connections")
    if connections:
        lines.append("")
        lines.append("All Connections")
        lines.append("-" * 80)
        rows = [
            [str(c["pid"]), c["state"], truncate(c["application"], 15), c["client_addr"], c["duration"]]
            for c in connections
        ]
        lines.extend(_table(["PID", "State", "Application", "Client", "Age"], rows))

    lines.append("")
    return "\n".join(lines)


def _marker(severity: str) -> str:
    return {"warning": "[WARN]", "critical": "[CRIT]"}.get(severity, "")
