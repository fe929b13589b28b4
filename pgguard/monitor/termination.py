"""Auto-terminate eligibility for idle-in-transaction sessions."""

import logging
from collections.abc import Iterable
from datetime import timedelta

from pgguard.config import ProtectedApp
from pgguard.postgres.models import Session
from pgguard.util import format_duration

logger = logging.getLogger(__name__)

TERMINATION_REASON = "auto-terminate threshold exceeded"


def is_eligible(
    session: Session,
    idle_duration: timedelta,
    exclude_apps: Iterable[str],
    exclude_ips: Iterable[str],
    protected_apps: Iterable[ProtectedApp],
) -> bool:
    """Decide whether a session may be terminated automatically.

    The caller has already checked that auto-terminate is enabled and that
    idle_duration is past the global threshold. First match wins:

    1. application in exclude_apps: never.
    2. client address in exclude_ips: never.
    3. protected application: never if it requires confirmation, otherwise
       only once idle_duration reaches its own min_idle_duration.
    4. anything else: eligible.
    """
    if session.application_name in exclude_apps:
        return False

    if session.client_addr in exclude_ips:
        return False

    for protected in protected_apps:
        if session.application_name != protected.name:
            continue
        if protected.require_confirmation:
            logger.debug(
                "Skipping protected app requiring confirmation (pid=%d, app=%s)",
                session.pid,
                session.application_name,
            )
            return False
        if idle_duration < protected.min_idle_duration:
            logger.debug(
                "Protected app under threshold (pid=%d, app=%s, duration=%s, threshold=%s)",
                session.pid,
                session.application_name,
                format_duration(idle_duration),
                format_duration(protected.min_idle_duration),
            )
            return False
        logger.info(
            "Protected app exceeded custom threshold (pid=%d, app=%s, duration=%s, threshold=%s)",
            session.pid,
            session.application_name,
            format_duration(idle_duration),
            format_duration(protected.min_idle_duration),
        )
        return True

    return True
