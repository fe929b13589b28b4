"""Exception types raised across pgguard."""


class PgGuardError(Exception):
    """Base class for all pgguard errors."""


class ConfigurationError(PgGuardError):
    """Configuration is missing or inconsistent; fatal at startup."""


class SnapshotError(PgGuardError):
    """The database could not be queried for a snapshot this cycle."""


class TerminationError(PgGuardError):
    """pg_terminate_backend / pg_cancel_backend failed."""


class AlertDeliveryError(PgGuardError):
    """A single alert channel rejected or could not receive an alert."""
