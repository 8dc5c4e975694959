"""
Agendum exception hierarchy.

Every error in the system inherits from AgendumError.
Each subsystem has its own error class for targeted catching.

Usage:
    try:
        job_id = await scheduler.schedule("send email", payload, run_at)
    except ValidationError as e:
        # Reject the request, nothing was persisted
    except AgendumError as e:
        # Handle any Agendum error
"""


class AgendumError(Exception):
    """Base exception for all Agendum errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# ━━━ Core Errors ━━━


class ConfigError(AgendumError):
    """Configuration is invalid, missing, or malformed."""

    pass


class ValidationError(AgendumError):
    """Input to schedule/insert was rejected. Nothing was persisted."""

    def __init__(
        self,
        message: str,
        field: str = "",
        details: dict | None = None,
    ):
        self.field = field
        super().__init__(message, details)


# ━━━ Execution Errors ━━━


class UnknownKindError(AgendumError):
    """No executor registered for a job kind. Permanent: retrying cannot help."""

    def __init__(self, kind: str, details: dict | None = None):
        self.kind = kind
        super().__init__(f"No executor registered for kind '{kind}'", details)


class ExecutorFailure(AgendumError):
    """An executor reported a transient failure. Retried with backoff."""

    def __init__(
        self,
        message: str,
        kind: str = "",
        details: dict | None = None,
    ):
        self.kind = kind
        super().__init__(message, details)


# ━━━ Storage Errors ━━━


class StoreError(AgendumError):
    """Job store failure."""

    pass


class StoreUnavailable(StoreError):
    """
    The store could not be reached or queried.

    Raised from a poll cycle this aborts the cycle only; the next
    cycle retries.
    """

    pass
