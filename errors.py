"""Error taxonomy for the stream scheduling and delivery core.

Every error raised across a component boundary derives from RelayError so
callers at the edges (socket handlers, the scheduler loop, the worker pool)
can catch the whole family without swallowing programming errors.

Surfacing rules:
    AuthenticationFailure: reported to the caller as 'auth-error', connection stays open
    NotFound: reported as 'error', never retried
    StageFailure: retried inside the execution up to its budget, then the execution fails
    StageTimeout: stage exceeded its deadline, execution fails without retry
    SchedulingBackoffExhausted: stream auto-paused, a notice is queued for delivery
    ConcurrencyConflict: deferred silently for ticks, reported as 'already running' for manual triggers
    DeliveryFailure: push to one session failed, the message stays durable for replay
"""


class RelayError(Exception):
    """Base class for all core errors."""


class AuthenticationFailure(RelayError):
    """Token missing, malformed or not recognised."""


class NotFound(RelayError):
    """Unknown stream, alert or execution id."""

    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class ValidationError(RelayError):
    """Client payload failed validation."""


class StageFailure(RelayError):
    """Transient collaborator error during a pipeline stage."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class StageTimeout(StageFailure):
    """Stage exceeded its maximum duration."""


class SchedulingBackoffExhausted(RelayError):
    """Stream exceeded its consecutive failure budget and was paused."""

    def __init__(self, stream_id: str, failures: int):
        super().__init__(f"stream {stream_id} paused after {failures} consecutive failures")
        self.stream_id = stream_id
        self.failures = failures


class ConcurrencyConflict(RelayError):
    """An execution is already in flight for the stream."""

    def __init__(self, stream_id: str):
        super().__init__(f"already running: {stream_id}")
        self.stream_id = stream_id


class DeliveryFailure(RelayError):
    """Push to a specific session failed."""
