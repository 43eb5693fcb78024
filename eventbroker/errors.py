"""Error taxonomy for the event broker."""


class BrokerError(Exception):
    """Base error. `code` is a stable machine-readable identifier."""

    code = "broker_error"

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(BrokerError):
    """Malformed event or subscription; raised before any I/O."""

    code = "validation_error"


class NotFoundError(BrokerError):
    """Unknown event or subscription id."""

    code = "not_found"


class InvalidTransitionError(BrokerError):
    """Event status change that would break monotonicity."""

    code = "invalid_transition"


class ConfigurationError(BrokerError):
    code = "configuration_error"


class LifecycleError(BrokerError):
    """Operation not allowed in the current lifecycle state. Never retried."""

    code = "lifecycle_error"


class NotRunningError(LifecycleError):
    code = "not_running"


class AlreadyRunningError(LifecycleError):
    code = "already_running"


class QueueFullError(LifecycleError):
    code = "queue_full"


class PoolStoppedError(LifecycleError):
    code = "worker_pool_stopped"


class StopTimeoutError(LifecycleError):
    code = "stop_timeout"


class NotInitializedError(LifecycleError):
    code = "not_initialized"


class HandlerError(BrokerError):
    """A handler still failed after its retry budget. Message is the last failure's message."""

    code = "handler_failed"

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts
