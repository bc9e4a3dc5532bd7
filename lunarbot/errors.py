"""Error taxonomy for bots, tasks and monitoring."""


class BotInitializationError(RuntimeError):
    """Browser session could not be started. Fatal, never retried."""


class CredentialError(RuntimeError):
    """Stored credential could not be decrypted. Fatal, never retried."""


class BusinessRuleError(RuntimeError):
    """Deterministic failure (unavailable, over budget, login rejected)."""


class TransientError(RuntimeError):
    """Network, timeout or missing-element failure. Retried with backoff."""


class RetryExhaustedError(TransientError):
    """An operation kept failing after every allowed attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException | None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error else "unknown error"
        super().__init__(f"{operation} failed after {attempts} attempts: {detail}")


class TaskCancelledError(RuntimeError):
    """The task was cancelled while its pipeline was running."""
