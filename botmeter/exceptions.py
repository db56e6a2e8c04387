"""
Exception Classes - Strongly typed exception hierarchy.

Business denials (inactive subscription, limit exceeded, insufficient credits)
are returned as values. Exceptions are reserved for programmer errors and for
failures the accounting engine and scheduler convert at their boundaries.
"""


class BotmeterError(Exception):
    """Base exception for all botmeter errors."""

    pass


class FeatureNotFoundError(BotmeterError):
    """Raised when a plan feature definition is missing (data-integrity problem)."""

    def __init__(self, feature_name: str) -> None:
        self.feature_name = feature_name
        super().__init__(f"Plan feature not found: {feature_name}")


class InsufficientCreditsError(BotmeterError):
    """Raised inside a debit transaction when the balance cannot cover the cost."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits. Balance: {balance}, Required: {required}")


class WriteVerificationError(BotmeterError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(BotmeterError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class InvalidDelayError(BotmeterError, ValueError):
    """Raised synchronously for a malformed delay string."""

    def __init__(self, delay: str) -> None:
        self.delay = delay
        super().__init__(f'Invalid delay format: {delay}. Use format like "1h", "30m", "2d"')


class SchedulingError(BotmeterError):
    """Raised when a task could not be handed to the durable task provider."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        self.message = message
        super().__init__(f"Failed to schedule task {task_id}: {message}")


class UnsupportedSchedulerProviderError(BotmeterError):
    """Raised when no scheduler factory is registered for a provider."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Unsupported scheduler provider: {provider}")


class MessagingError(BotmeterError):
    """Raised when the contact messaging provider rejects a call."""

    def __init__(self, operation: str, status_code: int | None, message: str) -> None:
        self.operation = operation
        self.status_code = status_code
        self.message = message
        super().__init__(f"Messaging {operation} failed ({status_code}): {message}")


class AuthenticationError(BotmeterError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
