class NudgeError(Exception):
    """Base class for nudge pipeline errors."""


class NudgeValidationError(NudgeError):
    """A dispatch payload failed validation; nothing was enqueued."""

    def __init__(self, message, details=None):
        super().__init__(message)
        self.details = details or []


class UnknownProviderError(NudgeError, KeyError):
    """NUDGE_PROVIDER names a provider that is not registered."""
