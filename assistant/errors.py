"""Error taxonomy shared across the assistant runtime."""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Raised when settings make the bot unable to operate."""


class BudgetExceededError(ConfigurationError):
    """Raised when fixed prompt overhead does not fit the token budget."""


class EncodingError(LookupError):
    """Raised when no tokenizer is known for a model identifier."""


class AuthorizationError(RuntimeError):
    """Raised when a user has no usable model-access credential."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"access denied: {reason}")
        self.reason = reason


class TransientServiceError(RuntimeError):
    """Raised for remote service failures that are worth retrying."""


class InputValidationError(ValueError):
    """Raised when an inbound payload is malformed or empty."""


class PersistenceError(RuntimeError):
    """Raised when a store write fails."""
