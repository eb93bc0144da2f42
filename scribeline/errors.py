"""Exception hierarchy for the transcription core."""

from datetime import datetime


class ScribelineError(Exception):
    """Base class for all errors raised by scribeline."""


class ValidationFailure(ScribelineError):
    """Input rejected before any state was created."""


class PolicyRejection(ScribelineError):
    """A plan or rate limit blocked the request."""

    def __init__(self, message: str, upgrade_prompt: bool = False, reset_at: datetime | None = None):
        super().__init__(message)
        self.upgrade_prompt = upgrade_prompt
        self.reset_at = reset_at


class ProviderError(ScribelineError):
    """A provider call failed. `code` ends up in the usage ledger."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, code: str | None = None, provider: str | None = None):
        super().__init__(message)
        if code:
            self.code = code
        self.provider = provider


class UnsupportedOperationError(ProviderError):
    code = "UNSUPPORTED_OPERATION"


class ProviderTimeoutError(ProviderError):
    code = "TIMEOUT"


class KeyVaultError(ScribelineError):
    """Encryption key missing or ciphertext unreadable."""


class AudioNotFoundError(ScribelineError):
    pass
