"""Exception taxonomy for the classification and labeling pipeline."""


class LabelEngineError(Exception):
    """Base class for all pipeline errors."""


class ProviderError(LabelEngineError):
    """An LLM or embedding provider could not produce a usable answer."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class RateLimitedError(ProviderError):
    """Provider refused the call because of a quota or rate limit (HTTP 429)."""


class ProviderUnavailableError(ProviderError):
    """Network, auth or configuration failure talking to a provider."""


class ParseFailureError(ProviderError):
    """Provider answered, but the payload failed schema validation."""


class NotFoundError(LabelEngineError):
    """A message, account, email or label does not exist."""


class OwnerResolutionError(LabelEngineError):
    """An account could not be resolved to the user that owns it."""


class MailboxError(LabelEngineError):
    """An IMAP command failed."""
