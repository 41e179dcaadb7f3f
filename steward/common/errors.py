"""Exception types shared across Steward components."""


class StewardError(Exception):
    """Base class for Steward errors."""
    pass


class CompletionUnavailableError(StewardError, RuntimeError):
    """No LLM provider could produce a completion."""
    pass


class InvalidActionError(StewardError, ValueError):
    """An interactive-control action id could not be decoded."""
    pass


class KnowledgeTargetError(StewardError):
    """An approved record could not be filed into its knowledge document."""
    pass


class ChatDeliveryError(StewardError):
    """The chat platform rejected an outbound call."""
    pass
