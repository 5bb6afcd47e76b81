"""Exception hierarchy for marginalia.

Only guard violations (starting a round while another is in flight,
re-running an unknown turn) are raised to callers. Everything that
happens while a turn is streaming is caught by the
:class:`~marginalia.conversation.ConversationManager` and recorded on
the turn itself.
"""


class MarginaliaError(Exception):
    """Base class for all marginalia errors."""


class ConfigurationError(MarginaliaError):
    """A backend could not be configured (missing key, unknown backend)."""


class TransportError(MarginaliaError):
    """The backend connection failed or returned a non-success status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"{status_code} - {body}" if body else str(status_code))


class ToolError(MarginaliaError):
    """Base for failures raised by the tool dispatcher."""


class UnknownToolError(ToolError):
    """No registered tool matches the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unsupported tool call: {name}")


class ToolExecutionError(ToolError):
    """A registered tool rejected its input or raised while running."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"Error calling {name}: {message}")


class InferenceRunningError(MarginaliaError):
    """A turn is already streaming; new rounds are rejected, not queued."""

    def __init__(self):
        super().__init__(
            "Inference is already running. Please wait for it to "
            "complete or cancel it first."
        )


class TurnCancelled(MarginaliaError):
    """Raised at a suspension point once the turn's token is cancelled."""

    def __init__(self, message: str = "Inference was cancelled"):
        super().__init__(message)


class StreamError(MarginaliaError):
    """The backend stream reported an error or produced an unusable tool call."""
