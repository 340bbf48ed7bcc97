"""Classified failures raised by the autopilot subsystem."""


class AutopilotError(Exception):
    """Base class for all autopilot errors."""


class ConfigurationError(AutopilotError):
    """Missing credentials, unknown provider or a dangling agent reference.

    Reported to the caller and never retried automatically.
    """


class TransportError(AutopilotError):
    """A chat or AI provider was unreachable or answered with a failure."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ExtractionError(AutopilotError):
    """The AI provider returned unusable knowledge-extraction output."""


class AutomationNotFoundError(AutopilotError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"No automation config for chat {chat_id!r}")
        self.chat_id = chat_id


class InvalidTransitionError(AutopilotError):
    def __init__(self, chat_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move automation for chat {chat_id!r} from {current!r} to {target!r}"
        )
        self.chat_id = chat_id
        self.current = current
        self.target = target
