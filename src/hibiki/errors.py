"""Error taxonomy shared by every boundary operation."""

from __future__ import annotations


class HibikiError(Exception):
    """Base class for all errors raised across the hibiki boundary."""


class TemplateResolutionError(HibikiError):
    """No chat template could be resolved for the model."""


class CompilationError(HibikiError):
    """A chat request could not be compiled into a prompt."""


class RequestError(CompilationError):
    """The request payload is missing structurally required data."""


class ChatParseError(HibikiError):
    """Completion text does not follow the convention of its format."""

    def __init__(self, message: str, fmt: object | None = None) -> None:
        super().__init__(message)
        self.format = fmt


class CallerContractError(HibikiError):
    """The caller broke the boundary contract (bad handle, short buffer)."""


class InvalidHandleError(CallerContractError):
    """Handle is stale, already released, or of the wrong kind."""


class HandleInUseError(CallerContractError):
    """A resource was released while other live resources still borrow it."""


class BufferTooSmallError(CallerContractError):
    """Caller-supplied buffer cannot hold the payload plus its terminator."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Buffer too small: {required} bytes required, {available} available"
        )
        self.required = required
        self.available = available
