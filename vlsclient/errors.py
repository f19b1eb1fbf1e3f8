"""Exceptions raised by the language client."""

from typing import Any, Optional


class LanguageClientError(Exception):
    """Base class for all language client errors."""


class SpawnError(LanguageClientError):
    """The server executable is missing or cannot be run."""


class FramingError(LanguageClientError):
    """The byte stream from the server cannot be parsed into messages.

    The stream is unrecoverable once this is raised; the session closes it
    instead of trying to find the next frame.
    """


class SessionClosed(LanguageClientError):
    """The session was torn down before a request could be answered."""


class ShutdownTimeout(LanguageClientError):
    """The server did not answer the shutdown request in time."""


class InitializeError(LanguageClientError):
    """The server rejected the initialize request."""


class ResponseError(LanguageClientError):
    """The server answered a request with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Optional[Any] = None):
        super().__init__(f"{message} (code {code})")
        self.code = code
        self.message = message
        self.data = data
