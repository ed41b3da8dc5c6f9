"""Console error hierarchy.

Errors raised inside the core propagate unchanged; only the Flask layer
classifies them into HTTP status codes. A lookup that finds nothing returns
``None`` rather than raising.
"""

from __future__ import annotations


class ConsoleError(Exception):
    """Base class for every error raised by the console core."""


class AdapterError(ConsoleError):
    """A cloud SDK call failed; ``operation`` keeps the provider operation name."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class PersistenceError(ConsoleError):
    """Pool acquisition, query execution or row extraction failed."""


class ParseError(ConsoleError, ValueError):
    """Malformed input: UTF-8, timestamps, numbers, XML, MIME or command output."""


class HtmlShapeError(ParseError):
    """A vendor HTML page no longer has a recognised table layout."""


class OperationTimeout(ConsoleError):
    """A bounded operation (instance status, remote command) ran out of time."""

    def __init__(self, operation: str, seconds: float) -> None:
        super().__init__(f"{operation} timed out after {seconds:g}s")
        self.operation = operation
        self.seconds = seconds


class BadRequest(ConsoleError, ValueError):
    """Invalid operator input."""


class MissingUnzipError(ConsoleError):
    """Zipped DMARC reports need the external unzip binary."""

    def __init__(self, path: str) -> None:
        super().__init__(f"{path} is required to extract zipped reports")
        self.path = path


class ConfigError(ConsoleError):
    """A feature was used without the configuration it depends on."""


__all__ = [
    "AdapterError",
    "BadRequest",
    "ConfigError",
    "ConsoleError",
    "HtmlShapeError",
    "MissingUnzipError",
    "OperationTimeout",
    "ParseError",
    "PersistenceError",
]
