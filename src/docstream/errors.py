"""Exception hierarchy shared across the docstream pipeline.

Adapter errors carry a transient/permanent split so the coordinator can decide
between "retry next cycle" and "disable the source". Model-provider failures
are not exceptions; see docstream.rag.llm_client for the result types.
"""

from __future__ import annotations


class DocstreamError(Exception):
    """Base class for every error raised by docstream itself."""


class ConfigError(DocstreamError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Adapter errors
# ---------------------------------------------------------------------------


class AdapterError(DocstreamError):
    """A source adapter failed to talk to its source.

    Attributes:
        source_id: Id of the source whose adapter raised.
    """

    def __init__(self, message: str, *, source_id: str | None = None) -> None:
        super().__init__(message)
        self.source_id = source_id


class TransientAdapterError(AdapterError):
    """Network hiccup, timeout or 5xx: retried on the next scheduled cycle."""


class PermanentAdapterError(AdapterError):
    """The source rejected us for good (bad credentials, missing stream, ...)."""


class AdapterConfigError(PermanentAdapterError):
    """Adapter settings failed validation before any network call."""


# ---------------------------------------------------------------------------
# Coordination / persistence
# ---------------------------------------------------------------------------


class WatermarkRegression(DocstreamError):
    """A normal write tried to move a watermark backward."""


class SourceNotFound(DocstreamError, KeyError):
    """No source with the given id is configured."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "source not found"


class SourceBusy(DocstreamError):
    """A trigger was skipped: the source is running or the ceiling is reached."""


class ModelCallFailed(DocstreamError):
    """A model call ended in a terminal error for one conversation.

    Attributes:
        transient: True when the last error was transient (attempts exhausted).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient
