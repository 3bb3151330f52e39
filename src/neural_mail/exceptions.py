"""Custom exceptions for Neural Mail."""

from __future__ import annotations

from typing import Any


class NeuralMailError(Exception):
    """Base exception for all Neural Mail errors."""


class ConfigurationError(NeuralMailError):
    """Exception raised for configuration related errors."""


# Transport


class TransportError(NeuralMailError):
    """Base exception for IMAP transport failures."""


class NetworkError(TransportError):
    """Socket-level failure or timeout; retryable with backoff."""


class AuthError(TransportError):
    """Credentials were rejected or are missing; never retried automatically."""


class ProtocolError(TransportError):
    """The server answered with something we could not use."""


class MessageNotFound(TransportError):
    """The requested UID is not present in the mailbox."""


class ResyncRequired(NeuralMailError):
    """The sync token no longer describes the mailbox; a full enumeration is needed.

    This is a signal for the sync engine rather than a failure.
    """


class Unavailable(NeuralMailError):
    """An account could not be reached within the reconnect budget."""


# Local cache


class CacheCorruption(NeuralMailError):
    """A local cache invariant was violated; the mailbox must be rebuilt."""


# Summarization


class SummarizationError(NeuralMailError):
    """Base exception for summarization failures."""


class ModelUnavailable(SummarizationError):
    """The local inference process is not running or lacks the configured model."""


class ModelTimeout(SummarizationError):
    """The local model did not answer within the configured timeout."""


class EmptyInput(SummarizationError):
    """There is nothing to summarize."""


class InferenceFailed(SummarizationError):
    """The local model answered with an error or an unusable response."""


class RequestCancelled(SummarizationError):
    """The caller cancelled the request; partial output was discarded."""


class OllamaConnectionError(NeuralMailError):
    """Exception raised when unable to connect to Ollama."""


class OllamaModelNotFoundError(NeuralMailError):
    """Exception raised when Ollama does not have the requested model."""


class OllamaInferenceError(NeuralMailError):
    """Exception raised when Ollama inference fails."""


class Busy(NeuralMailError):
    """Backpressure signal: too many requests are already queued."""


# Facade


class ServiceError(NeuralMailError):
    """UI-facing failure carrying a stable error kind and a user-safe message."""

    def __init__(self, kind: Any, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_dict(self) -> dict[str, str]:
        """Return the ``{kind, message}`` object handed to the UI."""
        return {"kind": str(getattr(self.kind, "value", self.kind)), "message": self.message}
