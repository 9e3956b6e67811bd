"""Exception hierarchy for the layered try-on session engine."""

from enum import Enum


class LayerVtonError(Exception):
    """Base class for all errors raised by layer_vton."""


class SlotIndexError(LayerVtonError, ValueError):
    """Raised when a (category, index) pair does not address a real slot."""


class InvalidTransitionError(LayerVtonError):
    """Raised when the state machine is asked for a transition it does not allow."""


class SessionBusyError(LayerVtonError):
    """Raised when a mutating command arrives while another one is still running."""


class PhotoDecodeError(LayerVtonError):
    """Raised when an uploaded photo cannot be read as an image."""


class ProviderErrorKind(str, Enum):
    """Classified failure reported by a generation provider."""
    RATE_LIMITED = "rate_limited"
    MODEL_NOT_FOUND = "model_not_found"
    BAD_REQUEST = "bad_request"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"


class ProviderError(LayerVtonError):
    """A single provider call failed."""

    def __init__(self, kind: ProviderErrorKind, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        """Rate limits, unknown models and rejected requests just mean "try the next model"."""
        return self.kind in (
            ProviderErrorKind.RATE_LIMITED,
            ProviderErrorKind.MODEL_NOT_FOUND,
            ProviderErrorKind.BAD_REQUEST,
        )


class CompositionError(LayerVtonError):
    """Base class for composition failures that put the session into ERROR."""


class MissingBaseImageError(CompositionError):
    """Composition was requested without a usable base photo."""


class EmptyOutfitError(CompositionError):
    """No effective slot holds a garment, so there is nothing to put on."""


class CandidatesExhaustedError(CompositionError):
    """Every model candidate was tried without producing an image."""

    def __init__(self, task: str, last_reason: str | None):
        self.task = task
        self.last_reason = last_reason
        detail = f" (last error: {last_reason})" if last_reason else ""
        super().__init__(f"All {task} models failed{detail}")


class StorageError(LayerVtonError):
    """A persistence tier could not complete a read or write."""


class CacheQuotaExceededError(StorageError):
    """The local cache refused a write because it would exceed its quota."""
