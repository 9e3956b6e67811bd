"""External service integrations."""

from .generation_client import (
    GeminiClient,
    GenerationBackend,
    GenerationRequest,
    GenerationResponse,
    ResponsePart,
)
from .model_fallback import CandidateChain, ChainResult, Verdict
from .persistence import PersistenceGateway, SaveResult, get_session_id
from .storage import FileCache, LocalCache, RemoteStore, SupabaseStore

__all__ = [
    "GeminiClient",
    "GenerationBackend",
    "GenerationRequest",
    "GenerationResponse",
    "ResponsePart",
    "CandidateChain",
    "ChainResult",
    "Verdict",
    "PersistenceGateway",
    "SaveResult",
    "get_session_id",
    "FileCache",
    "LocalCache",
    "RemoteStore",
    "SupabaseStore",
]
