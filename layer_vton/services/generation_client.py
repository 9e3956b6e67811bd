"""Generation service client (Gemini-style generateContent API)."""

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field

from ..config import GenerationServiceConfig, SamplingSettings
from ..errors import ProviderError, ProviderErrorKind
from ..models.image_ref import InlineData

logger = logging.getLogger(__name__)


class GenerationRequest(BaseModel):
    """Ordered image parts plus one instruction."""
    images: list[InlineData] = Field(default_factory=list)
    instruction: str
    settings: SamplingSettings = Field(default_factory=SamplingSettings)

    def to_payload(self) -> dict[str, Any]:
        """Build the generateContent request body. Images precede the text part."""
        parts: list[dict[str, Any]] = [
            {"inlineData": {"mimeType": image.media_type, "data": image.data}}
            for image in self.images
        ]
        parts.append({"text": self.instruction})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": self.settings.temperature,
                "topK": self.settings.top_k,
                "topP": self.settings.top_p,
                "maxOutputTokens": self.settings.max_output_tokens,
            },
        }


class ResponsePart(BaseModel):
    """Either a text fragment or an inline image."""
    text: str | None = None
    image: InlineData | None = None


class GenerationResponse(BaseModel):
    """Parts of the first candidate returned by the service."""
    parts: list[ResponsePart] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GenerationResponse":
        candidates = payload.get("candidates") or []
        if not candidates:
            return cls()

        parts = []
        for raw in (candidates[0].get("content") or {}).get("parts") or []:
            inline = raw.get("inlineData") or raw.get("inline_data")
            if inline and inline.get("data"):
                parts.append(ResponsePart(image=InlineData(
                    media_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    data=inline["data"],
                )))
            elif raw.get("text"):
                parts.append(ResponsePart(text=raw["text"]))
        return cls(parts=parts)

    @property
    def text(self) -> str:
        return "\n".join(part.text for part in self.parts if part.text)

    def first_image(self) -> InlineData | None:
        for part in self.parts:
            if part.image is not None:
                return part.image
        return None


def classify_status(status_code: int) -> ProviderErrorKind:
    """Map an HTTP error status onto a provider error kind."""
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMITED
    if status_code == 404:
        return ProviderErrorKind.MODEL_NOT_FOUND
    if status_code == 400:
        return ProviderErrorKind.BAD_REQUEST
    if status_code in (408, 504):
        return ProviderErrorKind.TIMEOUT
    return ProviderErrorKind.SERVER_ERROR


class GenerationBackend(ABC):
    """Anything that can run one generation request against one model."""

    @abstractmethod
    async def generate(self, model: str, request: GenerationRequest) -> GenerationResponse:
        """Run the request. Raises ProviderError on failure."""

    async def close(self):
        """Release any held resources."""


class GeminiClient(GenerationBackend):
    """Client for the generateContent REST endpoint."""

    def __init__(self, config: GenerationServiceConfig):
        self.config = config
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout)
        return self._client

    async def generate(self, model: str, request: GenerationRequest) -> GenerationResponse:
        url = f"{self.config.base_url.rstrip('/')}/models/{model}:generateContent"
        try:
            response = await self.client.post(
                url,
                params={"key": self.config.api_key or ""},
                json=request.to_payload(),
            )
        except httpx.TimeoutException as e:
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"{model} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(ProviderErrorKind.SERVER_ERROR, f"{model} unreachable: {e}") from e

        if response.status_code != 200:
            kind = classify_status(response.status_code)
            raise ProviderError(
                kind,
                f"{model} returned {response.status_code}: {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(ProviderErrorKind.SERVER_ERROR, f"{model} returned invalid JSON") from e
        return GenerationResponse.from_payload(payload)

    async def close(self):
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
