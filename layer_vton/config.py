"""Configuration management for the layered try-on session engine."""

from pathlib import Path
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DETECTION_MODELS = [
    "gemini-2.5-flash",  # text models first: they answer YES/NO most reliably
    "gemini-2.5-pro",
    "gemini-3-pro-preview",
    "gemini-3-flash-preview",
    "gemini-3-pro-image-preview",
    "gemini-2.0-flash-exp-image-generation",
    "gemini-2.5-flash-image",
    "nano-banana-pro-preview",
]

DEFAULT_COMPOSITION_MODELS = [
    "gemini-3-pro-image-preview",
    "gemini-3-flash-preview",
    "gemini-3-pro-preview",
    "gemini-2.0-flash-exp-image-generation",
    "gemini-2.5-flash-image",
    "nano-banana-pro-preview",
    "gemini-2.5-flash",
    "gemini-2.5-pro",
]

# Hosts whose image links expire or refuse hotlinking, plus known placeholder links
DEFAULT_BLOCKED_URL_PATTERNS = [
    "replicate.delivery",
    "file-cdn.flyai.com",
    "file-s3.omniwear.com",
    "placeholder",
    "imgur.com/result_",
]


class SamplingSettings(BaseModel):
    """Sampling parameters sent with every generation request."""
    temperature: float = 0.1
    top_k: int = 10
    top_p: float = 0.7
    max_output_tokens: int = 8192


class GenerationServiceConfig(BaseModel):
    """Generation service connection and candidate ranking."""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    api_key: str | None = None
    request_timeout: float = 30.0  # per candidate, seconds
    detection_models: list[str] = Field(default_factory=lambda: list(DEFAULT_DETECTION_MODELS))
    composition_models: list[str] = Field(default_factory=lambda: list(DEFAULT_COMPOSITION_MODELS))
    detection_sampling: SamplingSettings = Field(default_factory=SamplingSettings)
    # Identity preservation matters more than variety, so composition is fully greedy
    composition_sampling: SamplingSettings = Field(
        default_factory=lambda: SamplingSettings(temperature=0.0, top_k=1, top_p=0.1)
    )

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


class PersistenceConfig(BaseModel):
    """Local cache, debounce and image codec settings."""
    cache_dir: Path = Path("output/cache")
    cache_max_bytes: int = 5 * 1024 * 1024
    debounce_seconds: float = 1.0
    thumbnail_max_px: int = 512
    composite_max_px: int = 800
    jpeg_quality: int = Field(default=70, ge=1, le=95)
    min_encoded_length: int = 100
    min_decoded_bytes: int = 64
    fetch_timeout: float = 30.0
    # Refuse remote images on loopback, private or link-local addresses
    public_hosts_only: bool = True
    max_redirects: int = 5
    blocked_url_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BLOCKED_URL_PATTERNS)
    )


class SupabaseConfig(BaseModel):
    """Durable remote store settings (optional)."""
    url: str | None = None
    anon_key: str | None = None
    table: str = "fashion_ai_states"

    @property
    def enabled(self) -> bool:
        return bool(self.url and self.anon_key)


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LAYER_VTON_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    generation: GenerationServiceConfig = Field(default_factory=GenerationServiceConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    supabase: SupabaseConfig = Field(default_factory=SupabaseConfig)

    # Live sessions kept by the API server before idle ones are closed
    max_sessions: int = Field(default=64, ge=1)


def load_config() -> AppConfig:
    """Load configuration from environment and defaults."""
    return AppConfig()
