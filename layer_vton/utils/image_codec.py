"""Convert image references between in-memory, inline and storable forms."""

import asyncio
import base64
import binascii
import io
import ipaddress
import logging
import re
import socket
from datetime import datetime, timezone
from urllib.parse import urlparse

import httpx
from PIL import Image
from pydantic import BaseModel, Field

from ..config import PersistenceConfig
from ..models.image_ref import (
    ImageRef,
    InlineData,
    LocalHandle,
    LocalHandleStore,
    RemoteUrl,
    local_handles,
    parse_data_url,
    parse_image_string,
)
from ..models.layers import CAPACITIES, Category, Outfit
from ..models.session import SessionState, SessionStatus
from .response_parser import is_blocked_url

logger = logging.getLogger(__name__)

STORAGE_VERSION = 1

_BASE64_RE = re.compile(r'^[A-Za-z0-9+/]*={0,2}$')

SlotFlags = dict[str, dict[int, bool]]


def sniff_media_type(data: bytes) -> str:
    """Detect the image format from magic bytes, defaulting to PNG."""
    if data[:3] == b'\xff\xd8\xff':
        return "image/jpeg"
    if data[:8] == b'\x89PNG\r\n\x1a\n':
        return "image/png"
    if data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return "image/webp"
    if data[:6] in (b'GIF87a', b'GIF89a'):
        return "image/gif"
    return "image/png"


def _is_svg(data: bytes, media_type: str | None) -> bool:
    if media_type and "svg" in media_type:
        return True
    head = data[:256].lstrip().lower()
    return head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:1024].lower())


class StoredOutfit(BaseModel):
    """Outfit with every image as a storable string."""
    outer: list[str | None] = Field(default_factory=lambda: [None] * CAPACITIES[Category.OUTER])
    inner: list[str | None] = Field(default_factory=lambda: [None] * CAPACITIES[Category.INNER])
    bottoms: list[str | None] = Field(default_factory=lambda: [None] * CAPACITIES[Category.BOTTOMS])


class ConversionFlags(BaseModel):
    """Which stored strings were produced by converting an ephemeral reference."""
    base_image: bool = False
    composed_image: bool = False
    baseline_outfit: SlotFlags = Field(default_factory=dict)
    user_slots: SlotFlags = Field(default_factory=dict)


class StoredSession(BaseModel):
    """Persistable form of a SessionState."""
    version: int = STORAGE_VERSION
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: SessionStatus = SessionStatus.EMPTY
    base_image: str | None = None
    composed_image: str | None = None
    baseline_outfit: StoredOutfit = Field(default_factory=StoredOutfit)
    user_slots: StoredOutfit = Field(default_factory=StoredOutfit)
    free_text_prompt: str = ""
    error_message: str | None = None
    converted: ConversionFlags = Field(default_factory=ConversionFlags)


class ImageCodec:
    """Reads, fetches, recompresses and (de)serializes image references."""

    def __init__(
        self,
        settings: PersistenceConfig,
        handles: LocalHandleStore = local_handles,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.handles = handles
        self._client = http_client

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client used for remote images."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.settings.fetch_timeout,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def is_public_url(self, url: str) -> bool:
        """True if ``url`` is http(s) and its host does not resolve to a private address.

        Hosts that do not resolve are let through; the request itself fails.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        if not self.settings.public_hosts_only:
            return True

        host = parsed.hostname
        if host == "localhost" or host.endswith(".localhost"):
            return False
        try:
            addresses = [ipaddress.ip_address(host)]
        except ValueError:
            try:
                infos = await asyncio.get_running_loop().getaddrinfo(host, None)
            except (socket.gaierror, UnicodeError):
                return True
            addresses = [ipaddress.ip_address(info[4][0].split("%")[0]) for info in infos]
        return all(address.is_global for address in addresses)

    async def fetch_remote(self, url: str) -> tuple[bytes, str] | None:
        """Download an image. Returns None on any failure."""
        if is_blocked_url(url, self.settings.blocked_url_patterns):
            logger.warning(f"Refusing to fetch denylisted image URL: {url}")
            return None

        # Referer/Origin help with hotlink protection
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        headers = {
            "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": origin + "/",
            "Origin": origin,
        }

        try:
            # Redirects are followed by hand so every hop gets the host check
            for _ in range(self.settings.max_redirects + 1):
                if is_blocked_url(url, self.settings.blocked_url_patterns):
                    logger.warning(f"Refusing to follow redirect to denylisted URL: {url}")
                    return None
                if not await self.is_public_url(url):
                    logger.warning(f"Refusing to fetch image from a non-public host: {url}")
                    return None
                response = await self.client.get(url, headers=headers, follow_redirects=False)
                if not response.has_redirect_location:
                    break
                url = str(response.next_request.url)
            else:
                logger.warning(f"Too many redirects fetching {url}")
                return None
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Image fetch failed for {url}: {e}")
            return None

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not content_type.startswith("image/"):
            logger.warning(f"Not an image ({content_type or 'no content-type'}): {url}")
            return None
        return response.content, content_type

    async def materialize_url(self, url: str) -> InlineData | None:
        """Dereference a URL into self-contained inline data."""
        fetched = await self.fetch_remote(url)
        if fetched is None:
            return None
        data, media_type = fetched
        return InlineData.from_bytes(data, media_type)

    async def read_bytes(self, ref: ImageRef) -> tuple[bytes, str] | None:
        """Return (bytes, media_type) behind any reference, or None if unreadable."""
        if isinstance(ref, LocalHandle):
            try:
                return self.handles.read(ref)
            except KeyError:
                logger.warning(f"Dangling local handle: {ref.handle_id}")
                return None
        if isinstance(ref, InlineData):
            try:
                return ref.decode(), ref.media_type
            except (binascii.Error, ValueError) as e:
                logger.warning(f"Corrupt inline image data: {e}")
                return None
        return await self.fetch_remote(ref.url)

    async def to_inline(self, ref: ImageRef) -> InlineData | None:
        """Inline form of a reference, for sending to the generation service."""
        if isinstance(ref, InlineData):
            return ref
        result = await self.read_bytes(ref)
        if result is None:
            return None
        data, media_type = result
        return InlineData.from_bytes(data, media_type)

    # ------------------------------------------------------------------
    # Compression & validation
    # ------------------------------------------------------------------

    def recompress(self, data: bytes, max_px: int, media_type: str | None = None) -> bytes:
        """Fit within max_px and re-encode as JPEG. SVG is returned untouched."""
        if _is_svg(data, media_type):
            return data

        with Image.open(io.BytesIO(data)) as img:
            img.thumbnail((max_px, max_px))
            if img.mode != "RGB":
                img = img.convert("RGB")
            output = io.BytesIO()
            img.save(output, format="JPEG", quality=self.settings.jpeg_quality)
        return output.getvalue()

    def _pack(self, data: bytes, media_type: str, max_px: int) -> InlineData:
        if _is_svg(data, media_type):
            return InlineData.from_bytes(data, "image/svg+xml")
        try:
            return InlineData.from_bytes(self.recompress(data, max_px, media_type), "image/jpeg")
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning(f"Recompression failed, storing original bytes: {e}")
            return InlineData.from_bytes(data, media_type)

    def validate_inline(self, value: str) -> InlineData | None:
        """Integrity check for a stored data URL. None means reject."""
        if len(value) < self.settings.min_encoded_length:
            return None
        inline = parse_data_url(value) if value.startswith("data:") else None
        if inline is None:
            return None

        payload = re.sub(r'\s+', '', inline.data)
        if not _BASE64_RE.fullmatch(payload):
            return None
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(raw) < self.settings.min_decoded_bytes:
            return None
        return InlineData(media_type=inline.media_type, data=payload)

    # ------------------------------------------------------------------
    # Session (de)serialization
    # ------------------------------------------------------------------

    async def _encode_field(self, ref: ImageRef | None, max_px: int, label: str) -> tuple[str | None, bool]:
        if ref is None:
            return None, False
        if isinstance(ref, InlineData):
            return ref.to_data_url(), False

        if isinstance(ref, LocalHandle):
            try:
                data, media_type = self.handles.read(ref)
            except KeyError:
                logger.warning(f"Dropping {label}: local handle no longer exists")
                return None, False
        else:
            fetched = await self.fetch_remote(ref.url)
            if fetched is None:
                logger.warning(f"Dropping {label}: could not fetch {ref.url}")
                return None, False
            data, media_type = fetched

        return self._pack(data, media_type, max_px).to_data_url(), True

    async def _encode_outfit(self, outfit: Outfit, label: str) -> tuple[StoredOutfit, SlotFlags]:
        stored = StoredOutfit()
        flags: SlotFlags = {}
        for category, capacity in CAPACITIES.items():
            for index in range(capacity):
                value, converted = await self._encode_field(
                    outfit.get(category, index),
                    self.settings.thumbnail_max_px,
                    f"{label}.{category.value}[{index}]",
                )
                getattr(stored, category.value)[index] = value
                if value is not None:
                    flags.setdefault(category.value, {})[index] = converted
        return stored, flags

    async def encode_state(self, state: SessionState) -> StoredSession:
        """Turn a session into a storable snapshot with no ephemeral references."""
        flags = ConversionFlags()
        primary_px = self.settings.composite_max_px

        base_image, flags.base_image = await self._encode_field(state.base_image, primary_px, "base_image")
        composed_image, flags.composed_image = await self._encode_field(
            state.composed_image, primary_px, "composed_image"
        )
        baseline, flags.baseline_outfit = await self._encode_outfit(state.baseline_outfit, "baseline_outfit")
        user_slots, flags.user_slots = await self._encode_outfit(state.user_slots, "user_slots")

        return StoredSession(
            status=state.status,
            base_image=base_image,
            composed_image=composed_image,
            baseline_outfit=baseline,
            user_slots=user_slots,
            free_text_prompt=state.free_text_prompt,
            error_message=state.error_message,
            converted=flags,
        )

    def _decode_field(self, value: str | None, converted: bool, label: str) -> ImageRef | None:
        if not value:
            return None

        if converted:
            inline = self.validate_inline(value)
            if inline is None:
                logger.warning(f"Discarding {label}: stored image failed validation")
                return None
            return self.handles.create(inline.decode(), inline.media_type)

        ref = parse_image_string(value)
        if isinstance(ref, InlineData):
            return ref
        if isinstance(ref, (LocalHandle, RemoteUrl)):
            logger.warning(f"Discarding {label}: unconverted {ref.kind} reference")
        return None

    def _decode_outfit(self, stored: StoredOutfit, flags: SlotFlags, label: str) -> Outfit:
        outfit = Outfit()
        for category, capacity in CAPACITIES.items():
            values = getattr(stored, category.value)
            for index in range(min(capacity, len(values))):
                converted = flags.get(category.value, {}).get(index, False)
                outfit.set(
                    category,
                    index,
                    self._decode_field(values[index], converted, f"{label}.{category.value}[{index}]"),
                )
        return outfit

    def decode_state(self, stored: StoredSession) -> SessionState:
        """Rebuild a session. Bad fields are nulled, never fatal."""
        flags = stored.converted
        state = SessionState(
            status=stored.status,
            base_image=self._decode_field(stored.base_image, flags.base_image, "base_image"),
            composed_image=self._decode_field(stored.composed_image, flags.composed_image, "composed_image"),
            baseline_outfit=self._decode_outfit(stored.baseline_outfit, flags.baseline_outfit, "baseline_outfit"),
            user_slots=self._decode_outfit(stored.user_slots, flags.user_slots, "user_slots"),
            free_text_prompt=stored.free_text_prompt,
            error_message=stored.error_message,
        )
        created = state.handle_ids()
        state.normalize_restored()
        for handle_id in created - state.handle_ids():
            self.handles.release(handle_id)
        return state
