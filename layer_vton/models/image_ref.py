"""Image references: process-local handles, inline data and remote URLs."""

import base64
import re
import threading
import uuid
from urllib.parse import unquote
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


LOCAL_HANDLE_PREFIX = "blob:layer-vton/"

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?:;[^,;]+)*?(?P<b64>;base64)?,(?P<data>.*)$", re.DOTALL)


class LocalHandle(BaseModel):
    """Ephemeral reference to bytes held in this process only."""
    kind: Literal["local"] = "local"
    handle_id: str

    def to_storage_string(self) -> str:
        return self.handle_id


class InlineData(BaseModel):
    """Self-contained base64 image bytes plus media type."""
    kind: Literal["inline"] = "inline"
    media_type: str = "image/jpeg"
    data: str  # base64, no data: prefix

    @classmethod
    def from_bytes(cls, raw: bytes, media_type: str) -> "InlineData":
        return cls(media_type=media_type, data=base64.b64encode(raw).decode("ascii"))

    def decode(self) -> bytes:
        return base64.b64decode(self.data)

    def to_data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data}"

    def to_storage_string(self) -> str:
        return self.to_data_url()


class RemoteUrl(BaseModel):
    """Pointer to an image on someone else's server. May expire."""
    kind: Literal["remote"] = "remote"
    url: str

    def to_storage_string(self) -> str:
        return self.url


ImageRef = Annotated[Union[LocalHandle, InlineData, RemoteUrl], Field(discriminator="kind")]


def is_local_handle_string(value: str) -> bool:
    """Check for any blob: style handle, including ones from a previous process."""
    return value.startswith("blob:")


def parse_data_url(value: str) -> InlineData | None:
    """Parse a ``data:<mime>;base64,<data>`` URL.

    Returns None if the value is not a data URL at all. Non-base64 data
    URLs (e.g. URL-encoded SVG) are kept by re-encoding their payload.
    """
    match = _DATA_URL_RE.match(value.strip())
    if not match:
        return None
    if match.group("b64"):
        return InlineData(media_type=match.group("mime"), data=match.group("data"))

    return InlineData.from_bytes(unquote(match.group("data")).encode("utf-8"), match.group("mime"))


def parse_image_string(value: str | None) -> LocalHandle | InlineData | RemoteUrl | None:
    """Map a stored or user-supplied string back to an image reference."""
    if not value:
        return None
    value = value.strip()
    if value.startswith("data:"):
        return parse_data_url(value)
    if is_local_handle_string(value):
        return LocalHandle(handle_id=value)
    if value.startswith(("http://", "https://")):
        return RemoteUrl(url=value)
    return None


class LocalHandleStore:
    """Process-wide byte store behind LocalHandle references.

    Handles never survive a restart: the store starts empty in every process,
    so any persisted handle string is dangling by construction.
    """

    def __init__(self) -> None:
        self._items: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def create(self, data: bytes, media_type: str) -> LocalHandle:
        handle_id = f"{LOCAL_HANDLE_PREFIX}{uuid.uuid4()}"
        with self._lock:
            self._items[handle_id] = (data, media_type)
        return LocalHandle(handle_id=handle_id)

    def read(self, handle: LocalHandle) -> tuple[bytes, str]:
        """Return (bytes, media_type). Raises KeyError for a dangling handle."""
        with self._lock:
            return self._items[handle.handle_id]

    def contains(self, handle: LocalHandle) -> bool:
        with self._lock:
            return handle.handle_id in self._items

    def release(self, handle: LocalHandle | str) -> None:
        """Forget a handle's bytes. Unknown handles are ignored."""
        handle_id = handle.handle_id if isinstance(handle, LocalHandle) else handle
        with self._lock:
            self._items.pop(handle_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


# Global handle store shared by the codec and the state machine
local_handles = LocalHandleStore()
