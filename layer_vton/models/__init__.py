"""Data models for the layered try-on session engine."""

from .image_ref import (
    ImageRef,
    InlineData,
    LocalHandle,
    LocalHandleStore,
    RemoteUrl,
    local_handles,
    parse_image_string,
)
from .layers import (
    Category,
    DETECTION_SLOTS,
    GarmentSlot,
    Outfit,
    canonical_order,
    capacity_of,
    effective_outfit,
    layer_index_of,
    layer_label,
)
from .outcomes import DetectionOutcome, Failed, Found, NotPresent
from .session import SessionState, SessionStatus

__all__ = [
    "ImageRef",
    "InlineData",
    "LocalHandle",
    "LocalHandleStore",
    "RemoteUrl",
    "local_handles",
    "parse_image_string",
    "Category",
    "DETECTION_SLOTS",
    "GarmentSlot",
    "Outfit",
    "canonical_order",
    "capacity_of",
    "effective_outfit",
    "layer_index_of",
    "layer_label",
    "DetectionOutcome",
    "Failed",
    "Found",
    "NotPresent",
    "SessionState",
    "SessionStatus",
]
