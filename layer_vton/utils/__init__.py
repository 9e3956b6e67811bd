"""Utility modules."""

from .debounce import Debouncer
from .image_codec import ImageCodec, StoredSession, sniff_media_type
from .response_parser import first_usable_image_url, is_blocked_url, is_negative_answer

__all__ = [
    "Debouncer",
    "ImageCodec",
    "StoredSession",
    "sniff_media_type",
    "first_usable_image_url",
    "is_blocked_url",
    "is_negative_answer",
]
