"""Result of asking the generation service about one garment slot."""

from dataclasses import dataclass
from typing import Union

from .image_ref import InlineData, RemoteUrl


@dataclass(frozen=True)
class Found:
    """The garment is worn and was extracted."""
    image: InlineData | RemoteUrl


@dataclass(frozen=True)
class NotPresent:
    """The service answered that the garment is not worn."""


@dataclass(frozen=True)
class Failed:
    """Every candidate was tried without a usable answer."""
    reason: str


DetectionOutcome = Union[Found, NotPresent, Failed]
