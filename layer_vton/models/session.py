"""Session state for one user's try-on workspace."""

from enum import Enum
from pydantic import BaseModel, Field

from .image_ref import ImageRef, LocalHandle
from .layers import Outfit


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""
    EMPTY = "empty"
    ANALYZING = "analyzing"
    READY = "ready"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"


class SessionState(BaseModel):
    """Complete state of a layered try-on session."""

    status: SessionStatus = SessionStatus.EMPTY

    # Inputs
    base_image: ImageRef | None = None
    baseline_outfit: Outfit = Field(default_factory=Outfit)  # detected, never shown
    user_slots: Outfit = Field(default_factory=Outfit)  # user overrides
    free_text_prompt: str = ""

    # Output
    composed_image: ImageRef | None = None
    error_message: str | None = None

    def reset(self, base_image: ImageRef | None = None, keep_prompt: bool = True) -> None:
        """Replace the base image and clear everything derived from it.

        Baseline, user slots and composite are always cleared together so no
        observer ever sees a half-reset session.
        """
        self.base_image = base_image
        self.baseline_outfit = Outfit()
        self.user_slots = Outfit()
        self.composed_image = None
        self.error_message = None
        if not keep_prompt:
            self.free_text_prompt = ""

    def normalize_restored(self) -> "SessionState":
        """Fully reset a restored session whose base image did not survive."""
        if self.base_image is None:
            self.reset(None)
            self.status = SessionStatus.EMPTY
        return self

    def handle_ids(self) -> set[str]:
        """Ids of every local handle this session still points at."""
        refs = [self.base_image, self.composed_image]
        refs += [ref for _, _, ref in self.baseline_outfit.filled()]
        refs += [ref for _, _, ref in self.user_slots.filled()]
        return {ref.handle_id for ref in refs if isinstance(ref, LocalHandle)}

    @property
    def has_user_slots(self) -> bool:
        return not self.user_slots.is_empty()
