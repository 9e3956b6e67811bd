"""Session state machine for layered virtual try-on."""

import io
import logging
from typing import Callable

from PIL import Image

from ..agents.garment_detector import GarmentDetector
from ..agents.outfit_composer import OutfitComposer
from ..config import AppConfig
from ..errors import CompositionError, InvalidTransitionError, PhotoDecodeError, SessionBusyError
from ..models.image_ref import ImageRef, LocalHandleStore, local_handles
from ..models.layers import Category
from ..models.session import SessionState, SessionStatus
from ..services.generation_client import GeminiClient, GenerationBackend
from ..services.persistence import PersistenceGateway, get_session_id
from ..services.storage import FileCache, SupabaseStore
from ..utils.debounce import Debouncer
from ..utils.image_codec import ImageCodec, sniff_media_type

logger = logging.getLogger(__name__)

S = SessionStatus

ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    S.EMPTY: {S.ANALYZING, S.EMPTY, S.ERROR},
    S.ANALYZING: {S.READY, S.ERROR, S.EMPTY},
    S.READY: {S.GENERATING, S.ANALYZING, S.READY, S.EMPTY, S.ERROR},
    S.GENERATING: {S.DONE, S.ERROR, S.EMPTY},
    S.DONE: {S.GENERATING, S.ANALYZING, S.READY, S.EMPTY, S.ERROR},
    S.ERROR: {S.ANALYZING, S.GENERATING, S.READY, S.EMPTY, S.ERROR},
}

BUSY_STATES = {S.ANALYZING, S.GENERATING}

# States from which a slot or prompt edit triggers a new composite
RECOMPOSE_STATES = {S.READY, S.DONE, S.ERROR}

PHOTO_DECODE_MESSAGE = "could not read the uploaded photo"

RenderCallback = Callable[[SessionState], None]


class SessionStateMachine:
    """Owns one session and runs every command against it.

    Flow:
    1. upload_photo: full reset, detect every layer, READY
    2. replace_slot / remove_slot / set_prompt: recompose from the base photo
    3. every transition renders and schedules a debounced save

    Only one command runs at a time. Commands arriving while ANALYZING or
    GENERATING are rejected with SessionBusyError; reset() always wins and
    makes any in-flight result stale.
    """

    def __init__(
        self,
        detector: GarmentDetector,
        composer: OutfitComposer,
        gateway: PersistenceGateway,
        session_id: str,
        handles: LocalHandleStore = local_handles,
        render: RenderCallback | None = None,
        debounce_seconds: float = 1.0,
        backend: GenerationBackend | None = None,
    ):
        self.detector = detector
        self.composer = composer
        self.gateway = gateway
        self.session_id = session_id
        self.handles = handles
        self.render = render
        self.backend = backend

        self.state = SessionState()
        self._epoch = 0
        self._held: set[str] = set()
        self._debouncer = Debouncer(debounce_seconds, self._persist)

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        session_id: str | None = None,
        render: RenderCallback | None = None,
        backend: GenerationBackend | None = None,
    ) -> "SessionStateMachine":
        """Wire up the default service stack from configuration."""
        generation = config.generation
        persistence = config.persistence

        backend = backend or GeminiClient(generation)
        codec = ImageCodec(persistence)
        cache = FileCache(persistence.cache_dir, persistence.cache_max_bytes)
        remote = SupabaseStore(config.supabase) if config.supabase.enabled else None

        detector = GarmentDetector(
            backend,
            codec,
            generation.detection_models,
            sampling=generation.detection_sampling,
            timeout=generation.request_timeout,
            blocked_patterns=persistence.blocked_url_patterns,
        )
        composer = OutfitComposer(
            backend,
            codec,
            generation.composition_models,
            sampling=generation.composition_sampling,
            timeout=generation.request_timeout,
            blocked_patterns=persistence.blocked_url_patterns,
        )
        gateway = PersistenceGateway(codec, cache, remote, persistence.cache_max_bytes)

        return cls(
            detector,
            composer,
            gateway,
            session_id or get_session_id(cache),
            render=render,
            debounce_seconds=persistence.debounce_seconds,
            backend=backend,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def is_busy(self) -> bool:
        return self.state.status in BUSY_STATES

    def _check_idle(self) -> None:
        if self.is_busy:
            raise SessionBusyError(f"Session is {self.state.status.value}, try again when it finishes")

    def _is_stale(self, epoch: int) -> bool:
        if epoch != self._epoch:
            logger.info(f"Discarding result of a superseded operation (epoch {epoch} != {self._epoch})")
            return True
        return False

    def _render(self) -> None:
        if self.render is not None:
            self.render(self.state)

    def _release_dropped(self) -> None:
        """Free local handles the session no longer points at."""
        current = self.state.handle_ids()
        for handle_id in self._held - current:
            self.handles.release(handle_id)
        self._held = current

    def _changed(self) -> None:
        """Publish an edit that does not change status."""
        self._release_dropped()
        self._render()
        self._debouncer.schedule()

    def _transition(self, status: SessionStatus, error_message: str | None = None) -> None:
        current = self.state.status
        if status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(f"Cannot go from {current.value} to {status.value}")

        self.state.status = status
        self.state.error_message = error_message if status == S.ERROR else None
        if status == S.ERROR:
            self.state.composed_image = None
            logger.warning(f"[{self.session_id}] {current.value} -> error: {error_message}")
        else:
            logger.info(f"[{self.session_id}] {current.value} -> {status.value}")

        self._changed()

    async def _persist(self) -> None:
        # Snapshot first: encoding awaits, and the live state may move on meanwhile
        snapshot = self.state.model_copy(deep=True)
        await self.gateway.save(self.session_id, snapshot)

    @staticmethod
    def _read_photo(data: bytes) -> str:
        """Check that the bytes are a decodable image and return its media type."""
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            raise PhotoDecodeError(f"{PHOTO_DECODE_MESSAGE}: {e}") from e
        return sniff_media_type(data)

    async def _recompose(self) -> None:
        epoch = self._epoch
        self._transition(S.GENERATING)
        try:
            composed = await self.composer.compose(
                self.state.base_image,
                self.state.user_slots,
                self.state.baseline_outfit,
                self.state.free_text_prompt,
            )
        except CompositionError as e:
            if not self._is_stale(epoch):
                self._transition(S.ERROR, str(e))
            return
        except Exception as e:
            if not self._is_stale(epoch):
                self._transition(S.ERROR, f"Unexpected error: {e}")
            raise

        if self._is_stale(epoch):
            return
        self.state.composed_image = composed
        self._transition(S.DONE)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def upload_photo(self, data: bytes) -> SessionState:
        """Start a new session from a photo and detect its garment layers."""
        self._check_idle()
        self._epoch += 1
        epoch = self._epoch

        try:
            media_type = self._read_photo(data)
        except PhotoDecodeError as e:
            logger.warning(str(e))
            self.state.reset(None)
            self._transition(S.ANALYZING)
            self._transition(S.ERROR, PHOTO_DECODE_MESSAGE)
            return self.state

        handle = self.handles.create(data, media_type)
        self.state.reset(handle)
        self._transition(S.ANALYZING)

        try:
            baseline = await self.detector.detect_all(handle)
        except Exception as e:
            if not self._is_stale(epoch):
                self._transition(S.ERROR, f"Unexpected error: {e}")
            raise

        if self._is_stale(epoch):
            return self.state
        self.state.baseline_outfit = baseline
        self._transition(S.READY)
        return self.state

    async def replace_slot(self, category: Category | str, index: int, image: ImageRef) -> SessionState:
        """Set a user override and recompose if there is a photo to dress."""
        self._check_idle()
        self.state.user_slots.set(category, index, image)

        if self.state.base_image is not None and self.state.status in RECOMPOSE_STATES:
            await self._recompose()
        else:
            self._changed()
        return self.state

    async def remove_slot(self, category: Category | str, index: int) -> SessionState:
        """Clear a user override. With no overrides left the session goes back to READY."""
        self._check_idle()
        self.state.user_slots.set(category, index, None)

        if self.state.base_image is None or self.state.status not in RECOMPOSE_STATES:
            self._changed()
        elif self.state.user_slots.is_empty():
            self.state.composed_image = None
            self._transition(S.READY)
        else:
            await self._recompose()
        return self.state

    async def set_prompt(self, text: str) -> SessionState:
        """Store the styling prompt, recomposing if an outfit is already chosen."""
        self._check_idle()
        self.state.free_text_prompt = text

        if (
            self.state.base_image is not None
            and self.state.status in (S.READY, S.DONE)
            and self.state.has_user_slots
        ):
            await self._recompose()
        else:
            self._changed()
        return self.state

    def reset(self) -> SessionState:
        """Clear everything. Allowed in every state; in-flight work becomes stale."""
        self._epoch += 1
        self.state.reset(None, keep_prompt=False)
        self._transition(S.EMPTY)
        return self.state

    async def restore(self) -> SessionState:
        """Load the saved session, if any. Renders but does not save."""
        self._check_idle()
        restored = await self.gateway.load(self.session_id)
        if restored is None:
            return self.state

        if restored.composed_image is not None:
            restored.status = S.DONE
        elif restored.base_image is not None:
            restored.status = S.READY
        else:
            restored.status = S.EMPTY
        restored.error_message = None

        self._epoch += 1
        self.state = restored
        self._release_dropped()
        logger.info(f"[{self.session_id}] restored session in state {restored.status.value}")
        self._render()
        return self.state

    async def flush_persistence(self) -> None:
        """Write any pending save now."""
        await self._debouncer.flush()

    async def close(self) -> None:
        await self.flush_persistence()
        for handle_id in self._held:
            self.handles.release(handle_id)
        self._held = set()
        await self.gateway.close()
        if self.backend is not None:
            await self.backend.close()
