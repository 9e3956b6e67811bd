"""FastAPI server for layered virtual try-on sessions.

Each client session is one SessionStateMachine, picked by the X-Session-Id
header (or the locally remembered id when the header is absent):
- POST /api/session/photo: upload a photo, detect its garment layers
- PUT/DELETE /api/session/slots/{category}/{index}: swap or remove a layer
- PUT /api/session/prompt: extra styling instructions
"""

import base64
import binascii
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from layer_vton import __version__
from layer_vton.config import AppConfig, load_config
from layer_vton.errors import SessionBusyError, SlotIndexError
from layer_vton.models.image_ref import ImageRef, InlineData, LocalHandle, parse_data_url, parse_image_string
from layer_vton.models.layers import CAPACITIES
from layer_vton.models.session import SessionStatus
from layer_vton.pipeline import SessionStateMachine
from layer_vton.services.persistence import get_session_id
from layer_vton.services.storage import FileCache

logger = logging.getLogger(__name__)


# Sessions are created on first request, least recently used first
_config: AppConfig | None = None
_sessions: "OrderedDict[str, SessionStateMachine]" = OrderedDict()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    for machine in list(_sessions.values()):
        await machine.close()
    _sessions.clear()


app = FastAPI(
    title="Layer VTON API",
    description="Layered virtual try-on: detect, swap and recompose garment layers",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class PhotoRequest(BaseModel):
    """Request body for a photo upload."""
    photo: str  # base64 or data URL


class SlotRequest(BaseModel):
    """Request body for replacing a garment slot."""
    image: str  # data URL or http(s) URL


class PromptRequest(BaseModel):
    prompt: str


class SessionView(BaseModel):
    """What a client may see of a session. The detected baseline stays hidden."""
    session_id: str
    status: SessionStatus
    error_message: str | None = None
    base_image: str | None = None
    composed_image: str | None = None
    user_slots: dict[str, list[str | None]]
    free_text_prompt: str = ""

    @classmethod
    def from_machine(cls, machine: SessionStateMachine) -> "SessionView":
        state = machine.state

        def show(ref: ImageRef | None) -> str | None:
            if ref is None:
                return None
            if isinstance(ref, LocalHandle):
                try:
                    data, media_type = machine.handles.read(ref)
                except KeyError:
                    return None
                return InlineData.from_bytes(data, media_type).to_data_url()
            return ref.to_storage_string()

        return cls(
            session_id=machine.session_id,
            status=state.status,
            error_message=state.error_message,
            base_image=show(state.base_image),
            composed_image=show(state.composed_image) if state.status == SessionStatus.DONE else None,
            user_slots={
                category.value: [show(state.user_slots.get(category, i)) for i in range(capacity)]
                for category, capacity in CAPACITIES.items()
            },
            free_text_prompt=state.free_text_prompt,
        )


def get_config() -> AppConfig:
    """Get or load the application configuration."""
    global _config
    if _config is None:
        _config = load_config()  # Loads from .env automatically via pydantic-settings
    return _config


async def evict_idle_sessions(limit: int) -> None:
    """Close least recently used idle sessions until at most ``limit`` remain.

    Closing flushes the pending save, so an evicted client gets its session
    back through POST /api/session/restore.
    """
    for session_id in list(_sessions):
        if len(_sessions) <= limit:
            return
        machine = _sessions[session_id]
        if machine.is_busy:
            continue
        del _sessions[session_id]
        logger.info(f"Evicting idle session {session_id}")
        await machine.close()


async def get_session_machine(session_id: str | None = None) -> SessionStateMachine:
    """Get or create the state machine for a client session."""
    config = get_config()
    if not session_id:
        cache = FileCache(config.persistence.cache_dir, config.persistence.cache_max_bytes)
        session_id = get_session_id(cache)
    if session_id in _sessions:
        _sessions.move_to_end(session_id)
        return _sessions[session_id]

    await evict_idle_sessions(config.max_sessions - 1)
    if session_id not in _sessions:
        logger.info(f"Creating session {session_id}")
        _sessions[session_id] = SessionStateMachine.from_config(config, session_id)
    return _sessions[session_id]


def decode_photo(value: str) -> bytes:
    """Raw bytes of a base64 string or data URL. Raises HTTPException 422."""
    value = value.strip()
    try:
        if value.startswith("data:"):
            inline = parse_data_url(value)
            if inline is None:
                raise ValueError("malformed data URL")
            return base64.b64decode(inline.data, validate=True)
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"photo is not valid base64: {e}") from e


def parse_slot_image(value: str, machine: SessionStateMachine) -> ImageRef:
    ref = parse_image_string(value)
    if ref is None:
        raise HTTPException(status_code=422, detail="image must be a data URL or an http(s) URL")
    if isinstance(ref, LocalHandle) and ref.handle_id not in machine.state.handle_ids():
        raise HTTPException(status_code=422, detail="unknown local image handle")
    return ref


@app.exception_handler(SessionBusyError)
async def busy_handler(request: Request, exc: SessionBusyError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(SlotIndexError)
async def slot_index_handler(request: Request, exc: SlotIndexError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.get("/")
async def root():
    """Service info."""
    return {"status": "ok", "service": "Layer VTON API", "version": __version__}


@app.get("/health")
async def health():
    """Configuration health check."""
    config = get_config()
    generation_ok = config.generation.is_configured

    return {
        "status": "ok" if generation_ok else "degraded",
        "generation": "configured" if generation_ok else "missing api key",
        "remote_store": "enabled" if config.supabase.enabled else "disabled",
    }


@app.get("/api/session", response_model=SessionView)
async def get_session(x_session_id: str | None = Header(default=None)):
    machine = await get_session_machine(x_session_id)
    return SessionView.from_machine(machine)


@app.post("/api/session/restore", response_model=SessionView)
async def restore_session(x_session_id: str | None = Header(default=None)):
    """Load the last saved state for this session."""
    machine = await get_session_machine(x_session_id)
    await machine.restore()
    return SessionView.from_machine(machine)


@app.post("/api/session/photo", response_model=SessionView)
async def upload_photo(request: PhotoRequest, x_session_id: str | None = Header(default=None)):
    """Upload a photo and detect its garment layers.

    Returns the session once detection finishes (status READY), or in ERROR
    if the photo could not be read.
    """
    machine = await get_session_machine(x_session_id)
    await machine.upload_photo(decode_photo(request.photo))
    return SessionView.from_machine(machine)


@app.put("/api/session/slots/{category}/{index}", response_model=SessionView)
async def replace_slot(
    category: str,
    index: int,
    request: SlotRequest,
    x_session_id: str | None = Header(default=None),
):
    machine = await get_session_machine(x_session_id)
    await machine.replace_slot(category, index, parse_slot_image(request.image, machine))
    return SessionView.from_machine(machine)


@app.delete("/api/session/slots/{category}/{index}", response_model=SessionView)
async def remove_slot(category: str, index: int, x_session_id: str | None = Header(default=None)):
    machine = await get_session_machine(x_session_id)
    await machine.remove_slot(category, index)
    return SessionView.from_machine(machine)


@app.put("/api/session/prompt", response_model=SessionView)
async def set_prompt(request: PromptRequest, x_session_id: str | None = Header(default=None)):
    machine = await get_session_machine(x_session_id)
    await machine.set_prompt(request.prompt)
    return SessionView.from_machine(machine)


@app.delete("/api/session", response_model=SessionView)
async def reset_session(x_session_id: str | None = Header(default=None)):
    machine = await get_session_machine(x_session_id)
    machine.reset()
    return SessionView.from_machine(machine)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=8000)
