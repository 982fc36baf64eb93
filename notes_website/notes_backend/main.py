"""
FastAPI application for the notes service.

Run with ``uvicorn notes_backend.main:create_app --factory`` or execute this
module directly. Routes are grouped as:
- authentication (register, login, logout, password, avatar)
- notes and folders
- history of recently accessed notes
- system (root, health)
"""

import asyncio
import contextlib
import json
import logging
import os
import re
import sys
from typing import Optional
from urllib.parse import unquote_to_bytes

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from . import __version__
from .codec import decode_note_id, encode_note_id, require_note_id
from .config import Settings, load_settings
from .domain import AuthError, FOLDER, ForbiddenError, NotesError
from .history import HistoryStore
from .models import (FolderData, HistoryResponse, HistoryUpload, ImageData, LoginResponse, MessageResponse,
                     MoveData, NoteData, NoteResponse, NotesListResponse, NoteUpdate, PasswordChange,
                     PinnedData, UserCreds, UserResponse)
from .services import AuthService, Notebook, Storage
from .utils import time_now

logger = logging.getLogger(__name__)

MALFORMED_ESCAPE = re.compile(rb"%(?![0-9A-Fa-f]{2})")

router = APIRouter()


def configure_logging(debug: bool = False):
    """Send log records to stderr; DEBUG level when debug is on."""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)


def is_uri_valid(raw_path: bytes) -> bool:
    """True if the raw request path percent-decodes to valid UTF-8."""
    if MALFORMED_ESCAPE.search(raw_path):
        return False
    try:
        unquote_to_bytes(raw_path).decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


@contextlib.contextmanager
def handle_errors(action: str):
    """Translate service exceptions into HTTP errors for one route."""
    try:
        yield
    except HTTPException:
        raise
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except NotesError as e:
        if e.status_code >= 500:
            logger.error("%s error: %s", action, e)
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except Exception:
        logger.exception("%s error", action)
        raise HTTPException(status_code=500, detail="Internal server error")


# -------------------------------
# Dependencies
# -------------------------------

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_notebook(request: Request) -> Notebook:
    return request.app.state.notebook


def get_history(request: Request) -> HistoryStore:
    return request.app.state.history


def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Resolve the Authorization header to a user id, or answer 401."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    try:
        return request.app.state.auth.validate(authorization)
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))


def referer_folder(request: Request) -> Optional[str]:
    """The encoded folder id the browser was looking at: the Referer's query string."""
    referer = request.headers.get("referer")
    if not referer or "?" not in referer:
        return None
    query = referer.split("?", 1)[1].split("#", 1)[0].split("&", 1)[0]
    return query or None


def _folder_id(encoded: Optional[str]) -> Optional[str]:
    return require_note_id(encoded) if encoded else None


async def _forget_note(history: HistoryStore, user_id: str, note_id: str):
    try:
        await history.delete_one(user_id, note_id)
    except NotesError as e:
        logger.warning("drop %s from history of %s failed: %s", note_id, user_id, e)


# -------------------------------
# Authentication
# -------------------------------

@router.post("/register", response_model=UserResponse)
def register(creds: UserCreds, auth: AuthService = Depends(get_auth),
             settings: Settings = Depends(get_settings)):
    with handle_errors("Registration"):
        if not settings.allow_email_register:
            raise ForbiddenError("Email registration is disabled")
        try:
            uid = auth.add_user(creds.email, creds.password)
        except AuthError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return UserResponse(success=True, user_id=uid)


@router.post("/login", response_model=LoginResponse)
def login(creds: UserCreds, auth: AuthService = Depends(get_auth)):
    with handle_errors("Login"):
        return LoginResponse(success=True, token=auth.login(creds.email, creds.password))


@router.post("/logout", response_model=MessageResponse)
def logout(authorization: str = Header(...), auth: AuthService = Depends(get_auth)):
    with handle_errors("Logout"):
        if auth.logout(authorization):
            return MessageResponse(success=True, message="Logged out successfully")
        return MessageResponse(success=False, message="Already logged out")


@router.post("/password", response_model=MessageResponse)
def change_password(data: PasswordChange, user_id: str = Depends(get_current_user),
                    auth: AuthService = Depends(get_auth)):
    with handle_errors("Change password"):
        auth.change_password(user_id, data.password, data.new_password)
        return MessageResponse(success=True, message="Password changed")


@router.post("/image", response_model=MessageResponse)
def set_image(data: ImageData, user_id: str = Depends(get_current_user),
              auth: AuthService = Depends(get_auth)):
    with handle_errors("Set image"):
        auth.set_image(user_id, data.url)
        return MessageResponse(success=True, message="Image updated")


# -------------------------------
# Notes and folders
# -------------------------------

@router.post("/notes", response_model=NoteResponse)
def add_note(note: NoteData, background_tasks: BackgroundTasks,
             user_id: str = Depends(get_current_user), notebook: Notebook = Depends(get_notebook),
             history: HistoryStore = Depends(get_history)):
    with handle_errors("Add note"):
        created = notebook.create_note(user_id, note.content, _folder_id(note.parent))
        background_tasks.add_task(history.upsert_on_access, user_id, encode_note_id(created.id),
                                  created.content, created.updated_at)
        return NoteResponse(success=True, note=created.to_dict(encode_note_id))


@router.get("/notes", response_model=NotesListResponse)
def list_notes(parent: Optional[str] = None, user_id: str = Depends(get_current_user),
               notebook: Notebook = Depends(get_notebook)):
    with handle_errors("List notes"):
        notes = [n.to_dict(encode_note_id) for n in notebook.list_folder(user_id, _folder_id(parent))]
        return NotesListResponse(success=True, notes=notes, count=len(notes))


@router.get("/notes/{note_id}", response_model=NoteResponse)
def get_note(note_id: str, background_tasks: BackgroundTasks,
             user_id: str = Depends(get_current_user), notebook: Notebook = Depends(get_notebook),
             history: HistoryStore = Depends(get_history)):
    with handle_errors("Get note"):
        note = notebook.open_note(user_id, require_note_id(note_id))
        background_tasks.add_task(history.upsert_on_access, user_id, encode_note_id(note.id), note.content)
        return NoteResponse(success=True, note=note.to_dict(encode_note_id))


@router.put("/notes/{note_id}", response_model=NoteResponse)
def update_note(note_id: str, data: NoteUpdate, background_tasks: BackgroundTasks,
                user_id: str = Depends(get_current_user), notebook: Notebook = Depends(get_notebook),
                history: HistoryStore = Depends(get_history)):
    with handle_errors("Update note"):
        note = notebook.edit_note(user_id, require_note_id(note_id), data.content)
        background_tasks.add_task(history.upsert_on_access, user_id, encode_note_id(note.id), note.content,
                                  note.updated_at)
        return NoteResponse(success=True, note=note.to_dict(encode_note_id))


@router.delete("/notes/{note_id}", response_model=MessageResponse)
def delete_note(note_id: str, background_tasks: BackgroundTasks,
                user_id: str = Depends(get_current_user), notebook: Notebook = Depends(get_notebook),
                history: HistoryStore = Depends(get_history)):
    with handle_errors("Delete note"):
        internal = require_note_id(note_id)
        notebook.remove_note(user_id, internal)
        background_tasks.add_task(_forget_note, history, user_id, encode_note_id(internal))
        return MessageResponse(success=True, message="Note deleted successfully")


@router.post("/notes/{note_id}/move", response_model=NoteResponse)
def move_note(note_id: str, data: MoveData, user_id: str = Depends(get_current_user),
              notebook: Notebook = Depends(get_notebook)):
    with handle_errors("Move note"):
        note = notebook.move_note(user_id, require_note_id(note_id), _folder_id(data.folder_id))
        return NoteResponse(success=True, note=note.to_dict(encode_note_id))


@router.post("/folders", response_model=NoteResponse)
def new_folder(data: FolderData, request: Request, user_id: str = Depends(get_current_user),
               notebook: Notebook = Depends(get_notebook)):
    with handle_errors("Add folder"):
        parent = data.parent or referer_folder(request)
        folder = notebook.new_folder(user_id, data.name, _folder_id(parent))
        return NoteResponse(success=True, note=folder.to_dict(encode_note_id))


@router.delete("/folders/{folder_id}", response_model=MessageResponse)
def remove_folder(folder_id: str, user_id: str = Depends(get_current_user),
                  notebook: Notebook = Depends(get_notebook)):
    with handle_errors("Remove folder"):
        notebook.remove_folder(user_id, require_note_id(folder_id))
        return MessageResponse(success=True, message="Folder deleted successfully")


# -------------------------------
# History
# -------------------------------

@router.get("/history", response_model=HistoryResponse)
async def history_get(request: Request, user_id: str = Depends(get_current_user),
                      history: HistoryStore = Depends(get_history)):
    with handle_errors("Read history"):
        parent_id = None
        folder = referer_folder(request)
        if folder:
            parent_id = decode_note_id(folder)
            if parent_id is None or await asyncio.to_thread(history.store.count_notes, user_id, parent_id, FOLDER) == 0:
                raise HTTPException(status_code=404, detail="Folder not found")
        return HistoryResponse(history=await history.get(user_id, parent_id))


@router.post("/history")
async def history_post(body: Optional[HistoryUpload] = None, user_id: str = Depends(get_current_user),
                       history: HistoryStore = Depends(get_history),
                       settings: Settings = Depends(get_settings)):
    with handle_errors("Set history"):
        if body is None or body.history is None:
            raise HTTPException(status_code=400, detail="history is required")
        if settings.debug:
            logger.debug("received history from [%s]: %s", user_id, body.history)
        try:
            entries = json.loads(body.history)
        except ValueError:
            raise HTTPException(status_code=400, detail="history is not valid JSON")
        if not isinstance(entries, list):
            raise HTTPException(status_code=400, detail="history must be an array")
        if not all(isinstance(e, dict) and isinstance(e.get("id"), str) and e["id"] for e in entries):
            raise HTTPException(status_code=400, detail="every history item needs an id")
        await history.replace_all(user_id, entries)
        return Response(status_code=200)


@router.post("/history/{note_id}")
async def history_pin(note_id: str, body: Optional[PinnedData] = None,
                      user_id: str = Depends(get_current_user), history: HistoryStore = Depends(get_history)):
    with handle_errors("Pin history"):
        if body is None or body.pinned is None:
            raise HTTPException(status_code=400, detail="pinned is required")
        await history.set_pinned(user_id, note_id, body.pinned)
        return Response(status_code=200)


@router.delete("/history")
async def history_clear(user_id: str = Depends(get_current_user), history: HistoryStore = Depends(get_history)):
    with handle_errors("Clear history"):
        await history.delete_all(user_id)
        return Response(status_code=200)


@router.delete("/history/{note_id}")
async def history_delete(note_id: str, user_id: str = Depends(get_current_user),
                         history: HistoryStore = Depends(get_history)):
    with handle_errors("Delete history"):
        await history.delete_one(user_id, note_id)
        return Response(status_code=200)


# -------------------------------
# System
# -------------------------------

@router.get("/")
async def read_root(settings: Settings = Depends(get_settings)):
    if settings.website_dir:
        index_path = os.path.join(settings.website_dir, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
    return {"message": "Notes API is running", "version": __version__}


@router.get("/health")
def health_check(request: Request):
    settings = request.app.state.settings
    return {
        "status": "healthy",
        "timestamp": time_now(),
        "users_count": request.app.state.auth.user_count(),
        "database_files": {
            "users_db": os.path.exists(settings.users_db_path),
            "notes_db": os.path.exists(settings.notes_db_path),
        },
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application and its services from settings (environment by default)."""
    settings = settings or load_settings()
    configure_logging(settings.debug)

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Notes API starting up (users db %s, notes db %s)",
                    settings.users_db_path, settings.notes_db_path)
        yield
        logger.info("Notes API shutting down")

    app = FastAPI(title="Notes API", description="Notes, folders and per-user history",
                  version=__version__, lifespan=lifespan)

    auth = AuthService(settings.users_db_path)
    store = Storage(settings.notes_db_path)
    app.state.settings = settings
    app.state.auth = auth
    app.state.notebook = Notebook(store)
    app.state.history = HistoryStore(auth, store, serialize_writes=settings.history_serialize_writes)

    @app.middleware("http")
    async def check_uri_valid(request: Request, call_next):
        raw_path = request.scope.get("raw_path") or request.url.path.encode()
        if not is_uri_valid(raw_path):
            logger.error("malformed request path: %r", raw_path)
            return JSONResponse(status_code=400, content={"detail": "Bad request"})
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    if settings.website_dir and os.path.isdir(settings.website_dir):
        app.mount("/static", StaticFiles(directory=settings.website_dir), name="static")

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
