"""FastAPI application exposing persona chat sessions, Gems and learning logs."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import Principal, TokenAuth, bearer_token
from .config import load_config
from .dispatcher import NoticeBoard, SaveDispatcher
from .gateway import create_from_config
from .models import EmbeddedRecord, Gem, LearningLog, Message
from .personas import BUILTIN_PERSONAS, Persona, get_builtin
from .session import ConversationSession, Gateway, SessionRegistry, TurnResult
from .speech import SpeechBackend, SpeechController
from .storage import GemStore, LearningLogStore

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request/response
# -----------------------------
class SessionCreate(BaseModel):
    persona: str = Field(..., description="'coach', 'tutor' or 'gem'.")
    gem_id: Optional[str] = None


class SessionView(BaseModel):
    session_id: str
    persona: Dict[str, Any]
    busy: bool = False
    messages: List[Message]
    notices: List[Dict[str, Any]] = Field(default_factory=list)


class ChatRequest(BaseModel):
    message: str


class ChatResponse(BaseModel):
    reply: str
    record: Optional[EmbeddedRecord] = None
    notice: Optional[Dict[str, Any]] = None


class GemCreate(BaseModel):
    name: str
    instruction_text: str
    icon: str = "🤖"
    description: str = ""


class GemUpdate(BaseModel):
    name: Optional[str] = None
    instruction_text: Optional[str] = None
    icon: Optional[str] = None
    description: Optional[str] = None


# -----------------------------
# Utilities
# -----------------------------
def _session_view(session: ConversationSession) -> SessionView:
    return SessionView(
        session_id=session.id,
        persona=session.persona.public(),
        busy=session.busy,
        messages=session.messages,
        notices=[n.to_dict() for n in session.notices.active()],
    )


def _data_dir(cfg: Dict[str, Any]) -> str:
    return str((cfg.get("storage") or {}).get("data_dir") or "data")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    gateway: Optional[Gateway] = None,
    log_store: Optional[LearningLogStore] = None,
    gem_store: Optional[GemStore] = None,
    auth: Optional[TokenAuth] = None,
    speech_backend: Optional[SpeechBackend] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    notice_ttl = float((cfg.get("notices") or {}).get("ttl_seconds", 4.0))
    speech_enabled = bool((cfg.get("speech") or {}).get("enabled", True))
    idle_ttl = float((cfg.get("sessions") or {}).get("idle_ttl_seconds") or 0)

    # Services
    gateway = gateway or create_from_config(cfg)
    log_store = log_store or LearningLogStore(_data_dir(cfg))
    gem_store = gem_store or GemStore(_data_dir(cfg))
    auth = auth or TokenAuth.from_config(cfg)
    # Latest principal seen per session; records are saved on its behalf.
    owners: Dict[str, Optional[Principal]] = {}
    sessions = SessionRegistry(idle_ttl, on_evict=lambda sid: owners.pop(sid, None))

    app = FastAPI(title="Persona Chat Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.sessions = sessions
    app.state.owners = owners

    def current_principal(authorization: Optional[str] = Header(default=None)) -> Optional[Principal]:
        return auth.resolve(bearer_token(authorization))

    def require_principal(principal: Optional[Principal] = Depends(current_principal)) -> Principal:
        if principal is None:
            raise HTTPException(status_code=401, detail="認証されていません。")
        return principal

    def get_session(session_id: str) -> ConversationSession:
        session = sessions.get(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found.")
        return session

    def _open_session(persona: Persona, principal: Optional[Principal]) -> ConversationSession:
        session = ConversationSession(
            persona,
            gateway,
            speech=SpeechController(speech_backend, enabled=speech_enabled),
            notices=NoticeBoard(ttl=notice_ttl),
        )
        if persona.records:
            session.dispatcher = SaveDispatcher(log_store, lambda: owners.get(session.id))
        owners[session.id] = principal
        logger.info("Opened %s session %s", persona.key, session.id)
        return sessions.add(session)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": len(sessions),
            "data_dir": str(log_store.root),
            "config_keys": list(cfg.keys()),
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        # Token table is credentials; never echo it.
        redacted = dict(cfg)
        redacted["auth"] = {"tokens": "<redacted>"}
        return JSONResponse(redacted)

    # --------- personas & sessions ----------
    @app.get("/personas")
    def list_personas() -> List[Dict[str, Any]]:
        return [p.public() for p in BUILTIN_PERSONAS.values()]

    @app.post("/sessions", response_model=SessionView, status_code=201)
    def create_session(req: SessionCreate, principal: Optional[Principal] = Depends(current_principal)):
        if req.persona == "gem":
            gem = gem_store.get(req.gem_id or "")
            if gem is None:
                raise HTTPException(status_code=404, detail="Gem not found.")
            persona = Persona.from_gem(gem)
        else:
            persona = get_builtin(req.persona)
            if persona is None:
                raise HTTPException(status_code=404, detail=f"Unknown persona: {req.persona}")
        return _session_view(_open_session(persona, principal))

    @app.get("/sessions/{session_id}", response_model=SessionView)
    def read_session(session: ConversationSession = Depends(get_session)):
        return _session_view(session)

    @app.delete("/sessions/{session_id}", status_code=204)
    def drop_session(session_id: str) -> None:
        if not sessions.drop(session_id):
            raise HTTPException(status_code=404, detail="Session not found.")
        owners.pop(session_id, None)

    @app.get("/sessions/{session_id}/notices")
    def read_notices(session: ConversationSession = Depends(get_session)) -> List[Dict[str, Any]]:
        return [n.to_dict() for n in session.notices.active()]

    def _turn_response(result: TurnResult) -> ChatResponse:
        if result.status == "rejected":
            raise HTTPException(status_code=400, detail=result.error)
        if result.status == "ignored":
            raise HTTPException(status_code=409, detail="前のメッセージへの応答を待っています。")
        if result.status == "error":
            raise HTTPException(status_code=result.status_code or 500, detail=result.error)
        return ChatResponse(
            reply=result.reply or "",
            record=result.record,
            notice=result.notice.to_dict() if result.notice else None,
        )

    @app.post("/sessions/{session_id}/messages", response_model=ChatResponse)
    async def send_message(
        req: ChatRequest,
        session: ConversationSession = Depends(get_session),
        principal: Optional[Principal] = Depends(current_principal),
    ):
        if principal is not None:
            owners[session.id] = principal
        result = await session.submit(req.message)
        return _turn_response(result)

    @app.post("/sessions/{session_id}/retry", response_model=ChatResponse)
    async def retry_message(
        session: ConversationSession = Depends(get_session),
        principal: Optional[Principal] = Depends(current_principal),
    ):
        if principal is not None:
            owners[session.id] = principal
        result = await session.retry()
        return _turn_response(result)

    # --------- gems ----------
    @app.get("/gems", response_model=List[Gem])
    def list_gems():
        return gem_store.list()

    @app.post("/gems", response_model=Gem, status_code=201)
    def create_gem(req: GemCreate):
        name, instruction = req.name.strip(), req.instruction_text.strip()
        if not name or not instruction:
            raise HTTPException(status_code=400, detail="名前と命令書（System Instruction）は必須です。")
        return gem_store.create(
            name,
            instruction,
            icon=req.icon or "🤖",
            description=req.description.strip(),
        )

    @app.get("/gems/{gem_id}", response_model=Gem)
    def read_gem(gem_id: str):
        gem = gem_store.get(gem_id)
        if gem is None:
            raise HTTPException(status_code=404, detail="Gem not found.")
        return gem

    @app.patch("/gems/{gem_id}", response_model=Gem)
    def update_gem(gem_id: str, req: GemUpdate):
        changes = req.model_dump(exclude_none=True)
        for key in ("name", "instruction_text", "description"):
            if key in changes:
                changes[key] = changes[key].strip()
        if changes.get("name") == "" or changes.get("instruction_text") == "":
            raise HTTPException(status_code=400, detail="名前と命令書（System Instruction）は必須です。")
        gem = gem_store.update(gem_id, **changes)
        if gem is None:
            raise HTTPException(status_code=404, detail="Gem not found.")
        return gem

    @app.delete("/gems/{gem_id}", status_code=204)
    def delete_gem(gem_id: str) -> None:
        if not gem_store.delete(gem_id):
            raise HTTPException(status_code=404, detail="Gem not found.")

    # --------- learning logs ----------
    @app.get("/logs", response_model=List[LearningLog])
    def list_logs(principal: Principal = Depends(require_principal)):
        return log_store.list_all(principal)

    @app.get("/logs/mine", response_model=List[LearningLog])
    def list_my_logs(principal: Principal = Depends(require_principal)):
        return log_store.list_for(principal)

    return app
