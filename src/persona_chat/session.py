"""Conversation sessions: turn handling for one chat instance each.

A turn runs strictly in order: append the user message, ask the gateway,
split the reply with :func:`payload.extract`, append the visible text, then
hand any record to the dispatcher. Only one turn may be in flight per
session; a second ``submit`` during a pending turn is ignored, not queued.
"""
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from .dispatcher import (
    DispatchError,
    Notice,
    NoticeBoard,
    SaveDispatcher,
    failure_notice_text,
    success_notice_text,
)
from .gateway import GatewayError
from .models import EmbeddedRecord, Message
from .payload import extract
from .personas import Persona
from .speech import SpeechController

logger = logging.getLogger(__name__)

ReplyListener = Callable[[Message], None]


class Gateway(Protocol):
    async def complete(
        self,
        instruction: str,
        history: Sequence[Message],
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str: ...


@dataclass
class TurnResult:
    # "ok" | "error" | "rejected" | "ignored"
    status: str
    reply: Optional[str] = None
    record: Optional[EmbeddedRecord] = None
    notice: Optional[Notice] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


class ConversationSession:
    def __init__(
        self,
        persona: Persona,
        gateway: Gateway,
        *,
        dispatcher: Optional[SaveDispatcher] = None,
        speech: Optional[SpeechController] = None,
        notices: Optional[NoticeBoard] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex
        self.persona = persona
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.speech = speech or SpeechController()
        self.notices = notices or NoticeBoard()
        self._history: List[Message] = []
        self._in_flight = False
        self._reply_listeners: List[ReplyListener] = []

        if persona.greeting:
            greeting = Message(role="assistant", content=persona.greeting)
            self._history.append(greeting)
            self.speech.speak(greeting.content)

    # --------- state ----------
    @property
    def busy(self) -> bool:
        return self._in_flight

    @property
    def messages(self) -> List[Message]:
        return [m.model_copy() for m in self._history]

    def on_reply(self, listener: ReplyListener) -> None:
        """Register a callback fired as soon as an assistant message is appended."""
        self._reply_listeners.append(listener)

    def close(self) -> None:
        self.speech.cancel_all()

    # --------- turns ----------
    async def submit(self, text: str) -> TurnResult:
        trimmed = (text or "").strip()
        if not trimmed:
            return TurnResult(status="rejected", error="メッセージが空です。")
        if self._in_flight:
            logger.debug("Session %s: submit ignored, turn already in flight", self.id)
            return TurnResult(status="ignored")

        self._history.append(Message(role="user", content=trimmed))
        return await self._run_turn()

    async def retry(self) -> TurnResult:
        """Resend the pending user message left behind by a failed turn."""
        if self._in_flight:
            return TurnResult(status="ignored")
        if not self._history or self._history[-1].role != "user":
            return TurnResult(status="rejected", error="再送信するメッセージがありません。")
        return await self._run_turn()

    async def _run_turn(self) -> TurnResult:
        self._in_flight = True
        try:
            try:
                raw = await self.gateway.complete(
                    self.persona.instruction,
                    list(self._history),
                    model=self.persona.model,
                    temperature=self.persona.temperature,
                    max_tokens=self.persona.max_tokens,
                )
            except GatewayError as e:
                logger.warning("Session %s: gateway failed (%s): %s", self.id, e.kind, e)
                return TurnResult(
                    status="error",
                    error=e.user_message,
                    error_kind=e.kind,
                    status_code=e.status_code,
                )

            extraction = extract(raw)
            if extraction.rejected is not None:
                logger.info("Session %s: discarded malformed record %r", self.id, extraction.rejected)

            reply = Message(role="assistant", content=extraction.visible_text)
            self._history.append(reply)
            self._notify(reply)
            self.speech.speak(reply.content)

            notice = None
            if extraction.record is not None and self.dispatcher is not None:
                notice = await self._dispatch(extraction.record)

            return TurnResult(status="ok", reply=reply.content, record=extraction.record, notice=notice)
        finally:
            self._in_flight = False

    async def _dispatch(self, record: EmbeddedRecord) -> Notice:
        try:
            result = await self.dispatcher.dispatch(record, self.messages)
        except DispatchError as e:
            logger.warning("Session %s: record not saved: %s", self.id, e)
            return self.notices.post("failure", failure_notice_text(str(e)))
        return self.notices.post("success", success_notice_text(result))

    def _notify(self, message: Message) -> None:
        for listener in list(self._reply_listeners):
            try:
                listener(message)
            except Exception:
                logger.exception("Reply listener failed in session %s", self.id)


# -----------------------------
# Registry
# -----------------------------
class SessionRegistry:
    """In-memory map of live sessions. Dropping a session discards its transcript.

    With ``idle_ttl`` set, a session not looked up for that many seconds is
    closed and forgotten on the next ``add`` or ``get``; ``on_evict`` is told
    its id. Sessions with a turn in flight are never evicted.
    """

    def __init__(
        self,
        idle_ttl: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_evict: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.idle_ttl = idle_ttl
        self.clock = clock
        self.on_evict = on_evict
        self._sessions: Dict[str, ConversationSession] = {}
        self._last_used: Dict[str, float] = {}

    def add(self, session: ConversationSession) -> ConversationSession:
        self.sweep()
        self._sessions[session.id] = session
        self._last_used[session.id] = self.clock()
        return session

    def get(self, session_id: str) -> Optional[ConversationSession]:
        self.sweep()
        session = self._sessions.get(session_id)
        if session is not None:
            self._last_used[session_id] = self.clock()
        return session

    def drop(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        self._last_used.pop(session_id, None)
        if session is None:
            return False
        session.close()
        return True

    def sweep(self) -> List[str]:
        """Evict idle sessions; returns the evicted ids."""
        if not self.idle_ttl or self.idle_ttl <= 0:
            return []
        cutoff = self.clock() - self.idle_ttl
        stale = [
            sid
            for sid, used in self._last_used.items()
            if used <= cutoff and not self._sessions[sid].busy
        ]
        for sid in stale:
            self.drop(sid)
            logger.info("Evicted idle session %s", sid)
            if self.on_evict is not None:
                self.on_evict(sid)
        return stale

    def __len__(self) -> int:
        return len(self._sessions)
