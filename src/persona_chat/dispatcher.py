"""Persisting embedded records and the transient notices that report it."""
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Sequence

from .auth import Principal
from .models import EmbeddedRecord, Message

logger = logging.getLogger(__name__)


# -----------------------------
# Errors & results
# -----------------------------
class DispatchError(Exception):
    pass


class Unauthenticated(DispatchError):
    def __init__(self, message: str = "認証されていません。ログインしてください。") -> None:
        super().__init__(message)


class PersistenceError(DispatchError):
    pass


@dataclass(frozen=True)
class SaveResult:
    subject: str
    evaluation: str
    log_id: Optional[str] = None


class LogSink(Protocol):
    def insert(self, principal: Principal, record: EmbeddedRecord, transcript: Sequence[Message]): ...


# -----------------------------
# Dispatcher
# -----------------------------
class SaveDispatcher:
    """Hands one record plus transcript snapshot to the log store.

    ``principal`` is resolved lazily through ``principal_provider`` so a
    session opened anonymously can still save once its owner signs in.
    """

    def __init__(self, store: LogSink, principal_provider: Callable[[], Optional[Principal]]) -> None:
        self.store = store
        self.principal_provider = principal_provider

    async def dispatch(self, record: EmbeddedRecord, transcript: Sequence[Message]) -> SaveResult:
        principal = self.principal_provider()
        if principal is None:
            raise Unauthenticated()

        snapshot = [Message(role=m.role, content=m.content) for m in transcript]
        try:
            # Stores are synchronous file/DB clients; keep the event loop free.
            saved = await asyncio.to_thread(self.store.insert, principal, record, snapshot)
        except Exception as e:
            logger.exception("Failed to persist learning log for %s", principal.user_id)
            raise PersistenceError(str(e) or "学習記録の保存に失敗しました。") from e
        return SaveResult(
            subject=record.subject,
            evaluation=record.evaluation,
            log_id=getattr(saved, "id", None),
        )


# -----------------------------
# Notices
# -----------------------------
@dataclass
class Notice:
    kind: str            # "success" | "failure"
    text: str
    expires_at: float
    id: int

    def to_dict(self) -> dict:
        return {"id": self.id, "kind": self.kind, "text": self.text}


def success_notice_text(result: SaveResult) -> str:
    return f"✅ 学習記録を保存しました（{result.subject} / 評価: {result.evaluation}）"


def failure_notice_text(message: str) -> str:
    return f"⚠️ 保存失敗: {message}"


class NoticeBoard:
    """Short-lived notices; each disappears ``ttl`` seconds after posting."""

    def __init__(self, ttl: float = 4.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = float(ttl)
        self._clock = clock
        self._notices: List[Notice] = []
        self._ids = itertools.count(1)

    def post(self, kind: str, text: str) -> Notice:
        notice = Notice(kind=kind, text=text, expires_at=self._clock() + self.ttl, id=next(self._ids))
        self._notices.append(notice)
        return notice

    def active(self) -> List[Notice]:
        now = self._clock()
        self._notices = [n for n in self._notices if n.expires_at > now]
        return list(self._notices)

    def dismiss(self, notice_id: int) -> bool:
        before = len(self._notices)
        self._notices = [n for n in self._notices if n.id != notice_id]
        return len(self._notices) != before
