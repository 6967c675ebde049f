"""Disk-backed stores for learning logs and Gems (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .auth import Principal
from .models import EmbeddedRecord, Gem, LearningLog, Message

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a store cannot read or write its backing file."""


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class _JsonListFile:
    """A JSON array on disk guarded by a re-entrant lock."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock = threading.RLock()

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = _read_json(self.path)
        except (OSError, ValueError):
            # Corruption fallback: keep a backup and start fresh.
            logger.warning("Unreadable store file %s; moving it aside", self.path)
            with self.lock:
                try:
                    self.path.rename(self.path.with_suffix(".corrupt.json"))
                except OSError:
                    pass
            return []
        return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []

    def save(self, rows: List[Dict[str, Any]]) -> None:
        try:
            _write_json(self.path, rows)
        except OSError as e:
            raise StoreError(f"failed to write {self.path.name}: {e}") from e


# -----------------------------
# Learning logs
# -----------------------------
class LearningLogStore:
    """Append-only log of saved tutoring sessions.

    Layout:
        data_dir/
          learning_logs.json    # list[LearningLog] in insertion order
    """

    filename = "learning_logs.json"

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._file = _JsonListFile(self.root / self.filename)

    def insert(self, principal: Principal, record: EmbeddedRecord, transcript: Sequence[Message]) -> LearningLog:
        log = LearningLog(
            id=uuid.uuid4().hex,
            user_id=principal.user_id,
            subject=record.subject,
            topic=record.topic,
            evaluation=record.evaluation,
            summary=record.summary,
            full_conversation=[Message(role=m.role, content=m.content) for m in transcript],
            created_at=_utc_iso(),
        )
        with self._file.lock:
            rows = self._file.load()
            rows.append(log.model_dump())
            self._file.save(rows)
        logger.info("Saved learning log %s for %s (%s / %s)", log.id, log.user_id, log.subject, record.evaluation_label)
        return log

    def _rows(self) -> List[LearningLog]:
        logs: List[LearningLog] = []
        for row in self._file.load():
            try:
                logs.append(LearningLog.model_validate(row))
            except ValueError:
                logger.warning("Skipping malformed learning log row: %r", row.get("id"))
        # Newest first; insertion order breaks timestamp ties.
        ranked = sorted(enumerate(logs), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [log for _, log in ranked]

    def list_all(self, principal: Principal) -> List[LearningLog]:
        """Every saved log, newest first (admin view)."""
        return self._rows()

    def list_for(self, principal: Principal) -> List[LearningLog]:
        return [r for r in self._rows() if r.user_id == principal.user_id]


# -----------------------------
# Gems
# -----------------------------
class GemStore:
    """Locally stored user personas, newest first."""

    filename = "gems.json"

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self._file = _JsonListFile(self.root / self.filename)

    def list(self) -> List[Gem]:
        gems: List[Gem] = []
        for row in self._file.load():
            try:
                gems.append(Gem.model_validate(row))
            except ValueError:
                continue
        return gems

    def get(self, gem_id: str) -> Optional[Gem]:
        for gem in self.list():
            if gem.id == gem_id:
                return gem
        return None

    def create(self, name: str, instruction_text: str, *, icon: str = "🤖", description: str = "") -> Gem:
        gem = Gem(
            id=str(uuid.uuid4()),
            name=name,
            icon=icon,
            description=description,
            instruction_text=instruction_text,
            created_at=int(time.time() * 1000),
        )
        with self._file.lock:
            rows = self._file.load()
            rows.insert(0, gem.model_dump())
            self._file.save(rows)
        return gem

    def update(self, gem_id: str, **fields: Any) -> Optional[Gem]:
        allowed = {"name", "icon", "description", "instruction_text"}
        changes = {k: v for k, v in fields.items() if k in allowed and v is not None}
        with self._file.lock:
            rows = self._file.load()
            for i, row in enumerate(rows):
                if row.get("id") == gem_id:
                    rows[i] = {**row, **changes}
                    self._file.save(rows)
                    return Gem.model_validate(rows[i])
        return None

    def delete(self, gem_id: str) -> bool:
        with self._file.lock:
            rows = self._file.load()
            kept = [r for r in rows if r.get("id") != gem_id]
            if len(kept) == len(rows):
                return False
            self._file.save(kept)
        return True
