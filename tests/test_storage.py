from __future__ import annotations

from pathlib import Path

from persona_chat.auth import Principal
from persona_chat.models import EmbeddedRecord, Message
from persona_chat.storage import GemStore, LearningLogStore


def _record(subject: str, evaluation: str = "B") -> EmbeddedRecord:
    return EmbeddedRecord(subject=subject, topic="t", evaluation=evaluation, summary="s")


def test_learning_logs_roundtrip_newest_first(tmp_path: Path):
    store = LearningLogStore(str(tmp_path))
    alice, bob = Principal("alice"), Principal("bob")
    transcript = [Message(role="user", content="はい"), Message(role="assistant", content="記録したよ")]

    store.insert(alice, _record("数学", "A"), transcript)
    store.insert(bob, _record("英語"), transcript)
    store.insert(alice, _record("理科", "D"), transcript)

    assert [log.subject for log in store.list_all(alice)] == ["理科", "英語", "数学"]
    mine = store.list_for(alice)
    assert [log.subject for log in mine] == ["理科", "数学"]
    assert mine[-1].evaluation == "A"
    assert mine[-1].summary == "s"
    assert mine[-1].full_conversation == transcript

    # A fresh store instance reads the same file.
    assert len(LearningLogStore(str(tmp_path)).list_all(bob)) == 3


def test_corrupt_log_file_is_moved_aside(tmp_path: Path):
    (tmp_path / "learning_logs.json").write_text("{not json", encoding="utf-8")
    store = LearningLogStore(str(tmp_path))
    assert store.list_all(Principal("x")) == []
    assert (tmp_path / "learning_logs.corrupt.json").exists()


def test_gem_crud(tmp_path: Path):
    store = GemStore(str(tmp_path))
    assert store.list() == []

    first = store.create("英会話の先生", "You are a friendly English teacher.", icon="🇬🇧")
    second = store.create("料理アドバイザー", "あなたはプロの料理人です。", description="献立の相談")

    assert [g.id for g in store.list()] == [second.id, first.id]
    assert store.get(first.id).icon == "🇬🇧"
    assert store.get("missing") is None
    assert first.created_at > 0

    updated = store.update(first.id, name="English Coach", id="hijack")
    assert updated.name == "English Coach"
    assert updated.id == first.id
    assert store.update("missing", name="x") is None

    assert store.delete(first.id) is True
    assert store.delete(first.id) is False
    assert [g.name for g in store.list()] == ["料理アドバイザー"]
