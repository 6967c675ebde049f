"""Shared data types for chat sessions, embedded records and stores."""
from __future__ import annotations

from typing import Dict, List, Literal

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]
Evaluation = Literal["A", "B", "C", "D"]

EVALUATION_LABELS: Dict[str, str] = {
    "A": "深い理解",
    "B": "基本理解",
    "C": "部分的理解",
    "D": "要復習",
}


class Message(BaseModel):
    """A single conversation turn (oldest first in a history)."""

    role: Role
    content: str


class EmbeddedRecord(BaseModel):
    """Learning-session summary smuggled into a tutor reply.

    Validation is strict: every field must already be a JSON string and the
    evaluation one of the four letters. Unknown keys are ignored.
    """

    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)

    subject: str
    topic: str
    evaluation: Evaluation
    summary: str

    @property
    def evaluation_label(self) -> str:
        return EVALUATION_LABELS[self.evaluation]


class Gem(BaseModel):
    """User-authored persona kept in the local persona store."""

    id: str
    name: str
    icon: str = "🤖"
    description: str = ""
    instruction_text: str
    created_at: int = Field(..., description="Epoch milliseconds.")


class LearningLog(BaseModel):
    """Persisted row written for every saved embedded record."""

    id: str
    user_id: str
    subject: str
    topic: str
    evaluation: str
    summary: str = ""
    full_conversation: List[Message] = Field(default_factory=list)
    created_at: str

