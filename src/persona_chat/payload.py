"""Embedded ``[SAVE_DATA: {...}]`` payload detection and decoding.

Tutor replies may carry one machine-readable tag inside ordinary prose::

    よく頑張ったね！[SAVE_DATA: {"subject": "数学", "topic": "二次関数",
                                  "evaluation": "A", "summary": "理解できた"}]

:func:`extract` splits a raw reply into the text the user should see and the
decoded record. The tag is located with a small brace-balancing scanner
rather than a regex, so nested objects and braces inside JSON strings are
handled. Candidate bodies never overlap and each is capped at
``MAX_TAG_CHARS``, so a scan is linear in the reply length.

Rules
-----
- Only the first complete tag counts; later tags stay in the visible text.
- A tag whose braces do not balance within ``MAX_TAG_CHARS`` is not a tag
  (text returned unchanged). Markers inside such a body are part of it.
- A tag whose body is not a JSON object leaves the text unchanged.
- A JSON object that does not fit :class:`EmbeddedRecord` is stripped but
  reported through ``Extraction.rejected`` instead of ``record``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .models import EmbeddedRecord

TAG_NAME = "SAVE_DATA"
TAG_OPEN = "[" + TAG_NAME + ":"
# Longest JSON body considered; real records are a few hundred characters.
MAX_TAG_CHARS = 4096


@dataclass(frozen=True)
class Extraction:
    visible_text: str
    record: Optional[EmbeddedRecord] = None
    rejected: Optional[Dict[str, Any]] = None

    @property
    def has_record(self) -> bool:
        return self.record is not None


# -----------------------------
# Scanner
# -----------------------------
def _skip_ws(text: str, i: int) -> int:
    n = len(text)
    while i < n and text[i].isspace():
        i += 1
    return i


def _balanced_object_end(text: str, start: int, limit: int) -> int:
    """Return the index just past the ``}`` closing the ``{`` at *start*, or -1.

    Scanning stops at *limit*.
    """
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, limit):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def find_tag(text: str) -> Optional[Tuple[int, int, str]]:
    """Locate the first complete tag.

    Returns ``(span_start, span_end, json_body)`` or None.
    """
    n = len(text)
    pos = 0
    while True:
        start = text.find(TAG_OPEN, pos)
        if start < 0:
            return None
        pos = start + len(TAG_OPEN)

        body_start = _skip_ws(text, pos)
        if body_start >= n or text[body_start] != "{":
            continue
        limit = min(n, body_start + MAX_TAG_CHARS)
        body_end = _balanced_object_end(text, body_start, limit)
        if body_end < 0:
            # Resume after the scanned window; no character is scanned twice.
            pos = limit
            continue
        close = _skip_ws(text, body_end)
        if close >= n or text[close] != "]":
            pos = body_end
            continue
        return start, close + 1, text[body_start:body_end]


def contains_tag(text: str) -> bool:
    return find_tag(text or "") is not None


# -----------------------------
# Decoding
# -----------------------------
def _strip_span(text: str, start: int, end: int) -> str:
    before, after = text[:start], text[end:]
    left, right = before.rstrip(), after.lstrip()
    gap = before[len(left):] + after[: len(after) - len(right)]
    # Collapse the gap around the removed tag, keeping line and paragraph breaks.
    if not (left and right and gap):
        sep = ""
    elif "\n" in gap:
        sep = "\n\n" if gap.count("\n") > 1 else "\n"
    else:
        sep = " "
    return (left + sep + right).strip()


def extract(raw_reply: str) -> Extraction:
    """Split *raw_reply* into visible text and an optional embedded record."""
    text = raw_reply or ""
    found = find_tag(text)
    if found is None:
        return Extraction(visible_text=text)

    start, end, body = found
    try:
        payload = json.loads(body)
    except ValueError:
        return Extraction(visible_text=text)
    if not isinstance(payload, dict):
        return Extraction(visible_text=text)

    visible = _strip_span(text, start, end)
    try:
        record = EmbeddedRecord.model_validate(payload)
    except ValidationError:
        return Extraction(visible_text=visible, rejected=payload)
    return Extraction(visible_text=visible, record=record)
