"""Best-effort speech playback of visible reply text.

The platform voice engine is supplied as a :class:`SpeechBackend`. The
controller keeps at most one utterance alive, reports ``start`` / ``end`` /
``cancel`` events to listeners, and never lets a backend failure escape.
"""
from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)

SpeechListener = Callable[[str, "Utterance"], None]


class PlaybackHandle(Protocol):
    def cancel(self) -> None: ...


class SpeechBackend(Protocol):
    def start(self, text: str, on_end: Callable[[], None]) -> PlaybackHandle:
        """Begin playback; call ``on_end`` once playback finishes naturally."""
        ...


class _Done:
    def cancel(self) -> None:
        return None


class NullSpeechBackend:
    """Backend for headless deployments: every utterance ends immediately."""

    lang = "ja-JP"

    def start(self, text: str, on_end: Callable[[], None]) -> PlaybackHandle:
        on_end()
        return _Done()


class Utterance:
    """Handle for one spoken text; ``cancel()`` stops it if still playing."""

    def __init__(self, controller: "SpeechController", text: str, utterance_id: int) -> None:
        self.id = utterance_id
        self.text = text
        self.state = "pending"
        self._controller = controller
        self._playback: Optional[PlaybackHandle] = None

    @property
    def active(self) -> bool:
        return self.state in ("pending", "speaking")

    def cancel(self) -> None:
        self._controller._cancel(self)

    def __repr__(self) -> str:
        return f"Utterance(id={self.id}, state={self.state!r})"


class SpeechController:
    def __init__(self, backend: Optional[SpeechBackend] = None, *, enabled: bool = True) -> None:
        self.backend = backend or NullSpeechBackend()
        self._enabled = enabled
        self._current: Optional[Utterance] = None
        self._listeners: List[SpeechListener] = []
        self._lock = threading.RLock()
        self._ids = itertools.count(1)

    # --------- listeners ----------
    def subscribe(self, listener: SpeechListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str, utt: Utterance) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, utt)
            except Exception:
                logger.debug("Speech listener failed on %s", event, exc_info=True)

    # --------- state ----------
    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, value: bool) -> None:
        self._enabled = bool(value)
        if not self._enabled:
            self.cancel_all()

    @property
    def speaking(self) -> bool:
        with self._lock:
            return self._current is not None and self._current.state == "speaking"

    # --------- core API ----------
    def speak(self, text: str) -> Optional[Utterance]:
        """Speak ``text``, cancelling whatever is playing. Returns None when muted or empty."""
        if not self._enabled or not (text or "").strip():
            return None
        self.cancel_all()

        utt = Utterance(self, text, next(self._ids))
        with self._lock:
            self._current = utt
        utt.state = "speaking"
        self._emit("start", utt)
        try:
            utt._playback = self.backend.start(text, lambda: self._finished(utt))
        except Exception:
            # Playback is best effort; a broken voice engine is not an error for the chat.
            logger.debug("Speech backend failed to start", exc_info=True)
            self._finished(utt)
        return utt

    def cancel_all(self) -> None:
        with self._lock:
            current = self._current
        if current is not None:
            self._cancel(current)

    def _finished(self, utt: Utterance) -> None:
        with self._lock:
            if utt.state != "speaking":
                return
            utt.state = "ended"
            if self._current is utt:
                self._current = None
        self._emit("end", utt)

    def _cancel(self, utt: Utterance) -> None:
        with self._lock:
            if not utt.active:
                return
            utt.state = "cancelled"
            if self._current is utt:
                self._current = None
            playback = utt._playback
        if playback is not None:
            try:
                playback.cancel()
            except Exception:
                logger.debug("Speech backend failed to cancel", exc_info=True)
        self._emit("cancel", utt)
