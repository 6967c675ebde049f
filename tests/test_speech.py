from __future__ import annotations

from persona_chat.speech import NullSpeechBackend, SpeechController


class ManualBackend:
    """Playback stays open until the test calls ``finish``."""

    def __init__(self):
        self.started = []
        self.cancelled = []
        self._ends = {}

    def start(self, text, on_end):
        self.started.append(text)
        self._ends[text] = on_end
        backend = self

        class Handle:
            def cancel(self):
                backend.cancelled.append(text)

        return Handle()

    def finish(self, text):
        self._ends[text]()


class BrokenBackend:
    def start(self, text, on_end):
        raise RuntimeError("no audio device")


def test_new_utterance_cancels_the_active_one():
    backend = ManualBackend()
    speech = SpeechController(backend)
    events = []
    speech.subscribe(lambda event, utt: events.append((event, utt.text)))

    first = speech.speak("一つ目")
    assert speech.speaking
    second = speech.speak("二つ目")

    assert first.state == "cancelled"
    assert second.state == "speaking"
    assert backend.cancelled == ["一つ目"]
    assert events == [("start", "一つ目"), ("cancel", "一つ目"), ("start", "二つ目")]

    backend.finish("二つ目")
    assert second.state == "ended"
    assert not speech.speaking
    assert events[-1] == ("end", "二つ目")


def test_late_end_after_cancel_is_ignored():
    backend = ManualBackend()
    speech = SpeechController(backend)
    utt = speech.speak("hello")
    utt.cancel()
    backend.finish("hello")
    assert utt.state == "cancelled"


def test_disabling_speech_stops_playback_and_mutes():
    backend = ManualBackend()
    speech = SpeechController(backend)
    utt = speech.speak("hello")
    speech.enabled = False

    assert utt.state == "cancelled"
    assert speech.speak("again") is None
    assert backend.started == ["hello"]


def test_backend_failures_are_swallowed():
    speech = SpeechController(BrokenBackend())
    utt = speech.speak("hello")
    assert utt.state == "ended"
    assert not speech.speaking


def test_null_backend_and_blank_text():
    speech = SpeechController(NullSpeechBackend())
    assert speech.speak("   ") is None
    utt = speech.speak("done")
    assert utt.state == "ended"
    speech.cancel_all()
    assert utt.state == "ended"


def test_utterance_ids_are_per_controller():
    first, second = SpeechController(), SpeechController()
    assert first.speak("a").id == 1
    assert second.speak("b").id == 1
    assert first.speak("c").id == 2
