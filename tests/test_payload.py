from __future__ import annotations

import json
import time

from persona_chat.payload import MAX_TAG_CHARS, contains_tag, extract, find_tag


def _tag(**fields) -> str:
    return f"[SAVE_DATA: {json.dumps(fields, ensure_ascii=False)}]"


RECORD = {"subject": "数学", "topic": "二次関数", "evaluation": "A", "summary": "理解できた"}


def test_tutor_reply_with_tag_is_split():
    raw = 'よく頑張ったね！[SAVE_DATA: {"subject":"数学","topic":"二次関数","evaluation":"A","summary":"理解できた"}]'
    out = extract(raw)
    assert out.visible_text == "よく頑張ったね！"
    assert out.record is not None
    assert out.record.model_dump() == RECORD
    assert out.record.evaluation_label == "深い理解"
    assert out.rejected is None


def test_reply_without_tag_is_unchanged():
    out = extract("こんにちは！")
    assert out.visible_text == "こんにちは！"
    assert out.record is None


def test_plain_text_with_brackets_is_unchanged():
    raw = "  配列は [1, 2, 3] と書くよ {ヒント}  "
    out = extract(raw)
    assert out.visible_text == raw
    assert out.record is None


def test_empty_reply():
    out = extract("")
    assert out.visible_text == ""
    assert out.record is None


def test_tag_mid_sentence_collapses_whitespace():
    raw = f"Great job {_tag(**RECORD)} see you next time!"
    out = extract(raw)
    assert out.visible_text == "Great job see you next time!"
    assert out.record.subject == "数学"


def test_tag_between_japanese_sentences_leaves_no_gap():
    raw = f"記録しておくね！{_tag(**RECORD)}また明日！"
    assert extract(raw).visible_text == "記録しておくね！また明日！"


def test_tag_without_space_and_padded_close():
    raw = 'OK![SAVE_DATA:{"subject":"英語","topic":"過去形","evaluation":"C","summary":"もう少し"}  ]'
    out = extract(raw)
    assert out.visible_text == "OK!"
    assert out.record.evaluation == "C"


def test_nested_braces_and_braces_in_strings():
    raw = (
        "Saved. [SAVE_DATA: {\"subject\": \"数学\", \"topic\": \"集合 {1, 2}\", "
        "\"evaluation\": \"B\", \"summary\": \"\\\"}\\\" quoted\", \"meta\": {\"k\": {\"z\": 1}}}]"
    )
    out = extract(raw)
    assert out.visible_text == "Saved."
    assert out.record.topic == "集合 {1, 2}"
    assert out.record.summary == '"}" quoted'


def test_only_first_tag_is_honoured():
    second = _tag(subject="理科", topic="光合成", evaluation="D", summary="要復習")
    raw = f"First {_tag(**RECORD)} then {second}"
    out = extract(raw)
    assert out.record.subject == "数学"
    assert out.visible_text == f"First then {second}"


def test_reply_that_is_only_a_tag_becomes_empty():
    out = extract(f"  {_tag(**RECORD)}\n")
    assert out.visible_text == ""
    assert out.record is not None


def test_truncated_tag_leaves_text_unchanged():
    raw = 'よく頑張ったね！[SAVE_DATA: {"subject": "数学", "topic": "二次'
    out = extract(raw)
    assert out.visible_text == raw
    assert out.record is None
    again = extract(out.visible_text)
    assert again.visible_text == raw and again.record is None


def test_invalid_json_leaves_text_unchanged():
    raw = "記録するね [SAVE_DATA: {subject: 数学, evaluation: A}]"
    out = extract(raw)
    assert out.visible_text == raw
    assert out.record is None
    assert out.rejected is None
    assert extract(raw) == out


def test_truncated_first_tag_does_not_hide_a_later_complete_one():
    raw = f"[SAVE_DATA: oops] and {_tag(**RECORD)}"
    out = extract(raw)
    assert out.record is not None
    assert out.visible_text == "[SAVE_DATA: oops] and"


def test_record_missing_field_is_stripped_but_rejected():
    raw = 'はい！[SAVE_DATA: {"subject": "数学", "topic": "関数", "evaluation": "A"}]'
    out = extract(raw)
    assert out.visible_text == "はい！"
    assert out.record is None
    assert out.rejected == {"subject": "数学", "topic": "関数", "evaluation": "A"}


def test_record_with_unknown_grade_or_wrong_type_is_rejected():
    bad_grade = extract("x " + _tag(subject="a", topic="b", evaluation="E", summary="c"))
    assert bad_grade.record is None and bad_grade.rejected["evaluation"] == "E"

    numeric = extract("x " + _tag(subject=1, topic="b", evaluation="A", summary="c"))
    assert numeric.record is None and numeric.visible_text == "x"


def test_visible_text_is_stable_when_extracted_twice():
    raw = f"よく頑張ったね！ {_tag(**RECORD)}"
    first = extract(raw)
    second = extract(first.visible_text)
    assert second.visible_text == first.visible_text
    assert second.record is None


def test_find_tag_and_contains_tag():
    raw = f"ab{_tag(**RECORD)}cd"
    start, end, body = find_tag(raw)
    assert raw[start:end].startswith("[SAVE_DATA:")
    assert json.loads(body) == RECORD
    assert contains_tag(raw)
    assert not contains_tag("no tag here")


def test_paragraph_breaks_around_tag_are_kept():
    assert extract(f"段落1\n\n{_tag(**RECORD)}\n\n段落2").visible_text == "段落1\n\n段落2"
    assert extract(f"行1\n{_tag(**RECORD)} 行2").visible_text == "行1\n行2"


def test_many_unclosed_markers_scan_quickly():
    raw = '[SAVE_DATA: {"a": ' * 20000
    began = time.perf_counter()
    out = extract(raw)
    assert time.perf_counter() - began < 2.0
    assert out.visible_text == raw
    assert out.record is None


def test_deeply_nested_markers_scan_quickly():
    raw = "[SAVE_DATA: {" * 20000 + "}" * 20000
    began = time.perf_counter()
    assert find_tag(raw) is None
    assert time.perf_counter() - began < 2.0


def test_body_longer_than_limit_is_not_a_tag():
    raw = "x " + _tag(subject="数学", topic="t", evaluation="A", summary="あ" * MAX_TAG_CHARS)
    out = extract(raw)
    assert out.visible_text == raw
    assert out.record is None


def test_complete_tag_after_long_unterminated_one_is_found():
    raw = '[SAVE_DATA: {"subject": "数学"' + " 続き" * MAX_TAG_CHARS + " " + _tag(**RECORD)
    out = extract(raw)
    assert out.record is not None
    assert out.record.subject == "数学"
    assert "[SAVE_DATA: {" in out.visible_text
