from datetime import date, datetime

import pytest
from pydantic import ValidationError

from live_interpreter.transcript import (
    Channel,
    Role,
    TranscriptAssembler,
    TranscriptLog,
    TranscriptRecord,
    format_minutes,
    minutes_filename,
    render_context,
)

T = datetime(2026, 3, 2, 9, 15, 30)


def test_complete_emits_input_before_output():
    a = TranscriptAssembler()
    a.append(Channel.OUTPUT, "你好")
    a.append(Channel.INPUT, "Hello")
    records = a.complete(T)
    assert [(r.role, r.text) for r in records] == [(Role.USER, "Hello"), (Role.MODEL, "你好")]
    assert records[0].timestamp == T


def test_empty_sides_are_skipped_and_buffers_cleared():
    a = TranscriptAssembler()
    a.append(Channel.INPUT, "   ")
    a.append(Channel.OUTPUT, " translated ")
    records = a.complete()
    assert [(r.role, r.text) for r in records] == [(Role.MODEL, "translated")]
    assert a.pending_input == "" and a.pending_output == ""
    assert a.complete() == []


def test_partials_concatenate_without_dedup():
    a = TranscriptAssembler()
    for part in ["We ", "will ", "will ", "ship"]:
        a.append(Channel.INPUT, part)
    assert a.complete()[0].text == "We will will ship"


def test_speaker_label_parsed_from_prefix():
    a = TranscriptAssembler()
    a.append(Channel.OUTPUT, "[Participant 2] 我们同意。")
    record = a.complete()[0]
    assert record.speaker_label == "Participant 2"
    assert record.text == "[Participant 2] 我们同意。"


def test_records_are_immutable():
    record = TranscriptRecord(role=Role.USER, text="hi")
    with pytest.raises(ValidationError):
        record.text = "changed"


def test_log_preserves_insertion_order():
    log = TranscriptLog()
    log.extend([TranscriptRecord(role=Role.USER, text="one")])
    log.extend([TranscriptRecord(role=Role.MODEL, text="two"), TranscriptRecord(role=Role.USER, text="three")])
    assert [r.text for r in log] == ["one", "two", "three"]
    assert [r.text for r in log.since(1)] == ["two", "three"]
    assert len(log) == 3


def test_render_context_keeps_most_recent_records():
    records = [TranscriptRecord(role=Role.USER if i % 2 == 0 else Role.MODEL, text=f"t{i}", timestamp=T)
               for i in range(20)]
    text = render_context(records, 15)
    lines = text.splitlines()
    assert len(lines) == 15
    assert lines[0] == "[09:15:30] Translation: t5"
    assert lines[1] == "[09:15:30] Input: t6"
    assert lines[-1] == "[09:15:30] Translation: t19"
    assert render_context(records, 0) == ""


def test_format_minutes():
    records = [
        TranscriptRecord(role=Role.USER, text="Good morning", timestamp=T),
        TranscriptRecord(role=Role.MODEL, text="早上好", timestamp=T),
    ]
    text = format_minutes(records, "Board Review", on=date(2026, 3, 2))
    assert text == (
        "MEETING MINUTES: Board Review\nDATE: 2026-03-02\n\n"
        "[09:15:30] ORIGINAL: Good morning\n\n"
        "[09:15:30] TRANSLATED: 早上好"
    )


def test_minutes_filename():
    assert minutes_filename("Global Strategy  Meeting") == "Global_Strategy_Meeting_Minutes.txt"
