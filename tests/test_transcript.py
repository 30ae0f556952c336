from datetime import datetime, timedelta, timezone

from voice_relay.models.transcript import SPEAKER_AGENT, SPEAKER_USER, TranscriptLog


def at(seconds):
    return datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc) + timedelta(seconds=seconds)


def test_entries_keep_arrival_order():
    log = TranscriptLog(call_id="CA1")
    log.add_entry(SPEAKER_USER, "I need a haircut", at(0))
    log.add_entry(SPEAKER_AGENT, "Sure, when?", at(1))
    log.add_entry(SPEAKER_USER, "Tomorrow", at(2))

    assert [(e.speaker, e.text) for e in log.entries] == [
        ("User", "I need a haircut"),
        ("AI", "Sure, when?"),
        ("User", "Tomorrow"),
    ]
    assert len(log) == 3
    assert [e.text for e in log.entries_by_speaker(SPEAKER_USER)] == ["I need a haircut", "Tomorrow"]


def test_empty_text_is_skipped():
    log = TranscriptLog()
    assert log.add_entry(SPEAKER_USER, "   ") is None
    assert log.add_entry(SPEAKER_USER, None) is None
    assert len(log) == 0


def test_repeat_within_window_is_skipped():
    log = TranscriptLog()
    assert log.add_entry(SPEAKER_AGENT, "Hello!", at(0)) is not None
    assert log.add_entry(SPEAKER_AGENT, "Hello!", at(1)) is None
    assert log.add_entry(SPEAKER_AGENT, "Hello!", at(10)) is not None
    assert len(log) == 2


def test_same_text_from_other_speaker_is_kept():
    log = TranscriptLog()
    log.add_entry(SPEAKER_USER, "yes", at(0))
    log.add_entry(SPEAKER_AGENT, "yes", at(0.5))
    assert len(log) == 2


def test_export():
    log = TranscriptLog(call_id="CA1")
    log.add_entry(SPEAKER_USER, "Hi", at(0))
    log.add_entry(SPEAKER_AGENT, "Hello", at(1))

    exported = log.export()
    assert exported["call_id"] == "CA1"
    assert exported["entry_count"] == 2
    assert exported["entries"][0] == {
        "speaker": "User",
        "text": "Hi",
        "timestamp": "2024-01-01T12:00:00+00:00",
    }
    assert exported["text"].splitlines() == [
        "[2024-01-01T12:00:00+00:00] User: Hi",
        "[2024-01-01T12:00:01+00:00] AI: Hello",
    ]
