"""
Tests for the frame log and its terminal rendering.
Run with: pytest tests/test_wiretap.py
"""

import json

from chatrelay.wiretap import MAX_STORED, FrameLog, _format_entry, live_tap, read_entries


def test_log_writes_one_entry_per_frame(tmp_path):
    path = tmp_path / "wire" / "frames.jsonl"
    log = FrameLog(str(path))
    log.log("in", {"type": "message", "content": "hello", "threadId": "t1"}, client_id="client_1", user_id="u1")
    log.log("out", {"type": "error", "message": "Invalid JSON frame"}, client_id="client_1", user_id="u1")
    log.log("out", {"type": "response", "content": "hi", "contextId": "u1-p1"}, channel="http")
    log.close()

    lines = path.read_text().splitlines()
    assert len(lines) == 3
    first, second, third = (json.loads(line) for line in lines)
    assert first["dir"] == "in"
    assert first["channel"] == "ws"
    assert first["thread"] == "t1"
    assert first["len"] == 5
    assert second["content"] == "Invalid JSON frame"
    assert third["channel"] == "http"
    assert third["thread"] == "u1-p1"


def test_long_content_is_truncated_in_the_middle(tmp_path):
    path = tmp_path / "frames.jsonl"
    log = FrameLog(str(path))
    text = "a" * 1000 + "b" * 2000 + "c" * 1000
    log.log("out", {"type": "response", "content": text})
    log.close()

    entry = json.loads(path.read_text())
    assert entry["len"] == len(text)
    assert entry["content"].startswith("a" * 1000)
    assert entry["content"].endswith("c" * 1000)
    assert f"{len(text) - MAX_STORED} chars truncated" in entry["content"]


def test_read_entries_skips_garbage(tmp_path):
    path = tmp_path / "frames.jsonl"
    path.write_text('{"type": "ping"}\nnot json\n\n{"type": "pong"}\n')
    assert [e["type"] for e in read_entries(path, last_n=0)] == ["ping", "pong"]
    assert [e["type"] for e in read_entries(path, last_n=1)] == ["pong"]


def test_format_entry():
    entry = {
        "ts": "2026-03-01T12:34:56+00:00",
        "dir": "in",
        "channel": "http",
        "type": "message",
        "user": "u1",
        "len": 5,
        "thread": "t1",
        "content": "hello",
    }
    rendered = _format_entry(entry)
    assert "12:34:56" in rendered
    assert "MESSAGE" in rendered
    assert "[http]" in rendered
    assert "thread:t1" in rendered
    assert "hello" in rendered
    assert json.loads(_format_entry(entry, raw=True)) == entry


def test_live_tap_filters(tmp_path, capsys):
    path = tmp_path / "frames.jsonl"
    log = FrameLog(str(path))
    log.log("in", {"type": "message", "content": "from u1"}, user_id="u1")
    log.log("in", {"type": "message", "content": "from u2"}, user_id="u2")
    log.log("out", {"type": "pong"}, user_id="u1")
    log.close()

    live_tap(str(path), follow=False, type_filter="message", user_filter="u1", raw=True)
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert json.loads(out[0])["content"] == "from u1"


def test_live_tap_missing_file(tmp_path, capsys):
    live_tap(str(tmp_path / "nope.jsonl"), follow=False)
    assert "No frame log found" in capsys.readouterr().out
