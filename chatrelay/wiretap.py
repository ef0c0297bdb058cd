"""
Wiretap — every frame that crossed the gateway, as JSONL.

Two parts:
  1. FrameLog: appends one structured entry per inbound/outbound frame
     (WebSocket frames and HTTP chat exchanges alike)
  2. live_tap(): reads the JSONL back and renders a color-coded live view

The frame log is separate from the debug log. It records what went over
the wire, per client, without any of the server's own chatter.
"""

import json
import time
import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_MESSAGE = "\033[96m"    # cyan
C_RESPONSE = "\033[93m"   # yellow
C_STREAM = "\033[92m"     # green
C_CONTROL = "\033[90m"    # gray
C_ERROR = "\033[91m"      # red
C_CLIENT = "\033[95m"     # magenta

FRAME_COLORS = {
    "message": C_MESSAGE,
    "response": C_RESPONSE,
    "narrative": C_STREAM,
    "status": C_STREAM,
    "chunk": C_STREAM,
    "complete": C_STREAM,
    "error": C_ERROR,
    "connected": C_CONTROL,
    "ping": C_CONTROL,
    "pong": C_CONTROL,
}

FRAME_ICONS = {
    "message": "▶",
    "response": "◀",
    "chunk": "…",
    "error": "✗",
    "connected": "☎",
}

MAX_STORED = 2000


class FrameLog:
    """
    Append-only JSONL log of gateway traffic.

    Format:
        {"ts": "...", "dir": "in|out", "channel": "ws|http", "type": "message",
         "client": "...", "user": "...", "len": 12, "content": "..."}
    """

    def __init__(self, log_path: str):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = None

    def _ensure_open(self):
        if self._file is None:
            self._file = open(self.log_path, "a", buffering=1)  # line-buffered

    def log(
        self,
        direction: str,
        frame: dict,
        client_id: str = "",
        user_id: str = "",
        channel: str = "ws",
    ):
        """Record one frame. The text payload is stored, truncated in the middle if long."""
        self._ensure_open()
        text = _frame_text(frame)
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "dir": direction,
            "channel": channel,
            "type": frame.get("type", "?"),
            "client": client_id[:16],
            "user": user_id,
            "len": len(text),
        }
        thread = frame.get("threadId") or frame.get("contextId")
        if thread:
            entry["thread"] = thread
        if len(text) <= MAX_STORED:
            entry["content"] = text
        else:
            entry["content"] = text[:1000] + f"\n\n[... {len(text) - MAX_STORED} chars truncated ...]\n\n" + text[-1000:]

        try:
            self._file.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.warning("Frame log write failed: %s", e)

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def _frame_text(frame: dict) -> str:
    for key in ("content", "message"):
        value = frame.get(key)
        if isinstance(value, str):
            return value
    return ""


def _format_entry(entry: dict, raw: bool = False) -> str:
    """Render one frame log entry for the terminal."""
    if raw:
        return json.dumps(entry, ensure_ascii=False)

    ts = entry.get("ts", "")
    try:
        time_str = datetime.fromisoformat(ts).strftime("%H:%M:%S")
    except (ValueError, TypeError):
        time_str = ts[:8] if ts else "??:??:??"

    frame_type = entry.get("type", "?")
    color = FRAME_COLORS.get(frame_type, C_RESET)
    icon = FRAME_ICONS.get(frame_type, "·")
    arrow = f"{C_DIM}──▶{C_RESET}" if entry.get("dir") == "in" else f"{C_DIM}◀──{C_RESET}"

    header = f"  {C_CONTROL}{time_str}{C_RESET} {arrow} {color}{C_BOLD}{icon} {frame_type.upper()}{C_RESET}"
    if entry.get("channel") == "http":
        header += f"  {C_DIM}[http]{C_RESET}"
    if entry.get("user"):
        header += f"  {C_CLIENT}{entry['user']}{C_RESET}"
    if entry.get("len"):
        header += f"  {C_DIM}({entry['len']} chars){C_RESET}"
    if entry.get("thread"):
        header += f"  {C_DIM}thread:{entry['thread']}{C_RESET}"
    lines = [header]

    content = entry.get("content", "")
    if content:
        if len(content) > 500:
            content = content[:500] + f"\n      {C_DIM}[... truncated]{C_RESET}"
        body = content.split("\n")
        for cline in body[:12]:
            lines.append(f"      {cline}")
        if len(body) > 12:
            lines.append(f"      {C_DIM}[... {len(body) - 12} more lines]{C_RESET}")

    return "\n".join(lines)


def _matches(entry: dict, type_filter: str | None, user_filter: str | None) -> bool:
    if type_filter and entry.get("type") != type_filter:
        return False
    if user_filter and entry.get("user") != user_filter:
        return False
    return True


def read_entries(log_path: str | Path, last_n: int = 20) -> list[dict]:
    """The last `last_n` parseable entries of a frame log."""
    entries = []
    with open(log_path) as f:
        lines = f.readlines()
    if last_n:
        lines = lines[-last_n:]
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return entries


def live_tap(
    log_path: str | None = None,
    follow: bool = True,
    last_n: int = 20,
    type_filter: str | None = None,
    user_filter: str | None = None,
    raw: bool = False,
):
    """
    Live tail of the frame log.

    Args:
        log_path:    Path to frames.jsonl. If None, read from config.
        follow:      Keep watching for new entries (tail -f).
        last_n:      Recent entries to show before following.
        type_filter: Only frames of this type (message, response, error...).
        user_filter: Only frames for this user id.
        raw:         Print raw JSONL instead of the formatted view.
    """
    if log_path is None:
        from chatrelay.config import get_config
        cfg = get_config()
        log_path = cfg.get("wiretap", {}).get("path", "./data/frames.jsonl")

    wire_path = Path(log_path)
    if not wire_path.exists():
        print(f"  ✗  No frame log found at {wire_path}")
        print("     Start the server first: chatrelay serve")
        return

    if not raw:
        print(f"  ☎  Tapping into {wire_path}")
        print(f"  {C_CONTROL}{'═' * 60}{C_RESET}")

    for entry in read_entries(wire_path, last_n):
        if _matches(entry, type_filter, user_filter):
            print(_format_entry(entry, raw=raw))

    if not follow:
        return

    if not raw:
        print(f"\n  {C_DIM}[listening for new frames... Ctrl+C to stop]{C_RESET}\n")

    try:
        with open(wire_path) as f:
            f.seek(0, 2)
            while True:
                line = f.readline()
                if not line:
                    time.sleep(0.1)
                    continue
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if _matches(entry, type_filter, user_filter):
                    print(_format_entry(entry, raw=raw))
    except KeyboardInterrupt:
        if not raw:
            print(f"\n  {C_DIM}[tap closed]{C_RESET}")
