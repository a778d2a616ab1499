import io
import json
import logging
import sys
from datetime import datetime
from typing import Optional, TextIO


# Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
def _utf8_stream_for_stdout() -> TextIO:
    try:
        if hasattr(sys.stdout, "buffer"):
            return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    except (AttributeError, ValueError):
        pass
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError):
        pass
    return sys.stdout


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
        force=True,  # override handlers added by uvicorn so the UTF-8 stream wins
    )


def json_log(event: str, level: int = logging.INFO, **kwargs):
    """
    Emit an ASCII-only JSON log line so consoles with legacy codepages don't crash
    when message bodies contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.utcnow().isoformat() + "Z", "event": event, **kwargs}
    line = json.dumps(payload, ensure_ascii=True, default=str)
    logging.log(level, line)


def preview(text: Optional[str], limit: int = 80) -> str:
    """Shorten message bodies for log lines."""
    if not text:
        return ""
    s = " ".join(str(text).split())
    if len(s) <= limit:
        return s
    return s[: limit - 3] + "..."
