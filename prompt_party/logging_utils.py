import json
import logging
import os
import sys
import typing as _t
from contextvars import ContextVar
from typing import Any, Dict, Optional

# Context vars carried through a request: request id and the game it acts on
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
game_id_ctx: ContextVar[Optional[str]] = ContextVar("game_id", default=None)

# Structured fields picked up from `extra=` when present on a record
EXTRA_FIELDS = (
    "path",
    "method",
    "status",
    "duration_ms",
    "client",
    "user_agent",
    "event",
    "ws_count",
    "game_id",
    "player_id",
    "image_id",
    "emoji",
    "revision",
    "attempt",
    "game_status",
    "turns",
    "kind",
    "url",
    "errors",
    "error",
)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = request_id_ctx.get()
        if rid:
            payload["request_id"] = rid
        gid = game_id_ctx.get()
        if gid:
            payload["game_id"] = gid
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                payload[key] = val
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ColorFormatter(logging.Formatter):
    """Human-friendly, colorized formatter for local development."""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    GREY = "\033[90m"
    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _color(self, text: str, color: str) -> str:
        if not self.use_color:
            return text
        return f"{color}{text}{self.RESET}"

    def _status_str(self, status: Optional[int]) -> Optional[str]:
        if not isinstance(status, int):
            return None
        if status < 300:
            return self._color(str(status), "\033[32m")
        if status < 400:
            return self._color(str(status), "\033[36m")
        if status < 500:
            return self._color(str(status), "\033[33m")
        return self._color(str(status), "\033[31m")

    def _request_line(self, record: logging.LogRecord) -> Optional[str]:
        parts: _t.List[str] = []
        method = getattr(record, "method", None)
        path = getattr(record, "path", None)
        duration_ms = getattr(record, "duration_ms", None)
        if method:
            parts.append(self._color(method, self.BOLD))
        if path:
            parts.append(self._color(path, "\033[36m"))
        status_str = self._status_str(getattr(record, "status", None))
        if status_str:
            parts.append(status_str)
        if duration_ms is not None:
            parts.append(self._color(f"{duration_ms}ms", self.GREY))
        return " ".join(parts) if parts else None

    def _game_context(self, record: logging.LogRecord) -> Optional[str]:
        ctx: _t.List[str] = []
        gid = getattr(record, "game_id", None) or game_id_ctx.get()
        if gid:
            ctx.append(f"game={gid}")
        for key in ("player_id", "image_id", "revision", "kind", "error"):
            val = getattr(record, key, None)
            if val is not None:
                ctx.append(f"{key}={val}")
        client = getattr(record, "client", None)
        if client:
            ctx.append(f"client={client}")
        return "[" + " ".join(ctx) + "]" if ctx else None

    def format(self, record: logging.LogRecord) -> str:
        level = record.levelname
        parts: _t.List[str] = [
            self._color(level, self.COLORS.get(level, "")),
            self.formatTime(record, datefmt="%H:%M:%S"),
        ]
        rid = request_id_ctx.get()
        if rid:
            parts.append(self._color(f"rid={rid}", "\033[35m"))
        parts.append(self._color(record.name, "\033[34m"))

        req_line = self._request_line(record)
        if req_line:
            parts.append(req_line)
        msg = record.getMessage()
        if msg:
            parts.extend(["-", msg])
        ctx = self._game_context(record)
        if ctx:
            parts.append(self._color(ctx, self.GREY))
        if record.exc_info:
            parts.append("\n" + self.formatException(record.exc_info))
        return " ".join(parts)


def _isatty(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Configure root and uvicorn loggers.

    - LOG_FORMAT=pretty forces pretty, LOG_FORMAT=json forces JSON
    - otherwise: pretty if stdout is a TTY, else JSON
    - LOG_COLOR=0 disables ANSI colors in pretty mode
    """
    root = logging.getLogger()
    root.setLevel(level)
    for h in root.handlers[:]:
        root.removeHandler(h)

    fmt_env = os.getenv("LOG_FORMAT", "").lower()
    color_env = os.getenv("LOG_COLOR", "1").lower()
    use_pretty = (fmt_env == "pretty") or (fmt_env == "" and _isatty(sys.stdout))
    use_color = use_pretty and color_env not in ("0", "false", "no")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=use_color) if use_pretty else JsonFormatter())
    root.addHandler(handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False

    return root


def get_logger(name: str = "prompt_party") -> logging.Logger:
    return logging.getLogger(name)
