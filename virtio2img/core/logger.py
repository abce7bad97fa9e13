# SPDX-License-Identifier: LGPL-3.0-or-later
# virtio2img/core/logger.py
"""
Console and transcript logging.

Console lines carry the run context bound with `Log.bind()`:

    14:02:11 ✅ INFO     Image mounted at W:\\  kind=vhdx source=win.vhdx

`--log-file` adds a transcript at DEBUG (or TRACE) with millisecond
timestamps and the emitting module; `--json-logs` switches every handler to
one JSON object per line.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from termcolor import colored as _colored

LOGGER_NAME = "virtio2img"

# -vvv: every PowerShell/DISM return code.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# level -> (mark, colour)
_MARKS = {
    "TRACE": ("🧬", "cyan"),
    "DEBUG": ("🔍", "blue"),
    "INFO": ("✅", "green"),
    "WARNING": ("⚠️", "yellow"),
    "ERROR": ("💥", "red"),
    "CRITICAL": ("🧨", "red"),
}


def c(text: str, color: Optional[str] = None, attrs: Optional[List[str]] = None, *, enable: bool = True) -> str:
    if not enable or not color:
        return text
    return _colored(text, color=color, attrs=attrs or [])


def _can_encode(stream: Any, sample: str = "✅") -> bool:
    # cp437/cp1252 consoles on Windows cannot print the level marks.
    try:
        sample.encode(getattr(stream, "encoding", None) or "utf-8")
        return True
    except (LookupError, UnicodeError):
        return False


def _ctx_suffix(ctx: Optional[Mapping[str, Any]]) -> str:
    if not ctx:
        return ""
    pairs = []
    for k in sorted(ctx, key=str):
        v = str(ctx[k]).replace("\r", "\\r").replace("\n", "\\n")
        pairs.append(f"{k}={v[:200]}")
    return "  " + " ".join(pairs)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Adapter that attaches a fixed context (source image, kind, ...) to every
    record as `record.ctx`; a call's own `extra={"ctx": ...}` is merged on top.
    """

    def __init__(self, logger: logging.Logger, ctx: Optional[Mapping[str, Any]] = None):
        super().__init__(logger, extra={"ctx": dict(ctx or {})})

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["ctx"] = {**self.extra["ctx"], **(extra.get("ctx") or {})}
        kwargs["extra"] = extra
        return msg, kwargs


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable lines. `transcript=True` is the log-file variant: no
    colour, milliseconds and the emitting module:line.
    """

    def __init__(self, *, color: bool = True, unicode: bool = True, transcript: bool = False):
        super().__init__()
        self.color = color and not transcript
        self.unicode = unicode
        self.transcript = transcript

    def format(self, record: logging.LogRecord) -> str:
        when = _dt.datetime.fromtimestamp(record.created)
        ts = when.strftime("%H:%M:%S.%f")[:-3] if self.transcript else when.strftime("%H:%M:%S")
        mark, colour = _MARKS.get(record.levelname, ("•", None))
        msg = record.getMessage()
        if not self.unicode:
            mark = "*"
            msg = msg.encode("ascii", "replace").decode("ascii")

        level = f"{record.levelname:<8}"
        if self.color:
            level = c(level, colour)
            if record.levelno >= logging.WARNING:
                msg = c(msg, colour, ["bold"])

        where = f" [{record.module}:{record.lineno}]" if self.transcript else ""
        line = f"{ts} {mark} {level}{where} {msg}{_ctx_suffix(getattr(record, 'ctx', None))}"
        if record.exc_info:
            line += "\n" + "\n".join("  " + ln for ln in self.formatException(record.exc_info).splitlines())
        return line


class JsonFormatter(logging.Formatter):
    """One JSON object per line; timestamps are UTC."""

    def format(self, record: logging.LogRecord) -> str:
        obj: Dict[str, Any] = {
            "ts": _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        ctx = getattr(record, "ctx", None)
        if ctx:
            obj["ctx"] = {str(k): str(v) for k, v in ctx.items()}
        if record.exc_info:
            obj["traceback"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)


class Log:
    @staticmethod
    def _level_from_flags(verbose: int, quiet: int) -> int:
        """-q warnings, -qq errors, -vv debug, -vvv trace; quiet wins."""
        if quiet:
            return logging.ERROR if quiet >= 2 else logging.WARNING
        if verbose >= 3:
            return TRACE
        if verbose == 2:
            return logging.DEBUG
        return logging.INFO

    @staticmethod
    def bind(logger: logging.Logger, **ctx: Any) -> ContextLoggerAdapter:
        return ContextLoggerAdapter(logger, ctx)

    @staticmethod
    def step(logger: logging.Logger, msg: str) -> None:
        logger.info("➡️  %s", msg)

    @staticmethod
    def ok(logger: logging.Logger, msg: str) -> None:
        logger.info("✅ %s", msg)

    @staticmethod
    def warn(logger: logging.Logger, msg: str) -> None:
        logger.warning("⚠️  %s", msg)

    @staticmethod
    def fail(logger: logging.Logger, msg: str) -> None:
        logger.error("💥 %s", msg)

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: bool = True,
        json_logs: bool = False,
        logger_name: str = LOGGER_NAME,
    ) -> logging.Logger:
        """
        Configure the project logger: stderr at the level the flags ask for,
        plus an optional transcript file that always records DEBUG and up.
        Calling it again replaces the previous handlers.
        """
        logger = logging.getLogger(logger_name)
        logger.propagate = False
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

        level = Log._level_from_flags(verbose, quiet)
        file_level = min(level, logging.DEBUG)
        logger.setLevel(file_level if log_file else level)

        console = logging.StreamHandler(stream=sys.stderr)
        console.setLevel(level)
        if json_logs:
            console.setFormatter(JsonFormatter())
        else:
            tty = bool(getattr(sys.stderr, "isatty", lambda: False)())
            console.setFormatter(ConsoleFormatter(color=color and tty, unicode=_can_encode(sys.stderr)))
        logger.addHandler(console)

        if log_file:
            path = Path(log_file).expanduser().resolve()
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(path, encoding="utf-8")
            fh.setLevel(file_level)
            fh.setFormatter(JsonFormatter() if json_logs else ConsoleFormatter(transcript=True))
            logger.addHandler(fh)

        logger.debug("Logging at %s (transcript: %s)", logging.getLevelName(level), log_file or "none")
        return logger
