# SPDX-License-Identifier: LGPL-3.0-or-later
# virtio2img/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    # Exit codes are 0..255.
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    return ", ".join(f"{k}={ctx.get(k)!r}" for k in sorted(ctx.keys()))


@dataclass(eq=False)
class Virtio2ImgError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - the workflow stage it surfaced at
      - rollback warnings collected while cleaning up after it
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None
    stage: Optional[str] = None
    rollback_warnings: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        super().__init__(self.msg)
        self.args = (self.msg,)

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def at_stage(self, stage: str) -> "Virtio2ImgError":
        # First stage wins: an error keeps the stage it was raised at.
        if not self.stage:
            self.stage = stage
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        """
        Human-friendly message for CLI output/logs.
        """
        base = self.msg or self.kind
        parts = [f"[{self.stage}] {base}" if self.stage else base]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.kind,
            "code": self.code,
            "message": self.msg,
            "stage": self.stage,
            "context": self.context or {},
            "rollback_warnings": list(self.rollback_warnings),
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(Virtio2ImgError):
    """
    User-facing fatal error outside the workflow (CLI, config).
    """
    pass


class UnsupportedFormat(Virtio2ImgError):
    """Source image extension is not one of .wim/.vhd/.vhdx."""

    def __init__(self, msg: str = "unsupported image format", **kw: Any) -> None:
        kw.setdefault("code", 10)
        super().__init__(msg=msg, **kw)


class SourceNotFound(Virtio2ImgError):
    """Source image or driver override path does not exist."""

    def __init__(self, msg: str = "source not found", **kw: Any) -> None:
        kw.setdefault("code", 11)
        super().__init__(msg=msg, **kw)


class MountFailed(Virtio2ImgError):
    """Image or ISO could not be mounted."""

    def __init__(self, msg: str = "mount failed", **kw: Any) -> None:
        kw.setdefault("code", 12)
        super().__init__(msg=msg, **kw)


class DownloadFailed(Virtio2ImgError):
    def __init__(self, msg: str = "download failed", **kw: Any) -> None:
        kw.setdefault("code", 13)
        super().__init__(msg=msg, **kw)


class InvalidFormat(Virtio2ImgError):
    """Driver source is neither an ISO nor a directory."""

    def __init__(self, msg: str = "invalid driver source format", **kw: Any) -> None:
        kw.setdefault("code", 14)
        super().__init__(msg=msg, **kw)


class InjectorUnavailable(Virtio2ImgError):
    def __init__(self, msg: str = "driver injector unavailable", **kw: Any) -> None:
        kw.setdefault("code", 15)
        super().__init__(msg=msg, **kw)


class InjectionFatal(Virtio2ImgError):
    """
    Injector finished with a status that is neither complete nor partial.
    `diagnostic` keeps the captured injector output verbatim.
    """

    def __init__(self, msg: str = "driver injection failed", *, diagnostic: str = "", exit_code: Optional[int] = None, **kw: Any) -> None:
        kw.setdefault("code", 16)
        super().__init__(msg=msg, **kw)
        self.diagnostic = diagnostic
        self.exit_code = exit_code

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d = super().to_dict(include_cause=include_cause)
        d["exit_code"] = self.exit_code
        d["diagnostic"] = self.diagnostic
        return d


class FinalizeFailed(Virtio2ImgError):
    def __init__(self, msg: str = "finalize failed", **kw: Any) -> None:
        kw.setdefault("code", 17)
        super().__init__(msg=msg, **kw)


class ReleaseFailed(Virtio2ImgError):
    def __init__(self, msg: str = "driver source release failed", **kw: Any) -> None:
        kw.setdefault("code", 18)
        super().__init__(msg=msg, **kw)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, Virtio2ImgError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
