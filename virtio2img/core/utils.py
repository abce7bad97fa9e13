# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/core/utils.py
from __future__ import annotations

import ctypes
import datetime as _dt
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, List, Optional

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from .exceptions import Fatal
from .logger import TRACE

# Working copies and commits move whole disk images; big blocks keep that fast.
_COPY_BLOCK = 16 * 1024 * 1024


def transfer_progress() -> Progress:
    """Byte progress for image copies and the ISO download; hidden without a TTY."""
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        disable=not getattr(sys.stderr, "isatty", lambda: False)(),
    )


class U:
    @staticmethod
    def die(logger: logging.Logger, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code=code, msg=msg)

    @staticmethod
    def ensure_dir(p: Path) -> Path:
        p.mkdir(parents=True, exist_ok=True)
        return p

    @staticmethod
    def now_ts() -> str:
        """Sortable local timestamp used in working copy, mount and log names."""
        return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")

    @staticmethod
    def json_dump(obj: Any) -> str:
        # Paths and enums in configs print as strings.
        return json.dumps(obj, indent=2, sort_keys=True, default=str)

    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        if n < 1024:
            return f"{n} B"
        size = float(n)
        for unit in ("KiB", "MiB", "GiB", "TiB"):
            size /= 1024
            if size < 1024 or unit == "TiB":
                break
        return f"{size:.2f} {unit}"

    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run `cmd` and capture its output as text.

        DISM and PowerShell report through stdout and their exit code, so
        callers usually pass check=False and look at both. A missing
        executable raises FileNotFoundError for the caller to map.
        """
        line = subprocess.list2cmdline(cmd)
        logger.debug("Running: %s", line)
        try:
            cp = subprocess.run(cmd, check=check, capture_output=True, text=True, errors="replace", timeout=timeout)
        except subprocess.CalledProcessError as e:
            logger.error("Command failed (rc=%s): %s\n%s", e.returncode, line, (e.stdout or "") + (e.stderr or ""))
            raise
        except subprocess.TimeoutExpired:
            logger.error("Command timed out after %ss: %s", timeout, line)
            raise
        logger.log(TRACE, "rc=%s: %s", cp.returncode, line)
        return cp

    @staticmethod
    def is_admin() -> bool:
        if os.name != "nt":
            return os.geteuid() == 0
        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            return False

    @staticmethod
    def require_admin(logger: logging.Logger) -> None:
        if not U.is_admin():
            U.die(logger, "Mounting images and running DISM requires an elevated (Administrator) shell.", 1)

    @staticmethod
    def safe_unlink(p: Path, *, missing_ok: bool = True) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            if not missing_ok:
                raise

    @staticmethod
    def copy_file(logger: logging.Logger, src: Path, dst: Path, *, label: Optional[str] = None) -> int:
        """
        Copy a disk image block by block with a progress bar and fsync the
        result, so a commit never publishes a half-written image.
        """
        total = src.stat().st_size
        logger.info("Copying %s -> %s (%s)", src, dst, U.human_bytes(total))
        done = 0
        with open(src, "rb") as fin, open(dst, "wb") as fout, transfer_progress() as progress:
            task = progress.add_task(label or f"Copying {src.name}", total=total)
            while True:
                block = fin.read(_COPY_BLOCK)
                if not block:
                    break
                fout.write(block)
                done += len(block)
                progress.update(task, completed=done)
            fout.flush()
            os.fsync(fout.fileno())
        return done
