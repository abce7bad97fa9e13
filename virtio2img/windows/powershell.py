# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/windows/powershell.py

from __future__ import annotations

import json
import logging
import string
import subprocess
from pathlib import Path
from typing import Any, List, Optional, Type

from ..core.exceptions import Virtio2ImgError
from ..core.utils import U

POWERSHELL = "powershell.exe"
_BASE_ARGS = ["-NoLogo", "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass", "-Command"]


class PowerShellError(RuntimeError):
    def __init__(self, message: str, *, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


def ps_quote(value: Any) -> str:
    """Single-quoted PowerShell literal; embedded quotes are doubled."""
    return "'" + str(value).replace("'", "''") + "'"


def clean_drive_letter(v: Any) -> Optional[str]:
    """"E", "e:" and "E:" all become "E"; anything else is None."""
    s = str(v or "").strip().rstrip(":")
    if len(s) == 1 and s.upper() in string.ascii_uppercase:
        return s.upper()
    return None


def drive_root(letter: str) -> Path:
    return Path(f"{letter}:\\")


def _script(body: str) -> str:
    # Make cmdlet errors terminating so a failed Mount-* returns non-zero.
    return "$ErrorActionPreference = 'Stop'; $ProgressPreference = 'SilentlyContinue'; " + body


class PowerShell:
    """
    Thin runner for PowerShell one-liners.

    Callers pick the project error raised on failure via `error=`; that keeps
    the mapping from platform failure to workflow error kind at the call site.
    """

    def __init__(self, logger: logging.Logger, *, exe: str = POWERSHELL, timeout_s: Optional[int] = None):
        self.logger = logger
        self.exe = exe
        self.timeout_s = timeout_s

    def _cmd(self, body: str) -> List[str]:
        return [self.exe] + _BASE_ARGS + [_script(body)]

    def run(self, body: str, *, error: Type[Virtio2ImgError], what: str) -> str:
        try:
            cp = U.run_cmd(self.logger, self._cmd(body), check=False, timeout=self.timeout_s)
        except FileNotFoundError as e:
            raise error(f"{what}: PowerShell ({self.exe}) not found", cause=e)
        except subprocess.TimeoutExpired as e:
            raise error(f"{what}: PowerShell timed out after {self.timeout_s}s", cause=e)

        out = (cp.stdout or "").strip()
        if cp.returncode != 0:
            err = (cp.stderr or out or "").strip()
            raise error(
                f"{what}: {err or 'PowerShell exited with ' + str(cp.returncode)}",
                cause=PowerShellError(err, returncode=cp.returncode, output=out),
                context={"rc": cp.returncode},
            )
        return out

    def run_json(self, body: str, *, error: Type[Virtio2ImgError], what: str) -> Any:
        """
        Run `body | ConvertTo-Json` and parse it. Single objects are returned
        as a one-element list so callers always iterate.
        """
        out = self.run(f"@({body}) | ConvertTo-Json -Depth 4 -Compress", error=error, what=what)
        if not out:
            return []
        try:
            data = json.loads(out)
        except ValueError as e:
            raise error(f"{what}: could not parse PowerShell JSON output", cause=e, context={"output": out[:400]})
        return data if isinstance(data, list) else [data]
