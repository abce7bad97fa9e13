# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/windows/injector.py
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from ..core.exceptions import InjectorUnavailable
from ..core.logger import Log
from ..core.utils import U
from ..workflow.models import ImageKind, InjectionOutcome, WorkflowConfig, classify_exit_code
from ..workflow.providers import Injector

DISM = "dism.exe"

_INSTALLING_RE = re.compile(r"^\s*Installing\s+(\d+)\s+of\s+(\d+)", re.IGNORECASE | re.MULTILINE)
_INSTALLED_RE = re.compile(r"driver package (?:was )?successfully installed", re.IGNORECASE)
_UNSIGNED_RE = re.compile(r"\bunsigned\b|\bnot (?:digitally )?signed\b|could not be installed", re.IGNORECASE)


def parse_dism_output(text: str) -> Tuple[Optional[int], int]:
    """
    Returns (installed, unsigned_skipped) from `dism /Add-Driver` output.
    `installed` is None when the output has no per-package lines at all.
    """
    text = text or ""
    installed = len(_INSTALLED_RE.findall(text))
    attempted = _INSTALLING_RE.findall(text)
    # Only per-package lines count; DISM also prints a generic /ForceUnsigned hint.
    skipped = sum(1 for line in text.splitlines() if _INSTALLING_RE.match(line) and _UNSIGNED_RE.search(line))
    if not attempted and installed == 0:
        return None, skipped
    return installed, skipped


class DismInjector(Injector):
    """
    Offline driver injection with `dism /Add-Driver /Recurse`.

    The whole driver tree is offered; DISM picks the packages whose INF
    matches the image's architecture and version.
    """

    def __init__(self, logger: logging.Logger, config: WorkflowConfig, *, exe: str = DISM):
        self.logger = logger
        self.config = config
        self.exe = exe

    def build_command(self, mount_path: Path, driver_root: Path, force_unsigned: bool, log_path: Path) -> List[str]:
        cmd = [
            self.exe,
            f"/Image:{mount_path}",
            "/Add-Driver",
            f"/Driver:{driver_root}",
            "/Recurse",
        ]
        if force_unsigned:
            cmd.append("/ForceUnsigned")
        cmd.append(f"/LogPath:{log_path}")
        return cmd

    def inject(self, mount_path: Path, driver_root: Path, force_unsigned: bool, kind: ImageKind) -> InjectionOutcome:
        log_dir = U.ensure_dir(Path(self.config.dism_log_dir))
        log_path = log_dir / f"dism-add-driver-{kind.value}-{U.now_ts()}.log"
        cmd = self.build_command(mount_path, driver_root, force_unsigned, log_path)

        Log.step(self.logger, "Running DISM /Add-Driver (this can take several minutes)")
        try:
            cp = U.run_cmd(self.logger, cmd, check=False)
        except FileNotFoundError as e:
            raise InjectorUnavailable(f"{self.exe} not found; DISM is required for driver injection", cause=e) from e
        except PermissionError as e:
            raise InjectorUnavailable(f"{self.exe} could not be started: {e}", cause=e) from e

        output = "\n".join(x for x in ((cp.stdout or "").rstrip(), (cp.stderr or "").rstrip()) if x)
        self.logger.debug("DISM output:\n%s", output)

        status = classify_exit_code(cp.returncode, self.config.partial_exit_codes)
        installed, skipped = parse_dism_output(output)
        self.logger.info(
            "DISM exit code %d -> %s (installed=%s, unsigned_skipped=%d, log=%s)",
            cp.returncode,
            status.value,
            installed,
            skipped,
            log_path,
        )
        return InjectionOutcome(
            status=status,
            exit_code=cp.returncode,
            output=output,
            installed_count=installed,
            skipped_unsigned=skipped or None,
        )
