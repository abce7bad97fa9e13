# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/cli/prompt.py
from __future__ import annotations

import logging
import sys
from typing import Callable, Optional

from rich.console import Console
from rich.prompt import Confirm

from ..workflow.models import MountHandle, WorkflowResult


def console_commit_decider(logger: logging.Logger, *, console: Optional[Console] = None) -> Callable[[MountHandle, WorkflowResult], bool]:
    """
    Decision provider that asks on the console whether to keep the changes.

    Without a TTY (scheduled task, CI) there is nobody to ask: the answer is
    "discard", which leaves the source untouched.
    """
    con = console or Console(stderr=True)

    def _decide(handle: MountHandle, result: WorkflowResult) -> bool:
        if not sys.stdin.isatty():
            w = "No console to ask for a commit decision; discarding (use --commit/--discard)"
            logger.warning("⚠️  %s", w)
            result.warnings.append(w)
            return False

        con.print(f"[bold]Image:[/bold] {handle.original_file} ({handle.kind.value.upper()})")
        con.print(f"[bold]Drivers installed:[/bold] {result.drivers_installed if result.drivers_installed is not None else 'unknown'}")
        for w in result.warnings:
            con.print(f"[yellow]warning:[/yellow] {w}")
        try:
            return bool(Confirm.ask("Commit changes to the image?", default=False, console=con))
        except EOFError:
            return False

    return _decide
