# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/core/recovery_manager.py
from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .file_ops import atomic_write_text
from .utils import U


@dataclass
class CleanupAction:
    description: str
    fn: Callable[[], Any]
    seq: int


class RecoveryManager:
    """
    Ordered cleanup stack for one workflow run.

    Every acquired resource pushes the action that undoes it. On failure
    `execute_cleanup()` runs the actions newest-first; a failing action is
    logged and recorded as a warning, and the remaining actions still run.
    A resource that is released normally is taken off the stack with
    `release()` so it can never be undone twice.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.cleanup_actions: List[CleanupAction] = []
        self.executed: List[str] = []
        self.warnings: List[str] = []
        self._seq = 0

    def register_cleanup(self, fn: Callable[[], Any], description: str) -> CleanupAction:
        self._seq += 1
        action = CleanupAction(description=description, fn=fn, seq=self._seq)
        self.cleanup_actions.append(action)
        self.logger.debug("Cleanup registered #%d: %s", action.seq, description)
        return action

    def release(self, action: CleanupAction) -> CleanupAction:
        """Drop `action` from the stack without running it (resource released normally)."""
        self.cleanup_actions = [a for a in self.cleanup_actions if a.seq != action.seq]
        self.logger.debug("Cleanup released #%d: %s", action.seq, action.description)
        return action

    @property
    def pending(self) -> List[str]:
        return [a.description for a in self.cleanup_actions]

    def execute_cleanup(self) -> List[str]:
        """
        Run every pending action in reverse registration order. Returns the
        warnings raised by failing actions (empty when everything cleaned up).
        """
        warnings: List[str] = []
        while self.cleanup_actions:
            action = self.cleanup_actions.pop()
            self.logger.info("↩️  Rollback: %s", action.description)
            try:
                action.fn()
                self.executed.append(action.description)
            except Exception as e:
                msg = f"rollback step '{action.description}' failed: {type(e).__name__}: {e}"
                self.logger.warning("⚠️  %s", msg)
                warnings.append(msg)

        self.warnings.extend(warnings)
        return warnings


# Mount ledger (stale-state detection across runs)

# Ledger kinds besides the ImageKind values.
ATTACHED_ISO = "iso"
EXTRACTED_DIR = "extracted"


@dataclass
class LedgerEntry:
    kind: str
    mount_path: str
    backing_file: str
    original_file: str
    disk_handle: Optional[str] = None
    working_copy: bool = False
    pid: int = field(default_factory=os.getpid)
    host: str = field(default_factory=socket.gethostname)
    created_ts: str = field(default_factory=U.now_ts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "LedgerEntry":
        return LedgerEntry(
            kind=str(d.get("kind", "")),
            mount_path=str(d.get("mount_path", "")),
            backing_file=str(d.get("backing_file", "")),
            original_file=str(d.get("original_file", "")),
            disk_handle=(None if d.get("disk_handle") in (None, "") else str(d.get("disk_handle"))),
            working_copy=bool(d.get("working_copy", False)),
            pid=int(d.get("pid", 0)),
            host=str(d.get("host", "")),
            created_ts=str(d.get("created_ts", "")),
        )


class MountLedger:
    """
    JSON file listing every mount currently held by this tool.

    Written atomically on every change so that a crash or forced termination
    leaves an accurate list behind for the next run's stale-state cleanup.
    """

    FILENAME = "active-mounts.json"

    def __init__(self, logger: logging.Logger, workdir: Path):
        self.logger = logger
        self.path = Path(workdir) / self.FILENAME

    def entries(self) -> List[LedgerEntry]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self.logger.warning("⚠️  Mount ledger unreadable (%s): %s; treating as empty", self.path, e)
            return []
        return [LedgerEntry.from_dict(d) for d in (raw.get("mounts") or []) if isinstance(d, dict)]

    def _write(self, entries: List[LedgerEntry]) -> None:
        payload = {"mounts": [e.to_dict() for e in entries]}
        atomic_write_text(self.path, json.dumps(payload, indent=2, sort_keys=True))

    def add(self, entry: LedgerEntry) -> None:
        entries = [e for e in self.entries() if e.backing_file != entry.backing_file]
        entries.append(entry)
        self._write(entries)
        self.logger.debug("Ledger: +%s %s", entry.kind, entry.backing_file)

    def remove(self, backing_file: str) -> None:
        entries = self.entries()
        kept = [e for e in entries if e.backing_file != backing_file]
        if len(kept) != len(entries):
            self._write(kept)
            self.logger.debug("Ledger: -%s", backing_file)

    def clear(self) -> None:
        self._write([])
