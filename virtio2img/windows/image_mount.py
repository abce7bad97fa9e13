# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/windows/image_mount.py
"""
Windows image mount provider.

WIM images are serviced in place through the DISM PowerShell module
(Mount-WindowsImage / Dismount-WindowsImage -Save|-Discard).

VHD/VHDX images are never mounted directly: a working copy is made first,
attached with Mount-DiskImage, and the partition holding \\Windows becomes the
mount path. Commit replaces the original with the working copy atomically;
discard deletes the working copy.

Every held mount is recorded in the mount ledger so that `cleanup_stale()`
can undo what a crashed run left behind.
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import FinalizeFailed, MountFailed, SourceNotFound, Virtio2ImgError
from ..core.file_ops import atomic_write
from ..core.logger import Log
from ..core.recovery_manager import EXTRACTED_DIR, LedgerEntry, MountLedger
from ..core.utils import U
from ..workflow.models import ImageKind, MountHandle, WorkflowConfig
from ..workflow.providers import ImageMountProvider
from .powershell import PowerShell, clean_drive_letter, drive_root, ps_quote


def pick_windows_partition(partitions: List[Dict[str, Any]], *, is_windows_root=None) -> Optional[Dict[str, Any]]:
    """
    Choose the partition that carries the offline Windows installation.

    `partitions` are Get-Partition rows (DiskNumber, PartitionNumber,
    DriveLetter, Size). Among lettered partitions the first one with
    \\Windows\\System32 wins; ties go to the largest partition.
    """
    if is_windows_root is None:
        def is_windows_root(root: Path) -> bool:
            return (root / "Windows" / "System32").is_dir()

    lettered = [p for p in partitions if clean_drive_letter(p.get("DriveLetter"))]
    lettered.sort(key=lambda p: int(p.get("Size") or 0), reverse=True)
    for p in lettered:
        if is_windows_root(drive_root(clean_drive_letter(p.get("DriveLetter")))):
            return p
    return None


_ATTACH_SCRIPT = (
    "$img = Mount-DiskImage -ImagePath {path} -PassThru; "
    "$disk = $img | Get-Disk; "
    "foreach ($p in ($disk | Get-Partition | Where-Object {{ $_.Type -ne 'Reserved' -and $_.Size -gt 0 }})) {{ "
    "if (-not $p.DriveLetter -or [int][char]$p.DriveLetter -eq 0) {{ "
    "$p | Add-PartitionAccessPath -AssignDriveLetter -ErrorAction SilentlyContinue }} }}; "
    "$disk | Get-Partition | Select-Object DiskNumber, PartitionNumber, Size, "
    "@{{n='DriveLetter';e={{[string]$_.DriveLetter}}}}"
)


class WindowsImageMountProvider(ImageMountProvider):
    def __init__(
        self,
        logger: logging.Logger,
        config: WorkflowConfig,
        *,
        ps: Optional[PowerShell] = None,
        ledger: Optional[MountLedger] = None,
    ):
        self.logger = logger
        self.config = config
        self.ps = ps or PowerShell(logger)
        U.ensure_dir(config.workdir)
        self.ledger = ledger or MountLedger(logger, config.workdir)

    # Mount

    def mount(self, source: Path, kind: ImageKind) -> MountHandle:
        source = Path(source)
        if not source.is_file():
            raise SourceNotFound(f"Source image not found: {source}", context={"source": str(source)})
        if kind == ImageKind.WIM:
            return self._mount_wim(source)
        return self._mount_disk(source, kind)

    def _mount_wim(self, source: Path) -> MountHandle:
        mount_dir = U.ensure_dir(self.config.mount_root / f"{source.stem}-{U.now_ts()}")
        self.ledger.add(
            LedgerEntry(
                kind=ImageKind.WIM.value,
                mount_path=str(mount_dir),
                backing_file=str(source),
                original_file=str(source),
            )
        )
        self.logger.info("Mounting WIM %s (index %d) at %s", source, self.config.wim_index, mount_dir)
        try:
            self.ps.run(
                f"Mount-WindowsImage -ImagePath {ps_quote(source)} -Index {int(self.config.wim_index)} "
                f"-Path {ps_quote(mount_dir)}",
                error=MountFailed,
                what=f"Mount-WindowsImage {source.name}",
            )
        except MountFailed:
            self._best_effort(
                f"Dismount-WindowsImage -Path {ps_quote(mount_dir)} -Discard",
                what="discard partial WIM mount",
            )
            self._remove_dir(mount_dir)
            self.ledger.remove(str(source))
            raise
        return MountHandle(
            kind=ImageKind.WIM,
            mount_path=mount_dir,
            backing_file=source,
            original_file=source,
        )

    def _working_copy_path(self, source: Path) -> Path:
        return U.ensure_dir(self.config.working_copy_dir) / f"{source.stem}.{U.now_ts()}.working{source.suffix.lower()}"

    def _mount_disk(self, source: Path, kind: ImageKind) -> MountHandle:
        working = self._working_copy_path(source)
        try:
            self.ledger.add(
                LedgerEntry(
                    kind=kind.value,
                    mount_path="",
                    backing_file=str(working),
                    original_file=str(source),
                    working_copy=True,
                )
            )
            Log.step(self.logger, f"Creating working copy of {source.name}")
            U.copy_file(self.logger, source, working, label=f"Working copy {source.name}")

            rows = self.ps.run_json(
                _ATTACH_SCRIPT.format(path=ps_quote(working)),
                error=MountFailed,
                what=f"Mount-DiskImage {working.name}",
            )
            self.logger.debug("Partitions on %s: %s", working.name, rows)

            part = pick_windows_partition(rows)
            if part is None:
                raise MountFailed(
                    f"No partition with a Windows installation found in {source.name}",
                    context={"partitions": len(rows)},
                )
            letter = clean_drive_letter(part.get("DriveLetter"))
            handle = MountHandle(
                kind=kind,
                mount_path=drive_root(letter),
                backing_file=working,
                original_file=source,
                disk_handle=str(part.get("DiskNumber")),
            )
            self.ledger.add(
                LedgerEntry(
                    kind=kind.value,
                    mount_path=str(handle.mount_path),
                    backing_file=str(working),
                    original_file=str(source),
                    disk_handle=handle.disk_handle,
                    working_copy=True,
                )
            )
            return handle
        except Exception as e:
            # The attach script can fail after Mount-DiskImage already attached the copy.
            if working.exists():
                self._best_effort(f"Dismount-DiskImage -ImagePath {ps_quote(working)}", what="detach working copy")
            try:
                U.safe_unlink(working)
                self.ledger.remove(str(working))
            except OSError as exc:
                Log.warn(self.logger, f"Could not delete working copy {working}: {exc}")
            if isinstance(e, Virtio2ImgError):
                raise
            raise MountFailed(f"Could not prepare working copy of {source.name}: {e}", cause=e) from e

    # Finalize

    def finalize(self, handle: MountHandle, commit: bool) -> None:
        if handle.kind == ImageKind.WIM:
            self._finalize_wim(handle, commit)
        else:
            self._finalize_disk(handle, commit)

    def _finalize_wim(self, handle: MountHandle, commit: bool) -> None:
        mode = "-Save" if commit else "-Discard"
        try:
            self.ps.run(
                f"Dismount-WindowsImage -Path {ps_quote(handle.mount_path)} {mode}",
                error=FinalizeFailed,
                what=f"Dismount-WindowsImage {mode}",
            )
        except FinalizeFailed:
            if commit:
                # A failed save leaves the image mounted; drop it rather than leak it.
                Log.warn(self.logger, "Save failed; discarding the mounted WIM instead")
                self._best_effort(
                    f"Dismount-WindowsImage -Path {ps_quote(handle.mount_path)} -Discard",
                    what="discard after failed save",
                )
                self._remove_dir(Path(handle.mount_path))
                self.ledger.remove(str(handle.backing_file))
            raise
        self._remove_dir(Path(handle.mount_path))
        self.ledger.remove(str(handle.backing_file))
        Log.ok(self.logger, f"WIM {'saved' if commit else 'discarded'}: {handle.original_file}")

    def _finalize_disk(self, handle: MountHandle, commit: bool) -> None:
        working = Path(handle.backing_file)
        self.ps.run(
            f"Dismount-DiskImage -ImagePath {ps_quote(working)}",
            error=FinalizeFailed,
            what=f"Dismount-DiskImage {working.name}",
        )

        if commit:
            original = Path(handle.original_file)
            try:
                with atomic_write(original, suffix=".commit") as tmp:
                    U.copy_file(self.logger, working, tmp, label=f"Committing {original.name}")
            except OSError as e:
                Log.warn(self.logger, f"Commit copy failed; working copy kept at {working}")
                raise FinalizeFailed(
                    f"Could not copy working copy over {original}: {e}",
                    cause=e,
                    context={"working_copy": str(working)},
                ) from e

        try:
            U.safe_unlink(working)
        except OSError as e:
            raise FinalizeFailed(f"Could not delete working copy {working}: {e}", cause=e) from e
        self.ledger.remove(str(working))
        Log.ok(self.logger, f"{handle.kind.value.upper()} {'committed' if commit else 'discarded'}: {handle.original_file}")

    # Stale state

    def cleanup_stale(self) -> int:
        entries = self.ledger.entries()
        if not entries:
            self.logger.debug("No stale mounts recorded in %s", self.ledger.path)
            return 0

        Log.warn(self.logger, f"Found {len(entries)} stale mount(s) from an earlier run; cleaning up")
        saw_wim = False
        for e in entries:
            if e.kind == ImageKind.WIM.value:
                saw_wim = True
                if e.mount_path:
                    self._best_effort(
                        f"Dismount-WindowsImage -Path {ps_quote(e.mount_path)} -Discard",
                        what=f"discard stale WIM mount {e.mount_path}",
                    )
                    self._remove_dir(Path(e.mount_path))
            elif e.kind == EXTRACTED_DIR:
                self._remove_dir(Path(e.mount_path))
            else:
                self._best_effort(
                    f"Dismount-DiskImage -ImagePath {ps_quote(e.backing_file)}",
                    what=f"detach stale {e.kind} {e.backing_file}",
                )
                if e.working_copy:
                    try:
                        U.safe_unlink(Path(e.backing_file))
                    except OSError as exc:
                        Log.warn(self.logger, f"Could not delete stale working copy {e.backing_file}: {exc}")

        if saw_wim:
            self._best_effort("Clear-WindowsCorruptMountPoint", what="clear corrupt WIM mount points")

        self.ledger.clear()
        return len(entries)

    # Helpers

    def _best_effort(self, body: str, *, what: str) -> bool:
        try:
            self.ps.run(body, error=FinalizeFailed, what=what)
            return True
        except FinalizeFailed as e:
            self.logger.debug("Best-effort step failed (%s): %s", what, e)
            return False

    def _remove_dir(self, d: Path) -> None:
        if not d.exists():
            return
        try:
            shutil.rmtree(d)
        except OSError as e:
            Log.warn(self.logger, f"Could not remove directory {d}: {e}")
