# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/windows/driver_source.py
"""
VirtIO driver source provider.

Resolution order:
  1) explicit override (an .iso file or an already extracted directory)
  2) the cached ISO from an earlier run
  3) download from `virtio_url` into the cache

An ISO is then either attached with Mount-DiskImage (default) or extracted
with pycdlib into the workdir (`iso_access: extract`). Both are recorded in
the mount ledger until released.
"""
from __future__ import annotations

import logging
import random
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pycdlib
import requests
from pycdlib.pycdlibexception import PyCdlibException

from ..core.exceptions import DownloadFailed, InvalidFormat, MountFailed, ReleaseFailed, SourceNotFound
from ..core.file_ops import atomic_write
from ..core.logger import Log
from ..core.recovery_manager import ATTACHED_ISO, EXTRACTED_DIR, LedgerEntry, MountLedger
from ..core.utils import U, transfer_progress
from ..workflow.models import DriverSourceHandle, WorkflowConfig
from ..workflow.providers import DriverSourceProvider
from .powershell import PowerShell, clean_drive_letter, drive_root, ps_quote

# ISO9660 primary volume descriptor: "CD001" at sector 16, byte 1.
_ISO_MAGIC_OFFSET = 16 * 2048 + 1
_ISO_MAGIC = b"CD001"


def looks_like_iso(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            f.seek(_ISO_MAGIC_OFFSET)
            return f.read(len(_ISO_MAGIC)) == _ISO_MAGIC
    except OSError:
        return False


@dataclass
class DownloadResult:
    bytes_written: int
    expected_total: Optional[int]
    attempts: int


def _backoff_sleep(attempt: int, base: float = 1.0, cap: float = 30.0) -> None:
    t = min(cap, base * (2 ** attempt))
    time.sleep(t * (0.7 + random.random() * 0.6))


def download_file(
    logger: logging.Logger,
    session: requests.Session,
    url: str,
    dest: Path,
    *,
    retries: int = 3,
    chunk_bytes: int = 4 * 1024 * 1024,
    connect_timeout_s: int = 15,
    read_timeout_s: int = 300,
) -> DownloadResult:
    """
    Stream `url` into `dest`. The data lands in a `.part` file that only
    replaces `dest` once complete and size-checked.
    """
    last_error = ""
    for attempt in range(max(1, retries)):
        try:
            with session.get(url, stream=True, timeout=(connect_timeout_s, read_timeout_s), allow_redirects=True) as resp:
                resp.raise_for_status()
                cl = resp.headers.get("Content-Length")
                expected = int(cl) if cl and cl.isdigit() else None

                written = 0
                with atomic_write(dest, suffix=".part") as tmp:
                    with open(tmp, "wb") as f, transfer_progress() as progress:
                        task = progress.add_task(f"Downloading {dest.name}", total=expected)
                        for chunk in resp.iter_content(chunk_size=chunk_bytes):
                            if not chunk:
                                continue
                            f.write(chunk)
                            written += len(chunk)
                            progress.update(task, completed=written)
                    if expected is not None and written != expected:
                        raise IOError(f"size mismatch: expected {expected}, got {written}")

            return DownloadResult(bytes_written=written, expected_total=expected, attempts=attempt + 1)

        except (requests.RequestException, OSError) as e:
            last_error = f"{type(e).__name__}: {e}"
            logger.warning("Download attempt %d/%d failed: %s", attempt + 1, retries, e)
            if attempt + 1 < retries:
                _backoff_sleep(attempt)

    raise DownloadFailed(
        f"Download of {url} failed after {max(1, retries)} attempt(s): {last_error}",
        context={"url": url, "dest": str(dest)},
    )


class VirtioIsoProvider(DriverSourceProvider):
    def __init__(
        self,
        logger: logging.Logger,
        config: WorkflowConfig,
        *,
        ps: Optional[PowerShell] = None,
        session: Optional[requests.Session] = None,
        ledger: Optional[MountLedger] = None,
    ):
        self.logger = logger
        self.config = config
        self.ps = ps or PowerShell(logger)
        self.session = session or requests.Session()
        U.ensure_dir(config.workdir)
        self.ledger = ledger or MountLedger(logger, config.workdir)

    # Resolve

    def resolve(self, override: Optional[Path] = None) -> DriverSourceHandle:
        if override is not None:
            iso = self._check_override(Path(override))
            if iso.is_dir():
                Log.ok(self.logger, f"Using extracted driver directory {iso}")
                return DriverSourceHandle(path=iso)
        else:
            iso = self._cached_or_download()

        if self.config.iso_access == "extract":
            return self._extract(iso)
        return self._mount(iso)

    def _check_override(self, p: Path) -> Path:
        if not p.exists():
            raise SourceNotFound(f"Driver override not found: {p}", context={"override": str(p)})
        if p.is_dir():
            return p
        if p.suffix.lower() != ".iso" or not looks_like_iso(p):
            raise InvalidFormat(
                f"Driver override must be an ISO image or a directory: {p}",
                context={"override": str(p)},
            )
        self.logger.info("Using local driver ISO %s", p)
        return p

    def _cached_or_download(self) -> Path:
        cache = Path(self.config.iso_cache)
        if cache.is_file():
            if looks_like_iso(cache):
                Log.ok(self.logger, f"Reusing cached driver ISO {cache} ({U.human_bytes(cache.stat().st_size)})")
                return cache
            Log.warn(self.logger, f"Cached driver ISO {cache} is not an ISO image; downloading again")
            U.safe_unlink(cache)

        U.ensure_dir(cache.parent)
        Log.step(self.logger, f"Downloading VirtIO drivers from {self.config.virtio_url}")
        res = download_file(
            self.logger,
            self.session,
            self.config.virtio_url,
            cache,
            retries=self.config.download_retries,
            chunk_bytes=self.config.download_chunk_mb * 1024 * 1024,
            connect_timeout_s=self.config.connect_timeout_s,
            read_timeout_s=self.config.read_timeout_s,
        )
        if not looks_like_iso(cache):
            U.safe_unlink(cache)
            raise InvalidFormat(
                f"Downloaded file from {self.config.virtio_url} is not an ISO image",
                context={"url": self.config.virtio_url},
            )
        Log.ok(self.logger, f"Downloaded {U.human_bytes(res.bytes_written)} to {cache}")
        return cache

    def _mount(self, iso: Path) -> DriverSourceHandle:
        self.ledger.add(LedgerEntry(kind=ATTACHED_ISO, mount_path="", backing_file=str(iso), original_file=str(iso)))
        try:
            rows = self.ps.run_json(
                f"$img = Mount-DiskImage -ImagePath {ps_quote(iso)} -PassThru; "
                "$img | Get-Volume | Select-Object @{n='DriveLetter';e={[string]$_.DriveLetter}}",
                error=MountFailed,
                what=f"Mount-DiskImage {iso.name}",
            )
        except MountFailed:
            # Get-Volume can fail with the ISO already attached.
            self._detach(iso)
            raise
        letters = [clean_drive_letter(r.get("DriveLetter")) for r in rows]
        letters = [x for x in letters if x]
        root = drive_root(letters[0]) if letters else None
        if root is None or not root.exists():
            self._detach(iso)
            raise MountFailed(f"Driver ISO {iso.name} mounted without a usable drive letter", context={"iso": str(iso)})
        Log.ok(self.logger, f"Driver ISO mounted at {root}")
        return DriverSourceHandle(path=root, backing_iso=iso)

    def _extract(self, iso: Path) -> DriverSourceHandle:
        td = U.ensure_dir(self.config.workdir / "drivers" / f"virtio-{U.now_ts()}")
        self.ledger.add(LedgerEntry(kind=EXTRACTED_DIR, mount_path=str(td), backing_file=str(td), original_file=str(iso)))
        extracted = 0
        cd = pycdlib.PyCdlib()
        try:
            Log.step(self.logger, f"Extracting {iso.name} -> {td}")
            cd.open(str(iso))
            try:
                use_joliet = cd.has_joliet()
                if use_joliet:
                    facade = cd.get_joliet_facade()
                    tree = cd.walk(joliet_path="/")
                else:
                    facade = cd.get_iso9660_facade()
                    tree = cd.walk(iso_path="/")
                for dirpath, _dirs, files in tree:
                    for name in files:
                        clean = name.split(";")[0]
                        rel = (dirpath.rstrip("/") + "/" + clean).lstrip("/")
                        out = td / rel
                        out.parent.mkdir(parents=True, exist_ok=True)
                        facade.get_file_from_iso(str(out), dirpath.rstrip("/") + "/" + name)
                        extracted += 1
            finally:
                cd.close()
        except PyCdlibException as e:
            shutil.rmtree(td, ignore_errors=True)
            self.ledger.remove(str(td))
            raise InvalidFormat(f"Could not read ISO {iso.name}: {e}", cause=e) from e
        except OSError as e:
            shutil.rmtree(td, ignore_errors=True)
            self.ledger.remove(str(td))
            raise MountFailed(f"Could not extract ISO {iso.name}: {e}", cause=e) from e

        Log.ok(self.logger, f"Extracted {extracted} file(s) from {iso.name}")
        return DriverSourceHandle(path=td, backing_iso=iso, extracted=True)

    # Release

    def release(self, handle: DriverSourceHandle) -> None:
        if handle.extracted:
            try:
                shutil.rmtree(handle.path)
            except OSError as e:
                raise ReleaseFailed(f"Could not remove extracted drivers {handle.path}: {e}", cause=e) from e
            self.ledger.remove(str(handle.path))
            return
        if handle.backing_iso is None:
            return
        self.ps.run(
            f"Dismount-DiskImage -ImagePath {ps_quote(handle.backing_iso)}",
            error=ReleaseFailed,
            what=f"Dismount-DiskImage {handle.backing_iso.name}",
        )
        self.ledger.remove(str(handle.backing_iso))
        Log.ok(self.logger, f"Driver ISO {handle.backing_iso.name} dismounted")

    def _detach(self, iso: Path) -> None:
        try:
            self.ps.run(f"Dismount-DiskImage -ImagePath {ps_quote(iso)}", error=ReleaseFailed, what="detach ISO")
        except ReleaseFailed as e:
            self.logger.debug("Detach after failed mount also failed: %s", e)
            return
        self.ledger.remove(str(iso))
