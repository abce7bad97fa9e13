# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/workflow/providers.py
"""
Collaborator contracts consumed by the workflow controller.

The controller only talks to these interfaces; the Windows implementations
live in `virtio2img.windows`, tests plug in recording fakes.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .models import DriverSourceHandle, ImageKind, InjectionOutcome, MountHandle


class ImageMountProvider(ABC):
    @abstractmethod
    def mount(self, source: Path, kind: ImageKind) -> MountHandle:
        """
        Open `source` for offline servicing.

        Raises UnsupportedFormat, SourceNotFound or MountFailed. After
        MountFailed nothing of the attempt remains (no working copy, no mount).
        """

    @abstractmethod
    def finalize(self, handle: MountHandle, commit: bool) -> None:
        """Persist (commit=True) or drop the changes and close the mount. Raises FinalizeFailed."""

    def cleanup_stale(self) -> int:
        """
        Tear down mounts left behind by a previous crashed run.
        Idempotent; returns the number of leftovers handled.
        """
        return 0


class DriverSourceProvider(ABC):
    @abstractmethod
    def resolve(self, override: Optional[Path] = None) -> DriverSourceHandle:
        """Raises SourceNotFound, InvalidFormat, DownloadFailed or MountFailed."""

    @abstractmethod
    def release(self, handle: DriverSourceHandle) -> None:
        """Raises ReleaseFailed."""


class Injector(ABC):
    @abstractmethod
    def inject(
        self,
        mount_path: Path,
        driver_root: Path,
        force_unsigned: bool,
        kind: ImageKind,
    ) -> InjectionOutcome:
        """Blocking. Raises InjectorUnavailable if the tool cannot be started."""
