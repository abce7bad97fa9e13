# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/workflow/models.py

from __future__ import annotations

import tempfile
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..core.exceptions import UnsupportedFormat

DEFAULT_VIRTIO_URL = (
    "https://fedorapeople.org/groups/virt/virtio-win/direct-downloads/stable-virtio/virtio-win.iso"
)
DEFAULT_PARTIAL_EXIT_CODES: Tuple[int, ...] = (50,)


class ImageKind(str, Enum):
    WIM = "wim"
    VHD = "vhd"
    VHDX = "vhdx"

    @property
    def is_disk(self) -> bool:
        """VHD and VHDX share every rule: working copy, disk mount, file-level commit."""
        return self in (ImageKind.VHD, ImageKind.VHDX)

    @classmethod
    def from_path(cls, path: Path) -> "ImageKind":
        ext = Path(path).suffix.lower().lstrip(".")
        for k in cls:
            if k.value == ext:
                return k
        raise UnsupportedFormat(
            f"Unsupported image type '{Path(path).suffix or '(none)'}': expected .wim, .vhd or .vhdx",
            context={"source": str(path)},
        )


class WorkflowState(str, Enum):
    IDLE = "Idle"
    IMAGE_MOUNTED = "ImageMounted"
    DRIVER_SOURCE_READY = "DriverSourceReady"
    DRIVERS_INJECTED = "DriversInjected"
    FINALIZED = "Finalized"
    FAILED = "Failed"


class ExitStatusKind(str, Enum):
    COMPLETE = "complete"
    PARTIAL_UNSIGNED = "partial_unsigned"
    FATAL = "fatal"


def classify_exit_code(code: int, partial_codes: Iterable[int] = DEFAULT_PARTIAL_EXIT_CODES) -> ExitStatusKind:
    """
    Map an injector exit code onto the three outcomes the workflow knows.

    DISM returns 50 when unsigned packages were skipped because /ForceUnsigned
    was not given; the installed drivers are still valid, so that is a
    partial success, not a failure.
    """
    if code == 0:
        return ExitStatusKind.COMPLETE
    if code in tuple(partial_codes):
        return ExitStatusKind.PARTIAL_UNSIGNED
    return ExitStatusKind.FATAL


@dataclass(frozen=True)
class MountHandle:
    kind: ImageKind
    mount_path: Path
    backing_file: Path
    original_file: Path
    disk_handle: Optional[str] = None

    def __post_init__(self) -> None:
        # Path("") collapses to "."
        if str(self.mount_path) in ("", "."):
            raise ValueError("MountHandle.mount_path must not be empty")
        if self.kind.is_disk and self.disk_handle is None:
            raise ValueError("MountHandle for VHD/VHDX needs a disk_handle")
        if self.kind == ImageKind.WIM and self.disk_handle is not None:
            raise ValueError("MountHandle for WIM has no disk_handle")

    @property
    def is_working_copy(self) -> bool:
        return self.backing_file != self.original_file


@dataclass(frozen=True)
class DriverSourceHandle:
    path: Path
    backing_iso: Optional[Path] = None
    extracted: bool = False


@dataclass(frozen=True)
class InjectionOutcome:
    status: ExitStatusKind
    exit_code: int
    output: str = ""
    installed_count: Optional[int] = None
    skipped_unsigned: Optional[int] = None


@dataclass(frozen=True)
class WorkflowRequest:
    source: Path
    force_unsigned: bool = False
    driver_override: Optional[Path] = None
    # None -> ask the decision provider
    commit: Optional[bool] = None


@dataclass
class WorkflowResult:
    source: Path
    kind: ImageKind
    drivers_installed: Optional[int] = None
    committed: bool = False
    warnings: List[str] = field(default_factory=list)
    exit_status: Optional[ExitStatusKind] = None
    transitions: List[WorkflowState] = field(default_factory=list)

    def to_jsonable(self) -> Dict[str, Any]:
        d = asdict(self)
        d["source"] = str(self.source)
        d["kind"] = self.kind.value
        d["exit_status"] = self.exit_status.value if self.exit_status else None
        d["transitions"] = [s.value for s in self.transitions]
        return d


@dataclass
class WorkflowConfig:
    """
    Everything a run needs from its environment, resolved once up front.
    """
    workdir: Path
    virtio_url: str = DEFAULT_VIRTIO_URL
    iso_cache: Optional[Path] = None
    wim_index: int = 1
    partial_exit_codes: Tuple[int, ...] = DEFAULT_PARTIAL_EXIT_CODES
    iso_access: str = "mount"  # mount|extract
    dism_log_dir: Optional[Path] = None
    download_retries: int = 3
    download_chunk_mb: int = 4
    connect_timeout_s: int = 15
    read_timeout_s: int = 300

    def __post_init__(self) -> None:
        self.workdir = Path(self.workdir)
        if self.iso_cache is None:
            self.iso_cache = self.workdir / "virtio-win.iso"
        if self.dism_log_dir is None:
            self.dism_log_dir = self.workdir / "logs"
        if self.iso_access not in ("mount", "extract"):
            raise ValueError(f"iso_access must be 'mount' or 'extract', got {self.iso_access!r}")
        self.partial_exit_codes = tuple(int(x) for x in self.partial_exit_codes)

    @property
    def working_copy_dir(self) -> Path:
        return self.workdir / "working"

    @property
    def mount_root(self) -> Path:
        return self.workdir / "mount"

    @staticmethod
    def default_workdir() -> Path:
        return Path(tempfile.gettempdir()) / "virtio2img"

    @classmethod
    def from_mapping(cls, conf: Mapping[str, Any]) -> "WorkflowConfig":
        """
        Build from a merged config/args mapping; unknown keys are ignored,
        missing or None keys keep their defaults.
        """
        def _get(key: str, default: Any) -> Any:
            v = conf.get(key)
            return default if v is None else v

        codes = _get("partial_exit_codes", DEFAULT_PARTIAL_EXIT_CODES)
        if isinstance(codes, (int, str)):
            codes = [codes]

        iso_cache = conf.get("iso_cache")
        dism_log_dir = conf.get("dism_log_dir")
        return cls(
            workdir=Path(_get("workdir", cls.default_workdir())).expanduser(),
            virtio_url=str(_get("virtio_url", DEFAULT_VIRTIO_URL)),
            iso_cache=Path(iso_cache).expanduser() if iso_cache else None,
            wim_index=int(_get("wim_index", 1)),
            partial_exit_codes=tuple(int(c) for c in codes),
            iso_access=str(_get("iso_access", "mount")),
            dism_log_dir=Path(dism_log_dir).expanduser() if dism_log_dir else None,
            download_retries=int(_get("download_retries", 3)),
            download_chunk_mb=int(_get("download_chunk_mb", 4)),
            connect_timeout_s=int(_get("connect_timeout_s", 15)),
            read_timeout_s=int(_get("read_timeout_s", 300)),
        )
