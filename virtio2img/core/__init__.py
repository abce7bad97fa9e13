# virtio2img/core/__init__.py
from .exceptions import (
    DownloadFailed,
    Fatal,
    FinalizeFailed,
    InjectionFatal,
    InjectorUnavailable,
    InvalidFormat,
    MountFailed,
    ReleaseFailed,
    SourceNotFound,
    UnsupportedFormat,
    Virtio2ImgError,
)
from .logger import Log
from .recovery_manager import MountLedger, RecoveryManager

__all__ = [
    "DownloadFailed",
    "Fatal",
    "FinalizeFailed",
    "InjectionFatal",
    "InjectorUnavailable",
    "InvalidFormat",
    "Log",
    "MountFailed",
    "MountLedger",
    "RecoveryManager",
    "ReleaseFailed",
    "SourceNotFound",
    "UnsupportedFormat",
    "Virtio2ImgError",
]
