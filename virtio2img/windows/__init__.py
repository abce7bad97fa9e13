# virtio2img/windows/__init__.py
"""Windows implementations of the workflow collaborators."""
from .driver_source import VirtioIsoProvider
from .image_mount import WindowsImageMountProvider
from .injector import DismInjector
from .powershell import PowerShell

__all__ = ["DismInjector", "PowerShell", "VirtioIsoProvider", "WindowsImageMountProvider"]
