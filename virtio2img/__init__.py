# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/__init__.py
"""
virtio2img - inject VirtIO drivers into offline Windows images

Mounts a WIM/VHD/VHDX image, attaches a VirtIO driver ISO, runs DISM
/Add-Driver and commits or discards the result, rolling back every mount on
failure.

Usage as a library:

    from virtio2img import ImageWorkflowController, WorkflowConfig, WorkflowRequest
    from virtio2img.windows import DismInjector, VirtioIsoProvider, WindowsImageMountProvider

    cfg = WorkflowConfig(workdir=Path("C:/virtio2img"))
    controller = ImageWorkflowController(
        logger, cfg,
        WindowsImageMountProvider(logger, cfg),
        VirtioIsoProvider(logger, cfg),
        DismInjector(logger, cfg),
    )
    result = controller.run(WorkflowRequest(Path("install.wim"), commit=True))
"""

__version__ = "0.1.0"

from .workflow import (
    ImageWorkflowController,
    WorkflowConfig,
    WorkflowRequest,
    WorkflowResult,
)

__all__ = [
    "__version__",
    "ImageWorkflowController",
    "WorkflowConfig",
    "WorkflowRequest",
    "WorkflowResult",
]
