# virtio2img/workflow/__init__.py
from .controller import ImageWorkflowController
from .models import (
    DriverSourceHandle,
    ExitStatusKind,
    ImageKind,
    InjectionOutcome,
    MountHandle,
    WorkflowConfig,
    WorkflowRequest,
    WorkflowResult,
    WorkflowState,
    classify_exit_code,
)
from .providers import DriverSourceProvider, ImageMountProvider, Injector

__all__ = [
    "DriverSourceHandle",
    "DriverSourceProvider",
    "ExitStatusKind",
    "ImageKind",
    "ImageMountProvider",
    "ImageWorkflowController",
    "InjectionOutcome",
    "Injector",
    "MountHandle",
    "WorkflowConfig",
    "WorkflowRequest",
    "WorkflowResult",
    "WorkflowState",
    "classify_exit_code",
]
