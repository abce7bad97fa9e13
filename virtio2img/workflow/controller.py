# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# virtio2img/workflow/controller.py
"""
Image workflow controller.

Drives one mount -> resolve drivers -> inject -> finalize run and keeps a
cleanup stack of everything it acquired, so that a failure at any stage
undoes exactly the resources already held, newest first.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Type

from ..core.exceptions import (
    Fatal,
    FinalizeFailed,
    InjectionFatal,
    MountFailed,
    ReleaseFailed,
    SourceNotFound,
    Virtio2ImgError,
)
from ..core.logger import Log
from ..core.recovery_manager import RecoveryManager
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
)
from .providers import DriverSourceProvider, ImageMountProvider, Injector

CommitDecider = Callable[[MountHandle, WorkflowResult], bool]

# Stage names as they appear in errors and logs.
STAGE_VALIDATE = "validate"
STAGE_MOUNT = "mount-image"
STAGE_DRIVERS = "resolve-drivers"
STAGE_INJECT = "inject"
STAGE_RELEASE = "release-drivers"
STAGE_DECIDE = "commit-decision"
STAGE_FINALIZE = "finalize-image"

# Error kind used when a provider leaks a foreign exception at that stage.
_STAGE_ERROR: Dict[str, Type[Virtio2ImgError]] = {
    STAGE_VALIDATE: Fatal,
    STAGE_MOUNT: MountFailed,
    STAGE_DRIVERS: MountFailed,
    STAGE_INJECT: InjectionFatal,
    STAGE_RELEASE: ReleaseFailed,
    STAGE_DECIDE: Fatal,
    STAGE_FINALIZE: FinalizeFailed,
}

_ALLOWED = {
    WorkflowState.IDLE: (WorkflowState.IMAGE_MOUNTED,),
    WorkflowState.IMAGE_MOUNTED: (WorkflowState.DRIVER_SOURCE_READY,),
    WorkflowState.DRIVER_SOURCE_READY: (WorkflowState.DRIVERS_INJECTED,),
    WorkflowState.DRIVERS_INJECTED: (WorkflowState.FINALIZED,),
    WorkflowState.FINALIZED: (),
    WorkflowState.FAILED: (),
}


def unsigned_warning(outcome: InjectionOutcome) -> str:
    if outcome.skipped_unsigned:
        return f"{outcome.skipped_unsigned} drivers skipped: unsigned (re-run with --force-unsigned to install them)"
    return "Some drivers skipped: unsigned (re-run with --force-unsigned to install them)"


def _wrap(exc: Exception, stage: str) -> Virtio2ImgError:
    cls = _STAGE_ERROR.get(stage, Fatal)
    return cls(msg=f"{type(exc).__name__}: {exc}", cause=exc, stage=stage)


class ImageWorkflowController:
    """
    One controller per run; `run()` may be called once.

    States: Idle -> ImageMounted -> DriverSourceReady -> DriversInjected ->
    Finalized, with Failed reachable from any of them.
    """

    def __init__(
        self,
        logger: logging.Logger,
        config: WorkflowConfig,
        image_provider: ImageMountProvider,
        driver_provider: DriverSourceProvider,
        injector: Injector,
        *,
        decide_commit: Optional[CommitDecider] = None,
    ):
        self.logger = logger
        self.config = config
        self.image_provider = image_provider
        self.driver_provider = driver_provider
        self.injector = injector
        self.decide_commit = decide_commit

        self.recovery = RecoveryManager(logger)
        self.state = WorkflowState.IDLE
        self.transitions: List[WorkflowState] = [WorkflowState.IDLE]
        self.failed_stage: Optional[str] = None
        self._started = False

    # State

    def _advance(self, new_state: WorkflowState) -> None:
        if new_state not in _ALLOWED[self.state]:
            raise RuntimeError(f"illegal transition {self.state.value} -> {new_state.value}")
        self.logger.debug("State: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.transitions.append(new_state)

    def _fail(self, err: Virtio2ImgError, stage: str) -> None:
        err.at_stage(stage)
        self.failed_stage = err.stage
        Log.fail(self.logger, f"{err.kind} during {err.stage}: {err.msg}")
        if isinstance(err, InjectionFatal) and err.diagnostic:
            self.logger.error("Injector output:\n%s", err.diagnostic.rstrip())

        warnings = self.recovery.execute_cleanup()
        err.rollback_warnings.extend(warnings)
        for w in warnings:
            self.logger.warning("⚠️  %s (original error: %s)", w, err.kind)

        self.state = WorkflowState.FAILED
        self.transitions.append(WorkflowState.FAILED)

    # Run

    def run(self, request: WorkflowRequest) -> WorkflowResult:
        if self._started:
            raise RuntimeError("ImageWorkflowController.run() may only be called once")
        self._started = True

        stage = STAGE_VALIDATE
        t0 = time.monotonic()
        try:
            source = Path(request.source)
            kind = ImageKind.from_path(source)
            if not source.is_file():
                raise SourceNotFound(f"Source image not found: {source}", context={"source": str(source)})

            log = Log.bind(self.logger, source=source.name, kind=kind.value)
            result = WorkflowResult(source=source, kind=kind, transitions=self.transitions)
            Log.step(log, f"Starting run for {source}")

            stage = STAGE_MOUNT
            image, image_action = self._mount_image(log, source, kind)

            stage = STAGE_DRIVERS
            drivers, drivers_action = self._resolve_drivers(log, request.driver_override)

            stage = STAGE_INJECT
            self._inject(log, image, drivers, request.force_unsigned, result)

            stage = STAGE_RELEASE
            self.recovery.release(drivers_action)
            Log.step(log, f"Releasing driver source {drivers.backing_iso or drivers.path}")
            self.driver_provider.release(drivers)

            stage = STAGE_DECIDE
            commit = self._decide(image, request, result)

            stage = STAGE_FINALIZE
            self.recovery.release(image_action)
            Log.step(log, f"{'Committing' if commit else 'Discarding'} changes to {source}")
            self.image_provider.finalize(image, commit)
            result.committed = commit
            self._advance(WorkflowState.FINALIZED)

        except Virtio2ImgError as e:
            self._fail(e, stage)
            raise
        except Exception as e:
            wrapped = _wrap(e, stage)
            self._fail(wrapped, stage)
            raise wrapped from e
        except BaseException:
            # Ctrl+C mid-run still has to leave nothing mounted.
            self.logger.warning("⚠️  Interrupted during %s; rolling back", stage)
            self.failed_stage = stage
            self.recovery.execute_cleanup()
            self.state = WorkflowState.FAILED
            self.transitions.append(WorkflowState.FAILED)
            raise

        Log.ok(
            self.logger,
            f"Done in {time.monotonic() - t0:.1f}s: drivers_installed={result.drivers_installed} "
            f"committed={result.committed} warnings={len(result.warnings)}",
        )
        return result

    # Stages

    def _mount_image(self, log, source: Path, kind: ImageKind):
        Log.step(log, f"Mounting {kind.value.upper()} image {source}")
        handle = self.image_provider.mount(source, kind)
        action = self.recovery.register_cleanup(
            lambda: self.image_provider.finalize(handle, False),
            f"discard and dismount image {handle.backing_file}",
        )
        if not Path(handle.mount_path).exists():
            raise MountFailed(
                f"Mount path does not exist after mount: {handle.mount_path}",
                context={"mount_path": str(handle.mount_path)},
            )
        self._advance(WorkflowState.IMAGE_MOUNTED)
        Log.ok(log, f"Image mounted at {handle.mount_path}")
        return handle, action

    def _resolve_drivers(self, log, override: Optional[Path]):
        Log.step(log, "Resolving VirtIO driver source" + (f" (override: {override})" if override else ""))
        handle: DriverSourceHandle = self.driver_provider.resolve(override)
        action = self.recovery.register_cleanup(
            lambda: self.driver_provider.release(handle),
            f"release driver source {handle.backing_iso or handle.path}",
        )
        self._advance(WorkflowState.DRIVER_SOURCE_READY)
        Log.ok(log, f"Driver source ready at {handle.path}")
        return handle, action

    def _inject(self, log, image: MountHandle, drivers: DriverSourceHandle, force_unsigned: bool, result: WorkflowResult) -> None:
        Log.step(log, f"Injecting drivers from {drivers.path} into {image.mount_path} (force_unsigned={force_unsigned})")
        outcome = self.injector.inject(image.mount_path, drivers.path, force_unsigned, image.kind)
        result.exit_status = outcome.status
        result.drivers_installed = outcome.installed_count

        if outcome.status == ExitStatusKind.FATAL:
            raise InjectionFatal(
                f"Driver injection failed with exit code {outcome.exit_code}",
                diagnostic=outcome.output,
                exit_code=outcome.exit_code,
                context={"mount_path": str(image.mount_path), "driver_root": str(drivers.path)},
            )
        if outcome.status == ExitStatusKind.PARTIAL_UNSIGNED:
            w = unsigned_warning(outcome)
            result.warnings.append(w)
            Log.warn(log, w)

        self._advance(WorkflowState.DRIVERS_INJECTED)
        Log.ok(log, f"Injection {outcome.status.value}: {outcome.installed_count if outcome.installed_count is not None else '?'} driver(s) installed")

    def _decide(self, image: MountHandle, request: WorkflowRequest, result: WorkflowResult) -> bool:
        if request.commit is not None:
            return bool(request.commit)
        if self.decide_commit is None:
            w = "No commit decision given and no decision provider; discarding changes"
            Log.warn(self.logger, w)
            result.warnings.append(w)
            return False
        return bool(self.decide_commit(image, result))
