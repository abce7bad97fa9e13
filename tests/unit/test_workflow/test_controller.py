# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import logging
from pathlib import Path

import pytest

from fakes.fake_providers import FakeDriverProvider, FakeImageProvider, FakeInjector
from virtio2img.core.exceptions import (
    FinalizeFailed,
    InjectionFatal,
    MountFailed,
    ReleaseFailed,
    SourceNotFound,
    UnsupportedFormat,
)
from virtio2img.workflow.controller import (
    STAGE_DRIVERS,
    STAGE_FINALIZE,
    STAGE_INJECT,
    STAGE_MOUNT,
    STAGE_RELEASE,
    STAGE_VALIDATE,
    ImageWorkflowController,
)
from virtio2img.workflow.models import (
    ExitStatusKind,
    ImageKind,
    InjectionOutcome,
    WorkflowConfig,
    WorkflowRequest,
    WorkflowState,
)

LOG = logging.getLogger("virtio2img.tests.controller")


@pytest.fixture
def events():
    return []


@pytest.fixture
def cfg(tmp_path):
    return WorkflowConfig(workdir=tmp_path / "work")


@pytest.fixture
def wim(tmp_path):
    p = tmp_path / "install.wim"
    p.write_bytes(b"MSWIM\0\0\0")
    return p


def _controller(cfg, events, tmp_path, *, image=None, drivers=None, injector=None, decide_commit=None):
    image = image or FakeImageProvider(events, tmp_path / "mounts")
    drivers = drivers or FakeDriverProvider(events, tmp_path / "drivers")
    injector = injector or FakeInjector(events)
    ctl = ImageWorkflowController(LOG, cfg, image, drivers, injector, decide_commit=decide_commit)
    return ctl, image, drivers, injector


@pytest.mark.unit
class TestHappyPath:
    def test_commit_runs_every_stage_in_order(self, cfg, events, tmp_path, wim):
        ctl, image, drivers, _ = _controller(cfg, events, tmp_path)

        result = ctl.run(WorkflowRequest(source=wim, commit=True))

        assert [e[0] for e in events] == ["mount", "resolve", "inject", "release", "finalize"]
        assert image.finalized == [True]
        assert len(drivers.released) == 1
        assert result.committed is True
        assert result.drivers_installed == 3
        assert result.exit_status is ExitStatusKind.COMPLETE
        assert result.warnings == []
        assert ctl.state is WorkflowState.FINALIZED
        assert ctl.transitions == [
            WorkflowState.IDLE,
            WorkflowState.IMAGE_MOUNTED,
            WorkflowState.DRIVER_SOURCE_READY,
            WorkflowState.DRIVERS_INJECTED,
            WorkflowState.FINALIZED,
        ]
        assert ctl.recovery.pending == []

    def test_discard_still_releases_everything(self, cfg, events, tmp_path, wim):
        ctl, image, drivers, _ = _controller(cfg, events, tmp_path)

        result = ctl.run(WorkflowRequest(source=wim, commit=False))

        assert image.finalized == [False]
        assert len(drivers.released) == 1
        assert result.committed is False

    def test_force_unsigned_and_override_are_passed_through(self, cfg, events, tmp_path, wim):
        override = tmp_path / "virtio-local.iso"
        ctl, _, _, injector = _controller(cfg, events, tmp_path)

        ctl.run(WorkflowRequest(source=wim, force_unsigned=True, driver_override=override, commit=True))

        assert ("resolve", override) in events
        mount_path, driver_root, force_unsigned, kind = injector.calls[0]
        assert force_unsigned is True
        assert kind is ImageKind.WIM
        assert driver_root == tmp_path / "drivers"

    def test_partial_unsigned_is_success_with_warning(self, cfg, events, tmp_path, wim):
        outcome = InjectionOutcome(
            status=ExitStatusKind.PARTIAL_UNSIGNED,
            exit_code=50,
            installed_count=5,
            skipped_unsigned=2,
        )
        ctl, image, _, _ = _controller(cfg, events, tmp_path, injector=FakeInjector(events, outcome))

        result = ctl.run(WorkflowRequest(source=wim, commit=True))

        assert result.exit_status is ExitStatusKind.PARTIAL_UNSIGNED
        assert result.drivers_installed == 5
        assert len(result.warnings) == 1
        assert "2 drivers skipped: unsigned" in result.warnings[0]
        assert "--force-unsigned" in result.warnings[0]
        assert image.finalized == [True]
        assert ctl.state is WorkflowState.FINALIZED

    def test_run_only_once(self, cfg, events, tmp_path, wim):
        ctl, _, _, _ = _controller(cfg, events, tmp_path)
        ctl.run(WorkflowRequest(source=wim, commit=False))

        with pytest.raises(RuntimeError):
            ctl.run(WorkflowRequest(source=wim, commit=False))


@pytest.mark.unit
class TestCommitDecision:
    def test_decider_is_asked_when_request_is_silent(self, cfg, events, tmp_path, wim):
        seen = []

        def decide(handle, result):
            seen.append((handle.original_file, result.drivers_installed))
            return True

        ctl, image, _, _ = _controller(cfg, events, tmp_path, decide_commit=decide)

        result = ctl.run(WorkflowRequest(source=wim))

        assert seen == [(wim, 3)]
        assert image.finalized == [True]
        assert result.committed is True

    def test_explicit_request_skips_decider(self, cfg, events, tmp_path, wim):
        def decide(handle, result):
            raise AssertionError("must not be asked")

        ctl, image, _, _ = _controller(cfg, events, tmp_path, decide_commit=decide)

        ctl.run(WorkflowRequest(source=wim, commit=False))

        assert image.finalized == [False]

    def test_no_decider_discards_with_warning(self, cfg, events, tmp_path, wim):
        ctl, image, _, _ = _controller(cfg, events, tmp_path)

        result = ctl.run(WorkflowRequest(source=wim))

        assert image.finalized == [False]
        assert result.committed is False
        assert any("discarding" in w for w in result.warnings)


@pytest.mark.unit
class TestValidation:
    def test_missing_source_acquires_nothing(self, cfg, events, tmp_path):
        ctl, _, _, _ = _controller(cfg, events, tmp_path)

        with pytest.raises(SourceNotFound) as ei:
            ctl.run(WorkflowRequest(source=tmp_path / "missing.vhdx", commit=True))

        assert ei.value.stage == STAGE_VALIDATE
        assert events == []
        assert ctl.recovery.executed == []
        assert ctl.transitions == [WorkflowState.IDLE, WorkflowState.FAILED]

    def test_unsupported_extension_acquires_nothing(self, cfg, events, tmp_path):
        iso = tmp_path / "win.iso"
        iso.write_bytes(b"x")
        ctl, _, _, _ = _controller(cfg, events, tmp_path)

        with pytest.raises(UnsupportedFormat):
            ctl.run(WorkflowRequest(source=iso))

        assert events == []
        assert ctl.state is WorkflowState.FAILED


@pytest.mark.unit
class TestRollback:
    def test_mount_failure_releases_nothing(self, cfg, events, tmp_path, wim):
        image = FakeImageProvider(events, tmp_path / "mounts", fail_mount=MountFailed("Mount-WindowsImage failed"))
        ctl, _, _, _ = _controller(cfg, events, tmp_path, image=image)

        with pytest.raises(MountFailed) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert ei.value.stage == STAGE_MOUNT
        assert events == [("mount", "install.wim")]
        assert ctl.failed_stage == STAGE_MOUNT

    def test_missing_mount_path_is_rolled_back(self, cfg, events, tmp_path, wim):
        image = FakeImageProvider(events, tmp_path / "mounts", mount_path=tmp_path / "not-there")
        ctl, _, _, _ = _controller(cfg, events, tmp_path, image=image)

        with pytest.raises(MountFailed):
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert image.finalized == [False]
        assert [e[0] for e in events] == ["mount", "finalize"]

    def test_driver_failure_discards_image(self, cfg, events, tmp_path, wim):
        drivers = FakeDriverProvider(events, tmp_path / "drivers", fail_resolve=MountFailed("ISO attach failed"))
        ctl, image, _, _ = _controller(cfg, events, tmp_path, drivers=drivers)

        with pytest.raises(MountFailed) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert ei.value.stage == STAGE_DRIVERS
        assert [e[0] for e in events] == ["mount", "resolve", "finalize"]
        assert image.finalized == [False]
        assert drivers.released == []

    def test_fatal_injection_rolls_back_in_reverse_order(self, cfg, events, tmp_path, wim):
        outcome = InjectionOutcome(status=ExitStatusKind.FATAL, exit_code=87, output="Error: 87\nThe parameter is incorrect.")
        ctl, image, drivers, _ = _controller(cfg, events, tmp_path, injector=FakeInjector(events, outcome))

        with pytest.raises(InjectionFatal) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        err = ei.value
        assert err.stage == STAGE_INJECT
        assert err.exit_code == 87
        assert "parameter is incorrect" in err.diagnostic
        assert [e[0] for e in events] == ["mount", "resolve", "inject", "release", "finalize"]
        assert image.finalized == [False]
        assert len(drivers.released) == 1
        assert ctl.state is WorkflowState.FAILED
        assert ctl.transitions[-1] is WorkflowState.FAILED
        assert WorkflowState.DRIVERS_INJECTED not in ctl.transitions

    def test_foreign_exception_is_wrapped_for_its_stage(self, cfg, events, tmp_path, wim):
        injector = FakeInjector(events, fail=RuntimeError("dism crashed"))
        ctl, image, _, _ = _controller(cfg, events, tmp_path, injector=injector)

        with pytest.raises(InjectionFatal) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert ei.value.stage == STAGE_INJECT
        assert isinstance(ei.value.cause, RuntimeError)
        assert image.finalized == [False]

    def test_release_failure_discards_image_once(self, cfg, events, tmp_path, wim):
        drivers = FakeDriverProvider(events, tmp_path / "drivers", fail_release=ReleaseFailed("Dismount-DiskImage failed"))
        ctl, image, _, _ = _controller(cfg, events, tmp_path, drivers=drivers)

        with pytest.raises(ReleaseFailed) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert ei.value.stage == STAGE_RELEASE
        assert len(drivers.released) == 1
        assert image.finalized == [False]

    def test_finalize_failure_is_not_retried(self, cfg, events, tmp_path, wim):
        image = FakeImageProvider(events, tmp_path / "mounts", fail_finalize=FinalizeFailed("save failed"))
        ctl, _, drivers, _ = _controller(cfg, events, tmp_path, image=image)

        with pytest.raises(FinalizeFailed) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert ei.value.stage == STAGE_FINALIZE
        assert image.finalized == [True]
        assert len(drivers.released) == 1

    def test_rollback_failure_is_reported_with_original_error(self, cfg, events, tmp_path, wim):
        outcome = InjectionOutcome(status=ExitStatusKind.FATAL, exit_code=2)
        drivers = FakeDriverProvider(events, tmp_path / "drivers", fail_release=ReleaseFailed("ISO busy"))
        ctl, image, _, _ = _controller(cfg, events, tmp_path, drivers=drivers, injector=FakeInjector(events, outcome))

        with pytest.raises(InjectionFatal) as ei:
            ctl.run(WorkflowRequest(source=wim, commit=True))

        err = ei.value
        assert len(err.rollback_warnings) == 1
        assert "ISO busy" in err.rollback_warnings[0]
        # the image rollback still ran after the failing release
        assert image.finalized == [False]

    def test_interrupt_rolls_back_and_propagates(self, cfg, events, tmp_path, wim):
        injector = FakeInjector(events, fail=KeyboardInterrupt())
        ctl, image, drivers, _ = _controller(cfg, events, tmp_path, injector=injector)

        with pytest.raises(KeyboardInterrupt):
            ctl.run(WorkflowRequest(source=wim, commit=True))

        assert image.finalized == [False]
        assert len(drivers.released) == 1
        assert ctl.state is WorkflowState.FAILED
        assert ctl.failed_stage == STAGE_INJECT


@pytest.mark.unit
def test_disk_image_scenario(cfg, events, tmp_path):
    vhd = tmp_path / "win10.vhd"
    vhd.write_bytes(b"conectix" + b"\0" * 504)
    ctl, image, drivers, injector = _controller(cfg, events, tmp_path)

    result = ctl.run(WorkflowRequest(source=vhd, commit=True))

    assert result.kind is ImageKind.VHD
    assert image.mounted[0].disk_handle == "1"
    assert injector.calls[0][3] is ImageKind.VHD
    assert image.finalized == [True]
    assert Path(result.source) == vhd
