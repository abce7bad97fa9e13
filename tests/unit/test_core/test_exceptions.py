# SPDX-License-Identifier: LGPL-3.0-or-later
"""Tests for the error hierarchy and CLI formatting."""
from __future__ import annotations

import pytest

from virtio2img.core.exceptions import (
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
    format_exception_for_cli,
)


@pytest.mark.unit
class TestExceptionHierarchy:
    """Error kinds and their exit codes."""

    def test_base_exception_creation(self):
        err = Virtio2ImgError(code=1, msg="Test error")

        assert err.code == 1
        assert err.msg == "Test error"
        assert err.cause is None
        assert err.stage is None
        assert err.rollback_warnings == []

    def test_fatal_exception(self):
        err = Fatal(code=2, msg="Fatal error")

        assert isinstance(err, Virtio2ImgError)
        assert err.code == 2

    @pytest.mark.parametrize(
        "cls, code",
        [
            (UnsupportedFormat, 10),
            (SourceNotFound, 11),
            (MountFailed, 12),
            (DownloadFailed, 13),
            (InvalidFormat, 14),
            (InjectorUnavailable, 15),
            (InjectionFatal, 16),
            (FinalizeFailed, 17),
            (ReleaseFailed, 18),
        ],
    )
    def test_kind_default_codes(self, cls, code):
        err = cls("boom")

        assert isinstance(err, Virtio2ImgError)
        assert err.code == code
        assert err.kind == cls.__name__
        assert err.msg == "boom"

    def test_explicit_code_wins(self):
        assert MountFailed("x", code=99).code == 99

    def test_exit_code_is_clamped(self):
        assert Virtio2ImgError(code=1000, msg="x").code == 255
        assert Virtio2ImgError(code=-3, msg="x").code == 1

    def test_message_is_one_line(self):
        err = MountFailed("line one\nline two\r\n  three")

        assert err.msg == "line one line two three"

    def test_errors_are_hashable(self):
        # logging and traceback machinery put exceptions in sets
        assert len({MountFailed("a"), MountFailed("a")}) == 2


@pytest.mark.unit
class TestStageAndContext:
    """Stage tagging, context and rollback warnings."""

    def test_first_stage_wins(self):
        err = MountFailed("x").at_stage("mount-image").at_stage("finalize-image")

        assert err.stage == "mount-image"

    def test_user_message_prefixes_stage(self):
        err = MountFailed("no drive letter", stage="resolve-drivers")

        assert str(err) == "[resolve-drivers] no drive letter"

    def test_user_message_with_context_and_cause(self):
        err = DownloadFailed("gave up", cause=TimeoutError("slow"), context={"url": "http://x"})

        msg = err.user_message(include_context=True, include_cause=True)

        assert "gave up" in msg
        assert "url='http://x'" in msg
        assert "TimeoutError: slow" in msg

    def test_to_dict(self):
        err = FinalizeFailed("copy failed", stage="finalize-image")
        err.rollback_warnings.append("rollback step 'x' failed")

        d = err.to_dict()

        assert d["type"] == "FinalizeFailed"
        assert d["code"] == 17
        assert d["stage"] == "finalize-image"
        assert d["rollback_warnings"] == ["rollback step 'x' failed"]
        assert "cause" not in d

    def test_injection_fatal_keeps_diagnostic(self):
        err = InjectionFatal("dism failed", diagnostic="Error: 87\nThe parameter is incorrect.", exit_code=87)

        d = err.to_dict()

        assert err.diagnostic.startswith("Error: 87")
        assert d["exit_code"] == 87
        assert "parameter is incorrect" in d["diagnostic"]


@pytest.mark.unit
class TestCliFormatting:
    def test_verbosity_levels(self):
        err = MountFailed("attach failed", cause=RuntimeError("rc=5"), context={"iso": "v.iso"})

        assert format_exception_for_cli(err) == "attach failed"
        assert "iso='v.iso'" in format_exception_for_cli(err, verbose=1)
        assert "RuntimeError: rc=5" in format_exception_for_cli(err, verbose=2)

    def test_foreign_exception(self):
        assert format_exception_for_cli(ValueError("bad")) == "bad"
        assert format_exception_for_cli(ValueError("bad"), verbose=2) == "ValueError: bad"
