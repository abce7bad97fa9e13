# SPDX-License-Identifier: LGPL-3.0-or-later
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from virtio2img.core.exceptions import Fatal
from virtio2img.core.file_ops import atomic_write, atomic_write_text
from virtio2img.core.utils import U


class TestUtilsFileOperations(unittest.TestCase):
    """Test utility file operations."""

    def test_ensure_dir_creates_and_returns_directory(self):
        with tempfile.TemporaryDirectory() as td:
            new_dir = Path(td) / "subdir" / "nested"

            out = U.ensure_dir(new_dir)

            self.assertEqual(out, new_dir)
            self.assertTrue(new_dir.is_dir())

    def test_copy_file_copies_bytes_and_leaves_source(self):
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "win.vhdx"
            dst = Path(td) / "win.working.vhdx"
            payload = b"\x00vhdx" * 10000
            src.write_bytes(payload)

            written = U.copy_file(Mock(), src, dst)

            self.assertEqual(written, len(payload))
            self.assertEqual(dst.read_bytes(), payload)
            self.assertEqual(src.read_bytes(), payload)

    def test_safe_unlink_missing_ok(self):
        U.safe_unlink(Path("/nonexistent/virtio2img/file"))

        with self.assertRaises(FileNotFoundError):
            U.safe_unlink(Path("/nonexistent/virtio2img/file"), missing_ok=False)


class TestUtilsFormatting(unittest.TestCase):
    def test_human_bytes(self):
        self.assertEqual(U.human_bytes(None), "unknown")
        self.assertEqual(U.human_bytes(512), "512 B")
        self.assertEqual(U.human_bytes(2 * 1024 ** 3), "2.00 GiB")

    def test_json_dump_handles_paths(self):
        self.assertIn('"workdir": "', U.json_dump({"workdir": Path("/tmp/x")}))

    def test_die_raises_fatal(self):
        logger = Mock()

        with self.assertRaises(Fatal) as cm:
            U.die(logger, "nope", 2)

        self.assertEqual(cm.exception.code, 2)
        logger.error.assert_called_once_with("nope")


class TestRunCmd(unittest.TestCase):
    @patch("virtio2img.core.utils.subprocess.run")
    def test_captures_text_output(self, mock_run):
        mock_run.return_value = subprocess.CompletedProcess(args=["dism.exe"], returncode=0, stdout="ok", stderr="")

        cp = U.run_cmd(Mock(), ["dism.exe", "/Get-Drivers"], check=False)

        self.assertEqual(cp.stdout, "ok")
        kwargs = mock_run.call_args.kwargs
        self.assertTrue(kwargs["capture_output"])
        self.assertTrue(kwargs["text"])
        self.assertFalse(kwargs["check"])

    @patch("virtio2img.core.utils.subprocess.run", side_effect=FileNotFoundError("dism.exe"))
    def test_missing_tool_propagates(self, _mock_run):
        with self.assertRaises(FileNotFoundError):
            U.run_cmd(Mock(), ["dism.exe"])


class TestAtomicWrite(unittest.TestCase):
    def test_replaces_target_on_success(self):
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "image.vhdx"
            target.write_bytes(b"old")

            with atomic_write(target, suffix=".commit") as tmp:
                self.assertNotEqual(tmp, target)
                tmp.write_bytes(b"new")
                self.assertEqual(target.read_bytes(), b"old")

            self.assertEqual(target.read_bytes(), b"new")
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["image.vhdx"])

    def test_keeps_target_on_failure(self):
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "image.vhdx"
            target.write_bytes(b"old")

            with self.assertRaises(OSError):
                with atomic_write(target) as tmp:
                    tmp.write_bytes(b"half")
                    raise OSError("disk full")

            self.assertEqual(target.read_bytes(), b"old")
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["image.vhdx"])

    def test_atomic_write_text_creates_parent(self):
        with tempfile.TemporaryDirectory() as td:
            target = Path(td) / "state" / "ledger.json"

            atomic_write_text(target, '{"mounts": []}')

            self.assertEqual(target.read_text(encoding="utf-8"), '{"mounts": []}')


if __name__ == "__main__":
    unittest.main()
