import argparse
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import toolchain


def python_tool(code: str) -> list[str]:
    return [sys.executable, "-c", code]


class TestStreamSubprocess(unittest.TestCase):
    def test_lines_are_streamed_in_order_from_both_pipes(self):
        lines = []
        starts = []
        toolchain.stream_subprocess(
            python_tool(
                "import sys\n"
                "print('#GUI#progress 10%', flush=True)\n"
                "print('warning', file=sys.stderr, flush=True)\n"
                "print('#GUI#progress 100%', flush=True)\n"
            ),
            on_start=starts.append,
            on_line=lines.append,
        )

        self.assertEqual(lines, ["#GUI#progress 10%", "warning", "#GUI#progress 100%"])
        self.assertEqual(len(starts), 1)
        self.assertIn("-c", starts[0])

    def test_non_zero_exit_raises_with_code_and_output_tail(self):
        with self.assertRaises(toolchain.SubprocessExitError) as ctx:
            toolchain.stream_subprocess(
                python_tool("import sys; print('Invalid data found'); sys.exit(4)")
            )

        self.assertEqual(ctx.exception.returncode, 4)
        self.assertIn("Invalid data found", ctx.exception.output)

    def test_missing_binary_raises_spawn_error(self):
        with self.assertRaises(toolchain.SpawnError):
            toolchain.stream_subprocess(["/nonexistent/realesrgan-ncnn-vulkan", "-v"])


class TestRunSubprocess(unittest.TestCase):
    def test_captures_stdout(self):
        result = toolchain.run_subprocess(python_tool("print('{}')"), capture_output=True)
        self.assertEqual(result.stdout.strip(), "{}")

    def test_non_zero_exit_raises(self):
        with self.assertRaises(toolchain.SubprocessExitError) as ctx:
            toolchain.run_subprocess(
                python_tool("import sys; sys.stderr.write('moov atom not found'); sys.exit(1)"),
                capture_output=True,
            )
        self.assertEqual(ctx.exception.returncode, 1)
        self.assertIn("moov atom not found", str(ctx.exception))

    def test_missing_binary_raises_spawn_error(self):
        with self.assertRaises(toolchain.SpawnError):
            toolchain.run_subprocess(["/nonexistent/ffprobe", "-version"])


class TestBinaryResolution(unittest.TestCase):
    def test_resolve_realesrgan_binary_detects_vendored_binary(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            vendor_root = Path(temp_dir) / "bin"
            binary_name = toolchain.get_realesrgan_binary_name()
            bundled = (
                vendor_root
                / "realesrgan"
                / toolchain.get_vendored_platform_dir()
                / binary_name
            )
            bundled.parent.mkdir(parents=True, exist_ok=True)
            bundled.write_text("#!/bin/sh\nexit 0\n")
            bundled.chmod(bundled.stat().st_mode | stat.S_IEXEC)

            with mock.patch("toolchain.shutil.which", return_value=None):
                resolved = toolchain.resolve_realesrgan_binary(
                    custom_path=None,
                    vendor_root=vendor_root,
                )

            self.assertEqual(resolved, bundled.resolve())

    def test_resolve_realesrgan_binary_rejects_missing_custom_path(self):
        with self.assertRaises(FileNotFoundError):
            toolchain.resolve_realesrgan_binary("/nonexistent/realesrgan-ncnn-vulkan")

    def test_resolve_model_path_prefers_binary_sibling(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            binary = root / "linux" / "realesrgan-ncnn-vulkan"
            (root / "linux" / "models").mkdir(parents=True)
            (root / "vendor" / "models").mkdir(parents=True)

            model_dir = toolchain.resolve_model_path(None, binary, vendor_root=root / "vendor")

        self.assertEqual(model_dir, (root / "linux" / "models").resolve())

    def test_resolve_model_path_falls_back_to_vendored_models(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            (root / "vendor" / "models").mkdir(parents=True)

            model_dir = toolchain.resolve_model_path(
                None,
                root / "linux" / "realesrgan-ncnn-vulkan",
                vendor_root=root / "vendor",
            )

        self.assertEqual(model_dir, (root / "vendor" / "models").resolve())

    def test_resolve_toolchain_reports_missing_tools(self):
        args = argparse.Namespace(
            muxer="mkvmerge",
            pretend=True,
            realesrgan_path=None,
            model_path=None,
        )

        def fake_which(command):
            return None if command == "mkvmerge" else f"/usr/bin/{command}"

        with mock.patch("toolchain.shutil.which", side_effect=fake_which):
            with self.assertRaises(FileNotFoundError) as ctx:
                toolchain.resolve_toolchain(args)

        self.assertIn("mkvmerge", str(ctx.exception))

    def test_resolve_toolchain_pretend_skips_upscaler(self):
        args = argparse.Namespace(
            muxer="ffmpeg",
            pretend=True,
            realesrgan_path=None,
            model_path=None,
        )

        with mock.patch("toolchain.shutil.which", side_effect=lambda c: f"/usr/bin/{c}"):
            with mock.patch("toolchain.resolve_realesrgan_binary") as resolve_mock:
                resolved = toolchain.resolve_toolchain(args)

        resolve_mock.assert_not_called()
        self.assertEqual(resolved.ffmpeg, "/usr/bin/ffmpeg")
        self.assertIsNone(resolved.mkvmerge)
        self.assertIsNone(resolved.realesrgan_binary)


if __name__ == "__main__":
    unittest.main()
