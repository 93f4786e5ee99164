"""Toolchain: binary resolution, subprocess adapter, and console helpers."""

from __future__ import annotations

import argparse
import os
import platform
import shlex
import shutil
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

from tqdm import tqdm

VENDOR_ROOT = Path(__file__).resolve().parent / "bin"
OUTPUT_TAIL_LINES = 20


class SpawnError(RuntimeError):
    """The external binary could not be started."""

    def __init__(self, cmd: Sequence[str], reason: str) -> None:
        self.cmd = [str(part) for part in cmd]
        super().__init__(f"Failed to start {self.cmd[0]}: {reason}")


class SubprocessExitError(RuntimeError):
    """The external binary exited with a non-zero status."""

    def __init__(self, cmd: Sequence[str], returncode: int, output: str = "") -> None:
        self.cmd = [str(part) for part in cmd]
        self.returncode = returncode
        self.output = output
        message = f"{Path(self.cmd[0]).name} exited with code {returncode}"
        if output:
            message += f": {output}"
        super().__init__(message)


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    mkvmerge: Optional[str]
    realesrgan_binary: Optional[Path]
    model_path: Optional[Path]


def progress_write(message: str) -> None:
    """Write a message without tearing an active progress bar."""
    tqdm.write(message)


def format_command(cmd: Sequence[str]) -> str:
    return shlex.join(str(part) for part in cmd)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    """Run a request/response style tool and translate failures."""
    parts = [str(part) for part in cmd]
    try:
        result = subprocess.run(
            parts,
            check=False,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
        )
    except OSError as exc:
        raise SpawnError(parts, exc.strerror or str(exc)) from exc

    if check and result.returncode != 0:
        detail = (result.stderr or "").strip() if capture_output else ""
        raise SubprocessExitError(parts, result.returncode, detail)
    return result


def stream_subprocess(
    cmd: Sequence[str],
    *,
    on_start: Optional[Callable[[str], None]] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> None:
    """
    Run a long-lived tool and hand each output line to `on_line`.

    stderr is folded into stdout so progress markers on either stream arrive
    in order and neither pipe can fill up. The last few lines are kept for the
    error message when the tool exits non-zero.
    """
    parts = [str(part) for part in cmd]
    if on_start is not None:
        on_start(format_command(parts))

    try:
        process = subprocess.Popen(
            parts,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise SpawnError(parts, exc.strerror or str(exc)) from exc

    tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    with process:
        assert process.stdout is not None
        for raw_line in process.stdout:
            line = raw_line.rstrip("\r\n")
            if not line:
                continue
            tail.append(line)
            if on_line is not None:
                on_line(line)
        returncode = process.wait()

    if returncode != 0:
        raise SubprocessExitError(parts, returncode, "\n".join(tail))


def get_realesrgan_binary_name() -> str:
    """Return the expected Real-ESRGAN binary name for the current OS."""
    if platform.system().lower() == "windows":
        return "realesrgan-ncnn-vulkan.exe"
    return "realesrgan-ncnn-vulkan"


def get_vendored_platform_dir() -> str:
    system = platform.system().lower()
    if system == "darwin":
        return "mac"
    if system == "linux":
        return "linux"
    if system == "windows":
        return "win"
    raise RuntimeError(f"Unknown platform '{platform.system()}'.")


def find_bundled_realesrgan_binary(vendor_root: Path, binary_name: str) -> Optional[Path]:
    """Look for the platform build under `bin/realesrgan/<platform>/`."""
    candidate = vendor_root / "realesrgan" / get_vendored_platform_dir() / binary_name
    if not candidate.is_file():
        return None
    if platform.system().lower() == "windows" or os.access(candidate, os.X_OK):
        return candidate
    return None


def resolve_realesrgan_binary(
    custom_path: Optional[str],
    vendor_root: Optional[Path] = None,
) -> Path:
    """Resolve Real-ESRGAN binary from custom path, PATH, or vendored location."""
    if vendor_root is None:
        vendor_root = VENDOR_ROOT

    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"Real-ESRGAN binary not found at: {candidate}")
        return candidate

    binary_name = get_realesrgan_binary_name()

    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    bundled_binary = find_bundled_realesrgan_binary(vendor_root, binary_name)
    if bundled_binary:
        return bundled_binary.resolve()

    raise FileNotFoundError(
        "Unable to locate Real-ESRGAN binary. Install it in PATH, place it under "
        "bin/realesrgan/<platform>/, or pass --realesrgan-path explicitly."
    )


def resolve_model_path(
    custom_model_path: Optional[str],
    realesrgan_binary: Path,
    vendor_root: Optional[Path] = None,
) -> Path:
    """Resolve model directory from explicit value, binary-adjacent or vendored models."""
    if vendor_root is None:
        vendor_root = VENDOR_ROOT

    if custom_model_path:
        model_dir = Path(custom_model_path).expanduser().resolve()
        if not model_dir.is_dir():
            raise FileNotFoundError(f"Model directory not found: {model_dir}")
        return model_dir

    for candidate in (realesrgan_binary.parent / "models", vendor_root / "models"):
        if candidate.is_dir():
            return candidate.resolve()

    raise FileNotFoundError(
        "Unable to locate the Real-ESRGAN model directory. Pass --model-path explicitly."
    )


def resolve_toolchain(args: argparse.Namespace) -> Toolchain:
    """Resolve runtime binaries once and raise clear dependency errors."""
    required = ["ffmpeg", "ffprobe"]
    if args.muxer == "mkvmerge":
        required.append("mkvmerge")

    found = {name: shutil.which(name) for name in required}
    missing = [name for name, location in found.items() if not location]
    if missing:
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install with Homebrew (macOS) or your system package manager."
        )

    realesrgan_binary: Optional[Path] = None
    model_path: Optional[Path] = None
    if not args.pretend:
        realesrgan_binary = resolve_realesrgan_binary(args.realesrgan_path)
        model_path = resolve_model_path(args.model_path, realesrgan_binary)

    return Toolchain(
        ffmpeg=found["ffmpeg"],
        ffprobe=found["ffprobe"],
        mkvmerge=found.get("mkvmerge"),
        realesrgan_binary=realesrgan_binary,
        model_path=model_path,
    )
