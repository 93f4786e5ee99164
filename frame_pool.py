"""Bounded concurrency pool for per-frame work."""

from __future__ import annotations

import re
import shutil
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Optional, Sequence

from cli import UpscaleModel
from toolchain import Toolchain, stream_subprocess

MAX_CONCURRENT_FRAMES = 6

# realesrgan-ncnn-vulkan -v prints "<input> -> <output> done" per finished image.
UPSCALE_DONE_RE = re.compile(r"\bdone\s*$")

FrameWorker = Callable[[Path, Path], None]


class UnitOfWorkError(RuntimeError):
    """A single frame failed inside the pool."""

    def __init__(self, frame: Path, cause: BaseException) -> None:
        self.frame = frame
        super().__init__(f"Frame {frame.name} failed: {cause}")


def build_realesrgan_command(
    realesrgan_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    scale_factor: int,
    model_path: Path,
    model_name: str,
) -> list[str]:
    return [
        str(realesrgan_binary),
        "-i",
        str(input_path),
        "-o",
        str(output_path),
        "-s",
        str(scale_factor),
        "-m",
        str(model_path),
        "-n",
        model_name,
        "-v",
    ]


def count_upscale_markers(line: str) -> int:
    return 1 if UPSCALE_DONE_RE.search(line) else 0


def upscale_frame(
    input_frame: Path,
    output_frame: Path,
    *,
    toolchain: Toolchain,
    scale_factor: int,
    model: UpscaleModel,
    on_start: Optional[Callable[[str], None]] = None,
) -> int:
    """Upscale one frame and return the number of `done` markers seen."""
    if toolchain.realesrgan_binary is None or toolchain.model_path is None:
        raise RuntimeError("Real-ESRGAN binary is not configured.")

    cmd = build_realesrgan_command(
        toolchain.realesrgan_binary,
        input_frame,
        output_frame,
        scale_factor=scale_factor,
        model_path=toolchain.model_path,
        model_name=model.value,
    )
    done = 0

    def on_line(line: str) -> None:
        nonlocal done
        done += count_upscale_markers(line)

    stream_subprocess(cmd, on_start=on_start, on_line=on_line)
    return done


def copy_frame(input_frame: Path, output_frame: Path) -> None:
    shutil.copyfile(input_frame, output_frame)


def select_frame_worker(
    toolchain: Toolchain,
    *,
    scale_factor: int,
    model: UpscaleModel,
    pretend: bool,
    on_start: Optional[Callable[[str], None]] = None,
) -> FrameWorker:
    """Pick the worker for the whole run: a real upscale or a plain copy."""
    if pretend:
        return copy_frame

    def worker(input_frame: Path, output_frame: Path) -> None:
        done = upscale_frame(
            input_frame,
            output_frame,
            toolchain=toolchain,
            scale_factor=scale_factor,
            model=model,
            on_start=on_start,
        )
        # Real-ESRGAN can exit 0 after skipping an image it failed to decode.
        if done != 1 or not output_frame.is_file():
            raise RuntimeError(
                f"Real-ESRGAN did not produce {output_frame.name} "
                f"({done} completion markers)."
            )

    return worker


def run_frame_pool(
    frames: Sequence[Path],
    output_dir: Path,
    worker: FrameWorker,
    *,
    max_workers: int = MAX_CONCURRENT_FRAMES,
    on_frame_done: Optional[Callable[[int], None]] = None,
) -> int:
    """
    Run `worker(frame, output_dir / frame.name)` for every frame, at most
    `max_workers` at a time.

    `on_frame_done` is called from the calling thread with the running count
    of finished frames. On the first failure, frames not yet started are
    cancelled, in-flight ones are allowed to finish, and `UnitOfWorkError` is
    raised.
    """
    completed = 0
    executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="frame")
    pending: dict[Future, Path] = {}
    try:
        for frame in frames:
            pending[executor.submit(worker, frame, output_dir / frame.name)] = frame

        while pending:
            done, _ = wait(pending, return_when=FIRST_COMPLETED)
            for future in done:
                frame = pending.pop(future)
                exc = future.exception()
                if exc is not None:
                    raise UnitOfWorkError(frame, exc) from exc
                completed += 1
                if on_frame_done is not None:
                    on_frame_done(completed)
    finally:
        executor.shutdown(wait=True, cancel_futures=True)

    return completed
