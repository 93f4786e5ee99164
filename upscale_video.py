#!/usr/bin/env python3
"""
Video upscaler pipeline (Real-ESRGAN, ffmpeg, mkvmerge).

This script probes the source video, extracts its frames, upscales them,
reassembles the frames into a video and muxes it with the original audio
and subtitle tracks.
"""

from __future__ import annotations

import argparse
import contextlib
import enum
import functools
import json
import os
import re
import shutil
import sys
import time
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

# ── Re-exports ────────────────────────────────────────────────────────────────
from toolchain import (  # noqa: F401
    SpawnError,
    SubprocessExitError,
    Toolchain,
    format_command,
    progress_write,
    resolve_toolchain,
    run_subprocess,
    stream_subprocess,
)
from cli import (  # noqa: F401
    DEFAULT_MODEL,
    UpscaleModel,
    parse_args,
    validate_runtime_args,
)
from frame_pool import (  # noqa: F401
    MAX_CONCURRENT_FRAMES,
    UnitOfWorkError,
    run_frame_pool,
    select_frame_worker,
)
from progress_report import ProgressSink, StageProgress, TqdmProgressDisplay
from workspace import Workspace, ensure_dir, publish_output

TRACING_ENDPOINT_ENV = "VIDEO_UPSCALER_OTLP_ENDPOINT"

tracer = None


def init_tracing(endpoint: Optional[str] = None) -> None:
    """Export spans over OTLP/HTTP when an endpoint is configured."""
    global tracer
    if tracer is not None:
        return
    endpoint = endpoint or os.environ.get(TRACING_ENDPOINT_ENV)
    if not endpoint:
        return

    resource = Resource.create({"service.name": "video-upscaler"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def _traced(func):
    """Decorator that wraps a function call in a tracing span if tracing is enabled."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if tracer is None:
            init_tracing()
        if tracer is not None:
            with tracer.start_as_current_span(func.__name__):
                return func(*args, **kwargs)
        return func(*args, **kwargs)

    return wrapper


DEFAULT_FPS = Fraction("23.97")

FRAME_PATTERN = "frame-%08d.png"
FRAME_GLOB = "frame-*.png"

FFMPEG_FRAME_RE = re.compile(r"^frame=\s*(\d+)\s*$")
MKVMERGE_PROGRESS_RE = re.compile(r"#GUI#progress\s+(\d+)%")


class Stage(enum.Enum):
    METADATA_PROBE = "metadata_probe"
    EXTRACT_FRAMES = "extract_frames"
    UPSCALE_FRAMES = "upscale_frames"
    IMPORT_FRAMES = "import_frames"
    MUX_OUTPUT = "mux_output"


STAGE_LABELS = {
    Stage.METADATA_PROBE.value: "Probing Metadata",
    Stage.EXTRACT_FRAMES.value: "Extracting Frames",
    Stage.UPSCALE_FRAMES.value: "Upscaling Frames",
    Stage.IMPORT_FRAMES.value: "Importing Frames",
    Stage.MUX_OUTPUT.value: "Rebuilding Video",
}


class MetadataUnavailable(RuntimeError):
    """The probe ran but did not describe a usable video stream."""


class StageError(RuntimeError):
    """A pipeline stage failed; the cause is chained."""

    def __init__(self, stage: Stage, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"{STAGE_LABELS[stage.value]} failed: {cause}")


@dataclass(frozen=True)
class UpscaleJob:
    input_video: Path
    output_dir: Path
    scale: int
    model: UpscaleModel = DEFAULT_MODEL
    pretend: bool = False
    debug: bool = False
    muxer: str = "mkvmerge"

    def __post_init__(self) -> None:
        if self.scale < 1:
            raise ValueError(f"Scale must be at least 1, got {self.scale}.")

    @property
    def output_video(self) -> Path:
        return self.output_dir / self.input_video.name


@dataclass(frozen=True)
class VideoMetadata:
    framerate: Fraction
    total_frames: Optional[int]
    width: Optional[int] = None
    height: Optional[int] = None


def parse_framerate(value: object) -> Optional[Fraction]:
    """Parse ffprobe framerates like `24000/1001`; None when unusable."""
    if value is None or value == "":
        return None
    try:
        framerate = Fraction(str(value))
    except (ValueError, ZeroDivisionError):
        return None
    if framerate <= 0:
        return None
    return framerate


def _optional_int(value: object) -> Optional[int]:
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def parse_stream_metadata(payload: dict) -> VideoMetadata:
    """Pick the first video stream out of ffprobe's JSON payload."""
    video_stream = next(
        (
            stream
            for stream in payload.get("streams", [])
            if stream.get("codec_type") == "video"
        ),
        None,
    )
    if video_stream is None:
        raise MetadataUnavailable("No video stream found in probe output")

    framerate = parse_framerate(video_stream.get("r_frame_rate"))
    return VideoMetadata(
        framerate=framerate if framerate is not None else DEFAULT_FPS,
        total_frames=_optional_int(video_stream.get("nb_read_frames")),
        width=_optional_int(video_stream.get("width")),
        height=_optional_int(video_stream.get("height")),
    )


def build_probe_command(ffprobe_bin: str, input_video: Path) -> list[str]:
    return [
        ffprobe_bin,
        "-v",
        "error",
        "-count_frames",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(input_video),
    ]


def probe_metadata(
    ffprobe_bin: str,
    input_video: Path,
    *,
    on_start: Optional[Callable[[str], None]] = None,
) -> VideoMetadata:
    cmd = build_probe_command(ffprobe_bin, input_video)
    if on_start is not None:
        on_start(format_command(cmd))
    result = run_subprocess(cmd, capture_output=True)

    try:
        payload = json.loads(result.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise MetadataUnavailable(f"Failed to parse ffprobe output: {exc}") from exc
    return parse_stream_metadata(payload)


def parse_ffmpeg_progress(line: str) -> Optional[int]:
    """Frame counter from an ffmpeg `-progress` line, if it is one."""
    match = FFMPEG_FRAME_RE.match(line)
    return int(match.group(1)) if match else None


def parse_mkvmerge_progress(line: str) -> Optional[int]:
    """Percentage from an mkvmerge `--gui-mode` progress line, if it is one."""
    match = MKVMERGE_PROGRESS_RE.search(line)
    if not match:
        return None
    return max(0, min(100, int(match.group(1))))


def _on_marker(
    parser: Callable[[str], Optional[int]],
    on_progress: Optional[Callable[[int], None]],
) -> Optional[Callable[[str], None]]:
    if on_progress is None:
        return None

    def on_line(line: str) -> None:
        value = parser(line)
        if value is not None:
            on_progress(value)

    return on_line


def build_extract_command(ffmpeg_bin: str, input_video: Path, frames_dir: Path) -> list[str]:
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:1",
        "-i",
        str(input_video),
        "-qscale:v",
        "1",
        "-qmin",
        "1",
        "-qmax",
        "1",
        "-vsync",
        "0",
        str(frames_dir / FRAME_PATTERN),
        "-y",
    ]


def list_frames(frames_dir: Path) -> list[Path]:
    return sorted(frames_dir.glob(FRAME_GLOB))


def extract_frames(
    ffmpeg_bin: str,
    input_video: Path,
    frames_dir: Path,
    *,
    on_start: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> int:
    """Extract every frame into a numbered PNG sequence; returns the frame count."""
    stream_subprocess(
        build_extract_command(ffmpeg_bin, input_video, frames_dir),
        on_start=on_start,
        on_line=_on_marker(parse_ffmpeg_progress, on_progress),
    )

    frame_count = len(list_frames(frames_dir))
    if frame_count == 0:
        raise RuntimeError("Frame extraction produced zero output frames.")
    return frame_count


def build_import_command(
    ffmpeg_bin: str,
    frames_dir: Path,
    output_video: Path,
    *,
    framerate: Fraction,
) -> list[str]:
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:1",
        "-framerate",
        str(framerate),
        "-i",
        str(frames_dir / FRAME_PATTERN),
        "-c:v",
        "libx264",
        "-pix_fmt",
        "yuv420p",
        str(output_video),
        "-y",
    ]


def import_frames(
    ffmpeg_bin: str,
    frames_dir: Path,
    output_video: Path,
    *,
    framerate: Fraction,
    on_start: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> None:
    stream_subprocess(
        build_import_command(ffmpeg_bin, frames_dir, output_video, framerate=framerate),
        on_start=on_start,
        on_line=_on_marker(parse_ffmpeg_progress, on_progress),
    )


def build_mkvmerge_command(
    mkvmerge_bin: str,
    original_video: Path,
    upscaled_video: Path,
    output_video: Path,
) -> list[str]:
    return [
        mkvmerge_bin,
        "--output",
        str(output_video),
        "--no-video",
        "--language",
        "1:en",
        "--track-name",
        "1:Stereo",
        "--sub-charset",
        "2:UTF-8",
        "--language",
        "2:en",
        "--track-name",
        "2:English",
        str(original_video),
        "--no-track-tags",
        "--no-global-tags",
        "--language",
        "0:und",
        str(upscaled_video),
        "--track-order",
        "1:0,0:1,0:2",
        "--gui-mode",
    ]


def mux_with_mkvmerge(
    mkvmerge_bin: str,
    original_video: Path,
    upscaled_video: Path,
    output_video: Path,
    *,
    on_start: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> None:
    stream_subprocess(
        build_mkvmerge_command(mkvmerge_bin, original_video, upscaled_video, output_video),
        on_start=on_start,
        on_line=_on_marker(parse_mkvmerge_progress, on_progress),
    )


def build_ffmpeg_mux_command(
    ffmpeg_bin: str,
    original_video: Path,
    upscaled_video: Path,
    output_video: Path,
) -> list[str]:
    return [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:1",
        "-i",
        str(upscaled_video),
        "-i",
        str(original_video),
        "-map",
        "0:v:0",
        "-map",
        "1:a?",
        "-map",
        "1:s?",
        "-c",
        "copy",
        str(output_video),
        "-y",
    ]


def mux_with_ffmpeg(
    ffmpeg_bin: str,
    original_video: Path,
    upscaled_video: Path,
    output_video: Path,
    *,
    on_start: Optional[Callable[[str], None]] = None,
    on_progress: Optional[Callable[[int], None]] = None,
) -> None:
    stream_subprocess(
        build_ffmpeg_mux_command(ffmpeg_bin, original_video, upscaled_video, output_video),
        on_start=on_start,
        on_line=_on_marker(parse_ffmpeg_progress, on_progress),
    )


def format_time(seconds: float) -> str:
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    if hours:
        return f"{hours}h {minutes}m {secs:.1f}s"
    if minutes:
        return f"{minutes}m {secs:.1f}s"
    return f"{secs:.1f}s"


def check_disk_space(temp_root: Path, metadata: VideoMetadata, scale: int) -> None:
    """Warn or fail if projected frame storage exceeds available space."""
    if metadata.width is None or metadata.height is None or metadata.total_frames is None:
        return

    # PNG frames: ~3 bytes per pixel before and after scaling
    source_bytes_per_frame = metadata.width * metadata.height * 3.0
    scaled_bytes_per_frame = (metadata.width * scale) * (metadata.height * scale) * 3.0
    projected_bytes = (source_bytes_per_frame + scaled_bytes_per_frame) * metadata.total_frames

    available = shutil.disk_usage(temp_root).free
    projected_gb = projected_bytes / (1024**3)
    available_gb = available / (1024**3)
    if projected_bytes > available * 0.9:
        raise RuntimeError(
            f"Projected disk usage ({projected_gb:.1f} GB) exceeds 90% of "
            f"available space ({available_gb:.1f} GB). Use --temp-root to "
            f"point to a larger volume, or reduce --scale."
        )
    if projected_bytes > available * 0.5:
        progress_write(
            f"Warning: Projected disk usage ({projected_gb:.1f} GB) is over "
            f"50% of available space ({available_gb:.1f} GB)."
        )


def command_logger(debug: bool, tool: str) -> Optional[Callable[[str], None]]:
    if not debug:
        return None
    return lambda cmd: progress_write(f"{tool} cmd: {cmd}")


@contextlib.contextmanager
def stage_boundary(stage: Stage) -> Iterator[None]:
    """Re-raise any failure inside a stage as a StageError for that stage."""
    try:
        yield
    except StageError:
        raise
    except Exception as exc:
        raise StageError(stage, exc) from exc


# ── Stages ─────────────────────────────────────────────────────────────────────


@_traced
def run_metadata_probe(
    job: UpscaleJob,
    toolchain: Toolchain,
    sink: Optional[ProgressSink] = None,
) -> VideoMetadata:
    with stage_boundary(Stage.METADATA_PROBE):
        with StageProgress(Stage.METADATA_PROBE.value, 1, sink) as progress:
            try:
                metadata = probe_metadata(
                    toolchain.ffprobe,
                    job.input_video,
                    on_start=command_logger(job.debug, "ffprobe"),
                )
            except MetadataUnavailable as exc:
                progress_write(
                    f"Warning: {exc}. Assuming {float(DEFAULT_FPS)} fps and an unknown frame count."
                )
                metadata = VideoMetadata(framerate=DEFAULT_FPS, total_frames=None)
            progress.advance()
    return metadata


@_traced
def run_extract_frames(
    job: UpscaleJob,
    toolchain: Toolchain,
    workspace: Workspace,
    metadata: VideoMetadata,
    sink: Optional[ProgressSink] = None,
) -> int:
    with stage_boundary(Stage.EXTRACT_FRAMES):
        check_disk_space(workspace.source_frames, metadata, job.scale)
        with StageProgress(Stage.EXTRACT_FRAMES.value, metadata.total_frames, sink) as progress:
            frame_count = extract_frames(
                toolchain.ffmpeg,
                job.input_video,
                workspace.source_frames,
                on_start=command_logger(job.debug, "ffmpeg"),
                on_progress=progress.update,
            )
            progress.update(frame_count)
    return frame_count


@_traced
def run_upscale_frames(
    job: UpscaleJob,
    toolchain: Toolchain,
    workspace: Workspace,
    sink: Optional[ProgressSink] = None,
    *,
    max_workers: int = MAX_CONCURRENT_FRAMES,
) -> int:
    with stage_boundary(Stage.UPSCALE_FRAMES):
        frames = list_frames(workspace.source_frames)
        if not frames:
            raise RuntimeError("No extracted frames found for upscaling.")

        worker = select_frame_worker(
            toolchain,
            scale_factor=job.scale,
            model=job.model,
            pretend=job.pretend,
            on_start=command_logger(job.debug, "realesrgan"),
        )
        with StageProgress(Stage.UPSCALE_FRAMES.value, len(frames), sink) as progress:
            completed = run_frame_pool(
                frames,
                workspace.scaled_frames,
                worker,
                max_workers=max_workers,
                on_frame_done=progress.update,
            )
    return completed


@_traced
def run_import_frames(
    job: UpscaleJob,
    toolchain: Toolchain,
    workspace: Workspace,
    metadata: VideoMetadata,
    expected_frames: int,
    sink: Optional[ProgressSink] = None,
) -> None:
    with stage_boundary(Stage.IMPORT_FRAMES):
        frame_count = len(list_frames(workspace.scaled_frames))
        if frame_count != expected_frames:
            raise RuntimeError(
                f"Expected {expected_frames} upscaled frames, found {frame_count}."
            )
        with StageProgress(Stage.IMPORT_FRAMES.value, frame_count, sink) as progress:
            import_frames(
                toolchain.ffmpeg,
                workspace.scaled_frames,
                workspace.upscaled_file,
                framerate=metadata.framerate,
                on_start=command_logger(job.debug, "ffmpeg"),
                on_progress=progress.update,
            )


@_traced
def run_mux_output(
    job: UpscaleJob,
    toolchain: Toolchain,
    workspace: Workspace,
    frame_count: int,
    sink: Optional[ProgressSink] = None,
) -> None:
    # The muxer writes inside the workspace; the output directory only ever
    # receives the finished file.
    with stage_boundary(Stage.MUX_OUTPUT):
        if job.muxer == "ffmpeg":
            with StageProgress(Stage.MUX_OUTPUT.value, frame_count, sink) as progress:
                mux_with_ffmpeg(
                    toolchain.ffmpeg,
                    job.input_video,
                    workspace.upscaled_file,
                    workspace.muxed_file,
                    on_start=command_logger(job.debug, "ffmpeg"),
                    on_progress=progress.update,
                )
                publish_output(workspace.muxed_file, job.output_video)
        else:
            if toolchain.mkvmerge is None:
                raise RuntimeError("mkvmerge is not configured.")
            with StageProgress(Stage.MUX_OUTPUT.value, 100, sink) as progress:
                mux_with_mkvmerge(
                    toolchain.mkvmerge,
                    job.input_video,
                    workspace.upscaled_file,
                    workspace.muxed_file,
                    on_start=command_logger(job.debug, "mkvmerge"),
                    on_progress=progress.update,
                )
                publish_output(workspace.muxed_file, job.output_video)


# ── Orchestration ──────────────────────────────────────────────────────────────


@_traced
def upscale_video(
    job: UpscaleJob,
    toolchain: Toolchain,
    *,
    sink: Optional[ProgressSink] = None,
    temp_root: Optional[Path] = None,
) -> Path:
    """
    Run the five stages in order over a fresh workspace.

    Raises StageError for the first failing stage. The workspace directories
    are removed on every exit path.
    """
    ensure_dir(job.output_dir)
    workspace = Workspace.allocate(job.input_video.name, temp_root)
    try:
        metadata = run_metadata_probe(job, toolchain, sink)
        run_extract_frames(job, toolchain, workspace, metadata, sink)
        frame_count = run_upscale_frames(job, toolchain, workspace, sink)
        run_import_frames(job, toolchain, workspace, metadata, frame_count, sink)
        run_mux_output(job, toolchain, workspace, frame_count, sink)
    finally:
        progress_write("Cleaning up folders...")
        workspace.teardown()
    return job.output_video


def build_job(args: argparse.Namespace) -> UpscaleJob:
    # abspath keeps a symlinked input's own name for the output file.
    input_video = Path(os.path.abspath(os.path.expanduser(args.input)))
    output_dir = Path(os.path.abspath(os.path.expanduser(args.output)))
    job = UpscaleJob(
        input_video=input_video,
        output_dir=output_dir,
        scale=args.scale,
        model=args.model,
        pretend=args.pretend,
        debug=args.debug,
        muxer=args.muxer,
    )
    if job.output_video == input_video or (
        job.output_video.exists() and job.output_video.samefile(input_video)
    ):
        raise ValueError("Output video path must be different from input video path.")
    return job


def run_pipeline(args: argparse.Namespace) -> int:
    validate_runtime_args(args)
    job = build_job(args)
    toolchain = resolve_toolchain(args)
    temp_root = Path(args.temp_root).expanduser().resolve() if args.temp_root else None

    print("\n" + "=" * 60)
    print("Video Upscaler - Real-ESRGAN")
    if job.pretend:
        print("*** PRETEND MODE (frames are copied, not upscaled) ***")
    print("=" * 60)
    print(f"Input:  {job.input_video}")
    print(f"Output: {job.output_video}")
    print(f"Scale:  {job.scale}x")
    print(f"Model:  {job.model.name} ({job.model.value})")
    print(f"Muxer:  {job.muxer}")
    print("=" * 60 + "\n")

    total_start = time.time()
    display = TqdmProgressDisplay(STAGE_LABELS)
    try:
        output_video = upscale_video(job, toolchain, sink=display, temp_root=temp_root)
    finally:
        display.close()

    print("\n" + "=" * 60)
    print("Complete!")
    print(f"Total time: {format_time(time.time() - total_start)}")
    print(f"Output: {output_video}")
    if output_video.exists():
        output_size_mb = output_video.stat().st_size / (1024 * 1024)
        print(f"Output size: {output_size_mb:.1f} MB")
    print("=" * 60 + "\n")
    return 0


@_traced
def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    init_tracing()
    raise SystemExit(main())
