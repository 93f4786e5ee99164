"""CLI: argument parsing, upscale models, and runtime validation."""

from __future__ import annotations

import argparse
import enum
from pathlib import Path
from typing import Optional, Sequence

# ── Constants ──────────────────────────────────────────────────────────────────

DEFAULT_SCALE = 2
SUPPORTED_MUXERS = ("mkvmerge", "ffmpeg")


class UpscaleModel(enum.Enum):
    """Real-ESRGAN models, keyed by their command-line names."""

    animeVideoV3 = "realesr-animevideov3"
    ganX4Plus = "realesrgan-x4plus"
    ganX4PlusAnime = "realesrgan-x4plus-anime"
    netX4Plus = "realesrnet-x4plus"


DEFAULT_MODEL = UpscaleModel.animeVideoV3


# ── Functions ──────────────────────────────────────────────────────────────────


def parse_model(value: str) -> UpscaleModel:
    """Accept either the short key (`ganX4Plus`) or the model file name."""
    try:
        return UpscaleModel[value]
    except KeyError:
        pass
    try:
        return UpscaleModel(value)
    except ValueError:
        choices = ", ".join(model.name for model in UpscaleModel)
        raise argparse.ArgumentTypeError(
            f"invalid model '{value}' (choose from {choices})"
        ) from None


def validate_runtime_args(args: argparse.Namespace) -> None:
    if args.scale < 1:
        raise ValueError("Scale must be >= 1.")
    input_video = Path(args.input).expanduser()
    if not input_video.is_file():
        raise FileNotFoundError(f"Input video not found: {input_video.resolve()}")
    output_dir = Path(args.output).expanduser()
    if output_dir.exists() and not output_dir.is_dir():
        raise ValueError("Output path must be a directory.")
    if args.temp_root is not None and not Path(args.temp_root).expanduser().is_dir():
        raise ValueError("Temp root must be an existing directory.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Upscale a video frame-by-frame with Real-ESRGAN",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "-i",
        "--input",
        type=str,
        required=True,
        help="The source video to upscale",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        required=True,
        help="The directory to write the upscaled video to",
    )
    parser.add_argument(
        "-s",
        "--scale",
        type=int,
        default=DEFAULT_SCALE,
        help="How much to upscale the video",
    )
    parser.add_argument(
        "-m",
        "--model",
        type=parse_model,
        default=DEFAULT_MODEL,
        metavar="{" + ",".join(model.name for model in UpscaleModel) + "}",
        help="The upscaler model",
    )
    parser.add_argument(
        "-p",
        "--pretend",
        action="store_true",
        help="Copy frames instead of upscaling them (pipeline testing)",
    )
    parser.add_argument(
        "-d",
        "--debug-mode",
        dest="debug",
        action="store_true",
        help="Print the underlying tool command lines",
    )
    parser.add_argument(
        "--realesrgan-path",
        type=str,
        default=None,
        help="Custom path to realesrgan-ncnn-vulkan binary",
    )
    parser.add_argument(
        "--model-path",
        type=str,
        default=None,
        help="Custom model directory path",
    )
    parser.add_argument(
        "--muxer",
        type=str,
        choices=SUPPORTED_MUXERS,
        default="mkvmerge",
        help="Tool used to merge the upscaled video with the original tracks",
    )
    parser.add_argument(
        "--temp-root",
        type=str,
        default=None,
        help="Parent directory for the temporary frame folders (default: system temp)",
    )

    return parser.parse_args(argv)
