"""Workspace: ephemeral frame directories owned by a single pipeline run."""

from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def create_temp_dir(prefix: str, temp_root: Optional[Path] = None) -> Path:
    """Create a uniquely named `<prefix>-<rand>` directory under the temp root."""
    if temp_root is not None:
        ensure_dir(temp_root)
    return Path(tempfile.mkdtemp(prefix=f"{prefix}-", dir=temp_root))


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def remove(path: Path) -> None:
    """Recursively delete `path`; missing or half-deleted trees are fine."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)


def publish_output(finished: Path, destination: Path) -> Path:
    """
    Move a finished file to `destination`, replacing whatever is there.

    The file is first staged next to the destination and then renamed over
    it, so the destination never holds a partial copy.
    """
    staging = destination.with_name(f".{destination.name}.part")
    try:
        shutil.move(str(finished), str(staging))
        os.replace(staging, destination)
    except BaseException:
        remove(staging)
        raise
    return destination


@dataclass(frozen=True)
class Workspace:
    source_frames: Path
    scaled_frames: Path
    upscaled_file: Path
    muxed_file: Path

    @classmethod
    def allocate(cls, video_name: str, temp_root: Optional[Path] = None) -> "Workspace":
        source_frames = create_temp_dir("source", temp_root)
        try:
            scaled_frames = create_temp_dir("scaled", temp_root)
        except OSError:
            remove(source_frames)
            raise
        return cls(
            source_frames=source_frames,
            scaled_frames=scaled_frames,
            upscaled_file=scaled_frames / f"tmp_{video_name}",
            muxed_file=scaled_frames / f"out_{video_name}",
        )

    def teardown(self) -> None:
        remove(self.source_frames)
        remove(self.scaled_frames)
