"""
Video I/O utilities for reading one video per camera in lock step.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import cv2
import numpy as np

from multicam_app.errors import ConfigurationError


def get_video_frame_count(video_path) -> int:
    """Frame count reported by the container (may be approximate)."""
    cap = cv2.VideoCapture(str(video_path))
    try:
        if not cap.isOpened():
            raise ConfigurationError(f"Could not open video file: {video_path}")
        return int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
    finally:
        cap.release()


def open_video_captures(video_paths: Sequence) -> List[cv2.VideoCapture]:
    """
    Open one capture per camera video.

    Raises:
        ConfigurationError: If any file is missing or cannot be opened. Captures
            opened so far are released first.
    """
    caps: List[cv2.VideoCapture] = []
    for video_path in video_paths:
        if video_path is None or not Path(video_path).is_file():
            release_all(caps)
            raise ConfigurationError(f"Video file does not exist: {video_path}")
        cap = cv2.VideoCapture(str(video_path))
        if not cap.isOpened():
            cap.release()
            release_all(caps)
            raise ConfigurationError(f"Could not open video file: {video_path}")
        caps.append(cap)
    return caps


def release_all(caps: Sequence[cv2.VideoCapture]) -> None:
    for cap in caps:
        cap.release()


def read_frames(caps: Sequence[cv2.VideoCapture]) -> Optional[List[np.ndarray]]:
    """
    Read the next frame of every capture.

    Returns:
        List of RGB frames (H, W, 3) uint8, or None as soon as any capture
        fails to deliver a frame (end of stream or decode error).
    """
    frames = []
    for cap in caps:
        ok, frame = cap.read()
        if not ok or frame is None:
            return None
        frames.append(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB))
    return frames


def iter_synchronized_frames(
    video_paths: Sequence,
    max_frames: Optional[int] = None,
) -> Iterator[List[np.ndarray]]:
    """
    Yield one list of RGB frames (one per camera) per time step.

    Iteration ends when any video is exhausted or `max_frames` steps were
    yielded. Captures are released when the generator finishes or is closed.
    """
    caps = open_video_captures(video_paths)
    try:
        count = 0
        while max_frames is None or count < max_frames:
            frames = read_frames(caps)
            if frames is None:
                break
            yield frames
            count += 1
    finally:
        release_all(caps)


__all__ = [
    "get_video_frame_count",
    "open_video_captures",
    "release_all",
    "read_frames",
    "iter_synchronized_frames",
]
