"""
Temporal reconstruction: one colored, confidence-filtered point cloud per frame.

Frame 0 establishes correspondences from scratch; every later frame reuses
them through optical-flow tracking, so a PointID keeps describing the same
physical point for the whole run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from multicam_app.config import ReconstructionConfig
from multicam_app.errors import InvariantError
from multicam_app.features.correspondence import find_initial_point_sets
from multicam_app.geometry.triangulation import triangulate_points_multiple, undistort_point_set
from multicam_app.io.ply_io import save_point_cloud
from multicam_app.obs.event_log import EventLog, ensure_sink
from multicam_app.recon.data_structures import CameraParameters, Point2DSet, PointCloud
from multicam_app.tracking.temporal_tracker import (
    FlowFn,
    TemporalTracker,
    track_points_optical_flow,
)

POINT_CLOUD_DIR = "point_clouds"

STOP_EXHAUSTED = "frames_exhausted"
STOP_MAX_FRAMES = "max_frames"
STOP_ALL_LOST = "all_tracks_lost"


def point_cloud_path(output_dir, timestamp: int) -> Path:
    return Path(output_dir) / POINT_CLOUD_DIR / f"point_cloud_{timestamp}.ply"


def add_color_to_point_cloud(
    cloud: PointCloud,
    image: np.ndarray,
    raw_points: Point2DSet,
) -> int:
    """
    Color each point from `image` at its raw observation (matched by track_id).

    `image` is RGB (or grayscale). Pixel coordinates are truncated to ints;
    points without an observation or outside the image keep color None.

    Returns:
        Number of points that received a color.
    """
    h, w = image.shape[:2]
    colored = 0
    for pt in cloud.points:
        if pt.track_id is None or pt.track_id not in raw_points:
            continue
        u, v = raw_points[pt.track_id]
        x, y = int(u), int(v)
        if not (0 <= x < w and 0 <= y < h):
            continue
        pixel = image[y, x]
        if np.ndim(pixel) == 0:
            pt.color = (int(pixel),) * 3
        else:
            pt.color = (int(pixel[0]), int(pixel[1]), int(pixel[2]))
        colored += 1
    return colored


@dataclass
class ReconstructionSummary:
    """What a run produced and why it stopped."""

    frames_processed: int = 0
    # timestamp -> number of points written
    points_per_frame: Dict[int, int] = field(default_factory=dict)
    written_paths: List[Path] = field(default_factory=list)
    stop_reason: str = STOP_EXHAUSTED
    # Most recent cloud written, with track ids intact.
    last_cloud: Optional[PointCloud] = None


class ReconstructionPipeline:
    """
    Drives correspondence, triangulation, coloring and tracking frame by frame.

    Args:
        cameras: Calibrated cameras; camera 0 is the reference.
        config: Reconstruction settings.
        sink: Event sink shared by all stages.
        flow: Optical-flow function handed to the tracker.
    """

    def __init__(
        self,
        cameras: Sequence[CameraParameters],
        config: Optional[ReconstructionConfig] = None,
        sink: Optional[EventLog] = None,
        flow: FlowFn = track_points_optical_flow,
    ):
        if len(cameras) < 2:
            raise InvariantError(f"Reconstruction needs at least 2 cameras, got {len(cameras)}")
        self.cameras = list(cameras)
        self.config = config or ReconstructionConfig()
        self.sink = ensure_sink(sink)
        self.flow = flow

    def initial_point_sets(self, images: Sequence[np.ndarray]) -> List[Point2DSet]:
        """Raw 2D points of frame 0 visible in every camera."""
        self._check_frame(images)
        return find_initial_point_sets(images, self.config, self.sink)

    def build_cloud(
        self,
        raw_sets: Sequence[Point2DSet],
        undistorted_sets: Sequence[Point2DSet],
        reference_image: np.ndarray,
        timestamp: int,
    ) -> PointCloud:
        """Triangulate, color and confidence-filter one frame."""
        result = triangulate_points_multiple(
            undistorted_sets, self.cameras, self.config.error_scale, self.sink
        )
        cloud = PointCloud(points=result.points, timestamp=timestamp)
        colored = add_color_to_point_cloud(cloud, reference_image, raw_sets[0])

        filtered = cloud.filter_by_confidence(self.config.confidence_threshold)
        self.sink.info(
            "recon.cloud",
            f"Frame {timestamp}: {len(filtered)} of {len(cloud)} points kept "
            f"(confidence >= {self.config.confidence_threshold:g}), {colored} colored",
            timestamp=timestamp,
            triangulated=len(cloud),
            kept=len(filtered),
            colored=colored,
        )
        return filtered

    def _check_frame(self, images: Sequence[np.ndarray]) -> None:
        if len(images) != len(self.cameras):
            raise InvariantError(
                f"Got {len(images)} images for {len(self.cameras)} cameras"
            )

    def _write(self, cloud: PointCloud, output_dir, summary: ReconstructionSummary) -> None:
        path = save_point_cloud(cloud, point_cloud_path(output_dir, cloud.timestamp))
        summary.points_per_frame[cloud.timestamp] = len(cloud)
        summary.written_paths.append(path)
        summary.last_cloud = cloud
        self.sink.debug("recon.write", f"Wrote {path}", path=str(path), points=len(cloud))

    def run(
        self,
        frames: Iterable[Sequence[np.ndarray]],
        output_dir,
        initial_point_sets: Optional[Sequence[Point2DSet]] = None,
    ) -> ReconstructionSummary:
        """
        Reconstruct every frame and write point_clouds/point_cloud_<t>.ply.

        Args:
            frames: Iterable of per-camera RGB image lists, in time order.
            output_dir: Root output folder.
            initial_point_sets: Raw frame-0 correspondences; detected from
                frame 0 when None.

        Returns:
            ReconstructionSummary. Stops when frames run out, when
            config.max_frames frames were processed, or when no track is left.
        """
        summary = ReconstructionSummary()
        tracker = TemporalTracker(
            self.cameras,
            drop_lost_points=self.config.drop_lost_points,
            flow=self.flow,
            max_workers=self.config.max_workers,
            sink=self.sink,
        )
        max_frames = self.config.max_frames

        for timestamp, images in enumerate(frames):
            if max_frames is not None and timestamp >= max_frames:
                summary.stop_reason = STOP_MAX_FRAMES
                break
            images = list(images)
            self._check_frame(images)

            if timestamp == 0:
                raw_sets = (
                    list(initial_point_sets)
                    if initial_point_sets is not None
                    else self.initial_point_sets(images)
                )
                tracker.seed(images, raw_sets)
                raw_sets = tracker.prev_points
                undistorted_sets = [
                    undistort_point_set(s, cam) for s, cam in zip(raw_sets, self.cameras)
                ]
            else:
                step = tracker.step(images, timestamp)
                raw_sets, undistorted_sets = step.raw_point_sets, step.point_sets

            if len(raw_sets[0]) == 0:
                self.sink.warning(
                    "recon.stop", f"Frame {timestamp}: every track was lost", timestamp=timestamp
                )
                summary.stop_reason = STOP_ALL_LOST
                break

            cloud = self.build_cloud(raw_sets, undistorted_sets, images[0], timestamp)
            self._write(cloud, output_dir, summary)
            summary.frames_processed += 1
        else:
            if max_frames is not None and summary.frames_processed >= max_frames:
                summary.stop_reason = STOP_MAX_FRAMES
            else:
                summary.stop_reason = STOP_EXHAUSTED

        self.sink.info(
            "recon.summary",
            f"Processed {summary.frames_processed} frames, stopped: {summary.stop_reason}",
            frames=summary.frames_processed,
            stop_reason=summary.stop_reason,
        )
        return summary


__all__ = [
    "POINT_CLOUD_DIR",
    "STOP_EXHAUSTED",
    "STOP_MAX_FRAMES",
    "STOP_ALL_LOST",
    "point_cloud_path",
    "add_color_to_point_cloud",
    "ReconstructionSummary",
    "ReconstructionPipeline",
]
