"""
Frame-to-frame propagation of 2D point tracks with pyramidal Lucas-Kanade.

The tracker keeps, per camera, the previous image and the raw (distorted)
position of every active PointID. Each step tracks all cameras independently,
drops ids lost in any camera, and hands back undistorted sets ready for
triangulation.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from multicam_app.errors import InvariantError
from multicam_app.geometry.triangulation import undistort_points
from multicam_app.obs.event_log import EventLog, ensure_sink
from multicam_app.recon.data_structures import CameraParameters, Point2DSet

LK_WIN_SIZE = (13, 13)
LK_MAX_LEVEL = 3
LK_CRITERIA = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_COUNT, 1_000_000, 1e-6)
LK_MIN_EIG_THRESHOLD = 1e-4

# (prev_image, next_image, points (N, 2)) -> (next_points (N, 2), status (N,) bool)
FlowFn = Callable[[np.ndarray, np.ndarray, np.ndarray], Tuple[np.ndarray, np.ndarray]]


def _to_gray(image: np.ndarray) -> np.ndarray:
    if len(image.shape) == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def track_points_optical_flow(
    prev_image: np.ndarray,
    next_image: np.ndarray,
    points: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Track `points` from `prev_image` to `next_image`.

    Args:
        prev_image: Previous frame (H, W, 3) RGB or grayscale.
        next_image: Current frame, same size.
        points: (N, 2) pixel positions in the previous frame.

    Returns:
        Tuple of (next_points (N, 2) float64, status (N,) bool) where
        status False means the track was lost.
    """
    points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
    if len(points) == 0:
        return np.array([]).reshape(0, 2), np.zeros((0,), dtype=bool)

    next_points, status, _err = cv2.calcOpticalFlowPyrLK(
        _to_gray(prev_image),
        _to_gray(next_image),
        points.reshape(-1, 1, 2),
        None,
        winSize=LK_WIN_SIZE,
        maxLevel=LK_MAX_LEVEL,
        criteria=LK_CRITERIA,
        flags=0,
        minEigThreshold=LK_MIN_EIG_THRESHOLD,
    )

    if next_points is None or status is None:
        return points.astype(np.float64), np.zeros(len(points), dtype=bool)

    next_points = next_points.reshape(-1, 2).astype(np.float64)
    status = status.reshape(-1).astype(bool)
    # Non-finite positions are as good as lost.
    status &= np.all(np.isfinite(next_points), axis=1)
    return next_points, status


@dataclass
class TrackingStep:
    """Result of propagating all tracks by one frame."""

    timestamp: int
    # Tracked positions in raw image coordinates (used for color sampling).
    raw_point_sets: List[Point2DSet]
    # Same points with lens distortion removed (used for triangulation).
    point_sets: List[Point2DSet]
    # PointIDs reported lost in at least one camera this step.
    lost_ids: List[int] = field(default_factory=list)

    @property
    def num_points(self) -> int:
        return len(self.point_sets[0]) if self.point_sets else 0


class TemporalTracker:
    """
    Per-camera optical-flow tracking of a shared set of PointIDs.

    Args:
        cameras: Calibration of every camera (for undistortion).
        drop_lost_points: Remove ids lost in any camera from every camera.
            When False, lost points keep their flow estimate and stay in the
            sets; they are only counted. Non-finite estimates are dropped
            either way.
        flow: Point tracking function, see `track_points_optical_flow`.
        max_workers: Thread pool size (None = one thread per camera).
        sink: Event sink.
    """

    def __init__(
        self,
        cameras: Sequence[CameraParameters],
        drop_lost_points: bool = True,
        flow: FlowFn = track_points_optical_flow,
        max_workers: Optional[int] = None,
        sink: Optional[EventLog] = None,
    ):
        self.cameras = list(cameras)
        self.drop_lost_points = drop_lost_points
        self.flow = flow
        self.max_workers = max_workers or max(1, len(self.cameras))
        self.sink = ensure_sink(sink)

        self.prev_images: Optional[List[np.ndarray]] = None
        self.prev_points: Optional[List[Point2DSet]] = None

    @property
    def seeded(self) -> bool:
        return self.prev_points is not None

    @property
    def active_ids(self) -> np.ndarray:
        if self.prev_points is None:
            return np.zeros((0,), dtype=np.int64)
        return self.prev_points[0].ids.copy()

    def seed(self, images: Sequence[np.ndarray], raw_point_sets: Sequence[Point2DSet]) -> None:
        """
        Start tracking from frame 0.

        Args:
            images: One image per camera.
            raw_point_sets: Distorted observations per camera sharing the same ids.
        """
        if len(images) != len(self.cameras) or len(raw_point_sets) != len(self.cameras):
            raise InvariantError(
                f"Seeding needs one image and one point set per camera "
                f"({len(self.cameras)}), got {len(images)} and {len(raw_point_sets)}"
            )
        reference = raw_point_sets[0]
        aligned = [reference]
        for point_set in raw_point_sets[1:]:
            if not reference.same_ids(point_set):
                raise InvariantError("Seed point sets must share the same point ids")
            aligned.append(point_set.select(reference.ids))

        self.prev_images = list(images)
        self.prev_points = aligned

    def _track_camera(self, camera_i: int, image: np.ndarray):
        prev_set = self.prev_points[camera_i]
        next_points, status = self.flow(self.prev_images[camera_i], image, prev_set.points)
        next_points = np.asarray(next_points, dtype=np.float64).reshape(-1, 2)
        status = np.asarray(status).reshape(-1).astype(bool)
        if len(next_points) != len(prev_set) or len(status) != len(prev_set):
            raise InvariantError(
                f"Optical flow returned {len(next_points)} points / {len(status)} flags "
                f"for {len(prev_set)} tracked points in camera {camera_i}"
            )
        finite = np.all(np.isfinite(next_points), axis=1)
        undistorted = np.full_like(next_points, np.nan)
        undistorted[finite] = undistort_points(next_points[finite], self.cameras[camera_i])
        return next_points, status, undistorted

    def step(self, images: Sequence[np.ndarray], timestamp: int) -> TrackingStep:
        """
        Track every camera from the previous frame to `images`.

        Per-camera work runs in parallel and is joined before ids are
        reconciled across cameras.
        """
        if not self.seeded:
            raise InvariantError("TemporalTracker.step called before seed")
        if len(images) != len(self.cameras):
            raise InvariantError(
                f"Expected {len(self.cameras)} images, got {len(images)}"
            )

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            results = list(executor.map(self._track_camera, range(len(self.cameras)), images))

        ids = self.prev_points[0].ids
        lost_mask = np.zeros(len(ids), dtype=bool)
        # Rows without a usable position cannot be kept even in keep mode.
        invalid_mask = np.zeros(len(ids), dtype=bool)
        for camera_i, (next_pts, status, und) in enumerate(results):
            finite = np.all(np.isfinite(next_pts), axis=1) & np.all(np.isfinite(und), axis=1)
            invalid_here = ~finite
            invalid_mask |= invalid_here
            status = status & ~invalid_here
            lost_here = int(np.sum(~status))
            if lost_here:
                self.sink.debug(
                    "track.lost",
                    f"Camera {camera_i}: {lost_here} tracks lost",
                    camera=camera_i,
                    lost=lost_here,
                    timestamp=timestamp,
                )
            lost_mask |= ~status

        lost_ids = [int(pid) for pid in ids[lost_mask]]
        keep = ~lost_mask if self.drop_lost_points else ~invalid_mask
        kept_ids = ids[keep]

        raw_sets = [Point2DSet(kept_ids, next_pts[keep]) for next_pts, _, _ in results]
        undistorted_sets = [Point2DSet(kept_ids, und[keep]) for _, _, und in results]

        self.sink.info(
            "track.step",
            f"Frame {timestamp}: {len(lost_ids)} of {len(ids)} tracks lost, "
            f"{len(kept_ids)} kept"
            + ("" if self.drop_lost_points else " (lost tracks retained)"),
            timestamp=timestamp,
            tracked=int(len(ids)),
            lost=len(lost_ids),
            kept=int(len(kept_ids)),
        )

        self.prev_images = list(images)
        self.prev_points = raw_sets

        return TrackingStep(
            timestamp=timestamp,
            raw_point_sets=raw_sets,
            point_sets=undistorted_sets,
            lost_ids=lost_ids,
        )


__all__ = [
    "LK_WIN_SIZE",
    "LK_MAX_LEVEL",
    "LK_CRITERIA",
    "LK_MIN_EIG_THRESHOLD",
    "track_points_optical_flow",
    "TrackingStep",
    "TemporalTracker",
]
