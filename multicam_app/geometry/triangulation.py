"""
Multi-view triangulation with reprojection-error based confidence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import cv2
import numpy as np

from multicam_app.errors import InvariantError
from multicam_app.obs.event_log import EventLog, ensure_sink
from multicam_app.recon.data_structures import CameraParameters, Point2DSet, Point3D

# Mean reprojection error (pixels) at which confidence reaches zero.
ERROR_SCALE = 5.0


@dataclass
class ReprojectionStats:
    """Summary of per-point mean reprojection errors."""

    count: int
    min: float
    median: float
    mean: float
    max: float
    # Points whose error exceeds the error scale.
    num_bad: int

    @classmethod
    def from_errors(cls, errors: np.ndarray, error_scale: float = ERROR_SCALE) -> "ReprojectionStats":
        if errors.size == 0:
            return cls(0, 0.0, 0.0, 0.0, 0.0, 0)
        ordered = np.sort(errors)
        return cls(
            count=int(ordered.size),
            min=float(ordered[0]),
            median=float(ordered[ordered.size // 2]),
            mean=float(ordered.mean()),
            max=float(ordered[-1]),
            num_bad=int(np.sum(ordered > error_scale)),
        )

    @property
    def bad_fraction(self) -> float:
        return self.num_bad / self.count if self.count else 0.0


@dataclass
class TriangulationResult:
    """Triangulated points (one per PointID) and their quality."""

    points: List[Point3D]
    # Per-point mean reprojection error (N,), aligned with `points`.
    errors: np.ndarray
    stats: ReprojectionStats
    # PointIDs in output order (the reference set's order).
    ids: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.int64))

    def xyz(self) -> np.ndarray:
        if not self.points:
            return np.array([]).reshape(0, 3)
        return np.stack([pt.xyz for pt in self.points])


def confidence_from_error(errors, error_scale: float = ERROR_SCALE):
    """
    Linear confidence falloff: 1 - min(error / error_scale, 1).

    Zero error gives 1.0; anything at or beyond `error_scale` gives 0.0.
    Accepts a scalar or an array.
    """
    if error_scale <= 0:
        raise ValueError(f"error_scale must be positive, got {error_scale}")
    ratio = np.minimum(np.asarray(errors, dtype=np.float64) / error_scale, 1.0)
    confidence = 1.0 - ratio
    if confidence.ndim == 0:
        return float(confidence)
    return confidence


def projection_matrices(cameras: Sequence[CameraParameters]) -> List[np.ndarray]:
    return [cam.projection_matrix() for cam in cameras]


def align_point_sets(point_sets: Sequence[Point2DSet]) -> List[Point2DSet]:
    """
    Reorder every set to the reference set's PointID order.

    Raises:
        InvariantError: If the sets do not carry exactly the same PointIDs.
    """
    reference = point_sets[0]
    aligned = [reference]
    for i, point_set in enumerate(point_sets[1:], start=1):
        if len(point_set) != len(reference) or not reference.same_ids(point_set):
            raise InvariantError(
                f"Point set of camera {i} has {len(point_set)} points; expected the "
                f"same {len(reference)} point ids as the reference camera"
            )
        aligned.append(point_set.select(reference.ids))
    return aligned


def dehomogenize(X: np.ndarray, min_w: float = 1e-12) -> np.ndarray:
    """(N, 4) homogeneous rows to (3, N) points; |w| is floored at `min_w`, keeping its sign."""
    w = X[:, 3:4]
    w = np.where(np.abs(w) > min_w, w, np.copysign(min_w, w))
    return (X[:, :3] / w).T


def triangulate_dlt(points_2d: Sequence[np.ndarray], proj_mats: Sequence[np.ndarray]) -> np.ndarray:
    """
    Linear (DLT) triangulation of N points seen by C cameras.

    For each view with observation (x, y) and projection P:
        x * P[2] - P[0] = 0
        y * P[2] - P[1] = 0
    The stacked system A X = 0 is solved by SVD for every point at once.

    Args:
        points_2d: C arrays of shape (2, N) (library layout: one column per point).
        proj_mats: C projection matrices (3, 4).

    Returns:
        (3, N) homogeneous-normalized 3D points.
    """
    num_points = points_2d[0].shape[1]
    A = np.zeros((num_points, 2 * len(proj_mats), 4))

    for c, (pts, P) in enumerate(zip(points_2d, proj_mats)):
        x = pts[0][:, None]
        y = pts[1][:, None]
        A[:, 2 * c] = x * P[2] - P[0]
        A[:, 2 * c + 1] = y * P[2] - P[1]

    # Row scaling leaves the null space unchanged but improves conditioning.
    row_norms = np.linalg.norm(A, axis=2, keepdims=True)
    A = A / np.where(row_norms > 0, row_norms, 1.0)

    _, _, Vt = np.linalg.svd(A)
    X = Vt[:, -1, :]  # (N, 4)

    return dehomogenize(X)


def reprojection_errors(
    points_3d: np.ndarray,
    point_sets: Sequence[Point2DSet],
    proj_mats: Sequence[np.ndarray],
) -> np.ndarray:
    """
    Mean Euclidean reprojection error per point across all cameras.

    Args:
        points_3d: (3, N) points.
        point_sets: Aligned observations, one set per camera.
        proj_mats: Projection matrices, one per camera.

    Returns:
        (N,) mean pixel error.
    """
    num_points = points_3d.shape[1]
    homogeneous = np.vstack([points_3d, np.ones((1, num_points))])

    total = np.zeros(num_points)
    for point_set, P in zip(point_sets, proj_mats):
        projected = P @ homogeneous
        projected = projected[:2] / projected[2]
        total += np.linalg.norm(projected.T - point_set.points, axis=1)

    return total / len(proj_mats)


def triangulate_points_multiple(
    point_sets: Sequence[Point2DSet],
    cameras: Sequence[CameraParameters],
    error_scale: float = ERROR_SCALE,
    sink: Optional[EventLog] = None,
) -> TriangulationResult:
    """
    Triangulate PointIDs observed by all cameras and score each point.

    Args:
        point_sets: Undistorted observations, one Point2DSet per camera, all
                    with the same PointIDs.
        cameras: Calibration of each camera; camera 0 is the reference.
        error_scale: Mean reprojection error (px) mapped to zero confidence.
        sink: Event sink receiving the error summary.

    Returns:
        TriangulationResult with one Point3D per PointID (track_id = PointID).

    Raises:
        InvariantError: Too few cameras, count mismatch, mismatched ids or
                        an empty point set.
    """
    sink = ensure_sink(sink)

    if len(point_sets) < 2 or len(cameras) < 2:
        sink.error(
            "triangulate.invalid",
            "Not enough cameras or point sets",
            cameras=len(cameras),
            point_sets=len(point_sets),
        )
        raise InvariantError("Triangulation requires at least 2 cameras")

    if len(point_sets) != len(cameras):
        sink.error(
            "triangulate.invalid",
            "Number of point sets does not match number of cameras",
            cameras=len(cameras),
            point_sets=len(point_sets),
        )
        raise InvariantError(
            f"Got {len(point_sets)} point sets for {len(cameras)} cameras"
        )

    aligned = align_point_sets(point_sets)
    num_points = len(aligned[0])
    if num_points == 0:
        raise InvariantError("No points to triangulate")
    for i, point_set in enumerate(aligned):
        if not np.all(np.isfinite(point_set.points)):
            raise InvariantError(f"Point set of camera {i} contains non-finite coordinates")

    sink.debug("triangulate.start", f"Triangulating {num_points} points", points=num_points)

    if not cameras[0].is_reference_aligned():
        sink.warning(
            "triangulate.reference_pose",
            "Reference camera rotation is not identity or translation is not zero",
        )

    proj_mats = projection_matrices(cameras)
    points_3d = triangulate_dlt([s.points.T for s in aligned], proj_mats)

    errors = reprojection_errors(points_3d, aligned, proj_mats)
    confidences = confidence_from_error(errors, error_scale)

    ids = aligned[0].ids
    points = [
        Point3D(xyz=points_3d[:, i], confidence=float(confidences[i]), track_id=int(ids[i]))
        for i in range(num_points)
    ]

    stats = ReprojectionStats.from_errors(errors, error_scale)
    sink.info(
        "triangulate.stats",
        f"Reprojection error px: min={stats.min:.2f} median={stats.median:.2f} "
        f"mean={stats.mean:.2f} max={stats.max:.2f}; "
        f"{stats.num_bad} of {stats.count} points above {error_scale:g} px "
        f"({100.0 * stats.bad_fraction:.1f}%)",
        count=stats.count,
        min=stats.min,
        median=stats.median,
        mean=stats.mean,
        max=stats.max,
        num_bad=stats.num_bad,
    )

    return TriangulationResult(points=points, errors=errors, stats=stats, ids=ids.copy())


def undistort_points(points: np.ndarray, camera: CameraParameters) -> np.ndarray:
    """
    Remove lens distortion from pixel coordinates.

    Args:
        points: (N, 2) distorted pixel coordinates.
        camera: Camera whose intrinsic/distortion to use.

    Returns:
        (N, 2) undistorted pixel coordinates (re-projected with the same K).
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(points) == 0:
        return points.copy()

    undistorted = cv2.undistortPoints(
        points.reshape(-1, 1, 2),
        camera.intrinsic,
        camera.distortion,
        P=camera.intrinsic,
    )
    return undistorted.reshape(-1, 2).astype(np.float64)


def undistort_point_set(point_set: Point2DSet, camera: CameraParameters) -> Point2DSet:
    return point_set.with_points(undistort_points(point_set.points, camera))


__all__ = [
    "ERROR_SCALE",
    "ReprojectionStats",
    "TriangulationResult",
    "confidence_from_error",
    "projection_matrices",
    "align_point_sets",
    "dehomogenize",
    "triangulate_dlt",
    "reprojection_errors",
    "triangulate_points_multiple",
    "undistort_points",
    "undistort_point_set",
]
