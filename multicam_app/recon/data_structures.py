"""
Shared core data structures for calibration and reconstruction.

These containers are passed between:
- the correspondence engine and common-visibility filter
- calibration
- triangulation and temporal tracking
- point cloud I/O and visualization
"""

from __future__ import annotations

from dataclasses import dataclass, field
from collections.abc import Mapping
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from multicam_app.errors import InvariantError

Color = Tuple[int, int, int]


@dataclass
class CameraParameters:
    """
    Calibration of one camera in the reference camera's frame.

    Camera 0 is the reference: identity rotation and zero translation.
    """

    # Intrinsic matrix (3x3) and lens-distortion coefficients.
    intrinsic: np.ndarray
    distortion: np.ndarray
    # Rotation (3x3) and translation (3x1) from reference to camera coordinates.
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros((3, 1)))
    # Pairwise stereo results against the reference; not needed for triangulation.
    essential: Optional[np.ndarray] = None
    fundamental: Optional[np.ndarray] = None

    def __post_init__(self):
        self.intrinsic = np.asarray(self.intrinsic, dtype=np.float64).reshape(3, 3)
        self.distortion = np.asarray(self.distortion, dtype=np.float64).ravel()
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3, 1)

    def projection_matrix(self) -> np.ndarray:
        """P = K [R | t], shape (3, 4)."""
        return self.intrinsic @ np.hstack([self.rotation, self.translation])

    def center(self) -> np.ndarray:
        """Camera centre in reference coordinates: C = -R^T t."""
        return (-self.rotation.T @ self.translation).ravel()

    def is_reference_aligned(self, tol: float = 1e-5) -> bool:
        return bool(
            np.allclose(self.rotation, np.eye(3), atol=tol)
            and np.allclose(self.translation, 0.0, atol=tol)
        )


@dataclass
class CalibrationObservation:
    """Fiducial detections of one camera in one calibration frame."""

    frame_index: int
    # corner_ids: (N,) int fiducial corner (or tag) identifiers.
    corner_ids: np.ndarray
    # corners_2d: (N, 2) detected corner positions in pixels.
    corners_2d: np.ndarray
    # object_points: (N, 3) board-frame coordinates, row-aligned with corner_ids.
    object_points: np.ndarray
    # image_points: (N, 2) image coordinates, row-aligned with object_points.
    image_points: np.ndarray

    def __len__(self) -> int:
        return len(self.corner_ids)


@dataclass(frozen=True)
class Correspondence:
    """A ratio-test survivor: reference feature -> target feature."""

    query_idx: int
    train_idx: int
    distance: float


class Point2DSet(Mapping):
    """
    Image observations of one camera keyed by point identity.

    Row i of `points` belongs to PointID `ids[i]`. Sets from different
    cameras are matched by id, never by row position.
    """

    def __init__(self, ids: Iterable[int], points: np.ndarray):
        ids = np.array(list(ids), dtype=np.int64)
        points = np.asarray(points, dtype=np.float64)
        if points.size == 0:
            points = points.reshape(0, 2)
        if ids.ndim != 1 or points.ndim != 2 or points.shape[1] != 2:
            raise InvariantError(
                f"Point2DSet needs (N,) ids and (N, 2) points, got {ids.shape} and {points.shape}"
            )
        if len(ids) != len(points):
            raise InvariantError(
                f"Point2DSet has {len(ids)} ids but {len(points)} points"
            )
        self.ids = ids
        self.points = points
        self._index: Dict[int, int] = {int(pid): row for row, pid in enumerate(ids)}
        if len(self._index) != len(ids):
            raise InvariantError("Point2DSet ids must be unique")

    def __getitem__(self, pid: int) -> np.ndarray:
        return self.points[self._index[int(pid)]]

    def __iter__(self) -> Iterator[int]:
        return (int(pid) for pid in self.ids)

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, pid: object) -> bool:
        try:
            return int(pid) in self._index  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Point2DSet):
            return NotImplemented
        return bool(
            np.array_equal(self.ids, other.ids) and np.array_equal(self.points, other.points)
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"Point2DSet(n={len(self)})"

    def select(self, ids: Iterable[int]) -> "Point2DSet":
        """Subset / reorder to `ids`; every id must be present."""
        ids = np.array(list(ids), dtype=np.int64)
        missing = [int(pid) for pid in ids if int(pid) not in self._index]
        if missing:
            raise InvariantError(f"Point ids not present in set: {missing[:10]}")
        rows = [self._index[int(pid)] for pid in ids]
        return Point2DSet(ids, self.points[rows].reshape(-1, 2))

    def with_points(self, points: np.ndarray) -> "Point2DSet":
        """Same ids, new coordinates (row-aligned with `self.ids`)."""
        return Point2DSet(self.ids.copy(), points)

    def same_ids(self, other: "Point2DSet") -> bool:
        return set(self._index) == set(other._index)


@dataclass
class Point3D:
    """A single triangulated point in the reference camera frame."""

    # 3D location (X, Y, Z).
    xyz: np.ndarray
    # 1.0 = perfect reprojection, 0.0 = mean error >= error scale.
    confidence: float
    # RGB color sampled from the reference camera image, if any.
    color: Optional[Color] = None
    # PointID of the 2D track this point was triangulated from.
    track_id: Optional[int] = None

    def __post_init__(self):
        self.xyz = np.asarray(self.xyz, dtype=np.float64).reshape(3)

    @property
    def x(self) -> float:
        return float(self.xyz[0])

    @property
    def y(self) -> float:
        return float(self.xyz[1])

    @property
    def z(self) -> float:
        return float(self.xyz[2])


@dataclass
class PointCloud:
    """All points reconstructed for one frame."""

    points: List[Point3D] = field(default_factory=list)
    # Frame index.
    timestamp: int = 0

    def __len__(self) -> int:
        return len(self.points)

    @property
    def has_color(self) -> bool:
        return any(pt.color is not None for pt in self.points)

    def xyz(self) -> np.ndarray:
        if not self.points:
            return np.array([]).reshape(0, 3)
        return np.stack([pt.xyz for pt in self.points])

    def confidences(self) -> np.ndarray:
        return np.array([pt.confidence for pt in self.points], dtype=np.float64)

    def filter_by_confidence(self, threshold: float) -> "PointCloud":
        """Return a new cloud keeping points with confidence >= threshold."""
        return PointCloud(
            points=[pt for pt in self.points if pt.confidence >= threshold],
            timestamp=self.timestamp,
        )


__all__ = [
    "CameraParameters",
    "CalibrationObservation",
    "Correspondence",
    "Point2DSet",
    "Point3D",
    "PointCloud",
]
