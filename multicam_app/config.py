"""
Configuration dataclasses for calibration and reconstruction.

Defaults are the tuned design constants; the CLI overrides them per run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple


@dataclass
class BoardConfig:
    """Fiducial board used during calibration capture."""

    kind: Literal["charuco", "aprilboard"] = "charuco"
    """'charuco' (OpenCV ChArUco) or 'aprilboard' (tag-centre AprilBoard)"""

    # ChArUco geometry (squares_x, squares_y), lengths in board units.
    squares: Tuple[int, int] = (10, 5)
    square_length: float = 28.333333333
    marker_length: float = 19.833
    dictionary: str = "DICT_4X4_50"

    aprilboard_type: Literal["coarse", "fine"] = "coarse"
    """AprilBoard variant (only used when kind='aprilboard')"""


@dataclass
class CalibrationConfig:
    """Intrinsic + chained stereo calibration settings."""

    board: BoardConfig = field(default_factory=BoardConfig)

    min_common_ids: int = 10
    """Minimum shared fiducial IDs for a frame to join a stereo pair"""

    min_intrinsic_frames: int = 1
    """Minimum valid frames for a single-camera calibration"""

    max_iterations: int = 30
    """Solver iteration cap (COUNT+EPS termination)"""


@dataclass
class ReconstructionConfig:
    """Correspondence, triangulation and tracking settings."""

    # Feature detection (SIFT)
    sift_octave_layers: int = 4
    sift_contrast_threshold: float = 0.04
    sift_edge_threshold: float = 10.0
    sift_sigma: float = 1.6

    # Matching
    ratio: float = 0.7
    """Lowe ratio for the k=2 nearest-neighbour test"""

    use_flann: bool = False
    """FLANN is approximate; brute force keeps matching deterministic"""

    # Triangulation
    error_scale: float = 5.0
    """Mean reprojection error (px) at which confidence reaches zero"""

    confidence_threshold: float = 0.25
    """Points below this confidence are dropped from written clouds"""

    # Tracking
    drop_lost_points: bool = True
    """Drop tracks reported lost by optical flow from every camera"""

    max_frames: Optional[int] = None
    """Upper bound on processed frames (None = until a video ends)"""

    max_workers: Optional[int] = None
    """Thread pool size for per-camera work (None = one per camera)"""


__all__ = ["BoardConfig", "CalibrationConfig", "ReconstructionConfig"]
