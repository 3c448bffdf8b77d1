"""
Fiducial calibration boards: ChArUco (OpenCV) and AprilBoard (pupil_apriltags).

Both turn one image into a CalibrationObservation: the ids of the detected
corners (or tags), their image positions and their board-frame coordinates.
"""

from __future__ import annotations

import pickle
from typing import Dict, Optional, Tuple

import cv2
import numpy as np
import requests

from multicam_app.config import BoardConfig
from multicam_app.errors import ConfigurationError
from multicam_app.recon.data_structures import CalibrationObservation

# URL to download AprilBoards pickle file from CS283 pset data
APRILBOARD_URL = (
    "https://github.com/Harvard-CS283/pset-data/raw/"
    "f1a90573ae88cd530a3df3cd0cea71aa2363b1b3/april/AprilBoards.pickle"
)


def _to_gray(image: np.ndarray) -> np.ndarray:
    if len(image.shape) == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


class CharucoBoard:
    """
    ChArUco board: chessboard corners identified by the ArUco markers around them.

    Args:
        squares: (squares_x, squares_y).
        square_length: Chessboard square side (board units).
        marker_length: Marker side (same units as square_length).
        dictionary: Name of a predefined cv2.aruco dictionary.
    """

    name = "charuco"

    def __init__(
        self,
        squares: Tuple[int, int] = (10, 5),
        square_length: float = 28.333333333,
        marker_length: float = 19.833,
        dictionary: str = "DICT_4X4_50",
    ):
        if marker_length >= square_length:
            raise ConfigurationError(
                f"marker_length ({marker_length}) must be smaller than "
                f"square_length ({square_length})"
            )
        dictionary_id = getattr(cv2.aruco, dictionary, None)
        if dictionary_id is None:
            raise ConfigurationError(f"Unknown ArUco dictionary: {dictionary}")

        self.squares = (int(squares[0]), int(squares[1]))
        self.square_length = float(square_length)
        self.marker_length = float(marker_length)
        self.dictionary = cv2.aruco.getPredefinedDictionary(dictionary_id)
        self.board = cv2.aruco.CharucoBoard(
            self.squares, self.square_length, self.marker_length, self.dictionary
        )
        self.detector = cv2.aruco.CharucoDetector(self.board)

    def detect(self, image: np.ndarray, frame_index: int = 0) -> Optional[CalibrationObservation]:
        """Detect the board; None when no corner can be matched to the board."""
        gray = _to_gray(image)
        charuco_corners, charuco_ids, _marker_corners, _marker_ids = self.detector.detectBoard(gray)

        if charuco_ids is None or charuco_corners is None or len(charuco_ids) == 0:
            return None

        obj_points, img_points = self.board.matchImagePoints(charuco_corners, charuco_ids)
        if obj_points is None or img_points is None or len(obj_points) == 0:
            return None

        return CalibrationObservation(
            frame_index=frame_index,
            corner_ids=np.asarray(charuco_ids, dtype=np.int32).reshape(-1),
            corners_2d=np.asarray(charuco_corners, dtype=np.float32).reshape(-1, 2),
            object_points=np.asarray(obj_points, dtype=np.float32).reshape(-1, 3),
            image_points=np.asarray(img_points, dtype=np.float32).reshape(-1, 2),
        )

    def generate_image(
        self,
        size: Tuple[int, int] | None = None,
        margin: int = 20,
        border_bits: int = 1,
    ) -> np.ndarray:
        """Printable board image (grayscale uint8). `size` is (width, height)."""
        if size is None:
            size = (self.squares[0] * 100, self.squares[1] * 100)
        return self.board.generateImage(tuple(size), marginSize=margin, borderBits=border_bits)


def load_aprilboards() -> Tuple[object, object]:
    """
    Download and load AprilBoard definitions from the CS283 repository.

    Returns:
        Tuple of (at_coarseboard, at_fineboard): lists of dicts with
        'tag_id' and 'center' entries.
    """
    response = requests.get(APRILBOARD_URL, timeout=30)
    response.raise_for_status()
    data = pickle.loads(response.content)

    return data["at_coarseboard"], data["at_fineboard"]


class AprilBoard:
    """
    AprilTag board: one calibration point per tag, at the tag centre.

    Args:
        board_centers: Mapping tag_id -> (X, Y, Z) centre in board
            coordinates. Use `AprilBoard.download` for the CS283 boards.
    """

    name = "aprilboard"

    def __init__(self, board_centers: Dict[int, np.ndarray], families: str = "tag36h11"):
        if not board_centers:
            raise ConfigurationError("AprilBoard definitions do not contain tag_id/center entries.")
        self.board_centers = {
            int(k): np.asarray(v, dtype=np.float32).reshape(3) for k, v in board_centers.items()
        }
        self.families = families
        self._detector = None

    @classmethod
    def from_definition(cls, board_list) -> "AprilBoard":
        board_centers: Dict[int, np.ndarray] = {}
        for entry in board_list:
            if not isinstance(entry, dict):
                continue
            if "tag_id" not in entry or "center" not in entry:
                continue
            board_centers[int(entry["tag_id"])] = np.asarray(entry["center"], dtype=np.float32)
        return cls(board_centers)

    @classmethod
    def download(cls, board_type: str = "coarse") -> "AprilBoard":
        at_coarseboard, at_fineboard = load_aprilboards()
        board_list = at_fineboard if board_type.lower().startswith("f") else at_coarseboard
        return cls.from_definition(board_list)

    def _get_detector(self):
        if self._detector is None:
            try:
                from pupil_apriltags import Detector
            except ImportError:
                raise ImportError(
                    "pupil_apriltags library is required for AprilBoard calibration. "
                    "Install with: pip install pupil-apriltags"
                )
            self._detector = Detector(
                families=self.families,
                nthreads=1,
                quad_decimate=1.0,
                quad_sigma=0.0,
                refine_edges=1,
                decode_sharpening=0.25,
                debug=0,
            )
        return self._detector

    def detect(self, image: np.ndarray, frame_index: int = 0) -> Optional[CalibrationObservation]:
        """Detect tags; None when no tag with a known board position is seen."""
        detections = self._get_detector().detect(_to_gray(image))

        ids, centers_2d, centers_3d = [], [], []
        for detection in detections:
            tag_id = int(detection.tag_id)
            if tag_id not in self.board_centers:
                continue
            ids.append(tag_id)
            centers_2d.append(np.asarray(detection.center, dtype=np.float32).reshape(2))
            centers_3d.append(self.board_centers[tag_id])

        if not ids:
            return None

        image_points = np.vstack(centers_2d)
        return CalibrationObservation(
            frame_index=frame_index,
            corner_ids=np.asarray(ids, dtype=np.int32),
            corners_2d=image_points.copy(),
            object_points=np.vstack(centers_3d).astype(np.float32),
            image_points=image_points,
        )


def make_board(config: BoardConfig | None = None):
    """Build the board described by `config`."""
    config = config or BoardConfig()
    if config.kind == "charuco":
        return CharucoBoard(
            squares=config.squares,
            square_length=config.square_length,
            marker_length=config.marker_length,
            dictionary=config.dictionary,
        )
    if config.kind == "aprilboard":
        return AprilBoard.download(config.aprilboard_type)
    raise ConfigurationError(f"Unknown board kind: {config.kind}")


__all__ = ["CharucoBoard", "AprilBoard", "load_aprilboards", "make_board", "APRILBOARD_URL"]
