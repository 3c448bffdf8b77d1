"""
Multi-camera calibration from fiducial board images.

Intrinsics are solved per camera; extrinsics are solved pairwise against the
reference camera (index 0) with both intrinsics held fixed, so every camera's
pose is expressed directly in the reference camera frame.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from multicam_app.config import CalibrationConfig
from multicam_app.errors import CalibrationError, ConfigurationError
from multicam_app.obs.event_log import EventLog, ensure_sink
from multicam_app.recon.data_structures import CalibrationObservation, CameraParameters

# img_<cameraIndex>_<frameIndex>.png
CALIBRATION_IMAGE_PATTERN = re.compile(r"^img_(\d+)_(\d+)\.png$")

# Minimum fiducial IDs two cameras must share in a frame for stereo calibration.
MIN_COMMON_IDS = 10

ImageSize = Tuple[int, int]  # (width, height), as OpenCV expects


@dataclass
class IntrinsicCalibration:
    """Single-camera calibration and the observations it was solved from."""

    rms: float
    intrinsic: np.ndarray
    distortion: np.ndarray
    # frame_index -> observation, only frames that contributed.
    observations: Dict[int, CalibrationObservation]
    image_size: ImageSize


@dataclass
class StereoCalibration:
    """Pose of a target camera relative to the reference camera."""

    rms: float
    rotation: np.ndarray
    translation: np.ndarray
    essential: np.ndarray
    fundamental: np.ndarray
    frames_used: List[int]


@dataclass
class CalibrationReport:
    """Outcome of a multi-camera calibration run."""

    # Successful cameras, renumbered consecutively (index 0 is the reference).
    cameras: List[CameraParameters]
    # Position of each successful camera in the input camera list.
    source_indices: List[int]
    requested: int
    # input camera index -> failure reason
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.cameras)

    @property
    def complete(self) -> bool:
        return self.succeeded == self.requested


def group_calibration_images(directory) -> Dict[int, Dict[int, Path]]:
    """
    Group calibration images by camera and frame.

    Args:
        directory: Folder with files named img_<cameraIndex>_<frameIndex>.png.
                   Files that do not match the pattern are ignored.

    Returns:
        camera_index -> {frame_index -> path}, both levels sorted.

    Raises:
        ConfigurationError: If the directory is missing or holds no matching files.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ConfigurationError(f"Calibration image directory does not exist: {directory}")

    grouped: Dict[int, Dict[int, Path]] = {}
    for path in directory.iterdir():
        match = CALIBRATION_IMAGE_PATTERN.match(path.name)
        if match is None or not path.is_file():
            continue
        camera_index, frame_index = int(match.group(1)), int(match.group(2))
        grouped.setdefault(camera_index, {})[frame_index] = path

    if not grouped:
        raise ConfigurationError(
            f"No calibration images named img_<camera>_<frame>.png in {directory}"
        )

    return {cam: dict(sorted(frames.items())) for cam, frames in sorted(grouped.items())}


def collect_observations(
    images: Mapping[int, object],
    board,
    camera_index: int = 0,
    sink: Optional[EventLog] = None,
) -> Tuple[Dict[int, CalibrationObservation], Optional[ImageSize]]:
    """
    Run board detection on every calibration frame of one camera.

    Frames with no usable points (or unreadable files) are skipped, not fatal.

    Args:
        images: frame_index -> image array or image path.
        board: CharucoBoard / AprilBoard.
        camera_index: Used for log lines only.
        sink: Event sink.

    Returns:
        Tuple of (observations by frame index, image size of the first
        readable frame or None).
    """
    sink = ensure_sink(sink)
    observations: Dict[int, CalibrationObservation] = {}
    image_size = None

    for frame_index, image in images.items():
        if isinstance(image, (str, Path)):
            loaded = cv2.imread(str(image), cv2.IMREAD_COLOR)
            if loaded is None:
                sink.warning(
                    "calib.unreadable",
                    f"Camera {camera_index} frame {frame_index}: cannot read {image}",
                    camera=camera_index,
                    frame=frame_index,
                )
                continue
            image = cv2.cvtColor(loaded, cv2.COLOR_BGR2RGB)

        if image_size is None:
            h, w = image.shape[:2]
            image_size = (w, h)

        observation = board.detect(image, frame_index=frame_index)
        if observation is None or len(observation) == 0:
            sink.debug(
                "calib.frame_skipped",
                f"Camera {camera_index} frame {frame_index}: no board points",
                camera=camera_index,
                frame=frame_index,
            )
            continue

        observations[frame_index] = observation
        sink.debug(
            "calib.frame",
            f"Camera {camera_index} frame {frame_index}: {len(observation)} correspondences",
            camera=camera_index,
            frame=frame_index,
            points=len(observation),
        )

    return observations, image_size


def _termination_criteria(max_iterations: int):
    return (
        cv2.TERM_CRITERIA_COUNT + cv2.TERM_CRITERIA_EPS,
        max_iterations,
        float(np.finfo(np.float64).eps),
    )


def calibrate_intrinsics(
    observations: Mapping[int, CalibrationObservation],
    image_size: ImageSize,
    min_frames: int = 1,
    max_iterations: int = 30,
) -> IntrinsicCalibration:
    """
    Solve one camera's intrinsics from board observations.

    Args:
        observations: frame_index -> observation.
        image_size: (width, height).
        min_frames: Minimum number of frames with points.
        max_iterations: Solver iteration cap.

    Raises:
        CalibrationError: Too few valid frames, or the solver failed.
    """
    valid = {
        idx: obs
        for idx, obs in observations.items()
        if len(obs.object_points) > 0 and len(obs.image_points) > 0
    }
    if len(valid) < max(1, min_frames):
        raise CalibrationError(
            f"{len(valid)} valid calibration frames; need at least {max(1, min_frames)}"
        )

    obj_points = [obs.object_points.astype(np.float32).reshape(-1, 3) for obs in valid.values()]
    img_points = [obs.image_points.astype(np.float32).reshape(-1, 2) for obs in valid.values()]

    try:
        rms, camera_matrix, dist_coeffs, _rvecs, _tvecs = cv2.calibrateCamera(
            obj_points,
            img_points,
            tuple(image_size),
            None,
            None,
            flags=0,
            criteria=_termination_criteria(max_iterations),
        )
    except cv2.error as e:
        raise CalibrationError(f"calibrateCamera failed: {e}") from e

    return IntrinsicCalibration(
        rms=float(rms),
        intrinsic=np.asarray(camera_matrix, dtype=np.float64),
        distortion=np.asarray(dist_coeffs, dtype=np.float64).ravel(),
        observations=dict(valid),
        image_size=tuple(image_size),
    )


def common_ids(ids_a: Sequence[int], ids_b: Sequence[int]) -> np.ndarray:
    """Sorted fiducial IDs present in both lists."""
    return np.intersect1d(np.asarray(ids_a).ravel(), np.asarray(ids_b).ravel()).astype(np.int32)


def select_rows_by_ids(
    observation: CalibrationObservation,
    ids: Sequence[int],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Object/image point rows whose fiducial ID is in `ids`, ordered like `ids`.

    Returns:
        Tuple of (object_points (M, 3) float32, image_points (M, 2) float32).
    """
    row_of_id = {int(cid): row for row, cid in enumerate(observation.corner_ids)}
    rows = [row_of_id[int(i)] for i in ids if int(i) in row_of_id]
    obj = observation.object_points[rows].astype(np.float32).reshape(-1, 3)
    img = observation.image_points[rows].astype(np.float32).reshape(-1, 2)
    return obj, img


def stereo_frame_rows(
    reference: CalibrationObservation,
    target: CalibrationObservation,
    min_common_ids: int = MIN_COMMON_IDS,
) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]]:
    """
    Rows one calibration frame contributes to a stereo pair.

    Returns:
        (object_points, reference_image_points, target_image_points), or None
        when the cameras share fewer than `min_common_ids` IDs.
    """
    shared = common_ids(reference.corner_ids, target.corner_ids)
    if len(shared) < min_common_ids:
        return None
    obj_points, ref_points = select_rows_by_ids(reference, shared)
    _, target_points = select_rows_by_ids(target, shared)
    return obj_points, ref_points, target_points


def calibrate_stereo_pair(
    reference: IntrinsicCalibration,
    target: IntrinsicCalibration,
    min_common_ids: int = MIN_COMMON_IDS,
    max_iterations: int = 30,
    camera_index: int = 1,
    sink: Optional[EventLog] = None,
) -> StereoCalibration:
    """
    Pose of `target` relative to `reference` with both intrinsics fixed.

    Only frames present for both cameras with at least `min_common_ids`
    shared IDs are used.

    Raises:
        CalibrationError: No frame qualifies, or the solver failed.
    """
    sink = ensure_sink(sink)

    obj_points, ref_points, target_points, frames_used = [], [], [], []
    for frame_index in sorted(set(reference.observations) & set(target.observations)):
        rows = stereo_frame_rows(
            reference.observations[frame_index],
            target.observations[frame_index],
            min_common_ids,
        )
        if rows is None:
            sink.debug(
                "calib.stereo_frame_skipped",
                f"Camera 0/{camera_index} frame {frame_index}: "
                f"fewer than {min_common_ids} common IDs",
                camera=camera_index,
                frame=frame_index,
            )
            continue
        obj_points.append(rows[0])
        ref_points.append(rows[1])
        target_points.append(rows[2])
        frames_used.append(frame_index)

    if not frames_used:
        raise CalibrationError(
            f"No frame shares at least {min_common_ids} fiducial IDs between "
            f"camera 0 and camera {camera_index}",
            camera_index=camera_index,
        )

    try:
        rms, _, _, _, _, R, T, E, F = cv2.stereoCalibrate(
            obj_points,
            ref_points,
            target_points,
            reference.intrinsic,
            reference.distortion,
            target.intrinsic,
            target.distortion,
            tuple(reference.image_size),
            criteria=_termination_criteria(max_iterations),
            flags=cv2.CALIB_FIX_INTRINSIC,
        )
    except cv2.error as e:
        raise CalibrationError(
            f"stereoCalibrate failed for camera {camera_index}: {e}", camera_index=camera_index
        ) from e

    return StereoCalibration(
        rms=float(rms),
        rotation=np.asarray(R, dtype=np.float64),
        translation=np.asarray(T, dtype=np.float64).reshape(3, 1),
        essential=np.asarray(E, dtype=np.float64),
        fundamental=np.asarray(F, dtype=np.float64),
        frames_used=frames_used,
    )


def calibrate_cameras(
    observations_per_camera: Sequence[Mapping[int, CalibrationObservation]],
    image_sizes: Sequence[ImageSize],
    config: Optional[CalibrationConfig] = None,
    sink: Optional[EventLog] = None,
) -> CalibrationReport:
    """
    Intrinsics for every camera, then extrinsics of cameras 1..N-1 against camera 0.

    A failure for one camera or pair is logged and that camera is skipped;
    the report says how many of the requested cameras succeeded.

    Raises:
        CalibrationError: If the reference camera itself cannot be calibrated.
        ConfigurationError: Fewer than one camera, or mismatched inputs.
    """
    config = config or CalibrationConfig()
    sink = ensure_sink(sink)

    requested = len(observations_per_camera)
    if requested == 0:
        raise ConfigurationError("No cameras to calibrate")
    if len(image_sizes) != requested:
        raise ConfigurationError(
            f"{len(image_sizes)} image sizes for {requested} cameras"
        )

    failures: Dict[int, str] = {}
    intrinsics: Dict[int, IntrinsicCalibration] = {}

    for cam_i, observations in enumerate(observations_per_camera):
        try:
            if image_sizes[cam_i] is None:
                raise CalibrationError("no readable calibration image", camera_index=cam_i)
            result = calibrate_intrinsics(
                observations,
                image_sizes[cam_i],
                min_frames=config.min_intrinsic_frames,
                max_iterations=config.max_iterations,
            )
        except CalibrationError as e:
            failures[cam_i] = str(e)
            sink.error(
                "calib.intrinsic_failed",
                f"Camera {cam_i}: intrinsic calibration failed: {e}",
                camera=cam_i,
            )
            continue

        intrinsics[cam_i] = result
        sink.info(
            "calib.intrinsic",
            f"Camera {cam_i}: RMS {result.rms:.4f} px from {len(result.observations)} frames",
            camera=cam_i,
            rms=result.rms,
            frames=len(result.observations),
            intrinsic=result.intrinsic,
            distortion=result.distortion,
        )

    if 0 not in intrinsics:
        raise CalibrationError(
            f"Reference camera could not be calibrated: {failures.get(0)}", camera_index=0
        )

    reference = intrinsics[0]
    cameras = [CameraParameters(intrinsic=reference.intrinsic, distortion=reference.distortion)]
    source_indices = [0]

    for cam_i in range(1, requested):
        if cam_i not in intrinsics:
            continue
        try:
            stereo = calibrate_stereo_pair(
                reference,
                intrinsics[cam_i],
                min_common_ids=config.min_common_ids,
                max_iterations=config.max_iterations,
                camera_index=cam_i,
                sink=sink,
            )
        except CalibrationError as e:
            failures[cam_i] = str(e)
            sink.error(
                "calib.stereo_failed",
                f"Camera 0/{cam_i}: stereo calibration failed: {e}",
                camera=cam_i,
            )
            continue

        sink.info(
            "calib.stereo",
            f"Camera 0/{cam_i}: RMS {stereo.rms:.4f} px from {len(stereo.frames_used)} frames",
            camera=cam_i,
            rms=stereo.rms,
            frames=stereo.frames_used,
            translation=stereo.translation.ravel(),
        )
        cameras.append(
            CameraParameters(
                intrinsic=intrinsics[cam_i].intrinsic,
                distortion=intrinsics[cam_i].distortion,
                rotation=stereo.rotation,
                translation=stereo.translation,
                essential=stereo.essential,
                fundamental=stereo.fundamental,
            )
        )
        source_indices.append(cam_i)

    report = CalibrationReport(
        cameras=cameras,
        source_indices=source_indices,
        requested=requested,
        failures=failures,
    )
    level_fn = sink.info if report.complete else sink.warning
    level_fn(
        "calib.summary",
        f"Calibrated {report.succeeded} of {report.requested} cameras",
        succeeded=report.succeeded,
        requested=report.requested,
        source_indices=source_indices,
    )
    return report


def calibrate_from_directory(
    directory,
    board,
    num_cameras: Optional[int] = None,
    config: Optional[CalibrationConfig] = None,
    sink: Optional[EventLog] = None,
) -> CalibrationReport:
    """
    Calibrate every camera found in a folder of img_<camera>_<frame>.png files.

    Camera indices are taken in ascending order; the smallest is the reference.

    Args:
        directory: Calibration image folder.
        board: Board used during capture.
        num_cameras: Expected number of cameras (None = whatever is found).
        config: Calibration settings.
        sink: Event sink.

    Raises:
        ConfigurationError: Missing folder, no images, or wrong camera count.
        CalibrationError: Reference camera failed.
    """
    sink = ensure_sink(sink)
    grouped = group_calibration_images(directory)

    if num_cameras is not None and len(grouped) != num_cameras:
        raise ConfigurationError(
            f"Expected images for {num_cameras} cameras, found {len(grouped)}: "
            f"{sorted(grouped)}"
        )

    observations_per_camera = []
    image_sizes = []
    for position, (camera_index, frames) in enumerate(grouped.items()):
        observations, image_size = collect_observations(frames, board, position, sink)
        sink.info(
            "calib.frames",
            f"Camera {position} (img_{camera_index}_*): {len(observations)} of "
            f"{len(frames)} frames with board points",
            camera=position,
            file_index=camera_index,
            valid_frames=len(observations),
            total_frames=len(frames),
        )
        observations_per_camera.append(observations)
        image_sizes.append(image_size)

    return calibrate_cameras(observations_per_camera, image_sizes, config, sink)


__all__ = [
    "CALIBRATION_IMAGE_PATTERN",
    "MIN_COMMON_IDS",
    "IntrinsicCalibration",
    "StereoCalibration",
    "CalibrationReport",
    "group_calibration_images",
    "collect_observations",
    "calibrate_intrinsics",
    "common_ids",
    "select_rows_by_ids",
    "stereo_frame_rows",
    "calibrate_stereo_pair",
    "calibrate_cameras",
    "calibrate_from_directory",
]
