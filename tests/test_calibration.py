import cv2
import numpy as np
import pytest

from conftest import K, rotation_y
from multicam_app.calib.multicam_calib import (
    IntrinsicCalibration,
    calibrate_cameras,
    calibrate_intrinsics,
    calibrate_stereo_pair,
    common_ids,
    group_calibration_images,
    select_rows_by_ids,
    stereo_frame_rows,
)
from multicam_app.config import CalibrationConfig
from multicam_app.errors import CalibrationError, ConfigurationError
from multicam_app.obs.event_log import EventLog
from multicam_app.recon.data_structures import CalibrationObservation

IMAGE_SIZE = (640, 480)

# Board poses (rvec, tvec) relative to the reference camera.
BOARD_POSES = [
    ((0.20, -0.25, 0.05), (-120.0, -80.0, 600.0)),
    ((-0.30, 0.10, -0.05), (-140.0, -60.0, 700.0)),
    ((0.10, 0.35, 0.10), (-100.0, -90.0, 650.0)),
    ((-0.15, -0.30, 0.00), (-130.0, -70.0, 550.0)),
    ((0.35, 0.05, -0.10), (-110.0, -100.0, 750.0)),
    ((-0.25, 0.25, 0.05), (-150.0, -50.0, 680.0)),
]

STEREO_R = rotation_y(-0.15)
STEREO_T = np.array([[-120.0], [5.0], [10.0]])


def _board_points():
    xs, ys = np.meshgrid(np.arange(9), np.arange(6))
    grid = np.stack([xs.ravel(), ys.ravel(), np.zeros(xs.size)], axis=1) * 30.0
    return grid.astype(np.float32)


def _observe(frame_index, rvec, tvec, ids=None, extra_rotation=None, extra_translation=None):
    obj = _board_points()
    R, _ = cv2.Rodrigues(np.array(rvec, dtype=np.float64))
    t = np.array(tvec, dtype=np.float64).reshape(3, 1)
    if extra_rotation is not None:
        R = extra_rotation @ R
        t = extra_rotation @ t + extra_translation
    rvec_cam, _ = cv2.Rodrigues(R)
    img, _ = cv2.projectPoints(obj, rvec_cam, t, K, np.zeros(5))
    img = img.reshape(-1, 2).astype(np.float32)

    all_ids = np.arange(len(obj), dtype=np.int32)
    keep = all_ids if ids is None else np.asarray(ids, dtype=np.int32)
    return CalibrationObservation(
        frame_index=frame_index,
        corner_ids=keep,
        corners_2d=img[keep],
        object_points=obj[keep],
        image_points=img[keep],
    )


def _reference_observations():
    return {i: _observe(i, rvec, tvec) for i, (rvec, tvec) in enumerate(BOARD_POSES)}


def _target_observations(ids=None):
    return {
        i: _observe(i, rvec, tvec, ids=ids, extra_rotation=STEREO_R, extra_translation=STEREO_T)
        for i, (rvec, tvec) in enumerate(BOARD_POSES)
    }


def _known_intrinsics(observations):
    return IntrinsicCalibration(
        rms=0.0,
        intrinsic=K.copy(),
        distortion=np.zeros(5),
        observations=observations,
        image_size=IMAGE_SIZE,
    )


def test_common_ids_intersection():
    assert list(common_ids([1, 2, 3, 5], [2, 3, 5, 8])) == [2, 3, 5]


def test_frame_below_common_id_threshold_contributes_nothing():
    reference = _observe(0, *BOARD_POSES[0])
    target = _observe(0, *BOARD_POSES[0], ids=[0, 1, 2, 3, 4])

    assert stereo_frame_rows(reference, target, min_common_ids=10) is None
    rows = stereo_frame_rows(reference, target, min_common_ids=5)
    assert rows is not None
    assert all(len(r) == 5 for r in rows)


def test_select_rows_by_ids_follows_requested_order():
    observation = _observe(0, *BOARD_POSES[0])

    obj, img = select_rows_by_ids(observation, [7, 3, 999])

    assert np.allclose(obj, observation.object_points[[7, 3]])
    assert np.allclose(img, observation.image_points[[7, 3]])


def test_intrinsics_recovered_from_synthetic_views():
    result = calibrate_intrinsics(_reference_observations(), IMAGE_SIZE)

    assert result.rms < 1e-2
    assert np.allclose(result.intrinsic, K, rtol=1e-2, atol=1.0)
    assert len(result.observations) == len(BOARD_POSES)


def test_intrinsics_need_enough_frames():
    with pytest.raises(CalibrationError):
        calibrate_intrinsics({}, IMAGE_SIZE)
    with pytest.raises(CalibrationError):
        calibrate_intrinsics(_reference_observations(), IMAGE_SIZE, min_frames=10)


def test_stereo_pair_recovers_relative_pose():
    reference = _known_intrinsics(_reference_observations())
    target = _known_intrinsics(_target_observations())

    stereo = calibrate_stereo_pair(reference, target)

    assert stereo.rms < 1e-2
    assert np.allclose(stereo.rotation, STEREO_R, atol=1e-4)
    assert np.allclose(stereo.translation, STEREO_T, atol=1e-2)
    assert stereo.frames_used == list(range(len(BOARD_POSES)))


def test_stereo_pair_without_shared_frames_fails():
    reference = _known_intrinsics(_reference_observations())
    target = _known_intrinsics(_target_observations(ids=[0, 1, 2]))

    with pytest.raises(CalibrationError):
        calibrate_stereo_pair(reference, target, min_common_ids=10)


def test_failed_camera_is_skipped_and_reported():
    sink = EventLog()
    report = calibrate_cameras(
        [_reference_observations(), {}, _target_observations()],
        [IMAGE_SIZE, IMAGE_SIZE, IMAGE_SIZE],
        CalibrationConfig(),
        sink,
    )

    assert report.requested == 3
    assert report.succeeded == 2
    assert not report.complete
    assert report.source_indices == [0, 2]
    assert 1 in report.failures
    assert report.cameras[0].is_reference_aligned()
    assert np.allclose(report.cameras[1].rotation, STEREO_R, atol=1e-3)
    assert sink.get_events("calib.intrinsic_failed")
    assert sink.get_events("calib.summary")[0].data["succeeded"] == 2


def test_reference_failure_is_fatal():
    with pytest.raises(CalibrationError):
        calibrate_cameras([{}, _target_observations()], [IMAGE_SIZE, IMAGE_SIZE])


def test_image_size_count_must_match():
    with pytest.raises(ConfigurationError):
        calibrate_cameras([_reference_observations()], [])


def test_group_calibration_images(tmp_path):
    for name in ["img_0_0.png", "img_0_1.png", "img_2_0.png", "img_1_5.png", "notes.txt", "img_x_1.png"]:
        (tmp_path / name).write_bytes(b"")

    grouped = group_calibration_images(tmp_path)

    assert list(grouped) == [0, 1, 2]
    assert list(grouped[0]) == [0, 1]
    assert list(grouped[1]) == [5]


def test_group_calibration_images_requires_matches(tmp_path):
    with pytest.raises(ConfigurationError):
        group_calibration_images(tmp_path)
    with pytest.raises(ConfigurationError):
        group_calibration_images(tmp_path / "missing")
