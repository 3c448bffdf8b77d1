import cv2
import numpy as np
import pytest

from conftest import K, rotation_y
from multicam_app.errors import ConfigurationError
from multicam_app.io.calib_io import load_camera_parameters, save_camera_parameters
from multicam_app.io.ply_io import DEFAULT_COLOR, load_point_cloud, save_point_cloud
from multicam_app.io.video_io import iter_synchronized_frames, open_video_captures
from multicam_app.recon.data_structures import CameraParameters, Point3D, PointCloud


def _cameras():
    return [
        CameraParameters(intrinsic=K, distortion=[0.1, -0.05, 0.001, 0.002, 0.0]),
        CameraParameters(
            intrinsic=K * np.array([[1.01], [1.0], [1.0]]),
            distortion=[0.05, 0.0, 0.0, 0.0, 0.01],
            rotation=rotation_y(0.2),
            translation=[-100.0, 2.0, 3.0],
        ),
    ]


@pytest.mark.parametrize("suffix", [".yml", ".npz"])
def test_camera_parameters_round_trip(tmp_path, suffix):
    path = tmp_path / f"camera_parameters{suffix}"
    cameras = _cameras()

    save_camera_parameters(path, cameras)
    loaded = load_camera_parameters(path)

    assert len(loaded) == 2
    for original, restored in zip(cameras, loaded):
        assert np.allclose(restored.intrinsic, original.intrinsic)
        assert np.allclose(restored.distortion, original.distortion)
        assert np.allclose(restored.rotation, original.rotation)
        assert np.allclose(restored.translation, original.translation)
    assert loaded[0].is_reference_aligned()


def test_single_reference_camera_file_yields_one_camera(tmp_path):
    path = tmp_path / "camera_parameters.yml"
    save_camera_parameters(path, _cameras()[:1])

    assert len(load_camera_parameters(path)) == 1


def test_file_without_cameras_is_rejected(tmp_path):
    path = tmp_path / "empty.npz"
    np.savez(str(path), unrelated=np.zeros(3))

    with pytest.raises(ConfigurationError):
        load_camera_parameters(path)


def test_missing_extrinsics_are_rejected(tmp_path):
    path = tmp_path / "partial.npz"
    np.savez(
        str(path),
        camera_0_intrinsic=K,
        camera_0_distortion=np.zeros((1, 5)),
        camera_1_intrinsic=K,
        camera_1_distortion=np.zeros((1, 5)),
    )

    with pytest.raises(ConfigurationError):
        load_camera_parameters(path)


def test_missing_or_unsupported_calibration_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_camera_parameters(tmp_path / "nope.yml")
    other = tmp_path / "calib.txt"
    other.write_text("x")
    with pytest.raises(ConfigurationError):
        load_camera_parameters(other)


def test_ply_round_trip_with_partial_color(tmp_path):
    points = [
        Point3D(xyz=[0.1 * i, -0.2 * i, 5.0 + i], confidence=1.0 - 0.1 * i, color=(i, 2 * i, 3 * i))
        if i % 2 == 0
        else Point3D(xyz=[0.1 * i, -0.2 * i, 5.0 + i], confidence=1.0 - 0.1 * i)
        for i in range(6)
    ]
    cloud = PointCloud(points=points, timestamp=12)

    path = save_point_cloud(cloud, tmp_path / "point_clouds" / "point_cloud_12.ply")
    loaded = load_point_cloud(path)

    assert loaded.timestamp == 12
    assert len(loaded) == 6
    assert np.allclose(loaded.xyz(), cloud.xyz())
    assert np.allclose(loaded.confidences(), cloud.confidences())
    assert loaded.points[0].color == (0, 0, 0)
    assert loaded.points[2].color == (2, 4, 6)
    assert loaded.points[1].color == DEFAULT_COLOR


def test_ply_without_color_has_no_color_properties(tmp_path):
    cloud = PointCloud(points=[Point3D(xyz=[1.0, 2.0, 3.0], confidence=0.5)], timestamp=0)
    path = save_point_cloud(cloud, tmp_path / "c.ply")

    text = path.read_text()
    assert "property uchar red" not in text
    assert "property float confidence" in text
    assert "element vertex 1" in text
    assert not load_point_cloud(path).has_color


def test_malformed_ply_is_rejected(tmp_path):
    path = tmp_path / "bad.ply"
    path.write_text("ply\nformat ascii 1.0\nelement vertex 2\nproperty float x\nend_header\n1\n")

    with pytest.raises(ConfigurationError):
        load_point_cloud(path)


def _write_video(path, num_frames, value):
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 10.0, (64, 48))
    for _ in range(num_frames):
        writer.write(np.full((48, 64, 3), value, dtype=np.uint8))
    writer.release()


def test_synchronized_frames_stop_at_shortest_video(tmp_path):
    _write_video(tmp_path / "cam0.avi", 5, 50)
    _write_video(tmp_path / "cam1.avi", 3, 200)

    frames = list(iter_synchronized_frames([tmp_path / "cam0.avi", tmp_path / "cam1.avi"]))

    assert len(frames) == 3
    assert all(len(step) == 2 for step in frames)
    assert frames[0][0].shape == (48, 64, 3)


def test_synchronized_frames_respect_max_frames(tmp_path):
    _write_video(tmp_path / "cam0.avi", 5, 50)

    assert len(list(iter_synchronized_frames([tmp_path / "cam0.avi"], max_frames=2))) == 2


def test_missing_video_is_rejected(tmp_path):
    with pytest.raises(ConfigurationError):
        open_video_captures([tmp_path / "missing.mp4"])
