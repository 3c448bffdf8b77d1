import numpy as np
import pytest

from multicam_app.errors import InvariantError
from multicam_app.recon.data_structures import CameraParameters, Point2DSet, Point3D, PointCloud


def test_point_set_is_a_mapping_by_id():
    point_set = Point2DSet([7, 3, 11], np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]))

    assert len(point_set) == 3
    assert list(point_set) == [7, 3, 11]
    assert 3 in point_set
    assert 4 not in point_set
    assert np.allclose(point_set[11], [5.0, 6.0])
    assert set(point_set.keys()) == {3, 7, 11}


def test_point_set_select_reorders_and_checks_presence():
    point_set = Point2DSet([7, 3, 11], np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]]))

    selected = point_set.select([11, 7])

    assert list(selected) == [11, 7]
    assert np.allclose(selected.points, [[5.0, 6.0], [1.0, 2.0]])
    with pytest.raises(InvariantError):
        point_set.select([1])


def test_point_set_rejects_bad_shapes_and_duplicates():
    with pytest.raises(InvariantError):
        Point2DSet([1, 2], np.zeros((3, 2)))
    with pytest.raises(InvariantError):
        Point2DSet([1, 2], np.zeros((2, 3)))
    with pytest.raises(InvariantError):
        Point2DSet([1, 1], np.zeros((2, 2)))


def test_point_set_equality():
    point_set = Point2DSet([2, 5], np.array([[1.5, 2.5], [3.5, 4.5]]))

    assert point_set == Point2DSet([2, 5], point_set.points.copy())
    assert point_set != point_set.with_points(np.zeros((2, 2)))
    assert point_set.same_ids(point_set.select([5, 2]))


def test_empty_point_set():
    empty = Point2DSet([], [])

    assert len(empty) == 0
    assert empty.points.shape == (0, 2)


def test_reference_camera_defaults():
    camera = CameraParameters(intrinsic=np.eye(3), distortion=np.zeros(5))

    assert camera.is_reference_aligned()
    assert camera.projection_matrix().shape == (3, 4)
    assert np.allclose(camera.center(), 0.0)


def test_camera_center_from_pose():
    camera = CameraParameters(
        intrinsic=np.eye(3), distortion=np.zeros(5), translation=np.array([-2.0, 0.0, 0.0])
    )

    assert not camera.is_reference_aligned()
    assert np.allclose(camera.center(), [2.0, 0.0, 0.0])


def test_point_cloud_confidence_filter_is_inclusive():
    cloud = PointCloud(
        points=[
            Point3D(xyz=[0, 0, 1], confidence=0.1),
            Point3D(xyz=[0, 0, 2], confidence=0.25),
            Point3D(xyz=[0, 0, 3], confidence=0.9, color=(1, 2, 3)),
        ],
        timestamp=4,
    )

    filtered = cloud.filter_by_confidence(0.25)

    assert len(filtered) == 2
    assert filtered.timestamp == 4
    assert filtered.has_color
    assert len(cloud) == 3
    assert np.allclose(filtered.xyz()[:, 2], [2.0, 3.0])
