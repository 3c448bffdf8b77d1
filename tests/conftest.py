import cv2
import numpy as np
import pytest

from multicam_app.recon.data_structures import CameraParameters, Point2DSet


K = np.array(
    [
        [800.0, 0.0, 320.0],
        [0.0, 800.0, 240.0],
        [0.0, 0.0, 1.0],
    ]
)


def rotation_y(angle_rad):
    R, _ = cv2.Rodrigues(np.array([0.0, angle_rad, 0.0]))
    return R


def project(points_3d, camera):
    """Pinhole projection (no distortion) of (N, 3) points, returns (N, 2)."""
    P = camera.projection_matrix()
    homogeneous = np.hstack([points_3d, np.ones((len(points_3d), 1))])
    projected = (P @ homogeneous.T).T
    return projected[:, :2] / projected[:, 2:3]


@pytest.fixture
def rig():
    """Three cameras looking down +Z, camera 0 at the origin."""
    zero = np.zeros(5)
    return [
        CameraParameters(intrinsic=K, distortion=zero),
        CameraParameters(
            intrinsic=K,
            distortion=zero,
            rotation=rotation_y(-0.1),
            translation=np.array([-0.5, 0.0, 0.0]),
        ),
        CameraParameters(
            intrinsic=K,
            distortion=zero,
            rotation=rotation_y(0.1),
            translation=np.array([0.5, 0.05, 0.0]),
        ),
    ]


@pytest.fixture
def scene_points():
    rng = np.random.default_rng(7)
    xy = rng.uniform(-1.0, 1.0, size=(25, 2))
    z = rng.uniform(4.0, 8.0, size=(25, 1))
    return np.hstack([xy, z])


@pytest.fixture
def point_ids():
    # Sparse, non-contiguous ids like reference keypoint indices.
    return np.arange(25) * 3 + 11


@pytest.fixture
def rig_point_sets(rig, scene_points, point_ids):
    return [Point2DSet(point_ids, project(scene_points, cam)) for cam in rig]
