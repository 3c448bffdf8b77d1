"""
Cross-camera correspondences for an unknown scene.

Camera 0 is the reference: every other camera is matched against it, and only
reference features matched in all cameras are kept. The reference keypoint
index doubles as the PointID carried through triangulation and tracking.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Sequence

import cv2
import numpy as np

from multicam_app.config import ReconstructionConfig
from multicam_app.errors import InvariantError, NoCommonPointsError
from multicam_app.features.keypoints import detect_keypoints, keypoints_to_array
from multicam_app.features.matching import filter_matches_ratio_test, match_keypoints
from multicam_app.obs.event_log import EventLog, ensure_sink
from multicam_app.recon.data_structures import Correspondence, Point2DSet


@dataclass
class FeatureSet:
    """Keypoints and descriptors of one camera image."""

    keypoints: List[cv2.KeyPoint]
    descriptors: np.ndarray


@dataclass
class CommonVisibility:
    """Reference features visible in every camera, with one match per camera."""

    # Ascending reference keypoint indices (the PointIDs).
    reference_ids: List[int]
    # One list per non-reference camera; entry k matches reference_ids[k].
    matches: List[List[Correspondence]]


def detect_features_all(
    images: Sequence[np.ndarray],
    config: Optional[ReconstructionConfig] = None,
    max_workers: Optional[int] = None,
) -> List[FeatureSet]:
    """Detect SIFT features in every camera image, one task per camera."""
    config = config or ReconstructionConfig()

    def _detect(image: np.ndarray) -> FeatureSet:
        keypoints, descriptors = detect_keypoints(
            image,
            n_octave_layers=config.sift_octave_layers,
            contrast_threshold=config.sift_contrast_threshold,
            edge_threshold=config.sift_edge_threshold,
            sigma=config.sift_sigma,
        )
        return FeatureSet(keypoints, descriptors)

    workers = max_workers or config.max_workers or max(1, len(images))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        return list(executor.map(_detect, images))


def match_reference_to_all(
    features: Sequence[FeatureSet],
    config: Optional[ReconstructionConfig] = None,
    sink: Optional[EventLog] = None,
) -> List[List[Correspondence]]:
    """
    Ratio-filtered matches of the reference camera against every other camera.

    Args:
        features: One FeatureSet per camera; index 0 is the reference.
        config: Matching settings (ratio, matcher type).
        sink: Event sink.

    Returns:
        List of length len(features) - 1. Entry i - 1 holds the matches of
        camera i. An empty list means "no data for this pair", not a failure.
    """
    config = config or ReconstructionConfig()
    sink = ensure_sink(sink)

    if len(features) < 2:
        raise InvariantError(f"Need at least 2 cameras to match, got {len(features)}")

    reference = features[0]
    all_matches = []
    for i in range(1, len(features)):
        knn_matches = match_keypoints(
            reference.descriptors, features[i].descriptors, use_flann=config.use_flann
        )
        matches = filter_matches_ratio_test(knn_matches, ratio=config.ratio)
        sink.info(
            "match.pair",
            f"Camera 0 vs camera {i}: {len(knn_matches)} knn groups, "
            f"{len(matches)} after ratio test",
            camera=i,
            knn_groups=len(knn_matches),
            matches=len(matches),
        )
        if not matches:
            sink.warning(
                "match.empty_pair",
                f"No matches between camera 0 and camera {i}",
                camera=i,
            )
        all_matches.append(matches)

    return all_matches


def filter_common_visibility(
    matches_per_camera: Sequence[Sequence[Correspondence]],
    num_reference_features: int,
    sink: Optional[EventLog] = None,
) -> CommonVisibility:
    """
    Keep only reference features matched in every non-reference camera.

    Each camera's list is rebuilt in ascending reference-index order with the
    first match found for each index, so entry k of every list refers to the
    same physical point. Filtering the result again yields the same result.

    Raises:
        NoCommonPointsError: If no reference feature is visible everywhere.
    """
    sink = ensure_sink(sink)

    first_match_by_camera = []
    for camera_matches in matches_per_camera:
        first_match = {}
        for m in camera_matches:
            if 0 <= m.query_idx < num_reference_features:
                first_match.setdefault(m.query_idx, m)
        first_match_by_camera.append(first_match)

    if first_match_by_camera:
        common = set(first_match_by_camera[0])
        for first_match in first_match_by_camera[1:]:
            common &= set(first_match)
    else:
        common = set()

    reference_ids = sorted(common)
    sink.info(
        "match.common",
        f"Found {len(reference_ids)} points visible in all {len(matches_per_camera) + 1} cameras",
        common_points=len(reference_ids),
        reference_features=num_reference_features,
    )

    if not reference_ids:
        raise NoCommonPointsError(len(matches_per_camera) + 1, num_reference_features)

    filtered = [
        [first_match[idx] for idx in reference_ids] for first_match in first_match_by_camera
    ]
    return CommonVisibility(reference_ids=reference_ids, matches=filtered)


def gather_point_sets(
    common: CommonVisibility,
    keypoints_list: Sequence[Sequence[cv2.KeyPoint]],
) -> List[Point2DSet]:
    """
    Pixel coordinates of the commonly visible points, one set per camera.

    All sets share the PointIDs `common.reference_ids`.
    """
    if len(keypoints_list) != len(common.matches) + 1:
        raise InvariantError(
            f"{len(keypoints_list)} keypoint lists for {len(common.matches) + 1} cameras"
        )

    ids = common.reference_ids
    reference_kps = keypoints_list[0]
    points_ref = keypoints_to_array([reference_kps[idx] for idx in ids])
    point_sets = [Point2DSet(ids, points_ref)]

    for camera_i, matches in enumerate(common.matches, start=1):
        kps = keypoints_list[camera_i]
        points = keypoints_to_array([kps[m.train_idx] for m in matches])
        point_sets.append(Point2DSet(ids, points))

    return point_sets


def find_initial_point_sets(
    images: Sequence[np.ndarray],
    config: Optional[ReconstructionConfig] = None,
    sink: Optional[EventLog] = None,
) -> List[Point2DSet]:
    """
    Detect, match and filter: the raw (distorted) 2D points visible in every camera.

    Raises:
        NoCommonPointsError: If the cameras share no features.
    """
    config = config or ReconstructionConfig()
    sink = ensure_sink(sink)

    features = detect_features_all(images, config)
    for i, feature_set in enumerate(features):
        sink.info(
            "match.keypoints",
            f"Camera {i}: {len(feature_set.keypoints)} keypoints",
            camera=i,
            keypoints=len(feature_set.keypoints),
        )

    all_matches = match_reference_to_all(features, config, sink)
    common = filter_common_visibility(all_matches, len(features[0].keypoints), sink)
    return gather_point_sets(common, [f.keypoints for f in features])


__all__ = [
    "FeatureSet",
    "CommonVisibility",
    "detect_features_all",
    "match_reference_to_all",
    "filter_common_visibility",
    "gather_point_sets",
    "find_initial_point_sets",
]
