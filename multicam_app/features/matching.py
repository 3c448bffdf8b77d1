"""
Feature matching utilities using brute-force or FLANN k-NN matchers.
"""

from __future__ import annotations

from typing import List, Sequence

import cv2
import numpy as np

from multicam_app.recon.data_structures import Correspondence

# Neighbours per query feature; the ratio test needs exactly two.
KNN_K = 2
DEFAULT_RATIO = 0.7


def match_keypoints(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    use_flann: bool = False,
) -> List[List[cv2.DMatch]]:
    """
    Match keypoint descriptors between two images using k-NN matching.

    Args:
        descriptors1: Descriptors from the reference image (N1, D). These are
                      the query side: queryIdx indexes into them.
        descriptors2: Descriptors from the target image (N2, D).
        use_flann: If True, use FLANN (float descriptors only); otherwise
                   brute-force L2 (or HAMMING for binary descriptors).

    Returns:
        List of k-NN match groups, one per reference feature, each holding up
        to KNN_K cv2.DMatch objects sorted by distance. Empty if either
        descriptor set is empty.
    """
    if descriptors1 is None or descriptors2 is None:
        return []
    if len(descriptors1) == 0 or len(descriptors2) == 0:
        return []

    is_float = descriptors1.dtype == np.float32

    if use_flann and is_float:
        FLANN_INDEX_KDTREE = 1
        index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
        search_params = dict(checks=50)
        matcher = cv2.FlannBasedMatcher(index_params, search_params)
    else:
        norm_type = cv2.NORM_L2 if is_float else cv2.NORM_HAMMING
        matcher = cv2.BFMatcher(norm_type, crossCheck=False)

    knn_matches = matcher.knnMatch(descriptors1, descriptors2, k=KNN_K)

    return [list(group) for group in knn_matches]


def filter_matches_ratio_test(
    knn_matches: Sequence[Sequence[cv2.DMatch]],
    ratio: float = DEFAULT_RATIO,
) -> List[Correspondence]:
    """
    Filter k-NN match groups using Lowe's ratio test.

    A group survives only if it has at least two neighbours and
    best.distance < ratio * second.distance. Input order is preserved.

    Args:
        knn_matches: k-NN match groups as returned by match_keypoints.
        ratio: Ratio threshold (default: 0.7).

    Returns:
        List of Correspondence built from the best neighbour of each
        surviving group.
    """
    good_matches = []

    for match_group in knn_matches:
        if len(match_group) < 2:
            continue

        m, n = match_group[0], match_group[1]

        if m.distance < ratio * n.distance:
            good_matches.append(
                Correspondence(
                    query_idx=int(m.queryIdx),
                    train_idx=int(m.trainIdx),
                    distance=float(m.distance),
                )
            )

    return good_matches


__all__ = ["match_keypoints", "filter_matches_ratio_test", "KNN_K", "DEFAULT_RATIO"]
