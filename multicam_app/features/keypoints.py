"""
Keypoint detection and descriptor extraction.
"""

from __future__ import annotations

from typing import List, Tuple

import cv2
import numpy as np

# SIFT descriptor length
SIFT_DESCRIPTOR_SIZE = 128


def detect_keypoints(
    image: np.ndarray,
    n_octave_layers: int = 4,
    contrast_threshold: float = 0.04,
    edge_threshold: float = 10.0,
    sigma: float = 1.6,
) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
    """
    Detect SIFT keypoints and compute descriptors in an image.

    Args:
        image: Input image (H, W, 3) RGB or (H, W), dtype=uint8.
        n_octave_layers: Layers per octave in the SIFT scale space.
        contrast_threshold: Contrast threshold for weak-feature rejection.
        edge_threshold: Edge-response threshold.
        sigma: Gaussian sigma of the first octave.

    Returns:
        Tuple of (keypoints, descriptors) where:
        - keypoints: List of cv2.KeyPoint objects.
        - descriptors: Array of descriptors (N, 128), dtype=float32. Empty
          (0, 128) when nothing is detected.
    """
    # Convert to grayscale if needed
    if len(image.shape) == 3:
        gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    else:
        gray = image

    detector = cv2.SIFT_create(
        nfeatures=0,
        nOctaveLayers=n_octave_layers,
        contrastThreshold=contrast_threshold,
        edgeThreshold=edge_threshold,
        sigma=sigma,
    )

    keypoints, descriptors = detector.detectAndCompute(gray, None)

    if descriptors is None:
        descriptors = np.array([], dtype=np.float32).reshape(0, SIFT_DESCRIPTOR_SIZE)

    return list(keypoints), descriptors


def keypoints_to_array(keypoints: List[cv2.KeyPoint]) -> np.ndarray:
    """Pixel positions of `keypoints` as an (N, 2) float64 array."""
    if not keypoints:
        return np.array([]).reshape(0, 2)
    return np.array([kp.pt for kp in keypoints], dtype=np.float64)


__all__ = ["detect_keypoints", "keypoints_to_array", "SIFT_DESCRIPTOR_SIZE"]
