"""
Exception hierarchy for the multi-camera reconstruction pipeline.
"""

from __future__ import annotations


class MulticamError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(MulticamError):
    """
    Wrong counts, missing files, malformed filenames or parameter files.

    Fatal to the operation that raised it.
    """


class CalibrationError(MulticamError):
    """
    A single camera or camera pair could not be calibrated.

    Multi-camera calibration catches this per item, logs it and continues
    with the cameras that did succeed.
    """

    def __init__(self, message: str, camera_index: int | None = None):
        self.camera_index = camera_index
        super().__init__(message)


class InvariantError(MulticamError):
    """Structural invariant violation (point-set sizes, camera counts, ...)."""


class NoCommonPointsError(InvariantError):
    """No reference feature is matched in every other camera."""

    def __init__(self, num_cameras: int, num_reference_features: int):
        self.num_cameras = num_cameras
        self.num_reference_features = num_reference_features
        super().__init__(
            f"No common points: none of {num_reference_features} reference "
            f"features is visible in all {num_cameras} cameras"
        )


__all__ = [
    "MulticamError",
    "ConfigurationError",
    "CalibrationError",
    "InvariantError",
    "NoCommonPointsError",
]
