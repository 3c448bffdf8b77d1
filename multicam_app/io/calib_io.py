"""
Calibration I/O utilities for saving and loading multi-camera parameters.

Keys, for every camera i (0 = reference):
    camera_<i>_intrinsic, camera_<i>_distortion
and for i > 0 additionally:
    camera_<i>_rotation, camera_<i>_translation

Two containers are supported, chosen by file suffix: an OpenCV FileStorage
document (.yml / .yaml / .xml / .json) or a numpy archive (.npz).
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Sequence

import cv2
import numpy as np

from multicam_app.errors import ConfigurationError
from multicam_app.recon.data_structures import CameraParameters

FILESTORAGE_SUFFIXES = {".yml", ".yaml", ".xml", ".json"}


def _key(i: int, name: str) -> str:
    return f"camera_{i}_{name}"


def camera_parameters_to_dict(cameras: Sequence[CameraParameters]) -> Dict[str, np.ndarray]:
    """Flatten camera parameters into the persisted key/value layout."""
    data: Dict[str, np.ndarray] = {}
    for i, cam in enumerate(cameras):
        data[_key(i, "intrinsic")] = np.asarray(cam.intrinsic, dtype=np.float64)
        data[_key(i, "distortion")] = np.asarray(cam.distortion, dtype=np.float64).reshape(1, -1)
        if i > 0:
            data[_key(i, "rotation")] = np.asarray(cam.rotation, dtype=np.float64)
            data[_key(i, "translation")] = np.asarray(cam.translation, dtype=np.float64).reshape(3, 1)
    return data


def camera_parameters_from_lookup(lookup) -> List[CameraParameters]:
    """
    Rebuild cameras from a key -> array lookup (returns None for missing keys).

    Stops at the first missing camera_<i>_intrinsic.

    Raises:
        ConfigurationError: Zero cameras found, or a present camera is missing
            one of its other keys.
    """
    cameras: List[CameraParameters] = []
    i = 0
    while True:
        intrinsic = lookup(_key(i, "intrinsic"))
        if intrinsic is None:
            break

        distortion = lookup(_key(i, "distortion"))
        if distortion is None:
            raise ConfigurationError(f"Missing {_key(i, 'distortion')}")

        if i == 0:
            cameras.append(CameraParameters(intrinsic=intrinsic, distortion=distortion))
        else:
            rotation = lookup(_key(i, "rotation"))
            translation = lookup(_key(i, "translation"))
            if rotation is None or translation is None:
                raise ConfigurationError(
                    f"Missing {_key(i, 'rotation')} or {_key(i, 'translation')}"
                )
            cameras.append(
                CameraParameters(
                    intrinsic=intrinsic,
                    distortion=distortion,
                    rotation=rotation,
                    translation=translation,
                )
            )
        i += 1

    if not cameras:
        raise ConfigurationError("No camera parameters found (camera_0_intrinsic missing)")

    return cameras


def save_camera_parameters(output_path, cameras: Sequence[CameraParameters]) -> None:
    """
    Write all cameras at once.

    Args:
        output_path: .yml/.yaml/.xml/.json (cv2.FileStorage) or .npz file.
        cameras: Cameras in reference-first order.
    """
    if not cameras:
        raise ConfigurationError("Refusing to save an empty camera list")

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    data = camera_parameters_to_dict(cameras)

    suffix = output_path.suffix.lower()
    if suffix == ".npz":
        np.savez(str(output_path), **data)
    elif suffix in FILESTORAGE_SUFFIXES:
        fs = cv2.FileStorage(str(output_path), cv2.FILE_STORAGE_WRITE)
        try:
            for key, value in data.items():
                fs.write(key, value)
        finally:
            fs.release()
    else:
        raise ConfigurationError(f"Unsupported calibration file type: {output_path.suffix}")


def load_camera_parameters(input_path) -> List[CameraParameters]:
    """
    Load cameras saved by save_camera_parameters.

    Reading stops at the first missing camera_<i>_intrinsic, so a file with
    only camera_0_* keys yields one camera.

    Raises:
        ConfigurationError: Missing/unsupported file, or zero cameras.
    """
    input_path = Path(input_path)
    if not input_path.is_file():
        raise ConfigurationError(f"Calibration file does not exist: {input_path}")

    suffix = input_path.suffix.lower()
    if suffix == ".npz":
        with np.load(str(input_path)) as data:
            return camera_parameters_from_lookup(
                lambda key: np.array(data[key]) if key in data.files else None
            )

    if suffix in FILESTORAGE_SUFFIXES:
        fs = cv2.FileStorage(str(input_path), cv2.FILE_STORAGE_READ)
        if not fs.isOpened():
            raise ConfigurationError(f"Cannot open calibration file: {input_path}")
        try:
            return camera_parameters_from_lookup(lambda key: _read_node(fs, key))
        finally:
            fs.release()

    raise ConfigurationError(f"Unsupported calibration file type: {input_path.suffix}")


def _read_node(fs: cv2.FileStorage, key: str) -> Optional[np.ndarray]:
    node = fs.getNode(key)
    if node.empty() or node.isNone():
        return None
    mat = node.mat()
    if mat is None:
        return None
    return np.asarray(mat, dtype=np.float64)


__all__ = [
    "save_camera_parameters",
    "load_camera_parameters",
    "camera_parameters_to_dict",
    "camera_parameters_from_lookup",
]
