"""
ASCII PLY reading and writing for point clouds.

Vertex layout: x y z [red green blue] confidence. The color triple is written
only when at least one point has a color; points without one are written as
mid-gray.
"""

from __future__ import annotations

from pathlib import Path
from typing import List

import numpy as np

from multicam_app.errors import ConfigurationError
from multicam_app.recon.data_structures import Point3D, PointCloud

DEFAULT_COLOR = (128, 128, 128)


def _fmt(value: float) -> str:
    # repr() is the shortest string that parses back to the same float.
    return repr(float(value))


def save_point_cloud(cloud: PointCloud, path) -> Path:
    """
    Write `cloud` as an ASCII PLY file.

    Args:
        cloud: Point cloud to write.
        path: Destination file; parent folders are created.

    Returns:
        The written path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    has_color = cloud.has_color

    with open(path, "w", encoding="ascii") as f:
        f.write("ply\n")
        f.write("format ascii 1.0\n")
        f.write(f"comment timestamp {int(cloud.timestamp)}\n")
        f.write(f"element vertex {len(cloud.points)}\n")
        f.write("property float x\n")
        f.write("property float y\n")
        f.write("property float z\n")
        if has_color:
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
        f.write("property float confidence\n")
        f.write("end_header\n")

        for pt in cloud.points:
            values = [_fmt(pt.x), _fmt(pt.y), _fmt(pt.z)]
            if has_color:
                r, g, b = pt.color if pt.color is not None else DEFAULT_COLOR
                values += [str(int(r)), str(int(g)), str(int(b))]
            values.append(_fmt(pt.confidence))
            f.write(" ".join(values) + "\n")

    return path


def load_point_cloud(path, timestamp: int | None = None) -> PointCloud:
    """
    Read a PLY file written by save_point_cloud.

    Args:
        path: PLY file.
        timestamp: Overrides the timestamp stored in the header comment.

    Raises:
        ConfigurationError: Not an ASCII PLY file, or a malformed body.
    """
    path = Path(path)
    with open(path, "r", encoding="ascii") as f:
        lines = f.read().splitlines()

    if not lines or lines[0].strip() != "ply":
        raise ConfigurationError(f"{path} is not a PLY file")

    num_vertices = None
    properties: List[str] = []
    stored_timestamp = 0
    body_start = None

    for i, line in enumerate(lines[1:], start=1):
        parts = line.split()
        if not parts:
            continue
        if parts[0] == "format" and parts[1] != "ascii":
            raise ConfigurationError(f"{path}: only ASCII PLY is supported")
        if parts[0] == "comment" and len(parts) >= 3 and parts[1] == "timestamp":
            stored_timestamp = int(parts[2])
        elif parts[0] == "element" and parts[1] == "vertex":
            num_vertices = int(parts[2])
        elif parts[0] == "property" and num_vertices is not None:
            properties.append(parts[-1])
        elif parts[0] == "end_header":
            body_start = i + 1
            break

    if num_vertices is None or body_start is None:
        raise ConfigurationError(f"{path}: missing vertex element or end_header")

    column = {name: idx for idx, name in enumerate(properties)}
    for required in ("x", "y", "z", "confidence"):
        if required not in column:
            raise ConfigurationError(f"{path}: missing vertex property '{required}'")
    has_color = all(c in column for c in ("red", "green", "blue"))

    body = [line for line in lines[body_start:] if line.strip()]
    if len(body) < num_vertices:
        raise ConfigurationError(
            f"{path}: header declares {num_vertices} vertices, found {len(body)}"
        )

    points = []
    for line in body[:num_vertices]:
        values = line.split()
        if len(values) != len(properties):
            raise ConfigurationError(f"{path}: malformed vertex line '{line}'")
        xyz = np.array([float(values[column[c]]) for c in ("x", "y", "z")])
        color = None
        if has_color:
            color = tuple(int(values[column[c]]) for c in ("red", "green", "blue"))
        points.append(
            Point3D(xyz=xyz, confidence=float(values[column["confidence"]]), color=color)
        )

    return PointCloud(
        points=points,
        timestamp=stored_timestamp if timestamp is None else timestamp,
    )


__all__ = ["save_point_cloud", "load_point_cloud", "DEFAULT_COLOR"]
