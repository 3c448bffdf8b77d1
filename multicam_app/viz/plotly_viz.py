"""
Visualization utilities for reconstructed point clouds using Plotly.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
import plotly.graph_objs as go

from multicam_app.io.ply_io import DEFAULT_COLOR
from multicam_app.recon.data_structures import CameraParameters, PointCloud


def _hover_text(pt) -> str:
    if pt.track_id is None:
        return f"Confidence {pt.confidence:.2f}"
    return f"Point {pt.track_id} (confidence {pt.confidence:.2f})"


def plot_point_cloud(
    cloud: PointCloud,
    cameras: Optional[Sequence[CameraParameters]] = None,
) -> go.Figure:
    """
    Create a 3D Plotly figure of one frame's point cloud and the camera rig.

    Args:
        cloud: Point cloud (reference camera frame).
        cameras: Optional cameras whose centers are drawn.

    Returns:
        Plotly Figure with the points (RGB colors, confidence on hover) and
        camera centers.
    """
    points_xyz = cloud.xyz()
    fig = go.Figure()

    if len(points_xyz) > 0:
        colors = [
            "rgb({},{},{})".format(*(pt.color if pt.color is not None else DEFAULT_COLOR))
            for pt in cloud.points
        ]
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers",
                marker=dict(size=2, color=colors, opacity=0.8),
                name="3D Points",
                text=[_hover_text(pt) for pt in cloud.points],
            )
        )

    if cameras:
        # C = -R^T @ t
        centers = np.array([cam.center().reshape(3) for cam in cameras])
        fig.add_trace(
            go.Scatter3d(
                x=centers[:, 0],
                y=centers[:, 1],
                z=centers[:, 2],
                mode="markers+text",
                marker=dict(size=8, color="red", symbol="diamond"),
                name="Camera Centers",
                text=[f"Camera {i}" for i in range(len(centers))],
            )
        )

    fig.update_layout(
        title=f"Point cloud, frame {cloud.timestamp}",
        scene=dict(
            xaxis_title="X",
            yaxis_title="Y",
            zaxis_title="Z",
            aspectmode="data",
        ),
        width=800,
        height=600,
    )

    return fig


__all__ = ["plot_point_cloud"]
