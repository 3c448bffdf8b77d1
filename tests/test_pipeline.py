import numpy as np
import pytest

from multicam_app.config import ReconstructionConfig
from multicam_app.errors import InvariantError
from multicam_app.io.ply_io import load_point_cloud
from multicam_app.obs.event_log import EventLog
from multicam_app.pipeline.reconstruction import (
    STOP_ALL_LOST,
    STOP_EXHAUSTED,
    STOP_MAX_FRAMES,
    ReconstructionPipeline,
    add_color_to_point_cloud,
    point_cloud_path,
)
from multicam_app.recon.data_structures import Point2DSet, Point3D, PointCloud

REFERENCE_RGB = (10, 20, 30)


def _frames(num_frames, num_cameras=3):
    frames = []
    for _ in range(num_frames):
        images = [np.zeros((480, 640, 3), dtype=np.uint8) for _ in range(num_cameras)]
        images[0][:, :] = REFERENCE_RGB
        frames.append(images)
    return frames


def _static_flow(prev_image, next_image, points):
    return points.copy(), np.ones(len(points), dtype=bool)


def _losing_flow(prev_image, next_image, points):
    return points.copy(), np.zeros(len(points), dtype=bool)


def test_static_scene_writes_one_cloud_per_frame(tmp_path, rig, rig_point_sets, scene_points):
    sink = EventLog()
    pipeline = ReconstructionPipeline(rig, ReconstructionConfig(), sink, flow=_static_flow)

    summary = pipeline.run(_frames(3), tmp_path, initial_point_sets=rig_point_sets)

    assert summary.frames_processed == 3
    assert summary.stop_reason == STOP_EXHAUSTED
    assert summary.written_paths == [point_cloud_path(tmp_path, t) for t in range(3)]
    for t in range(3):
        cloud = load_point_cloud(tmp_path / "point_clouds" / f"point_cloud_{t}.ply")
        assert cloud.timestamp == t
        assert len(cloud) == len(scene_points)
        assert np.allclose(cloud.xyz(), scene_points, atol=1e-6)
        assert all(pt.color == REFERENCE_RGB for pt in cloud.points)
    assert summary.points_per_frame == {0: 25, 1: 25, 2: 25}
    assert sink.get_events("recon.summary")


def test_max_frames_stops_the_run(tmp_path, rig, rig_point_sets):
    config = ReconstructionConfig(max_frames=2)
    pipeline = ReconstructionPipeline(rig, config, flow=_static_flow)

    summary = pipeline.run(_frames(5), tmp_path, initial_point_sets=rig_point_sets)

    assert summary.frames_processed == 2
    assert summary.stop_reason == STOP_MAX_FRAMES


def test_run_stops_when_every_track_is_lost(tmp_path, rig, rig_point_sets):
    pipeline = ReconstructionPipeline(rig, flow=_losing_flow)

    summary = pipeline.run(_frames(4), tmp_path, initial_point_sets=rig_point_sets)

    assert summary.frames_processed == 1
    assert summary.stop_reason == STOP_ALL_LOST
    assert not point_cloud_path(tmp_path, 1).exists()


def test_low_confidence_points_are_filtered(tmp_path, rig, rig_point_sets):
    noisy = list(rig_point_sets)
    points = rig_point_sets[2].points.copy()
    points[:5] += 80.0
    noisy[2] = rig_point_sets[2].with_points(points)
    pipeline = ReconstructionPipeline(rig, flow=_static_flow)

    summary = pipeline.run(_frames(1), tmp_path, initial_point_sets=noisy)

    assert summary.points_per_frame[0] == 20
    cloud = load_point_cloud(summary.written_paths[0])
    assert all(pt.confidence >= 0.25 for pt in cloud.points)


def test_frame_with_wrong_camera_count_is_rejected(tmp_path, rig, rig_point_sets):
    pipeline = ReconstructionPipeline(rig, flow=_static_flow)

    with pytest.raises(InvariantError):
        pipeline.run(_frames(1, num_cameras=2), tmp_path, initial_point_sets=rig_point_sets)


def test_pipeline_needs_two_cameras(rig):
    with pytest.raises(InvariantError):
        ReconstructionPipeline(rig[:1])


def test_color_is_sampled_at_raw_pixel_by_track_id():
    image = np.zeros((10, 20, 3), dtype=np.uint8)
    image[4, 7] = (200, 100, 50)
    cloud = PointCloud(
        points=[
            Point3D(xyz=[0, 0, 1], confidence=1.0, track_id=3),
            Point3D(xyz=[0, 0, 1], confidence=1.0, track_id=8),
            Point3D(xyz=[0, 0, 1], confidence=1.0, track_id=9),
        ]
    )
    raw = Point2DSet([8, 3], np.array([[25.0, 4.0], [7.9, 4.6]]))

    colored = add_color_to_point_cloud(cloud, image, raw)

    assert colored == 1
    assert cloud.points[0].color == (200, 100, 50)
    # Outside the image, and no observation at all.
    assert cloud.points[1].color is None
    assert cloud.points[2].color is None


def test_max_frames_equal_to_available_frames_reports_max_frames(tmp_path, rig, rig_point_sets):
    pipeline = ReconstructionPipeline(rig, ReconstructionConfig(max_frames=2), flow=_static_flow)

    summary = pipeline.run(_frames(2), tmp_path, initial_point_sets=rig_point_sets)

    assert summary.frames_processed == 2
    assert summary.stop_reason == STOP_MAX_FRAMES


def test_non_finite_flow_in_keep_mode_drops_only_that_point(tmp_path, rig, rig_point_sets):
    def nan_flow(prev_image, next_image, points):
        next_points = points.copy()
        if int(prev_image[0, 0, 0]) == REFERENCE_RGB[0]:
            next_points[0] = np.nan
        return next_points, np.ones(len(points), dtype=bool)

    config = ReconstructionConfig(drop_lost_points=False)
    pipeline = ReconstructionPipeline(rig, config, flow=nan_flow)

    summary = pipeline.run(_frames(3), tmp_path, initial_point_sets=rig_point_sets)

    assert summary.stop_reason == STOP_EXHAUSTED
    assert summary.points_per_frame == {0: 25, 1: 24, 2: 24}
    cloud = load_point_cloud(summary.written_paths[-1])
    assert np.all(np.isfinite(cloud.xyz()))


def test_summary_keeps_last_cloud_with_track_ids(tmp_path, rig, rig_point_sets, point_ids):
    pipeline = ReconstructionPipeline(rig, flow=_static_flow)

    summary = pipeline.run(_frames(2), tmp_path, initial_point_sets=rig_point_sets)

    assert summary.last_cloud is not None
    assert summary.last_cloud.timestamp == 1
    assert [pt.track_id for pt in summary.last_cloud.points] == [int(i) for i in point_ids]
