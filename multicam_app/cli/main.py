"""
Command-line interface for multi-camera calibration and reconstruction.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

import cv2

from multicam_app.calib.fiducial_board import CharucoBoard, make_board
from multicam_app.calib.multicam_calib import calibrate_from_directory
from multicam_app.config import BoardConfig, CalibrationConfig, ReconstructionConfig
from multicam_app.errors import ConfigurationError, MulticamError
from multicam_app.io.calib_io import load_camera_parameters, save_camera_parameters
from multicam_app.io.video_io import get_video_frame_count, iter_synchronized_frames
from multicam_app.obs.event_log import EventLog
from multicam_app.pipeline.reconstruction import ReconstructionPipeline


def _add_board_arguments(parser: argparse.ArgumentParser) -> None:
    defaults = BoardConfig()
    parser.add_argument(
        "--board",
        type=str,
        default=defaults.kind,
        choices=["charuco", "aprilboard"],
        help="Calibration board kind (default: charuco)",
    )
    parser.add_argument(
        "--squares",
        type=int,
        nargs=2,
        default=list(defaults.squares),
        metavar=("X", "Y"),
        help="ChArUco squares along X and Y (default: 10 5)",
    )
    parser.add_argument(
        "--square-length",
        type=float,
        default=defaults.square_length,
        help=f"ChArUco square side length (default: {defaults.square_length})",
    )
    parser.add_argument(
        "--marker-length",
        type=float,
        default=defaults.marker_length,
        help=f"ChArUco marker side length (default: {defaults.marker_length})",
    )
    parser.add_argument(
        "--dictionary",
        type=str,
        default=defaults.dictionary,
        help=f"ArUco dictionary name (default: {defaults.dictionary})",
    )
    parser.add_argument(
        "--board-type",
        type=str,
        default=defaults.aprilboard_type,
        choices=["coarse", "fine"],
        help="AprilBoard variant when --board aprilboard (default: coarse)",
    )


def _board_config(args: argparse.Namespace) -> BoardConfig:
    return BoardConfig(
        kind=args.board,
        squares=tuple(args.squares),
        square_length=args.square_length,
        marker_length=args.marker_length,
        dictionary=args.dictionary,
        aprilboard_type=args.board_type,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="multicam-recon",
        description="Multi-camera calibration and per-frame 3D point cloud reconstruction",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log debug events as well",
    )
    parser.add_argument(
        "--event-log",
        type=str,
        default=None,
        help="Optional JSON-lines file receiving every pipeline event",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # calibrate
    calib = subparsers.add_parser(
        "calibrate",
        help="Calibrate all cameras from img_<camera>_<frame>.png board images",
    )
    calib.add_argument(
        "--images",
        type=str,
        required=True,
        help="Folder with calibration images",
    )
    calib.add_argument(
        "--num-cameras",
        type=int,
        default=None,
        help="Expected number of cameras (default: whatever is found)",
    )
    calib.add_argument(
        "--output",
        type=str,
        default="camera_parameters.yml",
        help="Calibration file (.yml/.yaml/.xml/.json or .npz, default: camera_parameters.yml)",
    )
    calib.add_argument(
        "--min-common-ids",
        type=int,
        default=CalibrationConfig.min_common_ids,
        help="Minimum shared board ids per stereo frame (default: 10)",
    )
    calib.add_argument(
        "--min-frames",
        type=int,
        default=CalibrationConfig.min_intrinsic_frames,
        help="Minimum valid frames per camera (default: 1)",
    )
    _add_board_arguments(calib)

    # reconstruct
    recon = subparsers.add_parser(
        "reconstruct",
        help="Reconstruct one point cloud per frame from synchronized videos",
    )
    recon.add_argument(
        "--calibration",
        type=str,
        default="camera_parameters.yml",
        help="Calibration file written by 'calibrate' (default: camera_parameters.yml)",
    )
    recon.add_argument(
        "--videos",
        type=str,
        nargs="+",
        required=True,
        help="One video per camera, reference camera first",
    )
    recon.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory; clouds go to <dir>/point_clouds (default: output)",
    )
    recon.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Stop after this many frames (default: until a video ends)",
    )
    recon.add_argument(
        "--confidence-threshold",
        type=float,
        default=ReconstructionConfig.confidence_threshold,
        help="Minimum point confidence written to the clouds (default: 0.25)",
    )
    recon.add_argument(
        "--ratio",
        type=float,
        default=ReconstructionConfig.ratio,
        help="Lowe ratio test threshold (default: 0.7)",
    )
    recon.add_argument(
        "--flann",
        action="store_true",
        help="Use FLANN instead of brute-force matching",
    )
    recon.add_argument(
        "--keep-lost-tracks",
        action="store_true",
        help="Keep points whose optical flow failed instead of dropping them",
    )
    recon.add_argument(
        "--visualize",
        action="store_true",
        help="Write an HTML visualization of the last point cloud",
    )

    # generate-board
    board = subparsers.add_parser(
        "generate-board",
        help="Write a printable ChArUco board image",
    )
    board.add_argument(
        "--output",
        type=str,
        default="charuco_board.png",
        help="Image file (default: charuco_board.png)",
    )
    board.add_argument("--width", type=int, default=None, help="Image width in pixels")
    board.add_argument("--height", type=int, default=None, help="Image height in pixels")
    board.add_argument("--margin", type=int, default=20, help="Margin in pixels (default: 20)")
    _add_board_arguments(board)

    return parser


def run_calibrate(args: argparse.Namespace, sink: EventLog) -> int:
    board_config = _board_config(args)
    config = CalibrationConfig(
        board=board_config,
        min_common_ids=args.min_common_ids,
        min_intrinsic_frames=args.min_frames,
    )
    board = make_board(board_config)

    print(f"Calibrating cameras from {args.images}...")
    report = calibrate_from_directory(
        args.images, board, num_cameras=args.num_cameras, config=config, sink=sink
    )

    save_camera_parameters(args.output, report.cameras)
    print(f"Calibrated {report.succeeded} of {report.requested} cameras")
    if not report.complete:
        for cam_i, reason in sorted(report.failures.items()):
            print(f"  camera {cam_i} skipped: {reason}")
        print(f"Saved cameras correspond to input cameras {report.source_indices}")
    print(f"Calibration saved to {args.output}")
    return 0


def run_reconstruct(args: argparse.Namespace, sink: EventLog) -> int:
    cameras = load_camera_parameters(args.calibration)
    print(f"Loaded {len(cameras)} cameras from {args.calibration}")
    if len(cameras) != len(args.videos):
        raise ConfigurationError(
            f"Calibration has {len(cameras)} cameras but {len(args.videos)} videos were given"
        )

    config = ReconstructionConfig(
        ratio=args.ratio,
        use_flann=args.flann,
        confidence_threshold=args.confidence_threshold,
        drop_lost_points=not args.keep_lost_tracks,
        max_frames=args.max_frames,
    )
    pipeline = ReconstructionPipeline(cameras, config, sink)

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    for cam_i, video in enumerate(args.videos):
        print(f"Camera {cam_i}: {video} ({get_video_frame_count(video)} frames)")

    print("Reconstructing...")
    summary = pipeline.run(iter_synchronized_frames(args.videos), output_dir)
    print(
        f"Wrote {len(summary.written_paths)} point clouds to {output_dir} "
        f"(stopped: {summary.stop_reason})"
    )

    if args.visualize and summary.last_cloud is not None:
        from multicam_app.viz.plotly_viz import plot_point_cloud

        fig = plot_point_cloud(summary.last_cloud, cameras)
        viz_path = output_dir / "reconstruction.html"
        fig.write_html(str(viz_path))
        print(f"Visualization saved to {viz_path}")

    return 0


def run_generate_board(args: argparse.Namespace, sink: EventLog) -> int:
    board_config = _board_config(args)
    board = CharucoBoard(
        squares=board_config.squares,
        square_length=board_config.square_length,
        marker_length=board_config.marker_length,
        dictionary=board_config.dictionary,
    )
    size = None
    if args.width is not None and args.height is not None:
        size = (args.width, args.height)
    image = board.generate_image(size=size, margin=args.margin)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(output), image):
        raise MulticamError(f"Could not write board image to {output}")
    sink.info(
        "board.generated",
        f"Board image {image.shape[1]}x{image.shape[0]} written to {output}",
        path=str(output),
    )
    print(f"Board saved to {output}")
    return 0


COMMANDS = {
    "calibrate": run_calibrate,
    "reconstruct": run_reconstruct,
    "generate-board": run_generate_board,
}


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Usage:
        multicam-recon calibrate --images calib/ --num-cameras 3
        multicam-recon reconstruct --calibration camera_parameters.yml \\
                                   --videos cam0.mp4 cam1.mp4 cam2.mp4 \\
                                   --output-dir out/
        multicam-recon generate-board --output board.png
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )
    sink = EventLog(log_file=args.event_log)

    try:
        return COMMANDS[args.command](args, sink)
    except MulticamError as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
