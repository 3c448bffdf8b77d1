from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from multicam_app.calib.fiducial_board import AprilBoard, CharucoBoard, make_board
from multicam_app.calib.multicam_calib import collect_observations
from multicam_app.config import BoardConfig
from multicam_app.errors import ConfigurationError
from multicam_app.obs.event_log import EventLog


def _board_image(board):
    image = board.generate_image(size=(1000, 500), margin=40)
    return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)


def test_generated_charuco_board_is_detected():
    board = CharucoBoard()
    image = _board_image(board)

    observation = board.detect(image, frame_index=3)

    assert observation is not None
    assert observation.frame_index == 3
    # (10 - 1) x (5 - 1) inner corners
    assert 10 <= len(observation) <= 36
    assert observation.object_points.shape == (len(observation), 3)
    assert np.allclose(observation.object_points[:, 2], 0.0)


def test_blank_image_has_no_observation():
    board = CharucoBoard()

    assert board.detect(np.full((200, 300, 3), 255, dtype=np.uint8)) is None


def test_invalid_board_settings_are_rejected():
    with pytest.raises(ConfigurationError):
        CharucoBoard(dictionary="DICT_DOES_NOT_EXIST")
    with pytest.raises(ConfigurationError):
        CharucoBoard(square_length=10.0, marker_length=12.0)
    with pytest.raises(ConfigurationError):
        make_board(BoardConfig(kind="circles"))


def test_make_board_builds_charuco_from_config():
    board = make_board(BoardConfig(squares=(7, 5), square_length=30.0, marker_length=20.0))

    assert isinstance(board, CharucoBoard)
    assert board.squares == (7, 5)


def test_collect_observations_skips_blank_frames():
    sink = EventLog()
    board = CharucoBoard()
    blank = np.full((500, 1000, 3), 255, dtype=np.uint8)

    observations, image_size = collect_observations(
        {0: _board_image(board), 1: blank}, board, camera_index=0, sink=sink
    )

    assert list(observations) == [0]
    assert image_size == (1000, 500)
    assert sink.get_events("calib.frame_skipped")


def test_aprilboard_keeps_only_known_tags():
    board = AprilBoard.from_definition(
        [
            {"tag_id": 1, "center": [0.0, 0.0, 0.0]},
            {"tag_id": 2, "center": [10.0, 0.0, 0.0]},
            "ignored",
            {"center": [5.0, 5.0, 0.0]},
        ]
    )
    board._detector = SimpleNamespace(
        detect=lambda gray: [
            SimpleNamespace(tag_id=2, center=(40.0, 50.0)),
            SimpleNamespace(tag_id=9, center=(1.0, 1.0)),
        ]
    )

    observation = board.detect(np.zeros((20, 20, 3), dtype=np.uint8), frame_index=5)

    assert list(observation.corner_ids) == [2]
    assert np.allclose(observation.image_points, [[40.0, 50.0]])
    assert np.allclose(observation.object_points, [[10.0, 0.0, 0.0]])


def test_aprilboard_without_tags_is_rejected():
    with pytest.raises(ConfigurationError):
        AprilBoard.from_definition([])
