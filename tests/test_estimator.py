import cv2
import numpy as np
import pytest

from fiducials.estimator import (
    ArucoPoseEstimator,
    EstimatorError,
    EstimatorInitError,
    get_dict,
)
from fiducials.pose_math import check_rotation

K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


def _write_model(path, dict_name="4x4_50", length=0.1):
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("aruco_dict", dict_name)
    fs.write("marker_length_m", length)
    fs.release()
    return str(path)


def _marker_image(marker_id=7, side=200):
    marker = cv2.aruco.generateImageMarker(get_dict("4x4_50"), marker_id, side)
    canvas = np.full((480, 640), 255, dtype=np.uint8)
    y0, x0 = 240 - side // 2, 320 - side // 2
    canvas[y0:y0 + side, x0:x0 + side] = marker
    return cv2.cvtColor(canvas, cv2.COLOR_GRAY2BGR)


def test_initialize_missing_model(tmp_path):
    est = ArucoPoseEstimator()
    with pytest.raises(EstimatorInitError):
        est.initialize(K, str(tmp_path / "missing.yml"))
    assert not est.initialized


def test_initialize_unknown_dictionary(tmp_path):
    model = _write_model(tmp_path / "model.yml", dict_name="9x9_1")
    with pytest.raises(EstimatorInitError):
        ArucoPoseEstimator().initialize(K, model)


def test_initialize_rejects_non_positive_length(tmp_path):
    model = _write_model(tmp_path / "model.yml", length=0.0)
    with pytest.raises(EstimatorInitError):
        ArucoPoseEstimator().initialize(K, model)


def test_initialize_model_without_nodes(tmp_path):
    path = tmp_path / "model.yml"
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("something_else", 1)
    fs.release()
    with pytest.raises(EstimatorInitError):
        ArucoPoseEstimator().initialize(K, str(path))


def test_estimate_before_initialize():
    with pytest.raises(EstimatorError):
        ArucoPoseEstimator().estimate(np.zeros((10, 10, 3), dtype=np.uint8))


def test_blank_image_yields_no_poses(tmp_path):
    est = ArucoPoseEstimator()
    est.initialize(K, _write_model(tmp_path / "model.yml"))

    assert est.estimate(np.full((480, 640, 3), 255, dtype=np.uint8)) == []


def test_generated_marker_pose(tmp_path):
    """A 200px marker of 0.1 m at f=500 sits 0.25 m in front of the camera."""
    est = ArucoPoseEstimator()
    est.initialize(K, _write_model(tmp_path / "model.yml"))

    poses = est.estimate(_marker_image())

    assert len(poses) == 1
    pose = poses[0]
    assert pose.marker_id == 7
    assert np.allclose(pose.translation, [0.0, 0.0, 0.25], atol=0.01)
    check_rotation(pose.rotation)
