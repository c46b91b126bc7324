import cv2
import numpy as np
import pytest

from fiducials.calib import camera_matrix_from_k, load_calib


def test_camera_matrix_from_k_keeps_focal_and_center():
    K = camera_matrix_from_k([800.0, 0.5, 320.0, 0.0, 810.0, 240.0, 0.0, 0.0, 1.0])

    assert K.tolist() == [[800.0, 0.0, 320.0], [0.0, 810.0, 240.0], [0.0, 0.0, 1.0]]
    with pytest.raises(ValueError):
        K[0, 0] = 1.0


def test_camera_matrix_from_k_wrong_length():
    with pytest.raises(ValueError):
        camera_matrix_from_k([1.0, 2.0, 3.0])


def test_load_calib_reads_matrix_and_size(tmp_path):
    path = tmp_path / "calib.yml"
    K = np.array([[700.0, 0.0, 300.0], [0.0, 705.0, 200.0], [0.0, 0.0, 1.0]])
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    fs.write("camera_matrix", K)
    fs.write("image_width", 640)
    fs.write("image_height", 400)
    fs.release()

    loaded, size = load_calib(str(path))

    assert np.allclose(loaded, K)
    assert size == (640, 400)


def test_load_calib_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_calib(str(tmp_path / "nope.yml"))
