from __future__ import annotations

from pathlib import Path
from typing import Sequence, Tuple

import cv2
import numpy as np


def load_calib(path: str) -> Tuple[np.ndarray, tuple[int, int]]:
    """Read camera_matrix and image size from an OpenCV FileStorage file."""
    if not Path(path).exists():
        raise FileNotFoundError(f"Calibration not found: {path}")
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    try:
        K = fs.getNode("camera_matrix").mat()
        w = int(fs.getNode("image_width").real())
        h = int(fs.getNode("image_height").real())
    finally:
        fs.release()
    if K is None or np.asarray(K).shape != (3, 3):
        raise ValueError(f"camera_matrix missing or not 3x3 in {path}")
    return np.asarray(K, dtype=np.float64), (w, h)


def camera_matrix_from_k(K: Sequence[float]) -> np.ndarray:
    """Build the intrinsic matrix from a row-major 9-element K.

    Only fx, cx, fy, cy are taken over; the result is read-only.
    """
    k = [float(v) for v in K]
    if len(k) != 9:
        raise ValueError(f"K must have 9 elements, got {len(k)}")
    camera_matrix = np.zeros((3, 3), dtype=np.float64)
    camera_matrix[0, 0] = k[0]
    camera_matrix[0, 2] = k[2]
    camera_matrix[1, 1] = k[4]
    camera_matrix[1, 2] = k[5]
    camera_matrix[2, 2] = 1.0
    camera_matrix.setflags(write=False)
    return camera_matrix
