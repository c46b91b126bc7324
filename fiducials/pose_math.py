"""Rotation, quaternion and reprojection helpers for fiducial poses."""

from __future__ import annotations

import math
from typing import Tuple

import cv2
import numpy as np


PoseVec7 = Tuple[float, float, float, float, float, float, float]

_ORTHO_TOL = 1e-6

# BGR
AXIS_COLORS = ((0, 0, 255), (0, 255, 0), (255, 0, 0))


def _sign(x: float) -> float:
    return 1.0 if x >= 0.0 else -1.0


def check_rotation(R: np.ndarray) -> np.ndarray:
    """
    Validate that R is a proper rotation matrix.

    Args:
        R: Candidate 3x3 matrix

    Returns:
        R as a (3, 3) float64 array

    Raises:
        ValueError: If R is not 3x3, not orthonormal or has det != +1
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"rotation must be 3x3, got shape {R.shape}")
    if not np.all(np.isfinite(R)):
        raise ValueError("rotation contains non-finite values")
    if not np.allclose(R @ R.T, np.eye(3), atol=_ORTHO_TOL):
        raise ValueError("rotation is not orthonormal")
    if not math.isclose(float(np.linalg.det(R)), 1.0, abs_tol=_ORTHO_TOL):
        raise ValueError("rotation determinant is not +1")
    return R


def rotation_to_quaternion(R: np.ndarray) -> Tuple[float, float, float, float]:
    """
    Convert a rotation matrix to a unit quaternion.

    The largest of the four candidate magnitudes is used as pivot and kept
    positive; the remaining signs are recovered from the off-diagonal terms.

    Args:
        R: 3x3 rotation matrix

    Returns:
        (qw, qx, qy, qz) with unit norm
    """
    R = check_rotation(R)
    r11, r12, r13 = R[0]
    r21, r22, r23 = R[1]
    r31, r32, r33 = R[2]

    qw = (r11 + r22 + r33 + 1.0) / 4.0
    qx = (r11 - r22 - r33 + 1.0) / 4.0
    qy = (-r11 + r22 - r33 + 1.0) / 4.0
    qz = (-r11 - r22 + r33 + 1.0) / 4.0
    qw, qx, qy, qz = (math.sqrt(max(v, 0.0)) for v in (qw, qx, qy, qz))

    if qw >= qx and qw >= qy and qw >= qz:
        qx *= _sign(r32 - r23)
        qy *= _sign(r13 - r31)
        qz *= _sign(r21 - r12)
    elif qx >= qw and qx >= qy and qx >= qz:
        qw *= _sign(r32 - r23)
        qy *= _sign(r21 + r12)
        qz *= _sign(r13 + r31)
    elif qy >= qw and qy >= qx and qy >= qz:
        qw *= _sign(r13 - r31)
        qx *= _sign(r21 + r12)
        qz *= _sign(r32 + r23)
    elif qz >= qw and qz >= qx and qz >= qy:
        qw *= _sign(r21 - r12)
        qx *= _sign(r31 + r13)
        qy *= _sign(r32 + r23)
    else:
        raise AssertionError("no quaternion pivot selected")

    norm = math.sqrt(qw * qw + qx * qx + qy * qy + qz * qz)
    return qw / norm, qx / norm, qy / norm, qz / norm


def quaternion_to_rotation(q) -> np.ndarray:
    """
    Convert a (qw, qx, qy, qz) quaternion to a 3x3 rotation matrix.

    Args:
        q: Quaternion, normalized before use

    Returns:
        3x3 rotation matrix
    """
    qw, qx, qy, qz = (float(v) for v in q)
    n = math.sqrt(qw * qw + qx * qx + qy * qy + qz * qz)
    if n == 0.0 or not math.isfinite(n):
        raise ValueError("cannot convert a zero or non-finite quaternion")
    qw, qx, qy, qz = qw / n, qx / n, qy / n, qz / n

    return np.array([
        [1 - 2 * (qy * qy + qz * qz), 2 * (qx * qy - qz * qw), 2 * (qx * qz + qy * qw)],
        [2 * (qx * qy + qz * qw), 1 - 2 * (qx * qx + qz * qz), 2 * (qy * qz - qx * qw)],
        [2 * (qx * qz - qy * qw), 2 * (qy * qz + qx * qw), 1 - 2 * (qx * qx + qy * qy)],
    ])


def pose_to_vec7(rotation: np.ndarray, translation: np.ndarray) -> PoseVec7:
    """
    Convert rotation matrix and translation vector to (x, y, z, qw, qx, qy, qz).
    """
    t = np.asarray(translation, dtype=np.float64).reshape(3)
    qw, qx, qy, qz = rotation_to_quaternion(rotation)
    return float(t[0]), float(t[1]), float(t[2]), qw, qx, qy, qz


def reproject(point: np.ndarray, camera_matrix: np.ndarray) -> Tuple[int, int]:
    """
    Project a camera-frame point (meters) to integer pixel coordinates.

    Args:
        point: 3D point (3,) or (3,1) in meters
        camera_matrix: 3x3 intrinsic matrix

    Returns:
        (u, v) pixel coordinates

    Raises:
        ValueError: If the point lies on the camera plane
    """
    xyz = np.asarray(point, dtype=np.float64).reshape(3) * 1000.0
    uvw = np.asarray(camera_matrix, dtype=np.float64) @ xyz
    du, dv, dw = (float(v) for v in uvw)
    if dw == 0.0:
        raise ValueError("point lies on the camera plane, cannot reproject")
    u, v = du / dw, dv / dw
    if not (math.isfinite(u) and math.isfinite(v)):
        raise ValueError("reprojection produced non-finite pixel coordinates")
    return int(round(u)), int(round(v))


def render_axes(
    image: np.ndarray,
    rotation: np.ndarray,
    translation: np.ndarray,
    camera_matrix: np.ndarray,
    axis_length: float = 0.1,
    thickness: int = 1,
) -> np.ndarray:
    """
    Draw the marker's x/y/z axes (red/green/blue) onto image in place.

    Args:
        image: BGR image, modified in place
        rotation: 3x3 rotation, marker to camera
        translation: translation (3,) marker to camera, meters
        camera_matrix: 3x3 intrinsic matrix
        axis_length: Axis length in meters
        thickness: Line width in pixels

    Returns:
        The same image
    """
    R = np.asarray(rotation, dtype=np.float64).reshape(3, 3)
    t = np.asarray(translation, dtype=np.float64).reshape(3)
    axis_points = np.vstack([np.zeros(3), np.eye(3) * axis_length])

    pixels = [reproject(R @ p + t, camera_matrix) for p in axis_points]

    origin = pixels[0]
    for end, color in zip(pixels[1:], AXIS_COLORS):
        cv2.line(image, origin, end, color, thickness)
    return image
