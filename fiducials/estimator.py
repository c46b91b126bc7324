from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import cv2
import numpy as np


class EstimatorInitError(RuntimeError):
    """The estimator could not be set up with the given intrinsics/model."""


class EstimatorError(RuntimeError):
    """The estimator failed internally while processing an image."""


@dataclass
class MarkerPose:
    rotation: np.ndarray  # 3x3, marker -> camera
    translation: np.ndarray  # (3,), meters
    marker_id: Optional[int] = None


class PoseEstimator(ABC):
    """Given an image and intrinsics, produce zero or more marker poses."""

    @abstractmethod
    def initialize(self, camera_matrix: np.ndarray, model_path: str) -> None: ...

    @abstractmethod
    def estimate(self, image: np.ndarray) -> list[MarkerPose]: ...

    @property
    @abstractmethod
    def initialized(self) -> bool: ...


def get_dict(name: str):
    """
    ArUco dictionary resolver. Unknown names raise KeyError.
    Works on OpenCV >= 4.7 (getPredefinedDictionary) and older (Dictionary_get).
    """
    key = (name or "").strip().lower()
    if key.startswith("dict_"):
        key = key[5:]
    table = {
        "4x4_50":  cv2.aruco.DICT_4X4_50,
        "4x4_100": cv2.aruco.DICT_4X4_100,
        "5x5_50":  cv2.aruco.DICT_5X5_50,
        "5x5_100": cv2.aruco.DICT_5X5_100,
        "6x6_50":  cv2.aruco.DICT_6X6_50,
        "6x6_100": cv2.aruco.DICT_6X6_100,
        "7x7_50":  cv2.aruco.DICT_7X7_50,
        "7x7_100": cv2.aruco.DICT_7X7_100,
    }
    code = table[key]

    if hasattr(cv2.aruco, "getPredefinedDictionary"):           # OpenCV >= 4.7
        return cv2.aruco.getPredefinedDictionary(code)
    return cv2.aruco.Dictionary_get(code)                        # Older OpenCV


def _make_params():
    """Create detector parameters across OpenCV versions."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        return cv2.aruco.DetectorParameters_create()
    return cv2.aruco.DetectorParameters()


def load_model(model_path: str) -> tuple[str, float]:
    """Read (aruco_dict, marker_length_m) from an OpenCV FileStorage model file."""
    p = Path(model_path)
    if not p.is_file():
        raise EstimatorInitError(f"Model not found: {p}")
    try:
        fs = cv2.FileStorage(str(p), cv2.FILE_STORAGE_READ)
    except cv2.error as exc:
        raise EstimatorInitError(f"Model unreadable: {p}: {exc}") from exc
    try:
        if not fs.isOpened():
            raise EstimatorInitError(f"Model unreadable: {p}")
        dict_node = fs.getNode("aruco_dict")
        length_node = fs.getNode("marker_length_m")
        if dict_node.empty() or length_node.empty():
            raise EstimatorInitError(
                f"Model {p} must define 'aruco_dict' and 'marker_length_m'"
            )
        dict_name = dict_node.string()
        marker_length = float(length_node.real())
    finally:
        fs.release()
    return dict_name, marker_length


class ArucoPoseEstimator(PoseEstimator):
    """
    Pose estimator backed by OpenCV ArUco detection and square-marker PnP.
    The model file names the dictionary and the printed marker side length.
    """

    def __init__(self):
        self.camera_matrix: Optional[np.ndarray] = None
        self.dist = np.zeros((5, 1))
        self.marker_length_m = 0.0
        self.dictionary = None
        self.params = None
        self._detector = None
        self._obj_pts: Optional[np.ndarray] = None

    @property
    def initialized(self) -> bool:
        return self.camera_matrix is not None

    def initialize(self, camera_matrix: np.ndarray, model_path: str) -> None:
        K = np.asarray(camera_matrix, dtype=np.float64)
        if K.shape != (3, 3):
            raise EstimatorInitError(f"camera matrix must be 3x3, got {K.shape}")

        dict_name, marker_length = load_model(model_path)
        try:
            self.dictionary = get_dict(dict_name)
        except KeyError as exc:
            raise EstimatorInitError(f"Unknown ArUco dictionary '{dict_name}'") from exc
        if marker_length <= 0:
            raise EstimatorInitError(f"marker_length_m must be > 0, got {marker_length}")

        self.params = _make_params()
        # Prefer the newer ArucoDetector API if present
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._detector = cv2.aruco.ArucoDetector(self.dictionary, self.params)

        half = marker_length / 2.0
        self._obj_pts = np.array([[-half,  half, 0.0],
                                  [ half,  half, 0.0],
                                  [ half, -half, 0.0],
                                  [-half, -half, 0.0]], dtype=np.float32)
        self.marker_length_m = marker_length
        self.camera_matrix = K.copy()

    def estimate(self, image: np.ndarray) -> list[MarkerPose]:
        if not self.initialized:
            raise EstimatorError("estimator used before initialize()")
        if image is None or getattr(image, "size", 0) == 0:
            raise EstimatorError("empty image")

        try:
            if self._detector is not None:
                corners, ids, _rej = self._detector.detectMarkers(image)
            else:
                corners, ids, _rej = cv2.aruco.detectMarkers(
                    image, self.dictionary, parameters=self.params
                )
        except cv2.error as exc:
            raise EstimatorError(f"marker detection failed: {exc}") from exc

        poses: list[MarkerPose] = []
        if ids is None or len(ids) == 0:
            return poses

        for i, mid in enumerate(ids.flatten()):
            image_pts = corners[i].reshape(-1, 2).astype(np.float32)
            ok, rvec, tvec = cv2.solvePnP(
                self._obj_pts, image_pts, self.camera_matrix, self.dist,
                flags=cv2.SOLVEPNP_IPPE_SQUARE,
            )
            if not ok:
                continue
            R, _ = cv2.Rodrigues(rvec)
            poses.append(MarkerPose(R, np.asarray(tvec, dtype=np.float64).reshape(3), int(mid)))
        return poses
