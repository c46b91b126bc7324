from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import numpy as np

from .estimator import EstimatorError, MarkerPose, PoseEstimator
from .markers import MarkerLifecycleManager
from .msgs import (
    Detection,
    DetectionArray,
    Header,
    ImageMsg,
    Pose,
    Quaternion,
    TransformStamped,
    Vector3,
)
from .pose_math import PoseVec7, pose_to_vec7, render_axes
from .transport import Publishers

DEFAULT_LABEL = "pi-tag"
DEFAULT_DETECTOR = "Fiducial_PI"


@dataclass
class Frame:
    image: np.ndarray
    stamp: float
    frame_id: str

    @property
    def header(self) -> Header:
        return Header(self.stamp, self.frame_id)

    def copy(self) -> "Frame":
        return Frame(self.image.copy(), self.stamp, self.frame_id)


@dataclass
class PipelineOptions:
    publish_2d_image: bool = True
    publish_tf: bool = True
    publish_marker_array: bool = True
    detector_name: str = DEFAULT_DETECTOR
    tf_prefix: str = "pi_tag"


class DetectionStatus(Enum):
    OK = "ok"
    NO_DETECTIONS = "no_detections"
    DETECTOR_ERROR = "detector_error"


@dataclass
class DetectionResult:
    status: DetectionStatus
    detections: DetectionArray
    poses: list[MarkerPose] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is not DetectionStatus.DETECTOR_ERROR


class DetectionPipeline:
    """Runs the estimator on one frame and publishes the derived outputs."""

    def __init__(
        self,
        estimator: PoseEstimator,
        publishers: Optional[Publishers] = None,
        options: Optional[PipelineOptions] = None,
        logger: Optional[logging.Logger] = None,
        markers: Optional[MarkerLifecycleManager] = None,
    ):
        self.estimator = estimator
        self.publishers = publishers or Publishers()
        self.options = options or PipelineOptions()
        self.log = logger or logging.getLogger(__name__)
        self.markers = markers or MarkerLifecycleManager()

    def run(self, frame: Frame, camera_matrix: np.ndarray) -> DetectionResult:
        header = frame.header
        detections = DetectionArray(header=header)

        try:
            poses = self.estimator.estimate(frame.image)
            vecs = [pose_to_vec7(p.rotation, p.translation) for p in poses]
        except (EstimatorError, ValueError) as e:
            self.log.error("Fiducial detection failed: %s", e)
            return DetectionResult(DetectionStatus.DETECTOR_ERROR, detections)

        for pose, vec7 in zip(poses, vecs):
            det = self._to_detection(pose, vec7, header)
            detections.detections.append(det)
            self.log.info(
                "Detected %s '%s' at x,y,z,rw,rx,ry,rz ( %f, %f, %f, %f, %f, %f, %f )",
                det.detector, det.label, *vec7,
            )

        if not poses:
            self.log.debug("no fiducials in frame %s@%.3f", frame.frame_id, frame.stamp)
            return DetectionResult(DetectionStatus.NO_DETECTIONS, detections)

        if self.options.publish_2d_image:
            self._publish_image(frame, poses, camera_matrix)
        if self.options.publish_tf:
            self._broadcast_transforms(vecs, header)
        if self.options.publish_marker_array:
            self.publishers.markers.publish(self.markers.update(vecs, header))

        return DetectionResult(DetectionStatus.OK, detections, list(poses))

    def _to_detection(self, pose: MarkerPose, vec7: PoseVec7, header: Header) -> Detection:
        x, y, z, qw, qx, qy, qz = vec7
        label = DEFAULT_LABEL if pose.marker_id is None else f"aruco_{pose.marker_id}"
        return Detection(
            label=label,
            detector=self.options.detector_name,
            pose=Pose(Vector3(x, y, z), Quaternion(qx, qy, qz, qw)),
            header=Header(header.stamp, header.frame_id),
        )

    def _publish_image(self, frame: Frame, poses: list[MarkerPose], camera_matrix: np.ndarray) -> None:
        for i, pose in enumerate(poses):
            try:
                render_axes(frame.image, pose.rotation, pose.translation, camera_matrix)
            except ValueError as e:
                self.log.warning("Could not render axes of fiducial %d: %s", i, e)
        self.publishers.image.publish(ImageMsg(frame.header, frame.image))

    def _broadcast_transforms(self, vecs: list[PoseVec7], header: Header) -> None:
        broadcaster = self.publishers.tf_broadcaster
        for i, (x, y, z, qw, qx, qy, qz) in enumerate(vecs):
            broadcaster.send_transform(TransformStamped(
                header=Header(header.stamp, header.frame_id),
                child_frame_id=f"{self.options.tf_prefix}_{i}",
                translation=Vector3(x, y, z),
                rotation=Quaternion(qx, qy, qz, qw),
            ))
