from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import IntEnum
from typing import Any, Optional

import numpy as np


@dataclass
class Header:
    stamp: float = 0.0
    frame_id: str = ""

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ImageMsg:
    header: Header
    image: np.ndarray
    encoding: str = "bgr8"

    def as_dict(self) -> dict[str, Any]:
        h, w = self.image.shape[:2]
        return {
            "header": self.header.as_dict(),
            "encoding": self.encoding,
            "height": int(h),
            "width": int(w),
        }


@dataclass
class CameraInfoMsg:
    header: Header
    K: list[float]  # row-major 3x3
    width: int = 0
    height: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


@dataclass
class Quaternion:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0


@dataclass
class Pose:
    position: Vector3 = field(default_factory=Vector3)
    orientation: Quaternion = field(default_factory=Quaternion)


@dataclass
class Detection:
    label: str
    detector: str
    pose: Pose
    header: Header
    score: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DetectionArray:
    header: Header = field(default_factory=Header)
    detections: list[Detection] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.detections)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TransformStamped:
    header: Header
    child_frame_id: str
    translation: Vector3
    rotation: Quaternion

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class MarkerType(IntEnum):
    ARROW = 0


class MarkerAction(IntEnum):
    ADD = 0
    DELETE = 2


@dataclass
class ColorRGBA:
    r: float = 0.0
    g: float = 0.0
    b: float = 0.0
    a: float = 0.0


@dataclass
class Marker:
    header: Header = field(default_factory=Header)
    ns: str = ""
    id: int = 0
    type: MarkerType = MarkerType.ARROW
    action: MarkerAction = MarkerAction.ADD
    pose: Pose = field(default_factory=Pose)
    scale: Vector3 = field(default_factory=Vector3)
    color: ColorRGBA = field(default_factory=ColorRGBA)
    points: list[Vector3] = field(default_factory=list)
    lifetime: float = 0.0

    @property
    def active(self) -> bool:
        return self.action == MarkerAction.ADD

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = int(self.type)
        data["action"] = int(self.action)
        return data


@dataclass
class MarkerArray:
    markers: list[Marker] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"markers": [m.as_dict() for m in self.markers]}


@dataclass
class DetectResponse:
    success: bool
    object_list: DetectionArray = field(default_factory=DetectionArray)
    message: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "object_list": self.object_list.as_dict(),
            "message": self.message,
        }
