from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, asdict, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(ValueError):
    """A required option is missing or has an invalid value."""


class NodeMode(str, Enum):
    MODE_TOPIC = "MODE_TOPIC"
    MODE_SERVICE = "MODE_SERVICE"
    MODE_TOPIC_AND_SERVICE = "MODE_TOPIC_AND_SERVICE"

    @property
    def topic(self) -> bool:
        return self in (NodeMode.MODE_TOPIC, NodeMode.MODE_TOPIC_AND_SERVICE)

    @property
    def service(self) -> bool:
        return self in (NodeMode.MODE_SERVICE, NodeMode.MODE_TOPIC_AND_SERVICE)


REQUIRED_KEYS = (
    "ros_node_mode",
    "model_directory",
    "model_filename",
    "publish_marker_array",
    "publish_tf",
    "publish_2d_image",
)


@dataclass
class SourceConfig:
    """Configuration for the camera feed (device camera or synthetic frames)."""

    type: str = "device"  # "device", "synthetic"
    device: int | str = 0
    fps: int = 15
    width: int = 1280
    height: int = 720
    calibration_path: str = "calib/camera.yml"
    frame_id: str = "camera_optical_frame"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MqttConfig:
    host: str = "localhost"
    port: int = 1883
    client_id: str = "fiducials"
    topic_prefix: str = "fiducials"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FiducialsConfig:
    ros_node_mode: str
    model_directory: str
    model_filename: str
    publish_marker_array: bool
    publish_tf: bool
    publish_2d_image: bool
    node_name: str = "fiducials"
    service_timeout_ms: int = 5000
    sync_queue_size: int = 3
    sync_slop_sec: float = 0.1
    workers: int = 2
    detector_name: str = "Fiducial_PI"
    tf_prefix: str = "pi_tag"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    source: SourceConfig = field(default_factory=SourceConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)

    @property
    def mode(self) -> NodeMode:
        try:
            return NodeMode(self.ros_node_mode)
        except ValueError:
            raise ConfigError(
                f"Mode '{self.ros_node_mode}' unknown, try 'MODE_SERVICE' or 'MODE_TOPIC'"
            ) from None

    @property
    def model_path(self) -> str:
        return os.path.join(self.model_directory, self.model_filename)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "FiducialsConfig":
        for key, value in kwargs.items():
            if value is not None and hasattr(self, key):
                setattr(self, key, value)
        return self


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
        return value.strip().lower() == "true"
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    raise ConfigError(f"'{key}=[true/false]' has invalid value {value!r}")


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from None


def _as_float(key: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from None


def check_log_level(level: Any) -> str:
    name = str(level).upper()
    if not isinstance(logging.getLevelName(name), int):
        raise ConfigError(f"log_level '{level}' unknown, try DEBUG, INFO, WARNING or ERROR")
    return name


def _load_source(raw: Any) -> SourceConfig:
    src = SourceConfig()
    if raw is None:
        return src
    if not isinstance(raw, dict):
        raise ConfigError("source must be a mapping")
    src.type = str(raw.get("type", src.type))
    if src.type not in {"device", "synthetic"}:
        raise ConfigError(f"source.type '{src.type}' unknown, try 'device' or 'synthetic'")
    device = raw.get("device", src.device)
    if isinstance(device, str) and device.isdigit():
        device = int(device)
    src.device = device
    src.fps = _as_int("source.fps", raw.get("fps", src.fps))
    src.width = _as_int("source.width", raw.get("width", src.width))
    src.height = _as_int("source.height", raw.get("height", src.height))
    src.calibration_path = str(raw.get("calibration_path", src.calibration_path))
    src.frame_id = str(raw.get("frame_id", src.frame_id))
    return src


def _load_mqtt(raw: Any) -> MqttConfig:
    mq = MqttConfig()
    if raw is None:
        return mq
    if not isinstance(raw, dict):
        raise ConfigError("mqtt must be a mapping")
    mq.host = str(raw.get("host", mq.host))
    mq.port = _as_int("mqtt.port", raw.get("port", mq.port))
    mq.client_id = str(raw.get("client_id", mq.client_id))
    mq.topic_prefix = str(raw.get("topic_prefix", mq.topic_prefix)).rstrip("/")
    return mq


def config_from_dict(raw: dict[str, Any]) -> FiducialsConfig:
    missing = [k for k in REQUIRED_KEYS if k not in raw]
    if missing:
        raise ConfigError(f"Required option(s) not specified: {', '.join(missing)}")

    mode = str(raw["ros_node_mode"])
    if mode not in NodeMode.__members__:
        raise ConfigError(f"Mode '{mode}' unknown, try 'MODE_SERVICE' or 'MODE_TOPIC'")

    cfg = FiducialsConfig(
        ros_node_mode=mode,
        model_directory=str(raw["model_directory"]),
        model_filename=str(raw["model_filename"]),
        publish_marker_array=_as_bool("publish_marker_array", raw["publish_marker_array"]),
        publish_tf=_as_bool("publish_tf", raw["publish_tf"]),
        publish_2d_image=_as_bool("publish_2d_image", raw["publish_2d_image"]),
    )
    cfg.node_name = str(raw.get("node_name", cfg.node_name))
    cfg.service_timeout_ms = _as_int("service_timeout_ms", raw.get("service_timeout_ms", cfg.service_timeout_ms))
    cfg.sync_queue_size = _as_int("sync_queue_size", raw.get("sync_queue_size", cfg.sync_queue_size))
    cfg.sync_slop_sec = _as_float("sync_slop_sec", raw.get("sync_slop_sec", cfg.sync_slop_sec))
    cfg.workers = _as_int("workers", raw.get("workers", cfg.workers))
    cfg.detector_name = str(raw.get("detector_name", cfg.detector_name))
    cfg.tf_prefix = str(raw.get("tf_prefix", cfg.tf_prefix))
    cfg.log_level = check_log_level(raw.get("log_level", cfg.log_level))
    if raw.get("log_file"):
        cfg.log_file = str(raw["log_file"])
    if cfg.service_timeout_ms <= 0:
        raise ConfigError("service_timeout_ms must be > 0")
    if cfg.sync_queue_size < 1:
        raise ConfigError("sync_queue_size must be >= 1")
    if cfg.sync_slop_sec < 0:
        raise ConfigError("sync_slop_sec must be >= 0")
    if cfg.workers < 1:
        raise ConfigError("workers must be >= 1")

    cfg.source = _load_source(raw.get("source"))
    cfg.mqtt = _load_mqtt(raw.get("mqtt"))
    return cfg


def _load_yaml(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as fp:
        return yaml.safe_load(fp) or {}


def load_config(path: str | Path) -> FiducialsConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    try:
        if p.suffix.lower() in {".yaml", ".yml"}:
            raw = _load_yaml(p)
        else:
            with p.open("r", encoding="utf-8") as fp:
                raw = json.load(fp)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not parse {p}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a JSON/YAML object")
    return config_from_dict(raw)
