import logging
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from fiducials import run
from fiducials.config import config_from_dict
from fiducials.frame_source import DeviceCameraFeed, SyntheticCameraFeed

BASE = {
    "ros_node_mode": "MODE_TOPIC",
    "model_directory": "models",
    "model_filename": "aruco_4x4_50.yml",
    "publish_marker_array": True,
    "publish_tf": True,
    "publish_2d_image": True,
}


def _write(tmp_path: Path, data: dict) -> Path:
    p = tmp_path / "fiducials.yaml"
    p.write_text(yaml.safe_dump(data), encoding="utf-8")
    return p


def test_cli_flags_override_config():
    cfg = config_from_dict(dict(BASE))
    args = run._build_parser().parse_args(
        [
            "--config", "x.yaml",
            "--mode", "MODE_SERVICE",
            "--no-tf",
            "--dry-run",
            "--broker-host", "broker.local",
            "--broker-port", "8883",
            "--log-level", "debug",
        ]
    )

    run._apply_args(cfg, args)

    assert cfg.ros_node_mode == "MODE_SERVICE"
    assert cfg.publish_tf is False
    assert cfg.publish_marker_array is True
    assert cfg.source.type == "synthetic"
    assert cfg.mqtt.host == "broker.local"
    assert cfg.mqtt.port == 8883
    assert cfg.log_level == "DEBUG"


def test_build_feed_picks_source_type():
    cfg = config_from_dict({**BASE, "source": {"type": "synthetic", "width": 64, "height": 48}})
    assert isinstance(run.build_feed(cfg), SyntheticCameraFeed)

    cfg = config_from_dict(dict(BASE))
    assert isinstance(run.build_feed(cfg), DeviceCameraFeed)


def test_main_missing_config_file(tmp_path):
    assert run.main(["--config", str(tmp_path / "missing.yaml")]) == 2


def test_main_missing_required_option(tmp_path):
    data = {k: v for k, v in BASE.items() if k != "publish_tf"}
    assert run.main(["--config", str(_write(tmp_path, data))]) == 2


def test_main_broker_unreachable(tmp_path):
    path = _write(tmp_path, {**BASE, "source": {"type": "synthetic"}})

    with patch.object(run, "MqttTransport") as transport_cls, patch.object(run.signal, "signal"):
        transport_cls.return_value.connect.side_effect = ConnectionRefusedError("refused")
        rc = run.main(["--config", str(path)])

    assert rc == 1
    transport_cls.return_value.close.assert_called_once()


@pytest.mark.parametrize(
    "text",
    [
        yaml.safe_dump({**BASE, "sync_queue_size": "three"}),
        yaml.safe_dump({**BASE, "log_level": "LOUD"}),
        "ros_node_mode: [MODE_TOPIC\n",
    ],
)
def test_main_invalid_config_returns_2(tmp_path, text):
    path = tmp_path / "fiducials.yaml"
    path.write_text(text, encoding="utf-8")
    assert run.main(["--config", str(path)]) == 2


def test_main_invalid_log_level_flag_returns_2(tmp_path):
    path = _write(tmp_path, BASE)
    assert run.main(["--config", str(path), "--log-level", "LOUD"]) == 2


def test_main_writes_log_file(tmp_path):
    log_path = tmp_path / "node.log"
    path = _write(tmp_path, {**BASE, "node_name": "logfile_test", "source": {"type": "synthetic"}})

    with patch.object(run, "MqttTransport") as transport_cls, patch.object(run.signal, "signal"):
        transport_cls.return_value.connect.side_effect = ConnectionRefusedError("refused")
        rc = run.main(["--config", str(path), "--log-file", str(log_path)])

    assert rc == 1
    for handler in logging.getLogger("fiducials.logfile_test").handlers:
        handler.flush()
    text = log_path.read_text(encoding="utf-8")
    assert "[logfile_test] ROS node mode: MODE_TOPIC" in text
    assert "Node failed: refused" in text
