import argparse
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor

from .config import ConfigError, FiducialsConfig, check_log_level, load_config
from .frame_source import CameraFeed, DeviceCameraFeed, SyntheticCameraFeed
from .logging_utils import add_file_handler, setup_logger
from .mqtt_transport import MqttTransport
from .node import FiducialsNode
from .transport import Publishers

DETECTIONS_TOPIC = "detect_fiducials"
IMAGE_TOPIC = "image"
TF_TOPIC = "tf"
MARKER_ARRAY_TOPIC = "fiducial_marker_array"
SERVICE_NAME = "get_fiducials"


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Detect fiducials and publish their poses")
    ap.add_argument("--config", required=True, help="Path to JSON/YAML config")

    ap.add_argument("--mode", choices=["MODE_TOPIC", "MODE_SERVICE", "MODE_TOPIC_AND_SERVICE"])
    ap.add_argument("--model-directory")
    ap.add_argument("--model-filename")
    ap.add_argument("--dry-run", action="store_true", help="Use synthetic frames instead of a camera")
    ap.add_argument("--no-tf", action="store_true")
    ap.add_argument("--no-marker-array", action="store_true")
    ap.add_argument("--no-image", action="store_true")
    ap.add_argument("--broker-host")
    ap.add_argument("--broker-port", type=int)
    ap.add_argument("--log-level")
    ap.add_argument("--log-file", help="Also write the log to this file")

    return ap


def _apply_args(cfg: FiducialsConfig, args: argparse.Namespace) -> FiducialsConfig:
    cfg.apply_overrides(
        ros_node_mode=args.mode,
        model_directory=args.model_directory,
        model_filename=args.model_filename,
        publish_tf=False if args.no_tf else None,
        publish_marker_array=False if args.no_marker_array else None,
        publish_2d_image=False if args.no_image else None,
        log_level=check_log_level(args.log_level) if args.log_level else None,
        log_file=args.log_file,
    )
    if args.dry_run:
        cfg.source.type = "synthetic"
    if args.broker_host:
        cfg.mqtt.host = args.broker_host
    if args.broker_port:
        cfg.mqtt.port = args.broker_port
    return cfg


def build_feed(cfg: FiducialsConfig) -> CameraFeed:
    src = cfg.source
    if src.type == "synthetic":
        return SyntheticCameraFeed(src.fps, src.width, src.height, frame_id=src.frame_id)
    return DeviceCameraFeed(
        src.device, src.fps, src.width, src.height, src.calibration_path, frame_id=src.frame_id
    )


def build_publishers(transport: MqttTransport) -> Publishers:
    return Publishers(
        detections=transport.publisher(DETECTIONS_TOPIC),
        image=transport.publisher(IMAGE_TOPIC),
        transforms=transport.publisher(TF_TOPIC),
        markers=transport.publisher(MARKER_ARRAY_TOPIC),
    )


def main(argv=None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    try:
        cfg = _apply_args(load_config(args.config), args)
        mode = cfg.mode
    except (ConfigError, FileNotFoundError) as e:
        setup_logger("fiducials").error("%s", e)
        return 2

    log = setup_logger(cfg.node_name, cfg.log_level)
    if cfg.log_file:
        try:
            add_file_handler(log, cfg.node_name, cfg.log_file)
        except OSError as e:
            log.error("Could not open log file %s: %s", cfg.log_file, e)
            return 2
    log.info("ROS node mode: %s", mode.value)
    log.info("model_directory: %s", cfg.model_directory)
    log.info("model_filename: %s", cfg.model_filename)
    log.info("publish_marker_array: %s", str(cfg.publish_marker_array).lower())
    log.info("publish_tf: %s", str(cfg.publish_tf).lower())
    log.info("publish_2d_image: %s", str(cfg.publish_2d_image).lower())

    transport = MqttTransport(
        cfg.mqtt.host, cfg.mqtt.port, cfg.mqtt.client_id, cfg.mqtt.topic_prefix, logger=log
    )
    node = FiducialsNode(cfg, build_feed(cfg), build_publishers(transport), logger=log)
    executor = ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="fiducials")
    stop = threading.Event()

    def _handle_signal(_sig, _frame):
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    try:
        transport.connect()
        if mode.service:
            transport.serve(SERVICE_NAME, node.detect, executor)
        node.start()
        stop.wait()
    except Exception as e:
        log.error("Node failed: %s", e)
        return 1
    finally:
        node.shutdown()
        executor.shutdown(wait=False, cancel_futures=True)
        try:
            transport.close()
        except Exception as e:
            log.debug("Transport close failed: %s", e)

    return 0


if __name__ == "__main__":
    sys.exit(main())
