"""MQTT transport: topic publishers and the request/response server.

Messages are published as JSON (``msg.as_dict()``); images as JPEG bytes.
A request on ``<prefix>/<service>/request`` is answered on
``<prefix>/<service>/response``; the handler runs on a worker pool so the
network thread never blocks on detection.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import Executor
from typing import Any, Callable, Optional

import cv2
import paho.mqtt.client as mqtt

from .msgs import DetectResponse, ImageMsg
from .transport import Publisher

RequestHandler = Callable[[Optional[int]], DetectResponse]


def encode_message(msg: Any) -> bytes:
    if isinstance(msg, ImageMsg):
        ok, buf = cv2.imencode(".jpg", msg.image)
        if not ok:
            raise ValueError("JPEG encoding failed")
        return buf.tobytes()
    return json.dumps(msg.as_dict()).encode("utf-8")


def parse_request(payload: bytes) -> tuple[Optional[int], Optional[str]]:
    """Return (timeout_ms, request_id) from a request payload; both optional."""
    if not payload:
        return None, None
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None, None
    if not isinstance(data, dict):
        return None, None
    timeout_ms = data.get("timeout_ms")
    if not isinstance(timeout_ms, int) or isinstance(timeout_ms, bool) or timeout_ms <= 0:
        timeout_ms = None
    request_id = data.get("request_id")
    return timeout_ms, None if request_id is None else str(request_id)


class MqttPublisher(Publisher):
    def __init__(self, client: mqtt.Client, topic: str, logger: logging.Logger, qos: int = 0):
        self.client = client
        self.topic = topic
        self.qos = qos
        self.log = logger

    def publish(self, msg: Any) -> None:
        try:
            self.client.publish(self.topic, encode_message(msg), qos=self.qos)
        except Exception as e:
            self.log.warning("Publish on %s failed: %s", self.topic, e)


class MqttTransport:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        client_id: str = "fiducials",
        topic_prefix: str = "fiducials",
        logger: Optional[logging.Logger] = None,
        keepalive: int = 60,
    ):
        self.host = host
        self.port = port
        self.topic_prefix = topic_prefix.rstrip("/")
        self.keepalive = keepalive
        self.log = logger or logging.getLogger(__name__)
        self._services: dict[str, tuple[RequestHandler, str, Executor]] = {}

        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.client.on_connect = self._on_connect
        self.client.on_message = self._on_message

    def topic(self, name: str) -> str:
        return f"{self.topic_prefix}/{name}"

    def connect(self) -> None:
        self.log.info("Connecting to MQTT broker %s:%d", self.host, self.port)
        self.client.connect(self.host, self.port, self.keepalive)
        self.client.loop_start()

    def close(self) -> None:
        self.client.loop_stop()
        self.client.disconnect()

    def publisher(self, name: str) -> MqttPublisher:
        return MqttPublisher(self.client, self.topic(name), self.log)

    def serve(self, name: str, handler: RequestHandler, executor: Executor) -> str:
        request_topic = self.topic(f"{name}/request")
        self._services[request_topic] = (handler, self.topic(f"{name}/response"), executor)
        self.client.subscribe(request_topic)
        self.log.info("Serving %s on %s", name, request_topic)
        return request_topic

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self.log.error("MQTT connection refused: %s", reason_code)
            return
        for request_topic in self._services:
            client.subscribe(request_topic)

    def _on_message(self, client, userdata, message) -> None:
        entry = self._services.get(message.topic)
        if entry is None:
            return
        handler, response_topic, executor = entry
        timeout_ms, request_id = parse_request(message.payload)
        executor.submit(self._respond, handler, response_topic, timeout_ms, request_id)

    def _respond(
        self,
        handler: RequestHandler,
        response_topic: str,
        timeout_ms: Optional[int],
        request_id: Optional[str],
    ) -> None:
        try:
            response = handler(timeout_ms)
        except Exception as e:
            self.log.exception("Request handler failed")
            response = DetectResponse(False, message=str(e))

        payload = response.as_dict()
        if request_id is not None:
            payload["request_id"] = request_id
        try:
            self.client.publish(response_topic, json.dumps(payload).encode("utf-8"))
        except Exception as e:
            self.log.warning("Response publish on %s failed: %s", response_topic, e)
