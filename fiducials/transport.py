from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .msgs import TransformStamped


class Publisher(ABC):
    @abstractmethod
    def publish(self, msg: Any) -> None: ...

    def close(self) -> None:
        return None


class NullPublisher(Publisher):
    def publish(self, msg: Any) -> None:
        return None


class MemoryPublisher(Publisher):
    """Keeps every published message; used for dry runs and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._messages: list[Any] = []

    def publish(self, msg: Any) -> None:
        with self._lock:
            self._messages.append(msg)

    @property
    def messages(self) -> list[Any]:
        with self._lock:
            return list(self._messages)

    @property
    def last(self) -> Any:
        with self._lock:
            return self._messages[-1] if self._messages else None

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()


class TransformBroadcaster:
    def __init__(self, publisher: Publisher):
        self.publisher = publisher

    def send_transform(self, transform: TransformStamped) -> None:
        self.publisher.publish(transform)


@dataclass
class Publishers:
    detections: Publisher = field(default_factory=NullPublisher)
    image: Publisher = field(default_factory=NullPublisher)
    transforms: Publisher = field(default_factory=NullPublisher)
    markers: Publisher = field(default_factory=NullPublisher)

    @property
    def tf_broadcaster(self) -> TransformBroadcaster:
        return TransformBroadcaster(self.transforms)

    def close(self) -> None:
        for pub in (self.detections, self.image, self.transforms, self.markers):
            pub.close()
