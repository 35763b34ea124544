"""Shared fixtures: in-memory broker doubles and a loguru capture sink."""

from __future__ import annotations

import itertools
import threading
from typing import Generator

import pytest
from loguru import logger
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from topic_remapper.core.message import Message
from topic_remapper.errors import PublishFailure, SubscriptionError
from topic_remapper.mqtt.interfaces import IConnection, MessageHandler


class FakeConnection(IConnection):
    """In-memory IConnection that records every call made by the router."""

    def __init__(
        self,
        refused_topics: set[str] | None = None,
        failing_topics: set[str] | None = None,
        publish_gate: threading.Event | None = None,
    ) -> None:
        self.refused_topics = refused_topics or set()
        self.failing_topics = failing_topics or set()
        self.publish_gate = publish_gate
        self.handler: MessageHandler | None = None
        self.connected = False
        self.subscriptions: list[str] = []
        self.published: list[tuple[str, str]] = []
        self.publish_started = threading.Event()
        self.disconnect_timeouts: list[float] = []
        self.published_at_disconnect: list[tuple[str, str]] | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        self.connected = True

    def set_message_handler(self, handler: MessageHandler) -> None:
        self.handler = handler

    def subscribe(self, topic: str) -> None:
        if topic in self.refused_topics:
            raise SubscriptionError(topic, "Not authorized")
        self.subscriptions.append(topic)

    def publish(self, topic: str, payload: str) -> None:
        self.publish_started.set()
        if self.publish_gate is not None:
            self.publish_gate.wait(5)
        if topic in self.failing_topics:
            raise PublishFailure(topic, "The client is not currently connected.")
        with self._lock:
            self.published.append((topic, payload))

    def disconnect(self, timeout: float) -> None:
        with self._lock:
            self.published_at_disconnect = list(self.published)
        self.disconnect_timeouts.append(timeout)
        self.connected = False

    def deliver(self, topic: str, payload: str) -> None:
        assert self.handler is not None, "router did not register a handler"
        self.handler(Message(topic=topic, payload=payload))


class FakeMessageInfo:
    def __init__(self, mid: int, rc: int = 0, published: bool = True) -> None:
        self.mid = mid
        self.rc = rc
        self._published = published

    def is_published(self) -> bool:
        return self._published

    def wait_for_publish(self, timeout: float | None = None) -> None:
        return None


class FakePahoClient:
    """
    Scripted stand-in for paho.mqtt.client.Client. CONNACK is delivered
    from loop_start(), SUBACK from a separate thread.
    """

    def __init__(
        self,
        client_id: str = "",
        connack: ReasonCode | None = None,
        suback: dict[str, ReasonCode] | None = None,
        subscribe_result: int = 0,
        publish_rc: int = 0,
    ) -> None:
        self.client_id = client_id
        self.connack = connack
        self.suback = suback or {}
        self.subscribe_result = subscribe_result
        self.publish_rc = publish_rc
        self._mids = itertools.count(1)

        self.on_connect = None
        self.on_disconnect = None
        self.on_subscribe = None
        self.on_message = None

        self.credentials: tuple[str, str | None] | None = None
        self.connect_args: tuple | None = None
        self.loop_started = False
        self.loop_stopped = False
        self.disconnected = False
        self.subscribed: list[tuple[str, int]] = []
        self.published: list[tuple[str, bytes, int, bool]] = []

    def username_pw_set(self, username: str, password: str | None = None) -> None:
        self.credentials = (username, password)

    def connect_async(self, host: str, port: int = 1883, keepalive: int = 60) -> None:
        self.connect_args = (host, port, keepalive)

    def loop_start(self) -> int:
        self.loop_started = True
        if self.connack is not None:
            self.on_connect(self, None, {}, self.connack, None)
        return 0

    def loop_stop(self) -> int:
        self.loop_stopped = True
        return 0

    def disconnect(self) -> int:
        self.disconnected = True
        return 0

    def subscribe(self, topic: str, qos: int = 0) -> tuple[int, int]:
        mid = next(self._mids)
        self.subscribed.append((topic, qos))
        if self.subscribe_result != 0:
            return self.subscribe_result, None
        if topic in self.suback:
            # paho acknowledges from its network thread
            threading.Thread(
                target=self.on_subscribe,
                args=(self, None, mid, [self.suback[topic]], None),
                daemon=True,
            ).start()
        return 0, mid

    def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> FakeMessageInfo:
        mid = next(self._mids)
        if self.publish_rc == 0:
            self.published.append((topic, payload, qos, retain))
        return FakeMessageInfo(mid, rc=self.publish_rc)


def connack(name: str = "Success") -> ReasonCode:
    return ReasonCode(PacketTypes.CONNACK, name)


def suback(name: str = "Granted QoS 0") -> ReasonCode:
    return ReasonCode(PacketTypes.SUBACK, name)


@pytest.fixture
def log_messages() -> Generator[list[str], None, None]:
    """Collect loguru output as plain 'LEVEL message' strings."""
    messages: list[str] = []
    sink_id = logger.add(
        lambda m: messages.append(f"{m.record['level'].name} {m.record['message']}"),
        level="DEBUG",
    )
    yield messages
    logger.remove(sink_id)
