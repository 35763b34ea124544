import threading
import time
from dataclasses import dataclass, field
from typing import Callable

import paho.mqtt.client as mqtt
from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from .interfaces import IConnection, MessageHandler
from ..config import BrokerSettings, RetryPolicy
from ..core.message import Message, encode_payload
from ..errors import BrokerConnectionError, PublishFailure, SubscriptionError


class _HandshakeTimeout(TimeoutError):
    pass


@dataclass
class _PendingSubscription:
    topic: str
    acked: threading.Event = field(default_factory=threading.Event)
    reason_codes: list = field(default_factory=list)


def create_client(client_id: str) -> mqtt.Client:
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)


class MqttConnection(IConnection):
    """
    Owns the single paho-mqtt session of the remapper.

    The initial handshake is retried according to the RetryPolicy. Once up,
    paho's network loop reconnects on its own and the subscriptions made
    through this class are restored after every reconnection.
    """

    def __init__(
        self,
        settings: BrokerSettings,
        retry_policy: RetryPolicy,
        client_factory: Callable[[str], mqtt.Client] = create_client,
    ):
        self.settings = settings
        self.retry_policy = retry_policy
        self.client = client_factory(settings.client_id)
        if settings.username:
            self.client.username_pw_set(settings.username, settings.password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_subscribe = self._on_subscribe
        self.client.on_message = self._internal_on_message

        self._message_handler: MessageHandler | None = None
        self._connected = threading.Event()
        self._refused_reason = None
        self._subscriptions: list[str] = []

        self._subscription_lock = threading.Lock()
        self._pending_subscriptions: dict[int, _PendingSubscription] = {}

        self._publish_lock = threading.Lock()
        self._in_flight: list[mqtt.MQTTMessageInfo] = []

    @property
    def _address(self) -> str:
        return f"{self.settings.host}:{self.settings.port}"

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def connect(self) -> None:
        logger.info(f"Attempting to connect to MQTT broker at {self._address}...")
        self._connected.clear()
        self._refused_reason = None

        try:
            self.client.connect_async(
                self.settings.host, self.settings.port, self.settings.keepalive
            )
            self.client.loop_start()
        except ValueError as e:
            raise BrokerConnectionError(f"Invalid MQTT broker address {self._address}: {e}") from e

        retrier = Retrying(
            stop=stop_after_attempt(self.retry_policy.max_attempts),
            retry=retry_if_exception_type(_HandshakeTimeout),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            retrier(self._await_handshake)
        except _HandshakeTimeout as e:
            self._release()
            raise BrokerConnectionError(
                f"Failed to connect to MQTT broker at {self._address} after "
                f"{self.retry_policy.max_attempts} attempts."
            ) from e
        except BrokerConnectionError:
            self._release()
            raise

        logger.success(f"Connected to MQTT broker: {self._address}")

    def _await_handshake(self) -> None:
        if not self._connected.wait(self.retry_policy.attempt_timeout):
            raise _HandshakeTimeout(
                f"No CONNACK within {self.retry_policy.attempt_timeout}s"
            )
        if self._refused_reason is not None:
            raise BrokerConnectionError(
                f"MQTT broker at {self._address} refused the connection: {self._refused_reason}"
            )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        logger.warning(
            f"Retrying connection to MQTT server... "
            f"(attempt {retry_state.attempt_number}/{self.retry_policy.max_attempts} timed out)"
        )

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.warning(f"MQTT connection failed with code: {reason_code}")
            self._refused_reason = reason_code
            self._connected.set()
            return

        if self._connected.is_set() and self._subscriptions:
            logger.info("Reconnected to MQTT broker, restoring subscriptions...")
            for topic in self._subscriptions:
                client.subscribe(topic, self.settings.qos)
                logger.debug(f"Re-subscribed to topic: {topic}")
        self._connected.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            logger.info("MQTT client disconnected successfully.")
        else:
            logger.warning(f"Unexpected MQTT disconnection. Reason code: {reason_code}")

    def subscribe(self, topic: str) -> None:
        with self._subscription_lock:
            result, mid = self.client.subscribe(topic, self.settings.qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise SubscriptionError(topic, mqtt.error_string(result))
            pending = _PendingSubscription(topic)
            self._pending_subscriptions[mid] = pending

        try:
            if not pending.acked.wait(self.retry_policy.attempt_timeout):
                raise SubscriptionError(
                    topic, f"no SUBACK within {self.retry_policy.attempt_timeout}s"
                )
        finally:
            with self._subscription_lock:
                self._pending_subscriptions.pop(mid, None)

        refused = [rc for rc in pending.reason_codes if rc.is_failure]
        if refused:
            raise SubscriptionError(topic, f"broker answered {refused[0]}")

        self._subscriptions.append(topic)
        logger.info(f"Subscribed to topic: {topic}")

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties):
        with self._subscription_lock:
            pending = self._pending_subscriptions.get(mid)

        if pending is None:
            # Subscriptions restored after a reconnection are not awaited.
            for rc in reason_code_list:
                if rc.is_failure:
                    logger.error(f"Broker refused a restored subscription: {rc}")
            return

        pending.reason_codes = list(reason_code_list)
        pending.acked.set()

    def _internal_on_message(self, client, userdata, msg):
        """Adapts paho's message to the remapper Message and hands it over."""
        if not self._message_handler:
            logger.warning(f"No message handler set, dropping message on '{msg.topic}'.")
            return
        self._message_handler(Message.from_bytes(msg.topic, msg.payload))

    def publish(self, topic: str, payload: str) -> None:
        try:
            info = self.client.publish(
                topic, encode_payload(payload), qos=self.settings.qos, retain=False
            )
        except (ValueError, OSError) as e:
            raise PublishFailure(topic, str(e)) from e

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishFailure(topic, mqtt.error_string(info.rc))

        with self._publish_lock:
            self._in_flight = [i for i in self._in_flight if not i.is_published()]
            self._in_flight.append(info)

    def _flush(self, timeout: float) -> None:
        with self._publish_lock:
            in_flight = list(self._in_flight)

        deadline = time.monotonic() + timeout
        for info in in_flight:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                info.wait_for_publish(remaining)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"MQTT: Message {info.mid} will not be sent: {e}")

        unsent = sum(1 for info in in_flight if not info.is_published())
        if unsent:
            logger.warning(f"MQTT: {unsent} queued message(s) were not sent before disconnecting.")

    def disconnect(self, timeout: float) -> None:
        logger.info("MQTT: Disconnecting from broker...")
        self._flush(timeout)
        self._release()

    def _release(self) -> None:
        try:
            self.client.disconnect()
            self.client.loop_stop()
        except Exception as e:
            logger.warning(f"MQTT: Exception during disconnection: {e}")
