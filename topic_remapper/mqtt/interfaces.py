from abc import ABC, abstractmethod
from typing import Callable

from ..core.message import Message

MessageHandler = Callable[[Message], None]


class IConnection(ABC):
    """
    Defines the contract of a broker session. The router borrows it to
    subscribe and publish, it never drives its lifecycle.
    """

    @abstractmethod
    def connect(self) -> None:
        """Establishes the session, raising BrokerConnectionError on failure."""
        raise NotImplementedError

    @abstractmethod
    def set_message_handler(self, handler: MessageHandler) -> None:
        """Registers the callable that receives every inbound message."""
        raise NotImplementedError

    @abstractmethod
    def subscribe(self, topic: str) -> None:
        """Subscribes to a topic, raising SubscriptionError if the broker rejects it."""
        raise NotImplementedError

    @abstractmethod
    def publish(self, topic: str, payload: str) -> None:
        """Sends a message without waiting for delivery, raising PublishFailure on error."""
        raise NotImplementedError

    @abstractmethod
    def disconnect(self, timeout: float) -> None:
        """Flushes queued messages for at most `timeout` seconds, then closes the session."""
        raise NotImplementedError
