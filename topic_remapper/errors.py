class RemapperError(Exception):
    """Base class for every error raised by the remapper."""


class ConfigurationError(RemapperError, ValueError):
    """The configuration file or environment is malformed or incomplete."""


class BrokerConnectionError(RemapperError, ConnectionError):
    """The broker could not be reached or refused the session."""


class SubscriptionError(RemapperError):
    """The broker rejected (or never acknowledged) a topic subscription."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"Subscription to '{topic}' failed: {reason}")
        self.topic = topic
        self.reason = reason


class PublishFailure(RemapperError):
    """A single outbound message could not be handed to the broker."""

    def __init__(self, topic: str, reason: str):
        super().__init__(f"Publish to '{topic}' failed: {reason}")
        self.topic = topic
        self.reason = reason


class RoutingInconsistency(RemapperError):
    """A message arrived on a topic that has no remap rule."""

    def __init__(self, topic: str):
        super().__init__(f"Impossible state: no remap found for topic '{topic}'")
        self.topic = topic
