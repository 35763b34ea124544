from dataclasses import dataclass, field
from datetime import datetime, timezone

# Non UTF-8 bytes are carried through as lone surrogates and restored on encode.
PAYLOAD_ENCODING = "utf-8"
PAYLOAD_ERRORS = "surrogateescape"


@dataclass(frozen=True)
class Message:
    """
    Represents an immutable message received from the broker.
    The payload is kept as text so remap rules can work on substrings.
    """

    topic: str
    payload: str

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_bytes(cls, topic: str, payload: bytes) -> "Message":
        return cls(topic=topic, payload=payload.decode(PAYLOAD_ENCODING, PAYLOAD_ERRORS))


def encode_payload(payload: str) -> bytes:
    return payload.encode(PAYLOAD_ENCODING, PAYLOAD_ERRORS)
