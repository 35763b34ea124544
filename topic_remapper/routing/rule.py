from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping


@dataclass(frozen=True)
class RemapRule:
    """
    Maps one source topic to one destination topic and rewrites the payload
    with literal substring substitutions.

    Substitutions are applied pair by pair over the whole payload, in the
    order they were declared. A replacement can therefore be rewritten again
    by a later pair (eg: {"x": "y", "y": "z"} turns "x" into "z").
    """

    source_topic: str
    dest_topic: str
    substitutions: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        # Frozen copy, so the rule cannot change after the table is built.
        object.__setattr__(
            self, "substitutions", MappingProxyType(dict(self.substitutions))
        )

    def apply(self, payload: str) -> str:
        for old, new in self.substitutions.items():
            payload = payload.replace(old, new)
        return payload

    def __str__(self) -> str:
        return f"{self.source_topic} -> {self.dest_topic} (value mappings: {dict(self.substitutions)})"
