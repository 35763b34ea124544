from types import MappingProxyType
from typing import Iterable, Iterator
from loguru import logger

from .rule import RemapRule
from ..errors import ConfigurationError


class RemapTable:
    """
    Read-only lookup from source topic to its remap rule.

    Built once at startup and shared by every concurrent work unit, it is
    never mutated afterwards. When two rules share a source topic the last
    one defined wins.
    """

    def __init__(self, rules: dict[str, RemapRule]):
        self._rules = MappingProxyType(dict(rules))

    @classmethod
    def build(cls, rules: Iterable[RemapRule]) -> "RemapTable":
        table: dict[str, RemapRule] = {}
        for index, rule in enumerate(rules):
            if not rule.source_topic:
                raise ConfigurationError(f"Remap #{index} has an empty source topic.")
            if not rule.dest_topic:
                raise ConfigurationError(
                    f"Remap #{index} ('{rule.source_topic}') has an empty destination topic."
                )

            shadowed = table.get(rule.source_topic)
            if shadowed is not None:
                logger.warning(
                    f"Duplicate remap for topic '{rule.source_topic}': "
                    f"'{shadowed.dest_topic}' is replaced by '{rule.dest_topic}'."
                )
            table[rule.source_topic] = rule

        if not table:
            raise ConfigurationError("No remaps are defined, there is nothing to bridge.")

        return cls(table)

    def lookup(self, topic: str) -> RemapRule | None:
        return self._rules.get(topic)

    @property
    def topics(self) -> list[str]:
        """Source topics, in the order they were first defined."""
        return list(self._rules)

    def __contains__(self, topic: object) -> bool:
        return topic in self._rules

    def __iter__(self) -> Iterator[RemapRule]:
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)
