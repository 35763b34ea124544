"""Tests for building and querying the RemapTable."""

from __future__ import annotations

import pytest

from topic_remapper.errors import ConfigurationError
from topic_remapper.routing.rule import RemapRule
from topic_remapper.routing.table import RemapTable


def test_empty_rule_list_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        RemapTable.build([])


@pytest.mark.parametrize(
    "rule",
    [RemapRule("", "home/temp"), RemapRule("sensor/temp", "")],
)
def test_rules_with_empty_topics_are_rejected(rule: RemapRule) -> None:
    with pytest.raises(ConfigurationError):
        RemapTable.build([RemapRule("ok/in", "ok/out"), rule])


def test_lookup_is_exact_match_only() -> None:
    table = RemapTable.build([RemapRule("sensor/temp", "home/temp")])

    assert table.lookup("sensor/temp") is not None
    assert table.lookup("sensor/temp/") is None
    assert table.lookup("sensor/+") is None
    assert table.lookup("sensor/#") is None
    assert table.lookup("SENSOR/TEMP") is None


def test_duplicate_source_topic_resolves_to_last_defined_rule(log_messages: list[str]) -> None:
    first = RemapRule("sensor/temp", "home/first", {"C": "Celsius"})
    second = RemapRule("sensor/temp", "home/second", {"C": "degrees"})

    table = RemapTable.build([first, second])

    assert table.lookup("sensor/temp") is second
    assert len(table) == 1
    assert any(
        line.startswith("WARNING") and "sensor/temp" in line for line in log_messages
    )


def test_topics_keep_declaration_order() -> None:
    table = RemapTable.build(
        [
            RemapRule("b", "x"),
            RemapRule("a", "y"),
            RemapRule("b", "z"),
            RemapRule("c", "w"),
        ]
    )

    assert table.topics == ["b", "a", "c"]
    assert [rule.dest_topic for rule in table] == ["z", "y", "w"]
    assert "a" in table
    assert "d" not in table
