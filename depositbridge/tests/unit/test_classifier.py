from __future__ import annotations

import json

import pytest

from depositbridge.core.errors import ConfigurationError
from depositbridge.services.classifier import (
    PERMANENT,
    TRANSIENT,
    ErrorClassifier,
    PatternRule,
    PatternTable,
    load_pattern_table,
)


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier(load_pattern_table())


def test_permanent_patterns_take_precedence(classifier: ErrorClassifier) -> None:
    # Mentions both a validation failure and a timeout.
    result = classifier.classify("Validation: duplicate tenancy (request timeout)")
    assert result.classification == PERMANENT
    assert result.category == "validation"
    assert result.is_permanent


def test_business_rule_message_is_permanent(classifier: ErrorClassifier) -> None:
    result = classifier.classify("There is an existing case for this tenancy")
    assert result.classification == PERMANENT
    assert result.category == "business_rule"


def test_http_5xx_is_transient(classifier: ErrorClassifier) -> None:
    result = classifier.classify("HTTP 503: upstream down")
    assert result.classification == TRANSIENT
    assert result.category == "availability"


def test_connection_refused_is_transient(classifier: ErrorClassifier) -> None:
    assert classifier.classify("connect: Connection refused").classification == TRANSIENT


@pytest.mark.parametrize("message", [None, "", "   "])
def test_empty_message_fails_closed(classifier: ErrorClassifier, message) -> None:
    result = classifier.classify(message)
    assert result.classification == PERMANENT
    assert result.category == "unknown"


def test_unmatched_message_is_permanent(classifier: ErrorClassifier) -> None:
    result = classifier.classify("Something odd happened")
    assert result.classification == PERMANENT
    assert result.matched_pattern is None
    assert result.to_dict()["description"] == "Something odd happened"


def test_custom_table_from_path(tmp_path) -> None:
    path = tmp_path / "patterns.json"
    path.write_text(
        json.dumps({"permanent": [], "transient": [{"pattern": "try again", "category": "throttled"}]}),
        encoding="utf-8",
    )
    classifier = ErrorClassifier(load_pattern_table(str(path)))
    assert classifier.classify("Please TRY AGAIN later").classification == TRANSIENT


def test_invalid_table_raises_configuration_error(tmp_path) -> None:
    path = tmp_path / "patterns.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_pattern_table(str(path))


def test_invalid_regex_raises_configuration_error() -> None:
    table = PatternTable(permanent=[PatternRule(pattern="(", kind="regex")])
    with pytest.raises(ConfigurationError):
        ErrorClassifier(table)
