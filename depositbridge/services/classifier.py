from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from depositbridge.core.errors import ConfigurationError


logger = logging.getLogger(__name__)

PERMANENT = "permanent"
TRANSIENT = "transient"


class PatternRule(BaseModel):
    # Substring rules match case-insensitively; regex rules compile with IGNORECASE.
    pattern: str = Field(min_length=1)
    kind: Literal["substring", "regex"] = "substring"
    category: str = "unknown"

    @field_validator("pattern")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip()


class PatternTable(BaseModel):
    # Order matters inside each list: the first matching rule wins.
    permanent: list[PatternRule] = Field(default_factory=list)
    transient: list[PatternRule] = Field(default_factory=list)


@dataclass(frozen=True)
class Classification:
    classification: str
    category: str
    description: str
    matched_pattern: str | None = None

    @property
    def is_permanent(self) -> bool:
        return self.classification == PERMANENT

    def to_dict(self) -> dict[str, Any]:
        return {
            "classification": self.classification,
            "category": self.category,
            "description": self.description,
            "matched_pattern": self.matched_pattern,
        }


class _CompiledRule:
    # Rules compile once at startup so a bad regex fails the process, not a job.
    __slots__ = ("rule", "_regex", "_needle")

    def __init__(self, rule: PatternRule) -> None:
        self.rule = rule
        self._needle = rule.pattern.lower()
        self._regex = re.compile(rule.pattern, re.IGNORECASE) if rule.kind == "regex" else None

    def matches(self, lowered: str) -> bool:
        if self._regex is not None:
            return self._regex.search(lowered) is not None
        return self._needle in lowered


def load_pattern_table(path: str | None = None) -> PatternTable:
    """Load the downstream error pattern table.

    ``path`` overrides the table shipped with the package.
    """

    try:
        if path:
            raw = Path(path).read_text(encoding="utf-8")
        else:
            raw = resources.files("depositbridge.services").joinpath("error_patterns.json").read_text(encoding="utf-8")
        return PatternTable.model_validate(json.loads(raw))
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise ConfigurationError(f"Invalid error pattern table: {exc}") from exc


class ErrorClassifier:
    def __init__(self, table: PatternTable) -> None:
        # Regex errors surface as configuration errors at runtime build time.
        try:
            self._permanent = [_CompiledRule(rule) for rule in table.permanent]
            self._transient = [_CompiledRule(rule) for rule in table.transient]
        except re.error as exc:
            raise ConfigurationError(f"Invalid error pattern regex: {exc}") from exc

    def classify(self, message: str | None) -> Classification:
        # Empty or non-text errors fail closed like unmatched ones.
        if not isinstance(message, str) or not message.strip():
            return Classification(PERMANENT, "unknown", "Unknown error format")
        lowered = message.lower()
        # Permanent rules take precedence over transient ones.
        for classification, rules in ((PERMANENT, self._permanent), (TRANSIENT, self._transient)):
            for compiled in rules:
                if compiled.matches(lowered):
                    return Classification(
                        classification,
                        compiled.rule.category,
                        message,
                        matched_pattern=compiled.rule.pattern,
                    )
        logger.info("downstream_error_unclassified message=%s", message[:200])
        return Classification(PERMANENT, "unknown", message)
