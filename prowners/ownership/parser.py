"""Parsing of CODEOWNERS-style ownership files and most-specific-rule lookup."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .matching import matches_pattern, normalize_pattern

logger = logging.getLogger(__name__)

COMMENT_MARKER = "#"


@dataclass(frozen=True)
class OwnershipRule:
    """One ``pattern owner [owner ...]`` line."""

    pattern: str
    owners: Tuple[str, ...]
    source_line: int

    @property
    def specificity(self) -> int:
        return len(self.pattern)


@dataclass(frozen=True)
class OwnershipFile:
    """Parsed ownership rules in declaration order."""

    path: str
    rules: Tuple[OwnershipRule, ...] = ()

    def find_rule(self, changed_path: str) -> Optional[OwnershipRule]:
        """Return the most specific matching rule; ties go to the earliest line."""
        best: Optional[OwnershipRule] = None
        for rule in self.rules:
            if not matches_pattern(rule.pattern, changed_path):
                continue
            if best is None or rule.specificity > best.specificity:
                best = rule
        return best

    def find_owners(self, changed_path: str) -> Tuple[str, ...]:
        """Owners of the most specific rule covering ``changed_path`` (or ``()``)."""
        rule = self.find_rule(changed_path)
        return rule.owners if rule is not None else ()


def _tokens(line: str) -> list[str]:
    tokens = []
    for token in line.split():
        if token.startswith(COMMENT_MARKER):
            break
        tokens.append(token)
    return tokens


def parse_ownership_file(content: str, path: str = "") -> OwnershipFile:
    """Parse ownership file text into an ``OwnershipFile``.

    Blank lines and comment lines are skipped, as are lines with a pattern but
    no owners. Patterns are anchored at the repository root.
    """
    rules = []
    for line_no, raw in enumerate(content.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith(COMMENT_MARKER):
            continue
        tokens = _tokens(line)
        if len(tokens) < 2:
            logger.debug("[ownership] %s:%d has no owners; skipped", path or "<memory>", line_no)
            continue
        rules.append(
            OwnershipRule(
                pattern=normalize_pattern(tokens[0]),
                owners=tuple(tokens[1:]),
                source_line=line_no,
            )
        )
    return OwnershipFile(path=path, rules=tuple(rules))


__all__ = ["COMMENT_MARKER", "OwnershipRule", "OwnershipFile", "parse_ownership_file"]
