# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

"""
Match engine.

This module evaluates a resolved rule set against document text using
Microsoft Presidio's PatternRecognizer (one recognizer per rule) and resolves
overlapping matches across rules deterministically.
"""

import bisect
import threading
from typing import Dict, Hashable, List, MutableMapping, Optional, Sequence, Tuple

import regex
from cachetools import LRUCache
from presidio_analyzer import Pattern, PatternRecognizer

from coreason_redact.config import settings
from coreason_redact.exceptions import InvalidRequestError, ProcessingError
from coreason_redact.models import Match, MatchMethod, Rule
from coreason_redact.utils.logger import logger


def _precedence(match: Match, order: int) -> Tuple[int, int, int, float, int]:
    # Sorted ascending: severity desc, length desc, rule order asc, confidence desc, start asc.
    return (-match.severity.rank, -match.length, order, -match.confidence, match.start)


def resolve_overlaps(candidates: Sequence[Tuple[Match, int]]) -> List[Match]:
    """
    Drops every match that intersects a higher-precedence match.

    Args:
        candidates: Pairs of (match, rule order). Rule order is the position of
            the originating rule in the resolved template.

    Returns:
        The retained matches sorted by start offset.
    """
    ranked = sorted(candidates, key=lambda c: _precedence(c[0], c[1]))
    # Kept spans never intersect, so ordering them by start also orders them by end.
    starts: List[int] = []
    kept: List[Match] = []
    for match, _ in ranked:
        index = bisect.bisect_right(starts, match.start)
        if index > 0 and kept[index - 1].end > match.start:
            continue
        if index < len(kept) and kept[index].start < match.end:
            continue
        starts.insert(index, match.start)
        kept.insert(index, match)
    return kept


class MatchEngine:
    """
    Scans text against a rule set and returns a de-duplicated, precedence-ordered match set.
    Stateless apart from a cache of compiled recognizers keyed by rule checksum.
    """

    def __init__(self, ignore_case: Optional[bool] = None, cache_size: int = 512) -> None:
        ignore_case = settings.regex_ignore_case if ignore_case is None else ignore_case
        self.regex_flags = regex.MULTILINE | (regex.IGNORECASE if ignore_case else 0)
        self._recognizers: MutableMapping[Hashable, PatternRecognizer] = LRUCache(maxsize=cache_size)
        self._lock = threading.Lock()

    def _recognizer_for(self, rule: Rule) -> PatternRecognizer:
        key = (rule.id, rule.checksum, rule.pattern)
        with self._lock:
            recognizer = self._recognizers.get(key)
            if recognizer is None:
                pattern = Pattern(name=rule.name, regex=rule.pattern, score=1.0)
                # Compiled once here with the engine flags, the way presidio caches it on the Pattern.
                pattern.compiled_regex = regex.compile(rule.pattern, flags=self.regex_flags)
                pattern.compiled_with_flags = self.regex_flags
                recognizer = PatternRecognizer(
                    supported_entity=rule.id,
                    name=rule.name,
                    patterns=[pattern],
                    global_regex_flags=self.regex_flags,
                )
                self._recognizers[key] = recognizer
            return recognizer

    def scan_rule(self, text: str, rule: Rule) -> List[Match]:
        """
        Returns every non-overlapping match of a single rule, in text order.

        Spans come straight from the recognizer's compiled pattern. A single
        pattern never yields overlapping spans, so presidio's result
        de-duplication in `analyze` is skipped.

        Raises:
            ProcessingError: If the rule's pattern cannot be applied (Fail Closed).
        """
        if not rule.is_active or not text:
            return []
        try:
            pattern = self._recognizer_for(rule).patterns[0]
            spans = [found.span() for found in pattern.compiled_regex.finditer(text)]
        except Exception as e:
            logger.error(f"Rule {rule.id} could not be applied: {e}")
            raise ProcessingError(f"Rule {rule.id} ({rule.name}) could not be applied: {e}") from e

        matches: List[Match] = []
        for start, end in spans:
            if end <= start:
                continue
            matches.append(
                Match(
                    rule_id=rule.id,
                    severity=rule.severity,
                    start=start,
                    end=end,
                    matched_text=text[start:end],
                    confidence=1.0,
                    method=MatchMethod.RULE,
                    entity_type=rule.entity_type,
                )
            )
        return matches

    def scan(self, text: str, rules: Sequence[Rule], ai_matches: Sequence[Match] = ()) -> List[Match]:
        """
        Scans the text with every active rule and resolves cross-rule overlaps.

        Overlapping matches keep the higher severity, then the longer span, then
        the rule that appears earlier in `rules`, then the higher confidence.
        AI-sourced matches join the same pass; one whose rule id is not in
        `rules` ranks after every rule.

        Args:
            text: The full document text.
            rules: The resolved, validated rule list in template order.
            ai_matches: Externally produced matches, if any.

        Returns:
            Retained matches sorted by start offset.

        Raises:
            InvalidRequestError: If an AI match span lies outside the text.
            ProcessingError: If a rule cannot be applied.
        """
        order: Dict[str, int] = {}
        for index, rule in enumerate(rules):
            order.setdefault(rule.id, index)

        candidates: List[Tuple[Match, int]] = []
        for rule in rules:
            if not rule.is_active:
                continue
            for match in self.scan_rule(text, rule):
                candidates.append((match, order[rule.id]))

        for match in ai_matches:
            if match.end <= match.start or match.end > len(text):
                raise InvalidRequestError(
                    f"AI match for rule {match.rule_id} has span [{match.start}, {match.end}) outside the document"
                )
            candidates.append((match, order.get(match.rule_id, len(rules))))

        retained = resolve_overlaps(candidates)
        logger.info(f"Scan produced {len(candidates)} candidate matches, retained {len(retained)}.")
        return retained
