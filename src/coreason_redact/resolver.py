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
Template resolution.

Turns a template, whichever way its rules are stored, into the canonical
ordered rule list every downstream component works with.
"""

import time
from typing import Callable, List, Optional, Set

from coreason_redact.config import settings
from coreason_redact.exceptions import StoreUnavailableError
from coreason_redact.models import InlineRules, Rule, Template
from coreason_redact.store import RuleStore
from coreason_redact.utils.logger import logger


class TemplateResolver:
    """
    Normalizes a template's rule source into an ordered, de-duplicated rule list.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """
        Args:
            rule_store: Store used to resolve referenced rule ids.
            retry_attempts: Attempts per rule fetch on StoreUnavailableError.
            retry_backoff: Base delay in seconds, doubled after each failed attempt.
            sleep: Sleep function, injectable for tests.
        """
        self.rule_store = rule_store
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.store_retry_attempts
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.store_retry_backoff_seconds
        self._sleep = sleep

    def resolve(self, template: Template) -> List[Rule]:
        """
        Resolves the effective rule set of a template.

        Inline rules are used verbatim in their stored order. Referenced ids are
        fetched in list order; ids that no longer resolve are dropped. Either way
        the result is de-duplicated by rule id, first occurrence winning.

        Args:
            template: The template to resolve.

        Returns:
            The ordered rule list. Empty when the template has no rules.

        Raises:
            StoreUnavailableError: If the rule store keeps failing after all retries.
        """
        source = template.rule_source
        if isinstance(source, InlineRules):
            candidates = [rule.model_copy(deep=True) for rule in source.rules]
        else:
            candidates = []
            for rule_id in source.rule_ids:
                rule = self.fetch_rule(rule_id)
                if rule is None:
                    logger.warning(f"Template {template.id} references missing rule {rule_id}; skipping it.")
                    continue
                candidates.append(rule)

        seen: Set[str] = set()
        resolved: List[Rule] = []
        for rule in candidates:
            if rule.id in seen:
                continue
            seen.add(rule.id)
            resolved.append(rule)

        if not resolved:
            logger.info(f"Template {template.id} has no rules.")
        else:
            logger.debug(f"Resolved template {template.id} to {len(resolved)} rules.")
        return resolved

    def fetch_rule(self, rule_id: str) -> Optional[Rule]:
        """Fetches one rule, retrying transient store failures with exponential backoff."""
        delay = self.retry_backoff
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return self.rule_store.get(rule_id)
            except StoreUnavailableError as e:
                if attempt == self.retry_attempts:
                    logger.error(f"Rule store unavailable fetching rule {rule_id} after {attempt} attempts: {e}")
                    raise
                logger.warning(f"Rule store unavailable fetching rule {rule_id} (attempt {attempt}); retrying.")
                self._sleep(delay)
                delay *= 2
        return None  # pragma: no cover
