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
Rule integrity metadata.

This module computes rule checksums, gates redaction on valid metadata
(IntegrityValidator), and repairs missing or stale metadata (Enricher).
A checksum is a function of (pattern, version) only.
"""

import hashlib
from typing import Iterable, List, Optional, Set, Tuple

import regex

from coreason_redact.exceptions import (
    ChecksumMismatchError,
    InvalidPatternError,
    MissingMetadataError,
    NotFoundError,
)
from coreason_redact.models import (
    EnrichAllResult,
    EnrichmentIssue,
    EnrichTemplateResult,
    InlineRules,
    ReferencedRuleIds,
    Rule,
    Template,
)
from coreason_redact.resolver import TemplateResolver
from coreason_redact.store import RuleStore, TemplateStore
from coreason_redact.utils.logger import logger


def compute_checksum(pattern: str, version: int) -> str:
    """Returns the SHA-256 hex digest of `"{version}:{pattern}"`."""
    return hashlib.sha256(f"{version}:{pattern}".encode("utf-8")).hexdigest()


def has_valid_metadata(rule: Rule) -> bool:
    if rule.version is None or not rule.checksum:
        return False
    return rule.checksum == compute_checksum(rule.pattern, rule.version)


def repair_rule(rule: Rule) -> Rule:
    """Returns a copy of `rule` with version defaulted to 1 and the checksum recomputed."""
    version = rule.version or 1
    return rule.model_copy(update={"version": version, "checksum": compute_checksum(rule.pattern, version)})


def revise_rule(rule: Rule, pattern: str) -> Rule:
    """Returns a new revision of `rule` with `pattern`, a bumped version and a fresh checksum."""
    version = (rule.version or 0) + 1
    return rule.model_copy(
        update={"pattern": pattern, "version": version, "checksum": compute_checksum(pattern, version)}
    )


class IntegrityValidator:
    """Pre-matching gate: every rule must carry a version and a matching checksum."""

    def validate(self, rules: Iterable[Rule], template_id: Optional[str] = None) -> None:
        """
        Checks rules in resolution order and raises for the first offender.

        Args:
            rules: The resolved rule list.
            template_id: Template the rules came from, included in errors.

        Raises:
            MissingMetadataError: If a rule has no version or no checksum.
            ChecksumMismatchError: If a stored checksum differs from the recomputed one.
            InvalidPatternError: If a pattern does not compile.
        """
        for rule in rules:
            if rule.version is None or not rule.checksum:
                raise MissingMetadataError(rule.id, rule.name, template_id)
            if rule.checksum != compute_checksum(rule.pattern, rule.version):
                raise ChecksumMismatchError(rule.id, rule.name, template_id)
            try:
                regex.compile(rule.pattern)
            except regex.error as e:
                raise InvalidPatternError(rule.id, rule.name, template_id, str(e)) from e


class Enricher:
    """
    Repairs rule metadata on one template or on all templates of a user.

    Idempotent: rules with valid metadata are never rewritten. Every write is
    scoped to a single rule, and a failure on one rule never stops the others.
    """

    def __init__(self, rule_store: RuleStore, template_store: TemplateStore, resolver: TemplateResolver) -> None:
        self.rule_store = rule_store
        self.template_store = template_store
        self.resolver = resolver

    def enrich_template(self, template_id: str) -> EnrichTemplateResult:
        """
        Enriches every rule of a single template.

        Raises:
            NotFoundError: If the template does not exist.
        """
        template = self.template_store.get(template_id)
        if template is None:
            raise NotFoundError("template", template_id)

        updated, issues = self._enrich(template)
        if issues:
            message = f"Template {template_id} updated {updated} rule(s) with {len(issues)} error(s)"
        elif updated:
            message = f"Template {template_id} updated with {updated} rule checksum(s)"
        else:
            message = "No rules needed updating"
        logger.info(message)
        return EnrichTemplateResult(success=not issues, updated_count=updated, message=message, errors=issues)

    def enrich_all_templates(self, user_id: str) -> EnrichAllResult:
        """Enriches every template owned by `user_id`, collecting per-item errors."""
        templates = self.template_store.list_for_user(user_id)
        result = EnrichAllResult(total_templates=len(templates))

        for template in templates:
            try:
                updated, issues = self._enrich(template)
            except Exception as e:
                logger.error(f"Enrichment of template {template.id} failed: {e}")
                result.errors.append(EnrichmentIssue(template_id=template.id, message=str(e)))
                continue
            if updated:
                result.updated_templates += 1
                result.updated_rules += updated
            result.errors.extend(issues)

        logger.info(
            f"Enriched templates for user {user_id}: {result.updated_templates}/{result.total_templates} "
            f"templates, {result.updated_rules} rules, {len(result.errors)} errors."
        )
        return result

    def _enrich(self, template: Template) -> Tuple[int, List[EnrichmentIssue]]:
        source = template.rule_source
        if isinstance(source, InlineRules):
            return self._enrich_inline(template.id, source)
        return self._enrich_referenced(template.id, source)

    def _enrich_inline(self, template_id: str, source: InlineRules) -> Tuple[int, List[EnrichmentIssue]]:
        updated = 0
        issues: List[EnrichmentIssue] = []
        seen: Set[str] = set()
        for index, rule in enumerate(source.rules):
            # Resolution keeps the first snapshot of an id; later duplicates never run.
            if rule.id in seen:
                continue
            seen.add(rule.id)
            if has_valid_metadata(rule):
                continue
            try:
                self.template_store.replace_inline_rule(template_id, index, repair_rule(rule))
            except Exception as e:
                logger.error(f"Failed to enrich inline rule {rule.id} of template {template_id}: {e}")
                issues.append(EnrichmentIssue(template_id=template_id, rule_id=rule.id, message=str(e)))
                continue
            updated += 1
        return updated, issues

    def _enrich_referenced(self, template_id: str, source: ReferencedRuleIds) -> Tuple[int, List[EnrichmentIssue]]:
        updated = 0
        issues: List[EnrichmentIssue] = []
        for rule_id in dict.fromkeys(source.rule_ids):
            try:
                rule = self.resolver.fetch_rule(rule_id)
                if rule is None:
                    logger.warning(f"Template {template_id} references missing rule {rule_id}; nothing to enrich.")
                    continue
                if has_valid_metadata(rule):
                    continue
                self.rule_store.save(repair_rule(rule))
            except Exception as e:
                logger.error(f"Failed to enrich rule {rule_id} of template {template_id}: {e}")
                issues.append(EnrichmentIssue(template_id=template_id, rule_id=rule_id, message=str(e)))
                continue
            updated += 1
        return updated, issues
