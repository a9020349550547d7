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
Report construction.

Converts retained matches into reviewable entities grouped under fixed
display categories.
"""

import bisect
import hashlib
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

import regex

from coreason_redact.models import (
    EntityCategory,
    Match,
    RedactedEntity,
    RedactionReport,
    Rule,
    RuleCategory,
)

# Exact entity type -> display category.
TYPE_TAXONOMY: Dict[str, EntityCategory] = {
    **{t: EntityCategory.PERSONAL for t in ("PERSON", "NAME", "PATIENT_ID", "SSN", "DATE", "DOB", "DATE_OF_BIRTH")},
    **{
        t: EntityCategory.FINANCIAL
        for t in ("ORGANIZATION", "BANK", "CREDIT_CARD", "ACCOUNT", "PAYMENT", "IBAN", "ROUTING_NUMBER")
    },
    **{
        t: EntityCategory.MEDICAL
        for t in ("CONDITION", "MEDICATION", "DIAGNOSIS", "TREATMENT", "DOCTOR", "PHI", "MRN")
    },
    **{t: EntityCategory.CONTACT for t in ("ADDRESS", "PHONE", "EMAIL", "IP", "URL")},
    **{t: EntityCategory.LEGAL for t in ("LICENSE", "REGISTRATION", "CASE_NUMBER", "RECORD_ID")},
}

# Keyword contained in the type -> display category, checked in order.
KEYWORD_TAXONOMY: Tuple[Tuple[str, EntityCategory], ...] = (
    ("CASE", EntityCategory.LEGAL),
    ("LICENSE", EntityCategory.LEGAL),
    ("ACCOUNT", EntityCategory.FINANCIAL),
    ("CARD", EntityCategory.FINANCIAL),
    ("PAYMENT", EntityCategory.FINANCIAL),
    ("PHONE", EntityCategory.CONTACT),
    ("EMAIL", EntityCategory.CONTACT),
    ("ADDRESS", EntityCategory.CONTACT),
    ("MEDICAL", EntityCategory.MEDICAL),
    ("MEDICATION", EntityCategory.MEDICAL),
    ("DIAGNOSIS", EntityCategory.MEDICAL),
    ("PATIENT", EntityCategory.PERSONAL),
    ("NAME", EntityCategory.PERSONAL),
    ("BIRTH", EntityCategory.PERSONAL),
    ("SSN", EntityCategory.PERSONAL),
)

FORM_FEED = "\f"
_PARAGRAPH_BREAK = regex.compile(r"\r?\n[ \t]*(?:\r?\n)+")

RULE_CATEGORY_FALLBACK: Dict[RuleCategory, EntityCategory] = {
    RuleCategory.PII: EntityCategory.PERSONAL,
    RuleCategory.FINANCIAL: EntityCategory.FINANCIAL,
    RuleCategory.MEDICAL: EntityCategory.MEDICAL,
    RuleCategory.LEGAL: EntityCategory.LEGAL,
}


def normalize_type(value: str) -> str:
    """'Date of Birth' -> 'DATE_OF_BIRTH'."""
    return "_".join(value.upper().replace("-", " ").split())


def category_for(entity_type: str, rule_category: Optional[RuleCategory] = None) -> EntityCategory:
    """
    Maps an entity type to a display category.

    Exact taxonomy entries win, then keywords contained in the type, then the
    originating rule's category. Anything else is Other.
    """
    normalized = normalize_type(entity_type)
    if normalized in TYPE_TAXONOMY:
        return TYPE_TAXONOMY[normalized]
    for keyword, category in KEYWORD_TAXONOMY:
        if keyword in normalized:
            return category
    if rule_category is not None:
        return RULE_CATEGORY_FALLBACK.get(rule_category, EntityCategory.OTHER)
    return EntityCategory.OTHER


class LocationIndex:
    """
    Page or paragraph lookup for one text, built in a single pass.

    Paginated text (form feeds) is described by page, anything else by
    paragraph. A break counts once the offset reaches its end.
    """

    def __init__(self, text: Optional[str]) -> None:
        self.text = text
        self.paged = FORM_FEED in (text or "")
        self._breaks: List[int] = []
        if not text:
            return
        if self.paged:
            self._breaks = [index + 1 for index, char in enumerate(text) if char == FORM_FEED]
        else:
            self._breaks = [found.end() for found in _PARAGRAPH_BREAK.finditer(text)]

    def describe(self, offset: int) -> str:
        if not self.text:
            return "Unknown location"
        number = bisect.bisect_right(self._breaks, offset) + 1
        return f"Page {number}" if self.paged else f"Paragraph {number}"


def describe_location(text: Optional[str], offset: int) -> str:
    """Page descriptor for paginated text (form feeds), paragraph descriptor otherwise."""
    return LocationIndex(text).describe(offset)


def content_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class ReportBuilder:
    """Builds the per-run RedactionReport."""

    def build(
        self,
        document_id: str,
        matches: Sequence[Match],
        rules: Sequence[Rule] = (),
        text: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> RedactionReport:
        """
        Converts matches into reviewable entities.

        Every entity starts confirmed, with its redaction method copied from the match.

        Args:
            document_id: Document the report belongs to.
            matches: Retained matches in text order.
            rules: The resolved rules, used for entity types, categories and versions.
            text: Document text, used for location descriptors.
            template_id: Template used for the run.
        """
        by_id: Dict[str, Rule] = {}
        for rule in rules:
            by_id.setdefault(rule.id, rule)

        locations = LocationIndex(text)
        entities = []
        for match in matches:
            rule = by_id.get(match.rule_id)
            entity_type = match.entity_type or (rule.entity_type if rule else None)
            if not entity_type:
                entity_type = normalize_type(rule.name) if rule else "UNKNOWN"
            entities.append(
                RedactedEntity(
                    id=uuid.uuid4().hex,
                    text=match.matched_text,
                    content_hash=content_hash(match.matched_text),
                    type=normalize_type(entity_type),
                    category=category_for(entity_type, rule.category if rule else None),
                    location=locations.describe(match.start),
                    confidence=match.confidence,
                    redaction_method=match.method,
                    confirmed=True,
                    rule_id=match.rule_id,
                    rule_version=rule.version if rule else None,
                    start=match.start,
                    end=match.end,
                )
            )
        return RedactionReport(document_id=document_id, template_id=template_id, redacted_entities=entities)
