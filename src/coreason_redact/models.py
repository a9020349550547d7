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
Data models for the redaction engine.

This module defines the Pydantic models for rules and templates (including the
tagged rule-source variant), documents, matches, reports and the result shapes
returned by enrichment and redaction. JSON field names are camelCase.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from coreason_redact.exceptions import InvalidRequestError, PartialEnrichmentError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting snake_case names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RuleCategory(str, Enum):
    MEDICAL = "medical"
    PII = "pii"
    FINANCIAL = "financial"
    LEGAL = "legal"
    CUSTOM = "custom"


class Severity(str, Enum):
    """Rule severity. Higher rank wins overlap resolution."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    REDACTED = "redacted"
    FAILED = "failed"


class MatchMethod(str, Enum):
    RULE = "rule"
    AI = "ai"


class EntityCategory(str, Enum):
    """Fixed display categories shown to reviewers."""

    PERSONAL = "Personal"
    FINANCIAL = "Financial"
    MEDICAL = "Medical"
    CONTACT = "Contact"
    LEGAL = "Legal"
    OTHER = "Other"


class Rule(CamelModel):
    """
    A single redaction rule.

    Attributes:
        id: Unique rule identifier.
        user_id: Owner of the rule.
        name: Human-readable name.
        pattern: Regular expression source.
        category: Rule category (medical, pii, financial, legal, custom).
        severity: Precedence used when matches from different rules overlap.
        entity_type: Optional entity type label (e.g. "SSN") used for report categories.
        version: Integer version. Must be bumped whenever the pattern changes.
        checksum: Digest over (pattern, version).
        is_active: Inactive rules never produce matches.
    """

    id: str
    user_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    pattern: str = Field(min_length=1)
    category: RuleCategory = RuleCategory.CUSTOM
    severity: Severity = Severity.MEDIUM
    entity_type: Optional[str] = None
    version: Optional[int] = Field(default=None, ge=1)
    checksum: Optional[str] = None
    is_active: bool = True


class InlineRules(CamelModel):
    """Rule set stored as embedded rule snapshots on the template."""

    kind: Literal["inline"] = "inline"
    rules: List[Rule] = Field(default_factory=list)


class ReferencedRuleIds(CamelModel):
    """Rule set stored as an ordered list of rule ids resolved at read time."""

    kind: Literal["referenced"] = "referenced"
    rule_ids: List[str] = Field(default_factory=list)


RuleSource = Annotated[Union[InlineRules, ReferencedRuleIds], Field(discriminator="kind")]


class Template(CamelModel):
    """A named, user-owned grouping of rules applied together to a document."""

    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    rule_source: RuleSource = Field(default_factory=ReferencedRuleIds)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Template":
        """
        Builds a Template from a raw store record.

        Raw records may carry rules inline (`rules`, or nested `data.rules`) or by
        reference (`ruleIds`). Non-empty inline rules win over referenced ids.

        Raises:
            InvalidRequestError: If the record has no id.
        """
        if not record.get("id"):
            raise InvalidRequestError("Template record is missing an id")
        if "ruleSource" in record or "rule_source" in record:
            return cls.model_validate(record)

        inline = record.get("rules")
        if not inline and isinstance(record.get("data"), Mapping):
            inline = record["data"].get("rules")

        source: Union[InlineRules, ReferencedRuleIds]
        if inline:
            source = InlineRules(rules=[Rule.model_validate(r) for r in inline if r])
        else:
            rule_ids = record.get("ruleIds") or record.get("rule_ids") or []
            source = ReferencedRuleIds(rule_ids=[str(r) for r in rule_ids if r])

        return cls(
            id=str(record["id"]),
            user_id=str(record.get("userId") or record.get("user_id") or ""),
            name=str(record.get("name") or record["id"]),
            description=record.get("description"),
            rule_source=source,
        )


class Document(CamelModel):
    """
    An uploaded document.

    Attributes:
        status: Lifecycle status; written only by the redaction path.
        source_location: Storage location of the original content.
        redacted_location: URL of the redacted artifact once produced.
        error: Message of the last terminal failure, kept for display.
    """

    id: str
    user_id: str
    name: Optional[str] = None
    status: DocumentStatus = DocumentStatus.PENDING
    source_location: str
    redacted_location: Optional[str] = None
    template_id: Optional[str] = None
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class Match(CamelModel):
    """A candidate span produced by a rule or supplied by an AI detector."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    rule_id: str
    severity: Severity
    start: int = Field(ge=0)
    end: int = Field(ge=0)
    matched_text: str
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    method: MatchMethod = MatchMethod.RULE
    entity_type: Optional[str] = None

    @property
    def length(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "Match") -> bool:
        return self.start < other.end and other.start < self.end


class RedactedEntity(CamelModel):
    """A single redacted span as presented to a reviewer."""

    id: str
    text: str
    content_hash: Optional[str] = None
    type: str
    category: EntityCategory
    location: str
    confidence: float = Field(ge=0.0, le=1.0)
    redaction_method: MatchMethod
    confirmed: bool = True
    feedback: Optional[str] = None
    rule_id: Optional[str] = None
    rule_version: Optional[int] = None
    start: int
    end: int
    reviewed_at: Optional[datetime] = None


class RedactionReport(CamelModel):
    """Report created once per successful redaction run."""

    document_id: str
    template_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    redacted_entities: List[RedactedEntity] = Field(default_factory=list)

    def entity(self, entity_id: str) -> Optional[RedactedEntity]:
        for item in self.redacted_entities:
            if item.id == entity_id:
                return item
        return None

    def counts_by_category(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.redacted_entities:
            counts[item.category.value] = counts.get(item.category.value, 0) + 1
        return counts

    def counts_by_rule(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.redacted_entities:
            key = item.rule_id or "unknown"
            counts[key] = counts.get(key, 0) + 1
        return counts

    def counts_by_location(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for item in self.redacted_entities:
            counts[item.location] = counts.get(item.location, 0) + 1
        return counts


class RedactedArtifact(BaseModel):
    """Output of the executor. `content` is the masked document bytes."""

    document_id: str
    content: bytes
    sha256: str
    mask_count: int
    media_type: str = "text/plain; charset=utf-8"


class EnrichmentIssue(CamelModel):
    template_id: str
    rule_id: Optional[str] = None
    message: str


class EnrichTemplateResult(CamelModel):
    success: bool
    updated_count: int = 0
    message: str = ""
    errors: List[EnrichmentIssue] = Field(default_factory=list)


class EnrichAllResult(CamelModel):
    success: bool = True
    total_templates: int = 0
    updated_templates: int = 0
    updated_rules: int = 0
    errors: List[EnrichmentIssue] = Field(default_factory=list)

    def raise_for_errors(self) -> None:
        """Raises PartialEnrichmentError when any per-item error was collected."""
        if self.errors:
            raise PartialEnrichmentError([e.model_dump(by_alias=True) for e in self.errors])


class RedactionOutcome(CamelModel):
    """Result of `redact_document`."""

    success: bool
    document_id: str
    redacted_url: Optional[str] = None
    report: Optional[RedactionReport] = None
    requires_manual_review: bool = False
    message: Optional[str] = None
