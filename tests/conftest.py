# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

from typing import Any, Callable, Generator, List

import pytest
from loguru import logger

from coreason_redact.integrity import compute_checksum
from coreason_redact.main import RedactionService
from coreason_redact.models import (
    Document,
    InlineRules,
    ReferencedRuleIds,
    Rule,
    RuleCategory,
    Severity,
    Template,
)
from coreason_redact.store import (
    InMemoryArtifactStore,
    InMemoryDocumentStore,
    InMemoryReportStore,
    InMemoryRuleStore,
    InMemoryTemplateStore,
)

SAMPLE_TEXT = (
    "Patient: Jane Roe\n"
    "SSN: 123-45-6789\n"
    "\n"
    "Contact jane.roe@example.com or 555-123-4567.\n"
    "Card 4111 1111 1111 1111 on file.\n"
)


def make_rule(
    rule_id: str,
    pattern: str,
    severity: Severity = Severity.MEDIUM,
    version: Any = 1,
    with_checksum: bool = True,
    **kwargs: Any,
) -> Rule:
    """Builds a rule, by default with valid integrity metadata."""
    checksum = compute_checksum(pattern, version) if with_checksum and version is not None else None
    return Rule(
        id=rule_id,
        name=kwargs.pop("name", rule_id.upper()),
        pattern=pattern,
        severity=severity,
        version=version,
        checksum=checksum,
        **kwargs,
    )


@pytest.fixture
def rule_factory() -> Callable[..., Rule]:
    return make_rule


@pytest.fixture
def sample_rules() -> List[Rule]:
    return [
        make_rule(
            "ssn",
            r"\b\d{3}-\d{2}-\d{4}\b",
            Severity.HIGH,
            category=RuleCategory.PII,
            entity_type="SSN",
            user_id="u1",
        ),
        make_rule(
            "email",
            r"[\w.+-]+@[\w-]+\.[\w.]+",
            Severity.MEDIUM,
            category=RuleCategory.PII,
            entity_type="EMAIL",
            user_id="u1",
        ),
        make_rule(
            "phone",
            r"\b\d{3}-\d{3}-\d{4}\b",
            Severity.MEDIUM,
            category=RuleCategory.PII,
            entity_type="PHONE",
            user_id="u1",
        ),
        make_rule(
            "card",
            r"\b(?:\d{4} ){3}\d{4}\b",
            Severity.HIGH,
            category=RuleCategory.FINANCIAL,
            entity_type="CREDIT_CARD",
            user_id="u1",
        ),
    ]


@pytest.fixture
def rule_store(sample_rules: List[Rule]) -> InMemoryRuleStore:
    return InMemoryRuleStore(sample_rules)


@pytest.fixture
def referenced_template(sample_rules: List[Rule]) -> Template:
    return Template(
        id="t-ref",
        user_id="u1",
        name="Referenced",
        rule_source=ReferencedRuleIds(rule_ids=[r.id for r in sample_rules]),
    )


@pytest.fixture
def inline_template(sample_rules: List[Rule]) -> Template:
    return Template(id="t-inline", user_id="u1", name="Inline", rule_source=InlineRules(rules=sample_rules))


@pytest.fixture
def artifact_store() -> InMemoryArtifactStore:
    return InMemoryArtifactStore({"docs/u1/intake.txt": SAMPLE_TEXT.encode("utf-8")})


@pytest.fixture
def service(
    rule_store: InMemoryRuleStore,
    referenced_template: Template,
    inline_template: Template,
    artifact_store: InMemoryArtifactStore,
) -> RedactionService:
    documents = InMemoryDocumentStore(
        [Document(id="doc-1", user_id="u1", name="intake.txt", source_location="docs/u1/intake.txt")]
    )
    return RedactionService(
        rules=rule_store,
        templates=InMemoryTemplateStore([referenced_template, inline_template]),
        documents=documents,
        reports=InMemoryReportStore(),
        artifacts=artifact_store,
    )


@pytest.fixture
def log_sink() -> Generator[List[str], None, None]:
    logs: List[str] = []
    handler_id = logger.add(lambda msg: logs.append(str(msg)), level="DEBUG")
    yield logs
    logger.remove(handler_id)
