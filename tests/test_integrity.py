# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

import hashlib
import threading
from typing import Callable, List, Tuple

import pytest

from coreason_redact.exceptions import (
    ChecksumMismatchError,
    IntegrityError,
    InvalidPatternError,
    MissingMetadataError,
    NotFoundError,
    StoreUnavailableError,
)
from coreason_redact.integrity import (
    Enricher,
    IntegrityValidator,
    compute_checksum,
    has_valid_metadata,
    repair_rule,
    revise_rule,
)
from coreason_redact.models import InlineRules, ReferencedRuleIds, Rule, Severity, Template
from coreason_redact.resolver import TemplateResolver
from coreason_redact.store import InMemoryRuleStore, InMemoryTemplateStore

from conftest import make_rule


class CountingRuleStore(InMemoryRuleStore):
    def __init__(self, rules: List[Rule]) -> None:
        self.writes = 0
        super().__init__(rules)
        self.writes = 0

    def save(self, rule: Rule) -> None:
        self.writes += 1
        super().save(rule)


class CountingTemplateStore(InMemoryTemplateStore):
    def __init__(self, templates: List[Template]) -> None:
        self.writes = 0
        super().__init__(templates)

    def replace_inline_rule(self, template_id: str, index: int, rule: Rule) -> None:
        self.writes += 1
        super().replace_inline_rule(template_id, index, rule)


class BrokenRuleStore(CountingRuleStore):
    """Refuses writes for one rule id."""

    def __init__(self, rules: List[Rule], broken_id: str) -> None:
        self.broken_id = ""
        super().__init__(rules)
        self.broken_id = broken_id

    def save(self, rule: Rule) -> None:
        if rule.id == self.broken_id:
            raise StoreUnavailableError(f"write of {rule.id} rejected")
        super().save(rule)


def _enricher(rules: CountingRuleStore, templates: InMemoryTemplateStore) -> Enricher:
    return Enricher(rules, templates, TemplateResolver(rules, retry_attempts=1))


def test_compute_checksum_is_sha256_of_version_and_pattern() -> None:
    expected = hashlib.sha256(b"2:\\d{3}").hexdigest()
    assert compute_checksum(r"\d{3}", 2) == expected
    assert compute_checksum(r"\d{3}", 2) != compute_checksum(r"\d{3}", 3)
    assert compute_checksum(r"\d{3}", 2) != compute_checksum(r"\d{4}", 2)


def test_checksum_ignores_non_pattern_fields() -> None:
    rule = make_rule("r1", "abc")
    changed = rule.model_copy(update={"description": "new", "is_active": False, "severity": Severity.LOW})
    assert has_valid_metadata(changed)


def test_repair_rule_defaults_version() -> None:
    rule = make_rule("r1", "abc", version=None)
    repaired = repair_rule(rule)
    assert repaired.version == 1
    assert repaired.checksum == compute_checksum("abc", 1)
    assert rule.checksum is None


def test_revise_rule_bumps_version() -> None:
    rule = make_rule("r1", "abc", version=3)
    revised = revise_rule(rule, "abcd")
    assert revised.version == 4
    assert revised.pattern == "abcd"
    assert has_valid_metadata(revised)


class TestIntegrityValidator:
    def test_valid_rules_pass(self, sample_rules: List[Rule]) -> None:
        IntegrityValidator().validate(sample_rules, "t1")

    def test_first_offender_is_reported(self) -> None:
        rules = [
            make_rule("ok", "a"),
            make_rule("first", "b", with_checksum=False),
            make_rule("second", "c", version=None),
        ]
        with pytest.raises(MissingMetadataError) as exc_info:
            IntegrityValidator().validate(rules, "t1")
        error = exc_info.value
        assert error.rule_id == "first"
        assert error.template_id == "t1"
        assert error.code == "missing_metadata"
        assert "missing required version or checksum" in error.message
        assert error.to_dict()["ruleId"] == "first"

    def test_checksum_mismatch(self) -> None:
        rule = make_rule("r1", "abc").model_copy(update={"pattern": "abcd"})
        with pytest.raises(ChecksumMismatchError) as exc_info:
            IntegrityValidator().validate([rule])
        assert exc_info.value.rule_id == "r1"
        assert isinstance(exc_info.value, IntegrityError)

    def test_invalid_pattern(self) -> None:
        with pytest.raises(InvalidPatternError) as exc_info:
            IntegrityValidator().validate([make_rule("bad", "(unclosed")])
        assert exc_info.value.rule_id == "bad"

    def test_order_decides_which_error(self) -> None:
        rules = [make_rule("bad", "(unclosed"), make_rule("missing", "a", version=None)]
        with pytest.raises(InvalidPatternError):
            IntegrityValidator().validate(rules)


class TestEnricher:
    def test_enrich_referenced_template_is_idempotent(self) -> None:
        rules = CountingRuleStore([make_rule("a", "x", version=None), make_rule("b", "y", with_checksum=False)])
        templates = InMemoryTemplateStore(
            [Template(id="t1", user_id="u1", name="T", rule_source=ReferencedRuleIds(rule_ids=["a", "b"]))]
        )
        enricher = _enricher(rules, templates)

        first = enricher.enrich_template("t1")
        assert first.success
        assert first.updated_count == 2
        assert rules.writes == 2

        second = enricher.enrich_template("t1")
        assert second.success
        assert second.updated_count == 0
        assert second.message == "No rules needed updating"
        assert rules.writes == 2

        IntegrityValidator().validate(rules.all())

    def test_enrich_inline_template_uses_rule_scoped_writes(self) -> None:
        good = make_rule("good", "g")
        stale = make_rule("stale", "s", version=None)
        rules = CountingRuleStore([])
        templates = CountingTemplateStore(
            [Template(id="t1", user_id="u1", name="T", rule_source=InlineRules(rules=[good, stale]))]
        )
        result = _enricher(rules, templates).enrich_template("t1")

        assert result.updated_count == 1
        assert templates.writes == 1
        assert rules.writes == 0
        stored = templates.get("t1")
        assert stored is not None and isinstance(stored.rule_source, InlineRules)
        assert [r.id for r in stored.rule_source.rules] == ["good", "stale"]
        assert stored.rule_source.rules[1].version == 1
        assert has_valid_metadata(stored.rule_source.rules[1])

    def test_enrich_unknown_template(self) -> None:
        enricher = _enricher(CountingRuleStore([]), InMemoryTemplateStore())
        with pytest.raises(NotFoundError):
            enricher.enrich_template("nope")

    def test_enrich_all_three_templates_five_rules(self) -> None:
        rules = CountingRuleStore(
            [
                make_rule("r1", "a"),
                make_rule("r2", "b", with_checksum=False),
                make_rule("r3", "c"),
                make_rule("r4", "d", with_checksum=False),
                make_rule("r5", "e"),
            ]
        )
        templates = InMemoryTemplateStore(
            [
                Template(id="t1", user_id="u1", name="T1", rule_source=ReferencedRuleIds(rule_ids=["r1", "r2"])),
                Template(id="t2", user_id="u1", name="T2", rule_source=ReferencedRuleIds(rule_ids=["r3", "r4"])),
                Template(id="t3", user_id="u1", name="T3", rule_source=ReferencedRuleIds(rule_ids=["r5"])),
                Template(id="other", user_id="u2", name="X", rule_source=ReferencedRuleIds(rule_ids=["r2"])),
            ]
        )
        result = _enricher(rules, templates).enrich_all_templates("u1")

        assert result.success
        assert result.total_templates == 3
        assert result.updated_templates <= 2
        assert result.updated_rules == 2
        assert result.errors == []
        assert rules.writes == 2

    def test_enrich_all_collects_partial_failures(self) -> None:
        rules = BrokenRuleStore(
            [
                make_rule("r1", "a", version=None),
                make_rule("r2", "b", version=None),
                make_rule("r3", "c", version=None),
            ],
            broken_id="r2",
        )
        templates = InMemoryTemplateStore(
            [Template(id="t1", user_id="u1", name="T", rule_source=ReferencedRuleIds(rule_ids=["r1", "r2", "r3"]))]
        )
        result = _enricher(rules, templates).enrich_all_templates("u1")

        assert result.updated_rules == 2
        assert result.updated_templates == 1
        assert len(result.errors) == 1
        assert result.errors[0].template_id == "t1"
        assert result.errors[0].rule_id == "r2"
        stored = rules.get("r3")
        assert stored is not None and has_valid_metadata(stored)

    def test_shared_rule_is_written_once(self) -> None:
        rules = CountingRuleStore([make_rule("shared", "a", version=None)])
        templates = InMemoryTemplateStore(
            [
                Template(
                    id="t1", user_id="u1", name="T1", rule_source=ReferencedRuleIds(rule_ids=["shared", "shared"])
                ),
                Template(id="t2", user_id="u1", name="T2", rule_source=ReferencedRuleIds(rule_ids=["shared"])),
            ]
        )
        result = _enricher(rules, templates).enrich_all_templates("u1")
        assert result.updated_rules == 1
        assert rules.writes == 1

    def test_inline_duplicate_ids_only_enrich_the_effective_snapshot(self) -> None:
        effective = make_rule("r1", r"\d{3}-\d{2}-\d{4}", version=None)
        shadowed = make_rule("r1", "secret", version=None)
        templates = CountingTemplateStore(
            [Template(id="t1", user_id="u1", name="T", rule_source=InlineRules(rules=[effective, shadowed]))]
        )
        enricher = _enricher(CountingRuleStore([]), templates)

        counts = [enricher.enrich_template("t1").updated_count for _ in range(4)]

        assert counts == [1, 0, 0, 0]
        assert templates.writes == 1
        stored = templates.get("t1")
        assert stored is not None and isinstance(stored.rule_source, InlineRules)
        resolved = TemplateResolver(InMemoryRuleStore()).resolve(stored)
        assert [r.pattern for r in resolved] == [r"\d{3}-\d{2}-\d{4}"]
        IntegrityValidator().validate(resolved, "t1")
        assert stored.rule_source.rules[1].pattern == "secret"
        assert stored.rule_source.rules[1].version is None

    def test_concurrent_enrichment_converges(self) -> None:
        def build() -> Tuple[CountingRuleStore, InMemoryTemplateStore]:
            rules = CountingRuleStore(
                [
                    make_rule("r1", "a", version=None),
                    make_rule("r2", "b", with_checksum=False),
                    make_rule("r3", "c"),
                    make_rule("r4", "d", version=4, with_checksum=False),
                ]
            )
            templates = InMemoryTemplateStore(
                [
                    Template(id="t1", user_id="u1", name="T1", rule_source=ReferencedRuleIds(rule_ids=["r1", "r2"])),
                    Template(
                        id="t2", user_id="u1", name="T2", rule_source=ReferencedRuleIds(rule_ids=["r2", "r3", "r4"])
                    ),
                    Template(
                        id="t3",
                        user_id="u1",
                        name="T3",
                        rule_source=InlineRules(rules=[make_rule("i1", "x", version=None), make_rule("i2", "y")]),
                    ),
                ]
            )
            return rules, templates

        def snapshot(rules: CountingRuleStore, templates: InMemoryTemplateStore) -> List[Tuple]:
            stored = [(r.id, r.pattern, r.version, r.checksum) for r in rules.all()]
            for template in templates.all():
                if isinstance(template.rule_source, InlineRules):
                    stored.extend((r.id, r.pattern, r.version, r.checksum) for r in template.rule_source.rules)
            return sorted(stored)

        sequential_rules, sequential_templates = build()
        sequential = _enricher(sequential_rules, sequential_templates)
        sequential.enrich_template("t1")
        sequential.enrich_all_templates("u1")

        rules, templates = build()
        single = _enricher(rules, templates)
        bulk = _enricher(rules, templates)
        start = threading.Barrier(2)
        failures: List[BaseException] = []

        def run(action: Callable[[], object]) -> None:
            start.wait(timeout=5)
            try:
                action()
            except BaseException as e:
                failures.append(e)

        threads = [
            threading.Thread(target=run, args=(lambda: single.enrich_template("t2"),)),
            threading.Thread(target=run, args=(lambda: bulk.enrich_all_templates("u1"),)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert failures == []
        assert snapshot(rules, templates) == snapshot(sequential_rules, sequential_templates)
        for template_id in ("t1", "t2", "t3"):
            template = templates.get(template_id)
            assert template is not None
            IntegrityValidator().validate(TemplateResolver(rules).resolve(template), template_id)

        again = _enricher(rules, templates).enrich_all_templates("u1")
        assert again.success
        assert again.updated_rules == 0
        assert again.updated_templates == 0


def test_replace_inline_rule_targets_position() -> None:
    templates = InMemoryTemplateStore(
        [
            Template(
                id="t1",
                user_id="u1",
                name="T",
                rule_source=InlineRules(rules=[make_rule("a", "x"), make_rule("b", "y")]),
            )
        ]
    )
    with pytest.raises(NotFoundError):
        templates.replace_inline_rule("t1", 0, make_rule("b", "z"))
    with pytest.raises(NotFoundError):
        templates.replace_inline_rule("t1", 5, make_rule("a", "z"))

    templates.replace_inline_rule("t1", 1, make_rule("b", "z"))
    stored = templates.get("t1")
    assert stored is not None and isinstance(stored.rule_source, InlineRules)
    assert [r.pattern for r in stored.rule_source.rules] == ["x", "z"]
