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
Main entry point for the redaction engine.

This module exposes the `RedactionService` class, which orchestrates template
resolution, the integrity gate, enrichment, matching, artifact production,
reporting and review. Redaction runs are single-flight per document.
"""

import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Sequence

from coreason_redact.config import settings
from coreason_redact.exceptions import (
    DocumentGoneError,
    NotFoundError,
    PermissionDeniedError,
    ProcessingError,
    RedactError,
    RedactionPendingError,
)
from coreason_redact.integrity import Enricher, IntegrityValidator
from coreason_redact.masking import RedactionExecutor
from coreason_redact.models import (
    Document,
    DocumentStatus,
    EnrichAllResult,
    EnrichTemplateResult,
    Match,
    RedactedEntity,
    RedactionOutcome,
    RedactionReport,
    Rule,
    Template,
)
from coreason_redact.report import ReportBuilder
from coreason_redact.resolver import TemplateResolver
from coreason_redact.review import ReviewFeedbackEngine
from coreason_redact.scanner import MatchEngine
from coreason_redact.store import (
    ArtifactStore,
    DocumentStore,
    InMemoryArtifactStore,
    InMemoryDocumentStore,
    InMemoryReportStore,
    InMemoryRuleStore,
    InMemoryTemplateStore,
    ReportStore,
    RuleStore,
    TemplateStore,
)
from coreason_redact.utils.logger import logger

NO_MATCHES_MESSAGE = "Template yielded no redactions; manual review needed"


def redacted_location_for(source_location: str, suffix: Optional[str] = None) -> str:
    """'documents/u1/report.txt' -> 'documents/u1/report_redacted.txt'."""
    path = PurePosixPath(source_location)
    return str(path.with_name(f"{path.stem}{suffix or settings.redacted_suffix}{path.suffix}"))


class RedactionService:
    """
    The main interface for the redaction engine.
    Coordinates TemplateResolver, IntegrityValidator, Enricher, MatchEngine,
    RedactionExecutor, ReportBuilder and ReviewFeedbackEngine over the stores.
    """

    def __init__(
        self,
        rules: Optional[RuleStore] = None,
        templates: Optional[TemplateStore] = None,
        documents: Optional[DocumentStore] = None,
        reports: Optional[ReportStore] = None,
        artifacts: Optional[ArtifactStore] = None,
        match_engine: Optional[MatchEngine] = None,
        executor: Optional[RedactionExecutor] = None,
    ) -> None:
        """
        Initializes the service. Stores default to in-memory implementations.
        """
        self.rules = rules if rules is not None else InMemoryRuleStore()
        self.templates = templates if templates is not None else InMemoryTemplateStore()
        self.documents = documents if documents is not None else InMemoryDocumentStore()
        self.reports = reports if reports is not None else InMemoryReportStore()
        self.artifacts = artifacts if artifacts is not None else InMemoryArtifactStore()

        self.resolver = TemplateResolver(self.rules)
        self.validator = IntegrityValidator()
        self.enricher = Enricher(self.rules, self.templates, self.resolver)
        self.match_engine = match_engine or MatchEngine()
        self.executor = executor or RedactionExecutor()
        self.report_builder = ReportBuilder()
        self.review = ReviewFeedbackEngine(self.reports)

        self._lock = threading.Lock()
        self._in_flight: Dict[str, "Future[RedactionOutcome]"] = {}

    # Lookups

    def _template(self, template_id: str, user_id: Optional[str] = None) -> Template:
        template = self.templates.get(template_id)
        if template is None:
            raise NotFoundError("template", template_id)
        if user_id is not None and template.user_id != user_id:
            raise PermissionDeniedError("template", template_id, user_id)
        return template

    def get_document(self, document_id: str, user_id: Optional[str] = None) -> Document:
        """
        Returns a document, e.g. to poll its status.

        Raises:
            NotFoundError: If the document does not exist.
            PermissionDeniedError: If `user_id` is given and does not own it.
        """
        document = self.documents.get(document_id)
        if document is None:
            raise NotFoundError("document", document_id)
        if user_id is not None and document.user_id != user_id:
            raise PermissionDeniedError("document", document_id, user_id)
        return document

    # Rules and integrity

    def resolve_template(self, template_id: str, user_id: Optional[str] = None) -> List[Rule]:
        """
        Resolves a template id into its canonical ordered rule list.

        Raises:
            NotFoundError: If the template does not exist.
        """
        return self.resolver.resolve(self._template(template_id, user_id))

    def validate_rule_set(self, rules: Sequence[Rule], template_id: Optional[str] = None) -> None:
        """
        Raises:
            IntegrityError: For the first rule with missing or invalid metadata.
        """
        self.validator.validate(rules, template_id)

    def enrich_template(self, template_id: str, user_id: Optional[str] = None) -> EnrichTemplateResult:
        self._template(template_id, user_id)
        return self.enricher.enrich_template(template_id)

    def enrich_all_templates(self, user_id: str) -> EnrichAllResult:
        return self.enricher.enrich_all_templates(user_id)

    # Redaction

    def is_in_flight(self, document_id: str) -> bool:
        with self._lock:
            return document_id in self._in_flight

    def redact_document(
        self,
        document_id: str,
        template_id: str,
        user_id: Optional[str] = None,
        ai_matches: Sequence[Match] = (),
        timeout: Optional[float] = None,
    ) -> RedactionOutcome:
        """
        Redacts a document with a template.

        At most one run per document is in flight. A call arriving while a run
        is in progress waits for that run and returns its outcome instead of
        starting another one.

        Args:
            document_id: The document to redact.
            template_id: The template whose rules are applied.
            user_id: Caller identity; when given, ownership is enforced.
            ai_matches: Externally detected matches to merge with rule matches.
            timeout: Seconds a coalesced caller waits before giving up.
                Defaults to `redaction_wait_timeout_seconds`.

        Returns:
            The outcome. `success` is False with `requires_manual_review` when
            the template produced no matches.

        Raises:
            NotFoundError: If the document or template does not exist.
            PermissionDeniedError: If the caller does not own them.
            IntegrityError: If a rule fails the integrity gate (enrich and retry).
            ProcessingError: If the document cannot be redacted.
            DocumentGoneError: If the document was deleted mid-run.
            RedactionPendingError: If a coalesced caller times out waiting.
        """
        with self._lock:
            future = self._in_flight.get(document_id)
            owner = future is None
            if future is None:
                future = Future()
                self._in_flight[document_id] = future

        if not owner:
            logger.info(f"Redaction of document {document_id} already in flight; waiting for it.")
            wait = timeout if timeout is not None else settings.redaction_wait_timeout_seconds
            try:
                return future.result(timeout=wait)
            except FutureTimeoutError as e:
                raise RedactionPendingError(document_id) from e

        try:
            outcome = self._run(document_id, template_id, user_id, ai_matches)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(outcome)
            return outcome
        finally:
            with self._lock:
                self._in_flight.pop(document_id, None)

    def _run(
        self,
        document_id: str,
        template_id: str,
        user_id: Optional[str],
        ai_matches: Sequence[Match],
    ) -> RedactionOutcome:
        document = self.get_document(document_id, user_id)
        template = self._template(template_id, user_id)

        rules = self.resolver.resolve(template)
        self.validator.validate(rules, template.id)
        logger.info(f"Redacting document {document_id} with template {template_id} ({len(rules)} rules).")

        previous_status = document.status
        if self.documents.update_status(document_id, DocumentStatus.PROCESSING) is None:
            raise DocumentGoneError(document_id)

        try:
            return self._execute(document, template, rules, ai_matches, previous_status)
        except DocumentGoneError:
            logger.error(f"Document {document_id} was deleted during redaction; aborting.")
            raise
        except RedactError as e:
            self._fail(document_id, e.message)
            raise
        except Exception as e:
            self._fail(document_id, f"Redaction failed: {e}")
            raise ProcessingError(f"Redaction of document {document_id} failed: {e}") from e

    def _execute(
        self,
        document: Document,
        template: Template,
        rules: List[Rule],
        ai_matches: Sequence[Match],
        previous_status: DocumentStatus,
    ) -> RedactionOutcome:
        content = self.artifacts.get(document.source_location)
        if content is None:
            raise ProcessingError(f"Document {document.id} content is missing at {document.source_location}")
        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProcessingError(f"Document {document.id} is not readable UTF-8 text: {e}") from e

        matches = self.match_engine.scan(text, rules, ai_matches)

        # Checkpoint: nothing is written for a document deleted during matching.
        if self.documents.get(document.id) is None:
            raise DocumentGoneError(document.id)

        if not matches:
            logger.warning(f"Document {document.id}: {NO_MATCHES_MESSAGE}.")
            self.documents.update_status(document.id, previous_status)
            return RedactionOutcome(
                success=False,
                document_id=document.id,
                requires_manual_review=True,
                message=NO_MATCHES_MESSAGE,
            )

        artifact = self.executor.apply(document, content, matches)
        redacted_location = redacted_location_for(document.source_location)
        redacted_url = self.artifacts.put(redacted_location, artifact.content)

        report = self.report_builder.build(document.id, matches, rules, text=text, template_id=template.id)
        self.reports.save(report)

        if self.documents.update_status(document.id, DocumentStatus.REDACTED, redacted_location=redacted_url) is None:
            self.reports.delete(document.id)
            self.artifacts.delete(redacted_location)
            raise DocumentGoneError(document.id)

        logger.info(f"Redacted document {document.id}: {artifact.mask_count} spans masked.")
        return RedactionOutcome(success=True, document_id=document.id, redacted_url=redacted_url, report=report)

    def _fail(self, document_id: str, message: str) -> None:
        logger.error(f"Redaction of document {document_id} failed: {message}")
        self.documents.update_status(document_id, DocumentStatus.FAILED, error=message)

    # Reports and review

    def get_redaction_report(self, document_id: str, user_id: Optional[str] = None) -> Optional[RedactionReport]:
        """Returns the document's report, or None if it has not been redacted."""
        if user_id is not None:
            self.get_document(document_id, user_id)
        return self.reports.get(document_id)

    def update_redaction_entity(
        self,
        document_id: str,
        entity_id: str,
        confirmed: Optional[bool] = None,
        feedback: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RedactedEntity:
        """Records a reviewer decision on one entity. Never re-redacts."""
        if user_id is not None:
            self.get_document(document_id, user_id)
        return self.review.update(document_id, entity_id, confirmed=confirmed, feedback=feedback)
