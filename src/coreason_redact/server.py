# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

"""FastAPI server implementation for the redaction engine.

This module provides the HTTP interface over `RedactionService`: template
enrichment and validation, document redaction, status polling, reports and
reviewer updates. Errors are returned as JSON with a stable `code`.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import Field

from coreason_redact import __version__
from coreason_redact.exceptions import (
    InvalidRequestError,
    NotFoundError,
    RedactError,
)
from coreason_redact.main import RedactionService
from coreason_redact.models import CamelModel, Match
from coreason_redact.utils.logger import logger

STATUS_BY_CODE: Dict[str, int] = {
    "not_found": 404,
    "permission_denied": 403,
    "invalid_request": 400,
    "integrity_error": 409,
    "missing_metadata": 409,
    "checksum_mismatch": 409,
    "invalid_pattern": 409,
    "processing_error": 422,
    "document_gone": 410,
    "redaction_pending": 409,
    "store_unavailable": 503,
}


class RedactRequest(CamelModel):
    """Request body for redacting a document."""

    template_id: str
    ai_matches: List[Match] = Field(default_factory=list)


class EntityUpdateRequest(CamelModel):
    """Request body for a reviewer decision on one entity."""

    confirmed: Optional[bool] = None
    feedback: Optional[str] = None


class HealthResponse(CamelModel):
    """Response model for service health check."""

    status: str
    engine: str
    version: str


def _dump(model: CamelModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def create_app(service: Optional[RedactionService] = None) -> FastAPI:
    """Builds the application. A default in-memory service is created on startup if none is given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.service = service if service is not None else RedactionService()
        logger.info("Redaction service started.")
        yield
        logger.info("Redaction service stopped.")

    app = FastAPI(title="coreason-redact", version=__version__, lifespan=lifespan)

    @app.exception_handler(RedactError)
    async def redact_error_handler(request: Request, exc: RedactError) -> JSONResponse:
        status = STATUS_BY_CODE.get(exc.code, 500)
        logger.warning(f"{request.method} {request.url.path} failed with {exc.code}: {exc.message}")
        return JSONResponse(status_code=status, content={"success": False, **exc.to_dict()})

    @app.post("/enrich-templates")
    async def enrich_templates(
        request: Request,
        template: Optional[str] = None,
        all_templates: bool = Query(default=False, alias="all"),
        x_user_id: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        """Repairs missing rule metadata for one template or every template of the caller.

        Raises:
            InvalidRequestError: If neither `template` nor `all=true` is given,
                or `all=true` is given without a caller id.
        """
        svc: RedactionService = request.app.state.service
        if template:
            result = await run_in_threadpool(svc.enrich_template, template, x_user_id)
            return _dump(result)
        if all_templates:
            if not x_user_id:
                raise InvalidRequestError("X-User-Id header is required to enrich all templates")
            result_all = await run_in_threadpool(svc.enrich_all_templates, x_user_id)
            return _dump(result_all)
        raise InvalidRequestError("Specify either a template id or all=true")

    @app.get("/templates/{template_id}/rules")
    async def template_rules(
        request: Request, template_id: str, x_user_id: Optional[str] = Header(default=None)
    ) -> Dict[str, Any]:
        """Returns the template's canonical ordered rule list."""
        svc: RedactionService = request.app.state.service
        rules = svc.resolve_template(template_id, x_user_id)
        return {"templateId": template_id, "rules": [_dump(r) for r in rules]}

    @app.post("/templates/{template_id}/validate")
    async def validate_template(
        request: Request, template_id: str, x_user_id: Optional[str] = Header(default=None)
    ) -> Dict[str, Any]:
        """Runs the integrity gate over the template's rules.

        Raises:
            IntegrityError: 409 for the first offending rule; enrich and retry.
        """
        svc: RedactionService = request.app.state.service
        rules = svc.resolve_template(template_id, x_user_id)
        svc.validate_rule_set(rules, template_id)
        return {"success": True, "templateId": template_id, "ruleCount": len(rules)}

    @app.post("/documents/{document_id}/redact")
    async def redact_document(
        request: Request,
        document_id: str,
        body: RedactRequest,
        x_user_id: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        """Redacts a document with a template.

        A run with no matches answers 200 with `success: false` and
        `requiresManualReview: true`.
        """
        svc: RedactionService = request.app.state.service
        outcome = await run_in_threadpool(
            svc.redact_document, document_id, body.template_id, x_user_id, body.ai_matches
        )
        return _dump(outcome)

    @app.get("/documents/{document_id}")
    async def get_document(
        request: Request, document_id: str, x_user_id: Optional[str] = Header(default=None)
    ) -> Dict[str, Any]:
        svc: RedactionService = request.app.state.service
        document = svc.get_document(document_id, x_user_id)
        return {**_dump(document), "inFlight": svc.is_in_flight(document_id)}

    @app.get("/documents/{document_id}/report")
    async def get_report(
        request: Request, document_id: str, x_user_id: Optional[str] = Header(default=None)
    ) -> Dict[str, Any]:
        svc: RedactionService = request.app.state.service
        report = svc.get_redaction_report(document_id, x_user_id)
        if report is None:
            raise NotFoundError("report", document_id)
        return {
            **_dump(report),
            "countsByCategory": report.counts_by_category(),
            "countsByRule": report.counts_by_rule(),
            "countsByLocation": report.counts_by_location(),
        }

    @app.patch("/documents/{document_id}/report/entities/{entity_id}")
    async def update_entity(
        request: Request,
        document_id: str,
        entity_id: str,
        body: EntityUpdateRequest,
        x_user_id: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        """Confirms or flags an entity and/or attaches feedback. Never re-redacts."""
        svc: RedactionService = request.app.state.service
        entity = svc.update_redaction_entity(
            document_id, entity_id, confirmed=body.confirmed, feedback=body.feedback, user_id=x_user_id
        )
        return _dump(entity)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Checks the health of the redaction service."""
        return HealthResponse(status="ok", engine="presidio-pattern", version=__version__)

    return app


app = create_app()
