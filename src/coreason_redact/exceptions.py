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
Exception hierarchy for the redaction engine.

Every error carries a stable `code` discriminant and the identifiers a caller
needs to act on it, so nothing downstream has to pattern-match on messages.
"""

from typing import Any, Dict, List, Optional


class RedactError(Exception):
    """Base exception for all redaction engine errors."""

    code = "redact_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        """Identifiers attached to this error (empty by default)."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details()}


class NotFoundError(RedactError):
    """Raised when a template, document, rule or report does not exist."""

    code = "not_found"

    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind.capitalize()} {item_id} not found")
        self.kind = kind
        self.item_id = item_id

    def details(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.item_id}


class PermissionDeniedError(RedactError):
    """Raised when a user touches a template or document owned by someone else."""

    code = "permission_denied"

    def __init__(self, kind: str, item_id: str, user_id: str) -> None:
        super().__init__(f"User {user_id} is not authorized to access {kind} {item_id}")
        self.kind = kind
        self.item_id = item_id
        self.user_id = user_id

    def details(self) -> Dict[str, Any]:
        return {"kind": self.kind, "id": self.item_id}


class InvalidRequestError(RedactError):
    """Raised when caller input is malformed (e.g. empty feedback)."""

    code = "invalid_request"


class StoreUnavailableError(RedactError):
    """Raised by a store on a transient failure. Safe to retry."""

    code = "store_unavailable"


class IntegrityError(RedactError):
    """
    Base for integrity gate failures.

    Recoverable: the caller may run enrichment on the template and retry.
    """

    code = "integrity_error"
    reason = "failed integrity validation"

    def __init__(self, rule_id: str, rule_name: str, template_id: Optional[str] = None, detail: str = "") -> None:
        where = f" in template {template_id}" if template_id else ""
        message = f"Rule {rule_id} ({rule_name}){where} {self.reason}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.rule_id = rule_id
        self.rule_name = rule_name
        self.template_id = template_id

    def details(self) -> Dict[str, Any]:
        return {"ruleId": self.rule_id, "ruleName": self.rule_name, "templateId": self.template_id}


class MissingMetadataError(IntegrityError):
    """Raised when a rule lacks version or checksum metadata."""

    code = "missing_metadata"
    reason = "is missing required version or checksum"


class ChecksumMismatchError(IntegrityError):
    """Raised when a rule's stored checksum does not match its pattern and version."""

    code = "checksum_mismatch"
    reason = "has a checksum that does not match its pattern and version"


class InvalidPatternError(IntegrityError):
    """Raised when a rule's pattern is not a valid regular expression."""

    code = "invalid_pattern"
    reason = "has an invalid regex pattern"


class PartialEnrichmentError(RedactError):
    """Aggregate of per-item enrichment failures. Not fatal to the enrichment call itself."""

    code = "partial_enrichment"

    def __init__(self, issues: List[Dict[str, Any]]) -> None:
        super().__init__(f"Enrichment completed with {len(issues)} error(s)")
        self.issues = issues

    def details(self) -> Dict[str, Any]:
        return {"errors": self.issues}


class ProcessingError(RedactError):
    """Raised when a document cannot be read or redacted. Terminal for the run."""

    code = "processing_error"


class DocumentGoneError(RedactError):
    """Raised when a document is deleted while its redaction is in flight."""

    code = "document_gone"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document {document_id} was deleted during redaction")
        self.document_id = document_id

    def details(self) -> Dict[str, Any]:
        return {"documentId": self.document_id}


class RedactionPendingError(RedactError):
    """Raised when a caller stops waiting on an in-flight redaction. The run itself continues."""

    code = "redaction_pending"

    def __init__(self, document_id: str) -> None:
        super().__init__(f"Redaction of document {document_id} is still in progress")
        self.document_id = document_id

    def details(self) -> Dict[str, Any]:
        return {"documentId": self.document_id}
