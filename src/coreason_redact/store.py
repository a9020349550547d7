# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_redact

"""Storage collaborators for rules, templates, documents, reports and artifacts.

Persistence and blob storage live outside the engine. This module defines the
protocols the engine talks to plus thread-safe in-memory implementations, a
filesystem artifact store, and a JSON workspace format used by the CLI.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from pydantic import BaseModel, Field

from coreason_redact.exceptions import NotFoundError
from coreason_redact.models import (
    Document,
    DocumentStatus,
    InlineRules,
    RedactedEntity,
    RedactionReport,
    Rule,
    Template,
)


class RuleStore(Protocol):
    def get(self, rule_id: str) -> Optional[Rule]: ...

    def save(self, rule: Rule) -> None: ...


class TemplateStore(Protocol):
    def get(self, template_id: str) -> Optional[Template]: ...

    def save(self, template: Template) -> None: ...

    def list_for_user(self, user_id: str) -> List[Template]: ...

    def replace_inline_rule(self, template_id: str, index: int, rule: Rule) -> None: ...


class DocumentStore(Protocol):
    def get(self, document_id: str) -> Optional[Document]: ...

    def save(self, document: Document) -> None: ...

    def delete(self, document_id: str) -> None: ...

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        redacted_location: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[Document]: ...


class ReportStore(Protocol):
    def get(self, document_id: str) -> Optional[RedactionReport]: ...

    def save(self, report: RedactionReport) -> None: ...

    def update_entity(self, document_id: str, entity_id: str, changes: Mapping[str, Any]) -> RedactedEntity: ...

    def delete(self, document_id: str) -> None: ...


class ArtifactStore(Protocol):
    def get(self, location: str) -> Optional[bytes]: ...

    def put(self, location: str, data: bytes) -> str: ...

    def delete(self, location: str) -> None: ...


class InMemoryRuleStore:
    """Rules keyed by id. Returns copies so callers cannot mutate stored state."""

    def __init__(self, rules: Optional[List[Rule]] = None) -> None:
        self._lock = threading.RLock()
        self._rules: Dict[str, Rule] = {}
        for rule in rules or []:
            self.save(rule)

    def get(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            rule = self._rules.get(rule_id)
            return rule.model_copy(deep=True) if rule else None

    def save(self, rule: Rule) -> None:
        with self._lock:
            self._rules[rule.id] = rule.model_copy(deep=True)

    def delete(self, rule_id: str) -> None:
        with self._lock:
            self._rules.pop(rule_id, None)

    def all(self) -> List[Rule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._rules.values()]


class InMemoryTemplateStore:
    def __init__(self, templates: Optional[List[Template]] = None) -> None:
        self._lock = threading.RLock()
        self._templates: Dict[str, Template] = {}
        for template in templates or []:
            self.save(template)

    def get(self, template_id: str) -> Optional[Template]:
        with self._lock:
            template = self._templates.get(template_id)
            return template.model_copy(deep=True) if template else None

    def save(self, template: Template) -> None:
        with self._lock:
            self._templates[template.id] = template.model_copy(deep=True)

    def list_for_user(self, user_id: str) -> List[Template]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._templates.values() if t.user_id == user_id]

    def all(self) -> List[Template]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._templates.values()]

    def replace_inline_rule(self, template_id: str, index: int, rule: Rule) -> None:
        """
        Replaces the embedded rule snapshot at `index`, leaving the rest of the template untouched.

        Raises:
            NotFoundError: If the template is gone or the snapshot at `index` is no longer `rule.id`.
        """
        with self._lock:
            template = self._templates.get(template_id)
            if template is None:
                raise NotFoundError("template", template_id)
            if not isinstance(template.rule_source, InlineRules):
                raise NotFoundError("inline rule", rule.id)
            rules = template.rule_source.rules
            if not 0 <= index < len(rules) or rules[index].id != rule.id:
                raise NotFoundError("inline rule", rule.id)
            rules[index] = rule.model_copy(deep=True)


class InMemoryDocumentStore:
    def __init__(self, documents: Optional[List[Document]] = None) -> None:
        self._lock = threading.RLock()
        self._documents: Dict[str, Document] = {}
        for document in documents or []:
            self.save(document)

    def get(self, document_id: str) -> Optional[Document]:
        with self._lock:
            document = self._documents.get(document_id)
            return document.model_copy(deep=True) if document else None

    def save(self, document: Document) -> None:
        with self._lock:
            self._documents[document.id] = document.model_copy(deep=True)

    def delete(self, document_id: str) -> None:
        with self._lock:
            self._documents.pop(document_id, None)

    def all(self) -> List[Document]:
        with self._lock:
            return [d.model_copy(deep=True) for d in self._documents.values()]

    def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        redacted_location: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Optional[Document]:
        """
        Updates a document's status fields.

        Returns:
            The updated document, or None if it no longer exists.
        """
        with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                return None
            document.status = status
            if redacted_location is not None:
                document.redacted_location = redacted_location
            document.error = error
            document.updated_at = datetime.now(timezone.utc)
            return document.model_copy(deep=True)


class InMemoryReportStore:
    """Reports keyed by document id, so a document has at most one report."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._reports: Dict[str, RedactionReport] = {}

    def get(self, document_id: str) -> Optional[RedactionReport]:
        with self._lock:
            report = self._reports.get(document_id)
            return report.model_copy(deep=True) if report else None

    def save(self, report: RedactionReport) -> None:
        with self._lock:
            self._reports[report.document_id] = report.model_copy(deep=True)

    def delete(self, document_id: str) -> None:
        with self._lock:
            self._reports.pop(document_id, None)

    def all(self) -> List[RedactionReport]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._reports.values()]

    def update_entity(self, document_id: str, entity_id: str, changes: Mapping[str, Any]) -> RedactedEntity:
        """Applies field changes to a single entity of a stored report; other entities are untouched."""
        with self._lock:
            report = self._reports.get(document_id)
            if report is None:
                raise NotFoundError("report", document_id)
            for index, existing in enumerate(report.redacted_entities):
                if existing.id == entity_id:
                    updated = existing.model_copy(update=dict(changes))
                    report.redacted_entities[index] = updated
                    return updated.model_copy(deep=True)
            raise NotFoundError("entity", entity_id)


class InMemoryArtifactStore:
    """Blob storage stand-in. `put` returns a `memory://` URL."""

    def __init__(self, blobs: Optional[Dict[str, bytes]] = None) -> None:
        self._lock = threading.RLock()
        self._blobs: Dict[str, bytes] = dict(blobs or {})

    def get(self, location: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(location)

    def put(self, location: str, data: bytes) -> str:
        with self._lock:
            self._blobs[location] = bytes(data)
        return f"memory://{location}"

    def delete(self, location: str) -> None:
        with self._lock:
            self._blobs.pop(location, None)


class FileArtifactStore:
    """Artifact store over a local directory. Locations are paths relative to `root`."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, location: str) -> Path:
        path = (self.root / location).resolve()
        if self.root.resolve() not in path.parents and path != self.root.resolve():
            raise NotFoundError("artifact", location)
        return path

    def get(self, location: str) -> Optional[bytes]:
        path = self._path(location)
        if not path.is_file():
            return None
        return path.read_bytes()

    def put(self, location: str, data: bytes) -> str:
        path = self._path(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path.as_uri()

    def delete(self, location: str) -> None:
        self._path(location).unlink(missing_ok=True)


class Workspace(BaseModel):
    """
    JSON snapshot of rules, templates, documents and reports.

    Template entries are raw records and go through `Template.from_record`, so
    files may store rules inline or by id.
    """

    rules: List[Rule] = Field(default_factory=list)
    templates: List[Dict[str, Any]] = Field(default_factory=list)
    documents: List[Document] = Field(default_factory=list)
    reports: List[RedactionReport] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Path) -> "Workspace":
        return cls.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))

    def dump(self, path: Path) -> None:
        Path(path).write_text(self.model_dump_json(by_alias=True, indent=2), encoding="utf-8")

    def to_stores(self) -> "Stores":
        reports = InMemoryReportStore()
        for report in self.reports:
            reports.save(report)
        return Stores(
            rules=InMemoryRuleStore(self.rules),
            templates=InMemoryTemplateStore([Template.from_record(t) for t in self.templates]),
            documents=InMemoryDocumentStore(self.documents),
            reports=reports,
        )

    @classmethod
    def from_stores(cls, stores: "Stores") -> "Workspace":
        return cls(
            rules=stores.rules.all(),
            templates=[t.model_dump(mode="json", by_alias=True) for t in stores.templates.all()],
            documents=stores.documents.all(),
            reports=stores.reports.all(),
        )


class Stores:
    """The in-memory store set a workspace loads into."""

    def __init__(
        self,
        rules: InMemoryRuleStore,
        templates: InMemoryTemplateStore,
        documents: InMemoryDocumentStore,
        reports: InMemoryReportStore,
    ) -> None:
        self.rules = rules
        self.templates = templates
        self.documents = documents
        self.reports = reports
