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
Reviewer decisions on redacted entities.

Each entity is either confirmed or flagged, and moves only on an explicit
reviewer action. Decisions and feedback are an audit trail: they never
trigger re-scanning or re-redaction of the artifact already produced.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from coreason_redact.exceptions import InvalidRequestError
from coreason_redact.models import RedactedEntity
from coreason_redact.store import ReportStore
from coreason_redact.utils.logger import logger


class ReviewFeedbackEngine:
    """
    Tracks confirm/flag decisions and free-text feedback per entity.
    """

    def __init__(self, report_store: ReportStore) -> None:
        """
        Args:
            report_store: Store holding the reports whose entities are reviewed.
        """
        self.report_store = report_store

    def set_state(self, document_id: str, entity_id: str, confirmed: bool) -> RedactedEntity:
        """Confirms (True) or flags (False) an entity. Feedback is left as is."""
        return self.update(document_id, entity_id, confirmed=confirmed)

    def submit_feedback(
        self, document_id: str, entity_id: str, text: str, confirmed: Optional[bool] = None
    ) -> RedactedEntity:
        """Attaches feedback, changing state only if `confirmed` is given."""
        return self.update(document_id, entity_id, confirmed=confirmed, feedback=text)

    def update(
        self,
        document_id: str,
        entity_id: str,
        confirmed: Optional[bool] = None,
        feedback: Optional[str] = None,
    ) -> RedactedEntity:
        """
        Applies a reviewer decision to a single entity.

        Args:
            document_id: Document whose report holds the entity.
            entity_id: The entity to update.
            confirmed: New state, or None to keep the current one.
            feedback: Free-text feedback, or None to keep the current one.

        Returns:
            The updated entity.

        Raises:
            NotFoundError: If the report or entity does not exist.
            InvalidRequestError: If neither field is given or feedback is blank.
        """
        if confirmed is None and feedback is None:
            raise InvalidRequestError("Nothing to update: provide confirmed and/or feedback")
        if feedback is not None and not feedback.strip():
            raise InvalidRequestError("Feedback must not be empty")

        changes: Dict[str, Any] = {"reviewed_at": datetime.now(timezone.utc)}
        if confirmed is not None:
            changes["confirmed"] = confirmed
        if feedback is not None:
            changes["feedback"] = feedback.strip()
        updated = self.report_store.update_entity(document_id, entity_id, changes)

        state = "confirmed" if updated.confirmed else "flagged"
        logger.info(
            f"Entity {entity_id} of document {document_id} is {state}"
            f"{' with feedback' if feedback is not None else ''}."
        )
        return updated
