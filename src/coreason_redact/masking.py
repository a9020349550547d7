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
import time
from typing import Callable, List, MutableMapping, Optional, Sequence, Tuple

from cachetools import TTLCache

from coreason_redact.config import settings
from coreason_redact.exceptions import ProcessingError
from coreason_redact.models import Document, Match, RedactedArtifact
from coreason_redact.utils.logger import logger

# Line and page breaks survive masking so the layout of the artifact matches the source.
_LAYOUT_CHARS = frozenset("\n\r\f")


class RedactionExecutor:
    """
    Applies confirmed matches to document content and produces a redacted artifact.

    The source content is never modified. Output is a pure function of
    (content, match spans, mask char), so identical inputs give byte-identical
    artifacts; results are cached on that key.
    """

    def __init__(
        self,
        mask_char: Optional[str] = None,
        cache_ttl_seconds: Optional[float] = None,
        cache_max_size: Optional[int] = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.mask_char = mask_char or settings.mask_char
        self._cache: MutableMapping[Tuple[str, str, str], RedactedArtifact] = TTLCache(
            maxsize=cache_max_size or settings.artifact_cache_max_size,
            ttl=cache_ttl_seconds or settings.artifact_cache_ttl_seconds,
            timer=timer,
        )
        self._lock = threading.Lock()

    def apply(self, document: Document, content: bytes, confirmed_matches: Sequence[Match]) -> RedactedArtifact:
        """
        Masks every confirmed span in the document content.

        Args:
            document: The document being redacted (read only).
            content: The original document bytes (UTF-8 text).
            confirmed_matches: Matches to mask. Overlaps are tolerated.

        Returns:
            The redacted artifact.

        Raises:
            ProcessingError: If the content is not UTF-8 text, a span lies outside it,
                or a masked span is still readable in the output.
        """
        key = (
            hashlib.sha256(content).hexdigest(),
            self._fingerprint(confirmed_matches),
            self.mask_char,
        )
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None and cached.document_id == document.id:
            return cached.model_copy(deep=True)

        try:
            text = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProcessingError(f"Document {document.id} is not readable UTF-8 text: {e}") from e

        masked = list(text)
        masked_count = 0
        for start, end in sorted({(m.start, m.end) for m in confirmed_matches}):
            if start < 0 or end > len(text) or end <= start:
                raise ProcessingError(
                    f"Match span [{start}, {end}) does not fit document {document.id} of length {len(text)}"
                )
            for index in range(start, end):
                if text[index] not in _LAYOUT_CHARS:
                    masked[index] = self.mask_char
            masked_count += 1

        data = "".join(masked).encode("utf-8")
        self.verify(document, data, confirmed_matches)
        artifact = RedactedArtifact(
            document_id=document.id,
            content=data,
            sha256=hashlib.sha256(data).hexdigest(),
            mask_count=masked_count,
        )
        with self._lock:
            self._cache[key] = artifact
        return artifact.model_copy(deep=True)

    def verify(self, document: Document, redacted: bytes, confirmed_matches: Sequence[Match]) -> None:
        """
        Checks a redacted artifact before it is released (Fail Closed).

        Raises:
            ProcessingError: If the text of any confirmed match is still readable at its span.
        """
        text = redacted.decode("utf-8", errors="replace")
        leaked = 0
        for match in confirmed_matches:
            if not match.matched_text.strip("".join(_LAYOUT_CHARS) + self.mask_char):
                continue
            if text[match.start : match.end] == match.matched_text:
                leaked += 1
        if leaked:
            logger.error(f"Verification of document {document.id} found {leaked} unmasked span(s).")
            raise ProcessingError(f"Redaction of document {document.id} left {leaked} span(s) readable")

    @staticmethod
    def _fingerprint(matches: Sequence[Match]) -> str:
        spans: List[str] = [f"{start}:{end}" for start, end in sorted({(m.start, m.end) for m in matches})]
        return hashlib.sha256(",".join(spans).encode("utf-8")).hexdigest()
