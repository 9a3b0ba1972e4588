"""Relevance stage: pull text candidates from the index within a time budget."""
from __future__ import annotations

import asyncio
import logging
from typing import List

from .config import Settings, settings as default_settings
from .errors import UpstreamUnavailable
from .models import SearchRequest
from .search_index import Candidate, DocumentIndex

logger = logging.getLogger(__name__)


class TextRanker:
    def __init__(self, index: DocumentIndex, config: Settings | None = None) -> None:
        self.index = index
        self.config = config or default_settings

    async def rank(self, request: SearchRequest) -> List[Candidate]:
        """Candidates with relevance normalized to ``[0, 1]``.

        An empty query is a pass-through: every document the index selects for
        the location and filters is a candidate with relevance 0, so pure
        filter/geo queries work.
        """

        location = request.location if self.config.bbox_pushdown else None
        try:
            candidates = await asyncio.wait_for(
                self.index.text_candidates(
                    request.tokens,
                    request.text,
                    request.language,
                    location,
                    self.config.candidate_limit,
                    filters=request.filters,
                ),
                timeout=self.config.text_stage_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable("text index", f"exceeded {self.config.text_stage_timeout}s budget") from exc

        if not request.tokens:
            for candidate in candidates:
                candidate.relevance = 0.0
            return candidates

        best = max((candidate.relevance for candidate in candidates), default=0.0)
        if best > 0:
            for candidate in candidates:
                candidate.relevance = candidate.relevance / best
        logger.debug("text ranker q=%r candidates=%s best_raw=%.3f", request.text, len(candidates), best)
        return candidates
