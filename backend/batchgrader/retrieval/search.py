"""Hybrid retrieval of course material for grading.

Scores combine embedding similarity and keyword overlap (0.7 / 0.3). Context is
assembled under a hard character budget; when nothing relevant survives the
relevance threshold, the course summary is used instead.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from batchgrader.models import Citation, DocumentChunk, RetrievalMetrics, RubricCriterion
from batchgrader.retrieval.embeddings import Embedder, cosine_similarity
from batchgrader.retrieval.index import ChunkIndex
from batchgrader.settings import settings

logger = logging.getLogger(__name__)

SEMANTIC_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3
SNIPPET_CHARS = 200
BLOCK_SEPARATOR = "\n\n---\n\n"
SECTION_SEPARATOR = "\n\n"
_WORD_RE = re.compile(r"\w+")


@dataclass(frozen=True)
class RetrievalConfig:
    max_context_chars: int = 8000
    min_relevance_score: float = 0.25
    high_confidence_score: float = 0.5
    max_chunks_per_criterion: int = 2
    general_context_chunks: int = 3
    transcript_query_chars: int = 1000

    @classmethod
    def from_settings(cls) -> "RetrievalConfig":
        return cls(
            max_context_chars=settings.max_context_chars,
            min_relevance_score=settings.min_relevance_score,
            high_confidence_score=settings.high_confidence_score,
            max_chunks_per_criterion=settings.max_chunks_per_criterion,
            general_context_chunks=settings.general_context_chunks,
            transcript_query_chars=settings.transcript_query_chars,
        )


@dataclass
class RetrievedChunk:
    chunk: DocumentChunk
    score: float
    semantic_score: float
    keyword_score: float


@dataclass
class RetrievalResult:
    formatted_context: str
    citations: list[Citation] = field(default_factory=list)
    metrics: RetrievalMetrics = field(default_factory=RetrievalMetrics)


@dataclass
class CriterionContext:
    criterion_id: str
    criterion_name: str
    formatted_context: str = ""
    citations: list[Citation] = field(default_factory=list)


@dataclass
class CriterionRetrievalResult:
    formatted_context: str
    criteria: list[CriterionContext] = field(default_factory=list)
    metrics: RetrievalMetrics = field(default_factory=RetrievalMetrics)

    @property
    def citations(self) -> list[Citation]:
        return [citation for context in self.criteria for citation in context.citations]


def keyword_terms(text: str) -> set[str]:
    return {token for token in _WORD_RE.findall(text.lower()) if len(token) > 2}


def keyword_score(terms: set[str], content: str) -> float:
    """Fraction of query terms that appear in the content."""
    if not terms:
        return 0.0
    return len(terms & keyword_terms(content)) / len(terms)


def make_citation(item: RetrievedChunk) -> Citation:
    content = item.chunk.content
    snippet = content[:SNIPPET_CHARS] + ("..." if len(content) > SNIPPET_CHARS else "")
    return Citation(
        chunk_id=item.chunk.id,
        document_name=item.chunk.document_name,
        snippet=snippet,
        relevance_score=round(item.score, 4),
    )


def _metrics(included: list[RetrievedChunk], formatted: str, config: RetrievalConfig, used_fallback: bool) -> RetrievalMetrics:
    scores = [item.score for item in included]
    return RetrievalMetrics(
        chunks_retrieved=len(included),
        average_relevance=round(sum(scores) / len(scores), 4) if scores else 0.0,
        high_confidence_count=sum(1 for score in scores if score >= config.high_confidence_score),
        used_fallback=used_fallback,
        context_chars_used=len(formatted),
    )


class ContextRetriever:
    def __init__(self, index: ChunkIndex, embedder: Embedder, config: RetrievalConfig | None = None) -> None:
        self.index = index
        self.embedder = embedder
        self.config = config or RetrievalConfig.from_settings()

    def hybrid_search(
        self,
        query: str,
        course_id: str,
        assignment_id: str | None = None,
        top_k: int = 5,
        document_ids: Collection[str] | None = None,
    ) -> list[RetrievedChunk]:
        """Rank course chunks by 0.7 * cosine similarity + 0.3 * keyword overlap."""
        unique: dict[str, tuple[DocumentChunk, list[float]]] = {}
        for chunk, vector in self.index.candidate_chunks(course_id, assignment_id, document_ids):
            unique.setdefault(chunk.id, (chunk, vector))
        if not unique or top_k <= 0:
            return []

        chunks = [chunk for chunk, _ in unique.values()]
        matrix = np.asarray([vector for _, vector in unique.values()], dtype=np.float32)
        query_vector = np.asarray(self.embedder.embed([query])[0], dtype=np.float32)
        semantic = cosine_similarity(query_vector, matrix)
        terms = keyword_terms(query)

        ranked = []
        for chunk, semantic_score in zip(chunks, semantic.tolist()):
            lexical = keyword_score(terms, chunk.content)
            ranked.append(
                RetrievedChunk(
                    chunk=chunk,
                    score=SEMANTIC_WEIGHT * semantic_score + KEYWORD_WEIGHT * lexical,
                    semantic_score=semantic_score,
                    keyword_score=lexical,
                )
            )
        ranked.sort(key=lambda item: (-item.score, item.chunk.document_id, item.chunk.chunk_index))
        return ranked[:top_k]

    def _fallback(self, course_summary: str | None) -> str:
        return (course_summary or "")[: self.config.max_context_chars]

    def retrieve_context_for_grading(
        self,
        transcript: str,
        course_id: str,
        assignment_id: str | None = None,
        course_summary: str | None = None,
        document_ids: Collection[str] | None = None,
    ) -> RetrievalResult:
        """General course context for a whole transcript."""
        config = self.config
        query = transcript[: config.transcript_query_chars * 2]
        ranked = self.hybrid_search(
            query, course_id, assignment_id, top_k=config.general_context_chunks * 2, document_ids=document_ids
        )
        relevant = [item for item in ranked if item.score >= config.min_relevance_score][: config.general_context_chunks]

        blocks: list[str] = []
        included: list[RetrievedChunk] = []
        used = 0
        for item in relevant:
            block = f"[{item.chunk.document_name}]\n{item.chunk.content}"
            cost = len(block) + (len(BLOCK_SEPARATOR) if blocks else 0)
            if used + cost > config.max_context_chars:
                break
            blocks.append(block)
            included.append(item)
            used += cost

        average = sum(item.score for item in included) / len(included) if included else 0.0
        if not included or average < config.min_relevance_score:
            formatted = self._fallback(course_summary)
            return RetrievalResult(formatted, [], _metrics([], formatted, config, used_fallback=bool(formatted)))

        formatted = BLOCK_SEPARATOR.join(blocks)
        return RetrievalResult(
            formatted_context=formatted,
            citations=[make_citation(item) for item in included],
            metrics=_metrics(included, formatted, config, used_fallback=False),
        )

    def retrieve_context_by_criterion(
        self,
        transcript: str,
        criteria: list[RubricCriterion],
        course_id: str,
        assignment_id: str | None = None,
        course_summary: str | None = None,
        document_ids: Collection[str] | None = None,
    ) -> CriterionRetrievalResult:
        """Per-criterion citations under one shared character budget.

        Searches run in parallel; the budget is then spent in criterion order and
        criteria after the first entry that does not fit get no citations. A failed
        search leaves that criterion without citations.
        """
        config = self.config
        transcript_prefix = transcript[: config.transcript_query_chars]

        def search(criterion: RubricCriterion) -> list[RetrievedChunk]:
            query = f"{criterion.name}: {criterion.description}\n\nStudent said: {transcript_prefix}"
            try:
                return self.hybrid_search(
                    query,
                    course_id,
                    assignment_id,
                    top_k=config.max_chunks_per_criterion * 2,
                    document_ids=document_ids,
                )
            except Exception:
                logger.warning(
                    "criterion retrieval failed",
                    extra={"criterion": criterion.name, "course_id": course_id},
                    exc_info=True,
                )
                return []

        if criteria:
            with ThreadPoolExecutor(max_workers=min(len(criteria), 8)) as pool:
                rankings = list(pool.map(search, criteria))
        else:
            rankings = []

        contexts: list[CriterionContext] = []
        sections: list[str] = []
        included: list[RetrievedChunk] = []
        used = 0
        exhausted = False
        for criterion, ranked in zip(criteria, rankings):
            context = CriterionContext(criterion_id=criterion.id, criterion_name=criterion.name)
            if exhausted:
                contexts.append(context)
                continue
            relevant = [item for item in ranked if item.score >= config.min_relevance_score]
            header = f"Criterion: {criterion.name}"
            entries: list[str] = []
            for item in relevant[: config.max_chunks_per_criterion]:
                entry = f"- [{item.chunk.document_name}] {item.chunk.content}"
                if entries:
                    cost = 1 + len(entry)
                else:
                    cost = (len(SECTION_SEPARATOR) if sections else 0) + len(header) + 1 + len(entry)
                if used + cost > config.max_context_chars:
                    exhausted = True
                    break
                entries.append(entry)
                context.citations.append(make_citation(item))
                included.append(item)
                used += cost
            if entries:
                context.formatted_context = "\n".join([header, *entries])
                sections.append(context.formatted_context)
            contexts.append(context)

        average = sum(item.score for item in included) / len(included) if included else 0.0
        if not included or average < config.min_relevance_score:
            formatted = self._fallback(course_summary)
            empty = [CriterionContext(criterion_id=c.id, criterion_name=c.name) for c in criteria]
            return CriterionRetrievalResult(formatted, empty, _metrics([], formatted, config, used_fallback=bool(formatted)))

        formatted = SECTION_SEPARATOR.join(sections)
        return CriterionRetrievalResult(
            formatted_context=formatted,
            criteria=contexts,
            metrics=_metrics(included, formatted, config, used_fallback=False),
        )
