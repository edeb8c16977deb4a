"""Chunk and embedding index over the record store.

Keys:
  chunk:{id}              JSON DocumentChunk
  embedding:{id}          JSON ChunkEmbedding
  doc_chunks:{doc_id}     set of chunk ids for a document
  course_chunks:{course}  set of chunk ids for a course
"""

from __future__ import annotations

import logging
from collections.abc import Collection
from uuid import uuid4

from batchgrader.models import ChunkEmbedding, CourseDocument, DocumentChunk
from batchgrader.record_store import RecordStore
from batchgrader.retrieval.chunking import chunk_text
from batchgrader.retrieval.embeddings import Embedder
from batchgrader.settings import settings

logger = logging.getLogger(__name__)

CHUNK_PREFIX = "chunk:"
EMBEDDING_PREFIX = "embedding:"
DOC_CHUNKS_PREFIX = "doc_chunks:"
COURSE_CHUNKS_PREFIX = "course_chunks:"


class ChunkIndex:
    def __init__(
        self,
        store: RecordStore,
        embedder: Embedder | None = None,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.chunk_size = chunk_size or settings.chunk_size
        self.chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap

    def index_document(self, document: CourseDocument) -> list[DocumentChunk]:
        """Chunk and embed a document, replacing any chunks it had before."""
        if self.embedder is None:
            raise ValueError("An embedder is required to index documents")

        previous_ids = self.store.set_members(f"{DOC_CHUNKS_PREFIX}{document.id}")
        pieces = chunk_text(document.content, self.chunk_size, self.chunk_overlap)
        vectors = self.embedder.embed([piece.content for piece in pieces]) if pieces else []
        if len(vectors) != len(pieces):
            raise ValueError(f"Embedder returned {len(vectors)} vectors for {len(pieces)} chunks")

        chunks: list[DocumentChunk] = []
        for piece, vector in zip(pieces, vectors):
            chunk = DocumentChunk(
                id=uuid4().hex,
                document_id=document.id,
                course_id=document.course_id,
                assignment_id=document.assignment_id,
                content=piece.content,
                start_index=piece.start_index,
                end_index=piece.end_index,
                chunk_index=piece.chunk_index,
                document_name=document.name,
                document_type=document.document_type,
                embedding_id=uuid4().hex,
            )
            embedding = ChunkEmbedding(id=chunk.embedding_id, chunk_id=chunk.id, vector=vector)
            self.store.set(f"{EMBEDDING_PREFIX}{embedding.id}", embedding.model_dump_json())
            self.store.set(f"{CHUNK_PREFIX}{chunk.id}", chunk.model_dump_json())
            self.store.add_to_set(f"{DOC_CHUNKS_PREFIX}{document.id}", chunk.id)
            self.store.add_to_set(f"{COURSE_CHUNKS_PREFIX}{document.course_id}", chunk.id)
            chunks.append(chunk)

        self._delete_chunks(document.id, previous_ids)
        logger.info(
            "document indexed",
            extra={"document_id": document.id, "chunks": len(chunks), "replaced": len(previous_ids)},
        )
        return chunks

    def get_chunk(self, chunk_id: str) -> DocumentChunk | None:
        raw = self.store.get(f"{CHUNK_PREFIX}{chunk_id}")
        return DocumentChunk.model_validate_json(raw) if raw is not None else None

    def get_embedding(self, embedding_id: str) -> ChunkEmbedding | None:
        raw = self.store.get(f"{EMBEDDING_PREFIX}{embedding_id}")
        return ChunkEmbedding.model_validate_json(raw) if raw is not None else None

    def document_chunks(self, document_id: str) -> list[DocumentChunk]:
        chunks = [self.get_chunk(chunk_id) for chunk_id in self.store.set_members(f"{DOC_CHUNKS_PREFIX}{document_id}")]
        return sorted((chunk for chunk in chunks if chunk is not None), key=lambda chunk: chunk.chunk_index)

    def candidate_chunks(
        self,
        course_id: str,
        assignment_id: str | None = None,
        document_ids: Collection[str] | None = None,
    ) -> list[tuple[DocumentChunk, list[float]]]:
        """Chunks for a course with their vectors.

        With an assignment id, keeps course-wide chunks and chunks tagged with that assignment.
        With document ids, keeps only chunks of those documents.
        """
        allowed = set(document_ids) if document_ids is not None else None
        candidates: list[tuple[DocumentChunk, list[float]]] = []
        for chunk_id in sorted(self.store.set_members(f"{COURSE_CHUNKS_PREFIX}{course_id}")):
            chunk = self.get_chunk(chunk_id)
            if chunk is None:
                continue
            if assignment_id and chunk.assignment_id not in (None, assignment_id):
                continue
            if allowed is not None and chunk.document_id not in allowed:
                continue
            embedding = self.get_embedding(chunk.embedding_id)
            if embedding is None:
                logger.warning("chunk has no embedding", extra={"chunk_id": chunk_id})
                continue
            candidates.append((chunk, embedding.vector))
        return candidates

    def delete_document_chunks(self, document_id: str) -> int:
        chunk_ids = self.store.set_members(f"{DOC_CHUNKS_PREFIX}{document_id}")
        return self._delete_chunks(document_id, chunk_ids)

    def _delete_chunks(self, document_id: str, chunk_ids: set[str]) -> int:
        deleted = 0
        for chunk_id in chunk_ids:
            chunk = self.get_chunk(chunk_id)
            if chunk is not None:
                self.store.delete(f"{EMBEDDING_PREFIX}{chunk.embedding_id}")
                self.store.remove_from_set(f"{COURSE_CHUNKS_PREFIX}{chunk.course_id}", chunk_id)
                deleted += 1
            self.store.remove_from_set(f"{DOC_CHUNKS_PREFIX}{document_id}", chunk_id)
            self.store.delete(f"{CHUNK_PREFIX}{chunk_id}")
        return deleted
