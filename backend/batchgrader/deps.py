"""Request-scoped dependency providers for the routers."""

from __future__ import annotations

import logging

from fastapi import Depends

from batchgrader.context_store import ContextStore
from batchgrader.errors import MissingDependencyError
from batchgrader.pipeline.orchestrator import SubmissionProcessor, build_processor
from batchgrader.reconciler import Reconciler
from batchgrader.record_store import get_record_store
from batchgrader.repository import BatchRepository
from batchgrader.retrieval.embeddings import get_embedder
from batchgrader.retrieval.index import ChunkIndex
from batchgrader.settings import settings
from batchgrader.storage_provider import get_storage_provider

logger = logging.getLogger(__name__)


def get_repository() -> BatchRepository:
    return BatchRepository(get_record_store(), get_storage_provider())


def get_reconciler(repository: BatchRepository = Depends(get_repository)) -> Reconciler:
    return Reconciler(repository)


def get_processor(repository: BatchRepository = Depends(get_repository)) -> SubmissionProcessor:
    return build_processor(repository)


def get_context_store() -> ContextStore:
    store = get_record_store()
    try:
        embedder = get_embedder(settings.embedder)
    except MissingDependencyError as exc:
        logger.info("document indexing disabled", extra={"reason": str(exc)})
        embedder = None
    return ContextStore(store, ChunkIndex(store, embedder))
