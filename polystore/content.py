"""
ContentStore: classified, embedded social content on top of StorageService.

Works over whichever backend the service was built for. The classifier is
an opaque async callable `classify(text) -> dict`; its result is stored
verbatim under `classification`. Embeddings are stored under `embedding`
so every backend's vector search can find them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from polystore.embeddings import EmbeddingGenerator
from polystore.errors import NotInitialized
from polystore.models import FindOptions, ModelSchema, Record, SortOrder, VectorSearchOptions, VectorSearchResult
from polystore.similarity import rank_by_similarity
from polystore.storage import Repository, StorageService, supports_vector_search

logger = logging.getLogger(__name__)

Classifier = Callable[[str], Awaitable[dict]]

EMBEDDING_FIELD = "embedding"
ENGAGEMENT_FIELDS = ("likes", "shares", "comments", "reach")

CONTENT_SCHEMA = ModelSchema(
    collection="content",
    defaults={"metadata": dict},
    timestamps=True,
    vector_fields=(EMBEDDING_FIELD,),
)


@dataclass
class ContentSearchParams:
    query: str | None = None
    platform: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    limit: int = 20
    offset: int = 0
    semantic_query: str | None = None
    min_score: float = 0.6


def _newest_first(limit: int, skip: int = 0) -> FindOptions:
    return FindOptions(skip=skip, limit=limit, sort=(("timestamp", SortOrder.DESC),))


class ContentStore:
    def __init__(
        self,
        storage: StorageService,
        classifier: Classifier,
        embeddings: EmbeddingGenerator | None = None,
        entity: str = "Content",
        schema: ModelSchema = CONTENT_SCHEMA,
    ):
        self.storage = storage
        self.classifier = classifier
        self.embeddings = embeddings
        self.entity = entity
        self.schema = schema
        self._repository: Repository | None = None

    async def initialize(self):
        """Connect if needed, register the content model and bind the repository."""
        if not self.storage.is_connected():
            logger.debug("Storage not connected, connecting...")
            await self.storage.connect()
        self.storage.register_model(self.entity, self.schema)
        self._repository = self.storage.get_repository(self.entity)
        logger.info("Content repository initialized (%s)", self.storage.kind.value)

    @property
    def repository(self) -> Repository:
        if self._repository is None:
            raise NotInitialized("ContentStore is not initialized, call initialize() first")
        return self._repository

    async def _embed(self, text: str) -> list[float] | None:
        if self.embeddings is None:
            return None
        return await self.embeddings.generate(text)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_content(
        self,
        text: str,
        platform: str,
        timestamp: str,
        metadata: dict | None = None,
    ) -> Record:
        repository = self.repository
        logger.debug("Classifying content: %r", text[:50])
        classification = await self.classifier(text)
        record: Record = {
            "text": text,
            "platform": platform,
            "timestamp": timestamp,
            "engagementMetrics": {name: 0 for name in ENGAGEMENT_FIELDS},
            "classification": classification,
            "metadata": dict(metadata or {}),
        }
        embedding = await self._embed(text)
        if embedding is not None:
            record[EMBEDDING_FIELD] = embedding
        created = await repository.create(record)
        logger.debug("Created content %s", created["id"])
        return created

    async def get_content(self, id: str) -> Record | None:
        content = await self.repository.find_by_id(id)
        if content is None:
            logger.debug("Content %s not found", id)
        return content

    async def search_content(self, params: ContentSearchParams | None = None) -> list[Record]:
        """Structured search, newest first."""
        params = params or ContentSearchParams()
        flt: dict[str, Any] = {}
        if params.platform:
            flt["platform"] = params.platform
        if params.start_date or params.end_date:
            flt["timestamp"] = {}
            if params.start_date:
                flt["timestamp"]["gte"] = params.start_date
            if params.end_date:
                flt["timestamp"]["lte"] = params.end_date
        if params.query:
            flt["text"] = {"contains": params.query}

        results = await self.repository.find(flt, _newest_first(params.limit, params.offset))
        logger.debug("Found %d content items matching search criteria", len(results))
        return results

    async def update_content(
        self,
        id: str,
        text: str | None = None,
        metadata: dict | None = None,
        engagement: dict | None = None,
    ) -> Record | None:
        """
        Apply a partial update. Changed text is reclassified and re-embedded;
        metadata and engagement metrics merge into the stored values.
        """
        existing = await self.get_content(id)
        if existing is None:
            logger.warning("Attempted to update non-existent content %s", id)
            return None

        patch: Record = {}
        if text:
            patch["text"] = text
            patch["classification"] = await self.classifier(text)
            embedding = await self._embed(text)
            if embedding is not None:
                patch[EMBEDDING_FIELD] = embedding
        if metadata:
            patch["metadata"] = {**(existing.get("metadata") or {}), **metadata}
        if engagement:
            current = existing.get("engagementMetrics") or {}
            patch["engagementMetrics"] = {
                name: engagement[name] if engagement.get(name) is not None else current.get(name, 0)
                for name in ENGAGEMENT_FIELDS
            }
        return await self.repository.update_by_id(id, patch)

    async def delete_content(self, id: str) -> bool:
        deleted = await self.repository.delete_by_id(id)
        if deleted is None:
            logger.debug("Content %s not found for deletion", id)
            return False
        return True

    async def related_content(self, id: str, limit: int = 5) -> list[Record]:
        """Content sharing at least one classification topic, excluding `id`."""
        content = await self.get_content(id)
        if content is None:
            logger.warning("Attempted to find related content for non-existent %s", id)
            return []
        topics = (content.get("classification") or {}).get("topics") or []
        if not topics:
            return []
        flt = {"id": {"ne": id}, "classification.topics": {"in": list(topics)}}
        return await self.repository.find(flt, _newest_first(limit))

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def generate_embedding(self, id: str) -> Record | None:
        """(Re)compute and store the embedding of an existing item."""
        if self.embeddings is None:
            logger.warning("No embedding generator configured, cannot generate embeddings")
            return None
        content = await self.get_content(id)
        if content is None:
            logger.warning("Content %s not found", id)
            return None
        embedding = await self.embeddings.generate(content.get("text") or "")
        return await self.repository.update_by_id(id, {EMBEDDING_FIELD: embedding})

    async def _similar_to_vector(
        self,
        vector: list[float],
        limit: int,
        min_score: float,
        exclude: str | None = None,
    ) -> list[VectorSearchResult]:
        repository = self.repository
        # One extra slot so dropping the source item still leaves `limit`
        wanted = limit + 1 if exclude else limit
        if supports_vector_search(repository):
            results = await repository.vector_search(
                EMBEDDING_FIELD, vector, VectorSearchOptions(limit=wanted, min_score=min_score),
            )
        else:
            logger.warning("Repository does not support vector search, ranking in memory")
            candidates = await repository.find({EMBEDDING_FIELD: {"ne": None}})
            results = rank_by_similarity(candidates, EMBEDDING_FIELD, vector, wanted, min_score)
        if exclude:
            results = [r for r in results if r.item.get("id") != exclude]
        return results[:limit]

    async def find_similar(
        self,
        id_or_text: str,
        limit: int = 10,
        min_score: float = 0.7,
        use_existing_embedding: bool = True,
    ) -> list[VectorSearchResult]:
        """
        Items similar to a stored item (by id) or to free text.

        A stored item's own embedding is reused unless use_existing_embedding
        is False or it has none.
        """
        if self.embeddings is None:
            logger.warning("No embedding generator configured, cannot search by similarity")
            return []

        content = await self.get_content(id_or_text)
        if content is None:
            vector = await self.embeddings.generate(id_or_text)
            return await self._similar_to_vector(vector, limit, min_score)

        vector = content.get(EMBEDDING_FIELD) if use_existing_embedding else None
        if not vector:
            vector = await self.embeddings.generate(content.get("text") or "")
        return await self._similar_to_vector(vector, limit, min_score, exclude=content["id"])

    async def semantic_search(self, params: ContentSearchParams) -> list[Record]:
        """Vector search on the query text; plain search when there is none."""
        text = params.semantic_query or params.query
        if self.embeddings is None or not text:
            return await self.search_content(params)
        vector = await self.embeddings.generate(text)
        results = await self._similar_to_vector(vector, params.limit, params.min_score)
        return [r.item for r in results]
