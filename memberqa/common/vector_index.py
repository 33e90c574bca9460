"""
Vector Index

Wraps a chromadb collection as the nearest-neighbor message index.
Embeddings are generated by the collection's embedding function
(OpenAI when a key is configured, chromadb's default model otherwise).

All chromadb calls are synchronous and run in worker threads. Opening
the collection happens once behind connect(); queries run under a
timeout, and a concurrency slot stays taken until the worker thread
actually finishes, even when the caller has already given up on it.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import chromadb
from chromadb.utils import embedding_functions

from .config import SemanticConfig
from .schemas import Message

logger = logging.getLogger("memberqa.common.vector_index")

UPSERT_BATCH_SIZE = 100
INIT_RETRY_SECONDS = 30.0


class VectorServiceDegraded(Exception):
    """Semantic search failed, timed out, or the index is unavailable."""
    pass


class ChromaVectorIndex:
    """
    Message index on top of chromadb.

    The collection is opened on first use through connect(). A failed
    open leaves the index "not ready" instead of raising, and is retried
    once INIT_RETRY_SECONDS have passed or when a caller forces it.
    """

    def __init__(
        self,
        config: Optional[SemanticConfig] = None,
        openai_api_key: Optional[str] = None,
        collection: Any = None,
    ):
        """
        Initialize vector index.

        Args:
            config: Semantic search configuration (path, collection, timeout)
            openai_api_key: Enables OpenAI embeddings when provided
            collection: Pre-built collection (skips client creation)
        """
        self.config = config or SemanticConfig()
        self._openai_api_key = openai_api_key
        self._collection = collection
        self._init_failed_at: Optional[float] = None
        self._connecting: Optional[asyncio.Future] = None
        self._semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))

    def ready(self) -> bool:
        """Check if the index can serve searches"""
        return self._collection is not None

    async def connect(self, force: bool = False) -> bool:
        """
        Open the persistent collection off the event loop.

        Concurrent callers share one attempt. After a failure, further
        calls return False without retrying until the backoff expires,
        unless force is set.

        Returns:
            True if the index is ready
        """
        if self._collection is not None:
            return True

        if self._connecting is None:
            if not force and self._in_backoff():
                return False
            self._connecting = asyncio.ensure_future(self._open())
            self._connecting.add_done_callback(self._clear_connecting)

        return await asyncio.shield(self._connecting)

    def _in_backoff(self) -> bool:
        if self._init_failed_at is None:
            return False
        return time.monotonic() - self._init_failed_at < INIT_RETRY_SECONDS

    def _clear_connecting(self, _future: asyncio.Future) -> None:
        self._connecting = None

    async def _open(self) -> bool:
        try:
            collection = await asyncio.to_thread(self._open_collection)
        except Exception as e:
            logger.error("Failed to initialize vector index: %s", e)
            self._init_failed_at = time.monotonic()
            return False

        self._collection = collection
        self._init_failed_at = None
        logger.info("Connected to vector collection: %s", self.config.collection)
        return True

    def _open_collection(self) -> Any:
        client = chromadb.PersistentClient(path=self.config.persist_path)
        kwargs: Dict[str, Any] = {"metadata": {"hnsw:space": "cosine"}}
        if self._openai_api_key:
            kwargs["embedding_function"] = embedding_functions.OpenAIEmbeddingFunction(
                api_key=self._openai_api_key,
                model_name=self.config.embedding_model,
            )
        return client.get_or_create_collection(self.config.collection, **kwargs)

    async def search(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None,
        min_score: Optional[float] = None,
    ) -> List[Message]:
        """
        Nearest-neighbor search.

        Args:
            query_text: Natural-language query
            top_k: Number of neighbors (defaults to the configured top_k)
            filter: Metadata filter, e.g. {"user_name": "Amira Khan"}
            min_score: Drop hits whose cosine similarity is below this

        Returns:
            Messages ordered by descending similarity

        Raises:
            VectorServiceDegraded: on any index error or timeout
        """
        deadline = asyncio.get_running_loop().time() + self.config.timeout

        try:
            connected = await asyncio.wait_for(self.connect(), timeout=self.config.timeout)
        except asyncio.TimeoutError as e:
            raise VectorServiceDegraded("Vector index is still initializing") from e
        if not connected:
            raise VectorServiceDegraded("Vector index is not initialized")

        top_k = top_k or self.config.top_k
        try:
            hits = await self._run_bounded(deadline, self._query, query_text, top_k, filter)
        except asyncio.TimeoutError as e:
            raise VectorServiceDegraded(
                f"Vector search timed out after {self.config.timeout}s"
            ) from e
        except VectorServiceDegraded:
            raise
        except Exception as e:
            raise VectorServiceDegraded(f"Vector search failed: {e}") from e

        if min_score is None:
            kept = [message for message, _ in hits]
        else:
            kept = [message for message, score in hits if score >= min_score]
        logger.debug(
            "Semantic search found %d results (scores: %s)",
            len(kept),
            ", ".join(f"{score:.3f}" for _, score in hits),
        )
        return kept

    async def _run_bounded(self, deadline: float, func, *args) -> Any:
        """
        Run func in a worker thread holding one concurrency slot.

        The slot is released when the thread finishes, not when the
        caller stops waiting, so timed-out calls still count against
        max_concurrency while they run.
        """
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=max(0.0, deadline - loop.time()))
        except asyncio.TimeoutError as e:
            raise VectorServiceDegraded(
                f"Vector index busy: {self.config.max_concurrency} calls still running"
            ) from e

        try:
            call = asyncio.ensure_future(asyncio.to_thread(func, *args))
        except BaseException:
            self._semaphore.release()
            raise
        call.add_done_callback(self._release_slot)

        return await asyncio.wait_for(asyncio.shield(call), timeout=max(0.0, deadline - loop.time()))

    def _release_slot(self, call: asyncio.Future) -> None:
        self._semaphore.release()
        if not call.cancelled() and call.exception() is not None:
            logger.debug("Vector call finished with error: %s", call.exception())

    def _query(
        self,
        query_text: str,
        top_k: int,
        where: Optional[Dict[str, Any]],
    ) -> List[tuple]:
        """Run the collection query and convert hits to (Message, score)"""
        collection = self._collection
        n_results = min(top_k, collection.count())
        if n_results <= 0:
            return []

        payload = collection.query(
            query_texts=[query_text],
            n_results=n_results,
            where=where or None,
            include=["metadatas", "distances"],
        )

        ids = payload.get("ids") or [[]]
        metas = payload.get("metadatas") or [[]]
        dists = payload.get("distances") or [[]]

        hits = []
        for index, doc_id in enumerate(ids[0]):
            metadata = (metas[0][index] if metas[0] else None) or {}
            distance = dists[0][index] if dists[0] else 0.0
            message = Message(
                id=str(doc_id),
                user_id=str(metadata.get("user_id", "")),
                user_name=str(metadata.get("user_name", "")),
                timestamp=str(metadata.get("timestamp", "")),
                text=str(metadata.get("message", "")),
            )
            # cosine collection: distance = 1 - similarity
            hits.append((message, 1.0 - float(distance)))
        return hits

    async def upsert(self, messages: List[Message], batch_size: int = UPSERT_BATCH_SIZE) -> int:
        """
        Index messages in batches.

        Returns:
            Number of messages upserted
        """
        if not await self.connect():
            raise RuntimeError("Vector index is not initialized")

        total_batches = (len(messages) + batch_size - 1) // batch_size
        for start in range(0, len(messages), batch_size):
            batch = messages[start:start + batch_size]
            await asyncio.to_thread(
                self._collection.upsert,
                ids=[m.id for m in batch],
                documents=[f"{m.user_name}: {m.text}" for m in batch],
                metadatas=[m.to_metadata() for m in batch],
            )
            logger.info("Upserted batch %d/%d", start // batch_size + 1, total_batches)

        logger.info("Indexed %d messages", len(messages))
        return len(messages)

    def stats(self) -> Dict[str, Any]:
        """Describe the index"""
        if not self.ready():
            return {"error": "Vector index not initialized"}
        return {
            "collection": self.config.collection,
            "count": self._collection.count(),
        }
