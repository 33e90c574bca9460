"""
Ask Service

Composes the retrieval core into question answering:

1. Validate the question
2. Snapshot the corpus (CacheManager)
3. Analyze the question (QueryAnalyzer)
4. Select candidate messages (QueryOptimizer)
5. Bound the context to the token budget (truncator)
6. Synthesize the answer (AnswerSynthesizer)

Also exposes corpus statistics, health and vector reindexing.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..common.config import MemberQAConfig, RetrievalConfig, load_config
from ..common.llm_client import LLMClient
from ..common.message_source import HttpMessageSource
from ..common.schemas import Message
from ..common.vector_index import ChromaVectorIndex
from .cache_manager import CacheManager
from .corpus_index import top_members
from .query_analyzer import QueryAnalysis, QueryAnalyzer
from .query_optimizer import QueryOptimizer
from .synthesizer import AnswerSynthesizer, SynthesizedAnswer, no_relevant_context
from .truncator import estimate_tokens, truncate

logger = logging.getLogger("memberqa.retriever.pipeline")

MAX_QUESTION_LENGTH = 500


@dataclass
class RetrievedContext:
    """Everything retrieval produced for one question"""
    analysis: QueryAnalysis
    candidates: List[Message]  # optimizer output, before truncation
    messages: List[Message]  # context handed to the synthesizer


def validate_question(question: Any) -> str:
    if not isinstance(question, str):
        raise ValueError("Question must be a string")
    if not question.strip():
        raise ValueError("Question cannot be empty")
    if len(question) > MAX_QUESTION_LENGTH:
        raise ValueError(f"Question is too long (max {MAX_QUESTION_LENGTH} characters)")
    return question


class AskService:
    """
    Question answering over the cached member corpus.

    Usage:
        service = build_service()
        answer = await service.ask("What is Amira Khan's favorite hotel?")
    """

    def __init__(
        self,
        cache: CacheManager,
        analyzer: QueryAnalyzer,
        optimizer: QueryOptimizer,
        synthesizer: AnswerSynthesizer,
        retrieval_config: Optional[RetrievalConfig] = None,
        source: Any = None,
        vector_index: Any = None,
    ):
        self.cache = cache
        self.analyzer = analyzer
        self.optimizer = optimizer
        self.synthesizer = synthesizer
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self._source = source
        self._vector = vector_index

    async def retrieve_context(self, question: str) -> RetrievedContext:
        """
        Run retrieval without answering.

        Raises:
            SourceUnavailable: if no snapshot exists and the source is down
        """
        snapshot = await self.cache.get_snapshot()
        analysis = self.analyzer.analyze(question, snapshot.by_user)
        logger.info(
            "Query type: %s (top_k=%d, threshold=%.2f)",
            analysis.type.value, analysis.top_k, analysis.similarity_threshold,
        )

        candidates = await self.optimizer.optimize(question, analysis, snapshot)
        messages = truncate(candidates, self.retrieval_config.max_context_tokens)
        logger.info(
            "Context: %d messages (~%d tokens)", len(messages), estimate_tokens(messages),
        )
        return RetrievedContext(analysis=analysis, candidates=candidates, messages=messages)

    async def ask(self, question: str) -> SynthesizedAnswer:
        """
        Answer a natural-language question about members.

        Raises:
            ValueError: if the question is empty, blank or too long
            SourceUnavailable: if no snapshot exists and the source is down
        """
        question = validate_question(question)
        logger.info("Question: %s", question)

        context = await self.retrieve_context(question)
        if not context.messages:
            logger.info("No relevant context found")
            return no_relevant_context()

        answer = await self.synthesizer.synthesize(question, context.messages)
        logger.info(
            "Answer ready (%d sources, %s confidence)", answer.sources, answer.confidence,
        )
        return answer

    async def stats(self) -> Dict[str, Any]:
        """Corpus statistics and cache status"""
        snapshot = await self.cache.get_snapshot()
        status = self.cache.status()
        stats = snapshot.stats
        return {
            "total_messages": stats.total_messages,
            "unique_users": stats.unique_users,
            "date_range": {
                "earliest": stats.date_range.earliest,
                "latest": stats.date_range.latest,
            },
            "top_members": [
                {"name": name, "message_count": count}
                for name, count in top_members(stats)
            ],
            "cache_status": {
                "last_refreshed": status["last_refreshed"] or "Never",
                "next_refresh": status["next_refresh"] or "Unknown",
            },
        }

    async def health(self) -> Dict[str, Any]:
        """Healthy iff a snapshot is loaded and the source answers"""
        status = self.cache.status()

        connected = False
        if self._source is not None:
            try:
                connected = await self._source.ping()
            except Exception as e:
                logger.warning("Source health check failed: %s", e)

        return {
            "status": "healthy" if status["loaded"] and connected else "unhealthy",
            "cache": {
                "loaded": status["loaded"],
                "message_count": status["message_count"],
                "last_refreshed": status["last_refreshed"],
            },
            "source": {"connected": connected},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def reindex(self) -> Dict[str, Any]:
        """
        Upsert the current snapshot into the vector index.

        Raises:
            RuntimeError: if the vector index is not ready
            ValueError: if the corpus is empty
        """
        if self._vector is None or not await self._vector.connect(force=True):
            raise RuntimeError("Vector index is not initialized")

        logger.info("Starting reindex...")
        started = time.monotonic()

        snapshot = await self.cache.get_snapshot()
        if snapshot.is_empty:
            raise ValueError("No messages available to index")

        indexed = await self._vector.upsert(list(snapshot.messages))
        duration = time.monotonic() - started
        logger.info("Reindex complete in %.2fs", duration)

        return {
            "success": True,
            "messages_indexed": indexed,
            "duration": f"{duration:.2f}s",
            "index_stats": self._vector.stats(),
        }


def build_service(config: Optional[MemberQAConfig] = None) -> AskService:
    """Wire the default adapters from configuration"""
    config = config or load_config()

    source = HttpMessageSource(config.source)
    cache = CacheManager(source, ttl_seconds=config.cache.ttl_seconds)
    vector_index = ChromaVectorIndex(
        config.semantic,
        openai_api_key=config.llm.openai_api_key or None,
    )
    llm_client = LLMClient.from_config(config.llm)

    return AskService(
        cache=cache,
        analyzer=QueryAnalyzer(config.retrieval),
        optimizer=QueryOptimizer(config.retrieval, vector_index, config.semantic),
        synthesizer=AnswerSynthesizer(
            llm_client,
            max_tokens=config.llm.max_tokens,
            timeout=config.llm.timeout,
        ),
        retrieval_config=config.retrieval,
        source=source,
        vector_index=vector_index,
    )
