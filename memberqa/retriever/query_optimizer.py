"""
Query Optimizer

Selects the messages to use as context for a question.

Pipeline:
1. Scope: the first member named in the question, else the whole corpus
2. Retrieve: semantic search (vector index) or keyword scoring, never both
3. Diversify: broad questions about several members get results from
   at least five members when the corpus allows it
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from ..common.config import RetrievalConfig, SemanticConfig
from ..common.schemas import CorpusSnapshot, Message
from ..common.vector_index import VectorServiceDegraded
from .query_analyzer import QueryAnalysis, QueryType, extract_keywords

logger = logging.getLogger("memberqa.retriever.query_optimizer")

# Diversity sampling
MIN_DIVERSE_USERS = 5
DIVERSITY_QUOTA = 100
MIN_PER_USER = 10
BACKFILL_LIMIT = 50


def rank_by_keywords(messages: Sequence[Message], keywords: Sequence[str]) -> List[Message]:
    """
    Rank messages by whole-word keyword occurrences.

    Zero-score messages are dropped; ties go to the most recent message.
    Without keywords, every message is returned newest first.
    """
    if not keywords:
        return sorted(messages, key=lambda m: m.timestamp, reverse=True)

    patterns = [re.compile(rf"\b{re.escape(keyword)}\b") for keyword in keywords]

    scored = []
    for message in messages:
        text = message.text.lower()
        score = sum(len(pattern.findall(text)) for pattern in patterns)
        if score > 0:
            scored.append((score, message))

    # Two stable passes: newest first, then by score
    scored.sort(key=lambda pair: pair[1].timestamp, reverse=True)
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [message for _, message in scored]


def _distinct_users(messages: Sequence[Message]) -> List[str]:
    """User names in order of first appearance"""
    return list(dict.fromkeys(m.user_name for m in messages))


def diversify(results: Sequence[Message], ranked_pool: Sequence[Message]) -> List[Message]:
    """
    Spread results across members.

    Args:
        results: Current candidate result (a prefix of ranked_pool)
        ranked_pool: Every qualifying message, best first

    Returns:
        ``results`` unchanged when it already covers MIN_DIVERSE_USERS
        members; otherwise per-member top messages followed by a
        rank-ordered backfill.
    """
    represented = _distinct_users(results)
    if len(represented) >= MIN_DIVERSE_USERS:
        return list(results)

    pool_users = _distinct_users(ranked_pool)
    target_users = min(MIN_DIVERSE_USERS, len(pool_users))
    if target_users == 0:
        return list(results)

    per_user = max(MIN_PER_USER, DIVERSITY_QUOTA // target_users)
    chosen = set(pool_users[:target_users])

    taken: Dict[str, int] = {}
    sampled: List[Message] = []
    for message in ranked_pool:
        if message.user_name in chosen and taken.get(message.user_name, 0) < per_user:
            taken[message.user_name] = taken.get(message.user_name, 0) + 1
            sampled.append(message)

    included = set(sampled)
    backfill = [m for m in ranked_pool if m not in included][:BACKFILL_LIMIT]

    logger.info(
        "Diversity sampling: %d -> %d users (%d sampled, %d backfilled)",
        len(represented), len(_distinct_users(sampled)), len(sampled), len(backfill),
    )
    return sampled + backfill


class QueryOptimizer:
    """
    Produces the ordered, not yet token-bounded, context for a question.

    Stateless per request; safe to share across concurrent requests.
    """

    def __init__(
        self,
        config: Optional[RetrievalConfig] = None,
        vector_index: Any = None,
        semantic: Optional[SemanticConfig] = None,
    ):
        """
        Initialize query optimizer.

        Args:
            config: Result sizes per query class
            vector_index: Optional index exposing async search()
            semantic: Semantic search switch and keyword fallback policy
        """
        self.config = config or RetrievalConfig()
        self._vector = vector_index
        self.semantic = semantic or SemanticConfig()

    @property
    def uses_semantic(self) -> bool:
        return self.semantic.enabled and self._vector is not None

    async def optimize(
        self,
        question: str,
        analysis: QueryAnalysis,
        snapshot: CorpusSnapshot,
    ) -> List[Message]:
        """
        Find the messages relevant to a question.

        Args:
            question: Raw user question
            analysis: Output of QueryAnalyzer.analyze for this question
            snapshot: Corpus snapshot to search

        Returns:
            Ordered list of messages, best first
        """
        search_filter: Optional[Dict[str, Any]] = None
        if analysis.entities.user_names:
            user_name = analysis.entities.user_names[0]
            pool: Sequence[Message] = snapshot.by_user.get(user_name, ())
            logger.info("Detected user in question: %s", user_name)
            if not pool:
                return []
            search_filter = {"user_name": user_name}
        else:
            pool = snapshot.messages
            logger.info("No specific user detected, searching all messages")

        ranked: Optional[List[Message]] = None
        if self.uses_semantic:
            ranked = await self._semantic_search(question, analysis, search_filter)
            if ranked is None and not self.semantic.keyword_fallback:
                return []
            results = ranked

        if ranked is None:
            ranked = rank_by_keywords(pool, extract_keywords(question))
            results = ranked[:self._result_limit(analysis)]

        if analysis.type == QueryType.BROAD and analysis.multi_user:
            results = diversify(results, ranked)

        logger.info(
            "Found %d relevant messages%s",
            len(results),
            f" for {search_filter['user_name']}" if search_filter else " across all users",
        )
        return results

    def _result_limit(self, analysis: QueryAnalysis) -> int:
        if analysis.type == QueryType.SPECIFIC:
            return self.config.specific_max_messages
        return self.config.broad_max_messages

    async def _semantic_search(
        self,
        question: str,
        analysis: QueryAnalysis,
        search_filter: Optional[Dict[str, Any]],
    ) -> Optional[List[Message]]:
        """Vector search; None means the index is degraded"""
        try:
            return await self._vector.search(
                question,
                top_k=analysis.top_k,
                filter=search_filter,
                min_score=analysis.similarity_threshold,
            )
        except VectorServiceDegraded as e:
            logger.warning("Semantic search degraded: %s", e)
        except Exception as e:
            logger.error("Semantic search error: %s", e, exc_info=True)
        return None
