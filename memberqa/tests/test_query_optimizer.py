"""
Tests for Query Optimizer

Tests scoping, keyword ranking, diversity sampling and the semantic path.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, Mock, patch

from memberqa.common.config import RetrievalConfig, SemanticConfig
from memberqa.common.schemas import Message
from memberqa.common.vector_index import ChromaVectorIndex, VectorServiceDegraded
from memberqa.retriever.corpus_index import build_snapshot
from memberqa.retriever.query_analyzer import (
    QueryAnalysis,
    QueryAnalyzer,
    QueryEntities,
    QueryType,
    Strategy,
)
from memberqa.retriever.query_optimizer import QueryOptimizer, diversify, rank_by_keywords

FETCHED_AT = datetime(2025, 7, 1, tzinfo=timezone.utc)


def _msg(msg_id, user_name, text, day=1, hour=0):
    return Message(
        id=str(msg_id),
        user_id=user_name.lower().replace(" ", "-"),
        user_name=user_name,
        timestamp=f"2025-01-{day:02d}T{hour:02d}:00:00Z",
        text=text,
    )


def _snapshot(messages):
    return build_snapshot(messages, FETCHED_AT)


def _users(messages):
    return {m.user_name for m in messages}


@pytest.fixture
def analyzer():
    return QueryAnalyzer()


@pytest.fixture
def optimizer():
    return QueryOptimizer(RetrievalConfig())


class TestRankByKeywords:
    def test_whole_word_matching(self):
        messages = [
            _msg(1, "Amira Khan", "Let's start the tour early"),
            _msg(2, "Amira Khan", "Bought a piece of modern art"),
        ]
        ranked = rank_by_keywords(messages, ["art"])
        assert [m.id for m in ranked] == ["2"]

    def test_score_then_recency(self):
        messages = [
            _msg(1, "Amira Khan", "wine", day=1),
            _msg(2, "Amira Khan", "wine and more wine", day=2),
            _msg(3, "Amira Khan", "wine", day=3),
        ]
        ranked = rank_by_keywords(messages, ["wine"])
        assert [m.id for m in ranked] == ["2", "3", "1"]

    def test_zero_score_dropped(self):
        messages = [_msg(1, "Amira Khan", "nothing relevant here")]
        assert rank_by_keywords(messages, ["yacht"]) == []

    def test_no_keywords_returns_most_recent(self):
        messages = [_msg(i, "Amira Khan", "hi", day=i) for i in range(1, 4)]
        ranked = rank_by_keywords(messages, [])
        assert [m.id for m in ranked] == ["3", "2", "1"]


class TestScenarios:
    @pytest.mark.asyncio
    async def test_scoped_user_ranks_ritz_first(self, analyzer, optimizer):
        messages = [
            _msg(i, "Amira Khan", f"Please confirm my spa appointment number {i}", day=(i % 28) + 1)
            for i in range(39)
        ]
        messages.append(_msg(99, "Amira Khan", "Book a table at the Ritz restaurant for Friday", day=2))
        messages.append(_msg(100, "Vikram Desai", "Find me a restaurant with a view", day=3))
        snapshot = _snapshot(messages)

        question = "What restaurant does Amira prefer?"
        analysis = analyzer.analyze(question, snapshot.by_user)
        results = await optimizer.optimize(question, analysis, snapshot)

        assert analysis.type == QueryType.SPECIFIC
        assert analysis.entities.user_names == ["Amira Khan"]
        assert results[0].id == "99"
        assert "Ritz" in results[0].text
        assert _users(results) == {"Amira Khan"}

    @pytest.mark.asyncio
    async def test_global_location_search(self, analyzer, optimizer):
        snapshot = _snapshot([
            _msg(1, "Amira Khan", "Booked a suite in London for the Wimbledon final", day=4),
            _msg(2, "Vikram Desai", "Need a driver in Paris next week", day=5),
            _msg(3, "Layla Kawaguchi", "London again! Reserve the usual table", day=6),
        ])

        question = "Who has been to London?"
        analysis = analyzer.analyze(question, snapshot.by_user)
        results = await optimizer.optimize(question, analysis, snapshot)

        assert analysis.type == QueryType.SPECIFIC
        assert analysis.entities.locations == ["London"]
        assert [m.id for m in results] == ["3", "1"]

    @pytest.mark.asyncio
    async def test_empty_corpus(self, analyzer, optimizer):
        snapshot = _snapshot([])
        for question in ("Who has been to London?", "Do any members enjoy sailing?", "Hello"):
            analysis = analyzer.analyze(question, snapshot.by_user)
            assert await optimizer.optimize(question, analysis, snapshot) == []


class TestScoping:
    @pytest.mark.asyncio
    async def test_user_with_no_messages(self, optimizer):
        snapshot = _snapshot([_msg(1, "Amira Khan", "hotel in Rome")])
        analysis = QueryAnalysis(
            type=QueryType.SPECIFIC,
            top_k=50,
            similarity_threshold=0.7,
            strategy=Strategy.PRECISION,
            entities=QueryEntities(user_names=["Ghost Member"]),
        )
        assert await optimizer.optimize("hotel", analysis, snapshot) == []

    @pytest.mark.asyncio
    async def test_result_limit_by_class(self, analyzer):
        optimizer = QueryOptimizer(RetrievalConfig(specific_max_messages=5, broad_max_messages=8))
        snapshot = _snapshot([_msg(i, "Amira Khan", "dinner plans", day=(i % 28) + 1) for i in range(20)])

        specific = analyzer.analyze("Dinner plans for Amira?", snapshot.by_user)
        broad = analyzer.analyze("dinner plans", snapshot.by_user)

        assert len(await optimizer.optimize("Dinner plans for Amira?", specific, snapshot)) == 5
        assert len(await optimizer.optimize("dinner plans", broad, snapshot)) == 8


class TestDiversity:
    @pytest.fixture
    def skewed_snapshot(self):
        messages = []
        msg_id = 0
        # Two heavy users dominate the top of the keyword ranking
        for user_name in ("Amira Khan", "Vikram Desai"):
            for i in range(30):
                msg_id += 1
                messages.append(_msg(msg_id, user_name, "sailing trip, more sailing", day=20, hour=i % 24))
        # Four light users only appear further down
        for user_name in ("Layla Kawaguchi", "Hans Becker", "Sofia Marino", "Thiago Rocha"):
            for i in range(3):
                msg_id += 1
                messages.append(_msg(msg_id, user_name, "went sailing once", day=i + 1))
        return _snapshot(messages)

    @pytest.mark.asyncio
    async def test_diversity_floor(self, analyzer, optimizer, skewed_snapshot):
        question = "Do any members enjoy sailing?"
        analysis = analyzer.analyze(question, skewed_snapshot.by_user)
        assert analysis.type == QueryType.BROAD
        assert analysis.multi_user

        results = await optimizer.optimize(question, analysis, skewed_snapshot)

        assert len(_users(results)) >= 5

    @pytest.mark.asyncio
    async def test_no_diversity_without_multi_user_flag(self, analyzer, optimizer, skewed_snapshot):
        question = "sailing stories"
        analysis = analyzer.analyze(question, skewed_snapshot.by_user)
        assert not analysis.multi_user

        results = await optimizer.optimize(question, analysis, skewed_snapshot)

        assert _users(results) == {"Amira Khan", "Vikram Desai"}

    def test_already_diverse_unchanged(self):
        results = [_msg(i, f"Member {chr(65 + i)}x", "sailing") for i in range(6)]
        assert diversify(results, results) == results

    def test_fewer_users_than_floor(self):
        pool = [_msg(i, "Amira Khan" if i % 2 else "Vikram Desai", "sailing", day=i + 1) for i in range(20)]
        diversified = diversify(pool[:4], pool)
        assert _users(diversified) == {"Amira Khan", "Vikram Desai"}

    def test_no_duplicates(self, skewed_snapshot):
        pool = rank_by_keywords(skewed_snapshot.messages, ["sailing"])
        diversified = diversify(pool[:50], pool)
        assert len({m.id for m in diversified}) == len(diversified)

    def test_empty_pool(self):
        assert diversify([], []) == []


class TestSemanticPath:
    @pytest.fixture
    def snapshot(self):
        return _snapshot([
            _msg(1, "Amira Khan", "Reserve the Ritz restaurant", day=1),
            _msg(2, "Vikram Desai", "Reserve a restaurant in Rome", day=2),
        ])

    @pytest.fixture
    def vector_index(self):
        index = Mock()
        index.search = AsyncMock(return_value=[])
        return index

    @pytest.mark.asyncio
    async def test_semantic_results_used(self, analyzer, snapshot, vector_index):
        hit = _msg(7, "Amira Khan", "Dinner at Nobu", day=9)
        vector_index.search.return_value = [hit]
        optimizer = QueryOptimizer(RetrievalConfig(), vector_index, SemanticConfig(enabled=True))

        question = "What restaurant does Amira prefer?"
        analysis = analyzer.analyze(question, snapshot.by_user)
        results = await optimizer.optimize(question, analysis, snapshot)

        assert results == [hit]
        vector_index.search.assert_awaited_once_with(
            question, top_k=50, filter={"user_name": "Amira Khan"}, min_score=0.7,
        )

    @pytest.mark.asyncio
    async def test_empty_semantic_result_is_not_degraded(self, analyzer, snapshot, vector_index):
        optimizer = QueryOptimizer(RetrievalConfig(), vector_index, SemanticConfig(enabled=True))

        question = "Who reserved a restaurant in Rome?"
        analysis = analyzer.analyze(question, snapshot.by_user)

        assert await optimizer.optimize(question, analysis, snapshot) == []

    @pytest.mark.asyncio
    async def test_degraded_falls_back_to_keywords(self, analyzer, snapshot, vector_index, caplog):
        vector_index.search.side_effect = VectorServiceDegraded("timed out")
        optimizer = QueryOptimizer(RetrievalConfig(), vector_index, SemanticConfig(enabled=True))

        question = "What restaurant does Amira prefer?"
        analysis = analyzer.analyze(question, snapshot.by_user)
        with caplog.at_level(logging.WARNING, logger="memberqa.retriever.query_optimizer"):
            results = await optimizer.optimize(question, analysis, snapshot)

        assert [m.id for m in results] == ["1"]
        assert "degraded" in caplog.text

    @pytest.mark.asyncio
    async def test_uninitialized_index_falls_back_to_keywords(self, analyzer, snapshot):
        with patch("memberqa.common.vector_index.chromadb.PersistentClient", side_effect=RuntimeError("disk")):
            index = ChromaVectorIndex(SemanticConfig(persist_path="/nonexistent"))
            optimizer = QueryOptimizer(RetrievalConfig(), index, SemanticConfig(enabled=True))

            question = "What restaurant does Amira prefer?"
            analysis = analyzer.analyze(question, snapshot.by_user)
            results = await optimizer.optimize(question, analysis, snapshot)

        assert [m.id for m in results] == ["1"]
        assert index.ready() is False

    @pytest.mark.asyncio
    async def test_slow_index_open_keeps_event_loop_responsive(self, analyzer, snapshot):
        collection = Mock()
        collection.count.return_value = 0
        client = Mock()
        client.get_or_create_collection.return_value = collection

        def slow_client(path):
            time.sleep(0.5)
            return client

        loop = asyncio.get_running_loop()
        gaps = []

        async def ticker(stop):
            last = loop.time()
            while not stop.is_set():
                await asyncio.sleep(0.05)
                now = loop.time()
                gaps.append(now - last)
                last = now

        with patch("memberqa.common.vector_index.chromadb.PersistentClient", side_effect=slow_client):
            index = ChromaVectorIndex(SemanticConfig(persist_path="/tmp/vectors"))
            optimizer = QueryOptimizer(RetrievalConfig(), index, SemanticConfig(enabled=True))
            question = "What restaurant does Amira prefer?"
            analysis = analyzer.analyze(question, snapshot.by_user)

            stop = asyncio.Event()
            tick = asyncio.create_task(ticker(stop))
            results = await optimizer.optimize(question, analysis, snapshot)
            stop.set()
            await tick

        assert results == []
        assert index.ready() is True
        assert len(gaps) >= 5
        assert max(gaps) < 0.2

    @pytest.mark.asyncio
    async def test_degraded_without_fallback_is_empty(self, analyzer, snapshot, vector_index):
        vector_index.search.side_effect = RuntimeError("index corrupted")
        optimizer = QueryOptimizer(
            RetrievalConfig(), vector_index, SemanticConfig(enabled=True, keyword_fallback=False),
        )

        question = "What restaurant does Amira prefer?"
        analysis = analyzer.analyze(question, snapshot.by_user)

        assert await optimizer.optimize(question, analysis, snapshot) == []

    @pytest.mark.asyncio
    async def test_semantic_disabled_never_calls_index(self, analyzer, snapshot, vector_index):
        optimizer = QueryOptimizer(RetrievalConfig(), vector_index, SemanticConfig(enabled=False))

        question = "What restaurant does Amira prefer?"
        analysis = analyzer.analyze(question, snapshot.by_user)
        await optimizer.optimize(question, analysis, snapshot)

        vector_index.search.assert_not_awaited()
