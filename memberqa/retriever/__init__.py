"""
Retriever - Member Message Retrieval

Finds the member messages relevant to a question and answers from them.

Key Components:
- CacheManager: TTL-bounded, single-flight corpus snapshot
- QueryAnalyzer: Classifies questions and extracts entities
- QueryOptimizer: Scoped semantic/keyword retrieval with diversity sampling
- truncate: Token-budget bound on the context
- AnswerSynthesizer: LLM-based answer synthesis

Pipeline:
1. Snapshot the corpus (refresh when stale)
2. Analyze the question (specific vs broad, entities)
3. Retrieve and rank candidate messages
4. Truncate to the token budget
5. Synthesize an answer with LLM
"""

from .cache_manager import CacheManager
from .query_analyzer import QueryAnalyzer, QueryAnalysis, QueryEntities, QueryType, Strategy
from .query_optimizer import QueryOptimizer
from .truncator import estimate_tokens, truncate
from .synthesizer import AnswerSynthesizer, SynthesizedAnswer
from .pipeline import AskService, RetrievedContext, build_service

__all__ = [
    "CacheManager",
    "QueryAnalyzer",
    "QueryAnalysis",
    "QueryEntities",
    "QueryType",
    "Strategy",
    "QueryOptimizer",
    "estimate_tokens",
    "truncate",
    "AnswerSynthesizer",
    "SynthesizedAnswer",
    "AskService",
    "RetrievedContext",
    "build_service",
]
