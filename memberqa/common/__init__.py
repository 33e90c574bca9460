"""
Member Q&A Common Module

Shared infrastructure: configuration, corpus schemas and the adapters for
external collaborators (message source, vector index, answering model).
"""

from .config import MemberQAConfig, RetrievalConfig, load_config
from .schemas import CorpusSnapshot, CorpusStats, DateRange, Message
from .message_source import HttpMessageSource, SourceUnavailable
from .vector_index import ChromaVectorIndex, VectorServiceDegraded
from .llm_client import LLMClient

__all__ = [
    "MemberQAConfig",
    "RetrievalConfig",
    "load_config",
    "CorpusSnapshot",
    "CorpusStats",
    "DateRange",
    "Message",
    "HttpMessageSource",
    "SourceUnavailable",
    "ChromaVectorIndex",
    "VectorServiceDegraded",
    "LLMClient",
]
