"""
Member Q&A

Answers natural-language questions about member messages by assembling a
bounded, relevant context window and handing it to a language model.

Philosophy:
- The corpus is fetched in bulk and kept warm in memory
- Regex-based entity extraction, no NLP framework
- Only corpus unavailability is fatal; retrieval degrades to less context
- The context handed to the model always respects the token budget

Usage:
    from memberqa.common import load_config
    from memberqa.retriever import AskService, build_service
"""

__version__ = "0.1.0"
