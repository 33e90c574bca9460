"""
Corpus Schemas

Immutable data types shared by the source, the cache and the retriever.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Message:
    """A single member message as fetched from the source"""
    id: str
    user_id: str
    user_name: str
    timestamp: str  # ISO-8601; lexicographic order == chronological order
    text: str

    @classmethod
    def from_api(cls, raw: Dict[str, Any]) -> "Message":
        """Build from the source's wire record (text lives under ``message``)."""
        return cls(
            id=str(raw.get("id", "")),
            user_id=str(raw.get("user_id", "")),
            user_name=str(raw.get("user_name", "")),
            timestamp=str(raw.get("timestamp", "")),
            text=str(raw.get("message", raw.get("text", "")) or ""),
        )

    def to_metadata(self) -> Dict[str, str]:
        """Flat metadata for the vector index"""
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "timestamp": self.timestamp,
            "message": self.text,
        }


@dataclass(frozen=True)
class DateRange:
    earliest: Optional[str] = None
    latest: Optional[str] = None


@dataclass(frozen=True)
class CorpusStats:
    """Aggregate statistics, recomputed on every refresh"""
    total_messages: int
    unique_users: int
    date_range: DateRange
    per_user_count: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class CorpusSnapshot:
    """
    Immutable, fully-formed view of the corpus at a point in time.

    Owned by the CacheManager and replaced by reference on refresh.
    """
    messages: Tuple[Message, ...]
    by_user: Mapping[str, Tuple[Message, ...]]
    stats: CorpusStats
    fetched_at: datetime

    @property
    def user_names(self) -> Tuple[str, ...]:
        return tuple(self.by_user.keys())

    @property
    def is_empty(self) -> bool:
        return not self.messages
