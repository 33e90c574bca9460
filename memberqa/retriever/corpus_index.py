"""
Corpus Index

Pure functions that turn a flat message list into a CorpusSnapshot:
per-user grouping, aggregate statistics and fuzzy user-name resolution.
"""

from datetime import datetime
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..common.schemas import CorpusSnapshot, CorpusStats, DateRange, Message


def index_by_user(messages: Iterable[Message]) -> Mapping[str, Tuple[Message, ...]]:
    """Group messages by user name, each group sorted by timestamp ascending."""
    grouped: Dict[str, List[Message]] = {}
    for message in messages:
        grouped.setdefault(message.user_name, []).append(message)

    return MappingProxyType({
        user_name: tuple(sorted(user_messages, key=lambda m: m.timestamp))
        for user_name, user_messages in grouped.items()
    })


def compute_stats(messages: Sequence[Message]) -> CorpusStats:
    """
    Single-pass statistics.

    ISO-8601 timestamps compare lexicographically in chronological order,
    so min/max are taken on the raw strings.
    """
    counts: Dict[str, int] = {}
    earliest: Optional[str] = None
    latest: Optional[str] = None

    for message in messages:
        counts[message.user_name] = counts.get(message.user_name, 0) + 1
        if earliest is None or message.timestamp < earliest:
            earliest = message.timestamp
        if latest is None or message.timestamp > latest:
            latest = message.timestamp

    return CorpusStats(
        total_messages=len(messages),
        unique_users=len(counts),
        date_range=DateRange(earliest=earliest, latest=latest),
        per_user_count=MappingProxyType(counts),
    )


def build_snapshot(messages: Sequence[Message], fetched_at: datetime) -> CorpusSnapshot:
    """Build an immutable snapshot from a freshly fetched corpus"""
    frozen = tuple(messages)
    return CorpusSnapshot(
        messages=frozen,
        by_user=index_by_user(frozen),
        stats=compute_stats(frozen),
        fetched_at=fetched_at,
    )


def resolve_user_name(candidate: str, by_user: Mapping[str, Sequence[Message]]) -> Optional[str]:
    """
    Resolve a name mentioned in a question to a known user name.

    Resolution order (first match wins):
    1. Case-insensitive exact match
    2. Token match: a token of the user name equals the candidate,
       or the candidate contains that token
    3. Substring: the user name contains the candidate

    Args:
        candidate: Name-like text from the question ("Amira", "amira khan")
        by_user: Known users (only the keys are used)

    Returns:
        The matching user name, or None
    """
    normalized = candidate.lower().strip()
    if not normalized:
        return None

    for user_name in by_user:
        if user_name.lower() == normalized:
            return user_name

    for user_name in by_user:
        tokens = [token for token in user_name.lower().split() if token]
        if any(token == normalized or token in normalized for token in tokens):
            return user_name

    for user_name in by_user:
        if normalized in user_name.lower():
            return user_name

    return None


def top_members(stats: CorpusStats, limit: Optional[int] = None) -> List[Tuple[str, int]]:
    """Users ranked by message count (descending, ties by name)"""
    ranked = sorted(stats.per_user_count.items(), key=lambda pair: (-pair[1], pair[0]))
    return ranked[:limit] if limit is not None else ranked
