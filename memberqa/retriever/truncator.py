"""
Token Budget Truncator

Bounds the context handed to the answering model with a fixed
4-characters-per-token estimate.
"""

import logging
import math
from typing import Iterable, List, Optional, Sequence

from ..common.schemas import Message

logger = logging.getLogger("memberqa.retriever.truncator")

CHARS_PER_TOKEN = 4


def estimate_message_tokens(message: Message) -> int:
    return math.ceil((len(message.text) + len(message.user_name)) / CHARS_PER_TOKEN)


def estimate_tokens(messages: Iterable[Message]) -> int:
    """Estimated token cost of a message list (sum of per-message estimates)"""
    return sum(estimate_message_tokens(m) for m in messages)


def truncate(messages: Sequence[Message], max_tokens: Optional[int]) -> List[Message]:
    """
    Keep the longest prefix whose estimated cost fits in ``max_tokens``.

    The first message that would overflow the budget is dropped together
    with everything after it. ``max_tokens=None`` returns the input
    unchanged (unrestricted diagnostic configuration).
    """
    if max_tokens is None:
        return list(messages)

    kept: List[Message] = []
    used = 0
    for message in messages:
        cost = estimate_message_tokens(message)
        if used + cost > max_tokens:
            break
        kept.append(message)
        used += cost

    if len(kept) < len(messages):
        logger.info(
            "Truncated messages from %d to %d to fit %d tokens",
            len(messages), len(kept), max_tokens,
        )
    return kept
