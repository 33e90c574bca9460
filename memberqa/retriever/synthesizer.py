"""
Synthesizer

LLM-based answer synthesis from the bounded message context.

Key principle: answer only from member messages.
- Facts are reported in third person, without citing the messages
- Missing information is stated plainly, never guessed
- Confidence comes from the model when it reports one, else from
  hedging phrases in the answer and the amount of context
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from ..common.llm_client import LLMClient
from ..common.llm_utils import clean_answer_text, parse_llm_json
from ..common.schemas import Message

logger = logging.getLogger("memberqa.retriever.synthesizer")

NO_INFORMATION_ANSWER = "The available data does not contain this information."

CONFIDENCE_LEVELS = ("high", "medium", "low")

MAX_MESSAGES_PER_USER = 20
MAX_REFERENCES = 5
EXCERPT_LENGTH = 150


@dataclass
class SynthesizedAnswer:
    """Answer returned to the caller of AskService.ask"""
    answer: str
    confidence: str  # "high" | "medium" | "low"
    sources: int  # messages in the context
    references: List[Dict[str, str]] = field(default_factory=list)
    further_recommendation: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "sources": self.sources,
            "references": list(self.references),
            "further_recommendation": self.further_recommendation,
            "warnings": list(self.warnings),
        }


def no_relevant_context() -> SynthesizedAnswer:
    """Fixed answer for an empty context; the model is never called"""
    return SynthesizedAnswer(
        answer=NO_INFORMATION_ANSWER,
        confidence="low",
        sources=0,
    )


SYSTEM_PROMPT = """You are an AI assistant analyzing member data from a luxury concierge service. Your role is to provide factual, objective answers based on the messages.

Guidelines:
1. Answer ONLY based on the information in the messages
2. Be specific with details (dates, numbers, locations, names)
3. If information is not available, state: "The available data does not contain this information"
4. Keep answers concise (1-2 sentences maximum)
5. Write in third person, reporting facts objectively
6. Do NOT include reference phrases like "as mentioned in", "according to the message", "in her message"
7. Do NOT cite dates or sources in the answer - just state the facts

Examples:
- GOOD: "Layla is planning a five-night stay at Claridge's in London starting on a Monday in November 2025, with a chauffeur-driven Bentley."
- BAD: "Layla is planning her trip to London next month, as mentioned in her August 29, 2025 message."
"""

ANSWER_PROMPT = """Question: {question}

Member Messages:
{context}

Answer the question based on the messages above. If the information is not available, say so clearly.

Return ONLY a JSON object:
{{
  "answer": "direct factual answer in third person",
  "confidence": "high" | "medium" | "low",
  "further_recommendation": "optional follow-up suggestion for the concierge team, or null"
}}"""

FALLBACK_TEMPLATE = """## Messages for: "{question}"

Found {count} relevant message(s):

{formatted_messages}

---
**Note**: This is a direct listing without LLM synthesis.
Configure ANTHROPIC_API_KEY or OPENAI_API_KEY for natural language answers.
"""

_LOW_CONFIDENCE_PHRASES = (
    "don't have", "not found", "unable to find", "not mentioned",
    "no information", "does not contain",
)
_MEDIUM_CONFIDENCE_PHRASES = ("might", "possibly", "seems", "appears")


def format_date(timestamp: str) -> str:
    """ISO timestamp -> "Mar 5, 2025"; unparseable input is returned as is"""
    try:
        dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return timestamp
    return f"{dt:%b} {dt.day}, {dt.year}"


def build_context(messages: Sequence[Message]) -> str:
    """Group messages by member, at most MAX_MESSAGES_PER_USER each"""
    if not messages:
        return "No relevant messages found."

    by_user: Dict[str, List[str]] = {}
    for message in messages:
        by_user.setdefault(message.user_name, []).append(
            f"[{format_date(message.timestamp)}] {message.text}"
        )

    sections = []
    for user_name, lines in by_user.items():
        sections.append(f"{user_name}:\n" + "\n".join(lines[:MAX_MESSAGES_PER_USER]))
    return "\n\n".join(sections)


def build_references(messages: Sequence[Message]) -> List[Dict[str, str]]:
    references = []
    for message in messages[:MAX_REFERENCES]:
        excerpt = message.text[:EXCERPT_LENGTH]
        if len(message.text) > EXCERPT_LENGTH:
            excerpt += "..."
        references.append({
            "user": message.user_name,
            "date": format_date(message.timestamp),
            "excerpt": excerpt,
        })
    return references


def determine_confidence(answer: str, message_count: int) -> str:
    """Heuristic confidence from hedging phrases and context size"""
    answer_lower = answer.lower()

    if message_count == 0 or any(p in answer_lower for p in _LOW_CONFIDENCE_PHRASES):
        return "low"
    if message_count < 3 or any(p in answer_lower for p in _MEDIUM_CONFIDENCE_PHRASES):
        return "medium"
    return "high"


class AnswerSynthesizer:
    """
    Synthesizes answers from context messages using an LLM.

    Falls back to a plain listing of the messages if no LLM is available
    or the LLM call fails.
    """

    def __init__(
        self,
        llm_client: Optional[LLMClient] = None,
        max_tokens: int = 1024,
        timeout: float = 30.0,
    ):
        """
        Initialize synthesizer.

        Args:
            llm_client: Configured LLM client (optional)
            max_tokens: Completion budget for the answer
            timeout: Seconds before the LLM call is abandoned
        """
        self._llm = llm_client
        self.max_tokens = max_tokens
        self.timeout = timeout

    @property
    def has_llm(self) -> bool:
        return self._llm is not None and self._llm.is_available

    async def synthesize(self, question: str, messages: Sequence[Message]) -> SynthesizedAnswer:
        """
        Answer a question from context messages.

        Args:
            question: Raw user question
            messages: Truncated, ordered context

        Returns:
            SynthesizedAnswer
        """
        if not messages:
            return no_relevant_context()

        if self.has_llm:
            try:
                return await self._synthesize_with_llm(question, messages)
            except Exception as e:
                logger.warning("LLM synthesis failed: %s", e)

        return self._synthesize_fallback(question, messages)

    async def _synthesize_with_llm(
        self,
        question: str,
        messages: Sequence[Message],
    ) -> SynthesizedAnswer:
        prompt = ANSWER_PROMPT.format(question=question, context=build_context(messages))

        logger.info("Sending question to LLM (%d messages in context)", len(messages))
        raw = await asyncio.wait_for(
            asyncio.to_thread(
                self._llm.generate,
                prompt,
                system=SYSTEM_PROMPT,
                max_tokens=self.max_tokens,
                temperature=0.3,
                timeout=self.timeout,
            ),
            timeout=self.timeout,
        )

        data = parse_llm_json(raw)
        answer = data.get("answer") if isinstance(data.get("answer"), str) else raw
        answer = clean_answer_text(answer)

        confidence = str(data.get("confidence", "")).lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = determine_confidence(answer, len(messages))

        recommendation = data.get("further_recommendation")
        if not isinstance(recommendation, str) or not recommendation.strip():
            recommendation = None

        logger.info("LLM response received (confidence: %s)", confidence)
        return SynthesizedAnswer(
            answer=answer,
            confidence=confidence,
            sources=len(messages),
            references=build_references(messages),
            further_recommendation=recommendation,
        )

    def _synthesize_fallback(
        self,
        question: str,
        messages: Sequence[Message],
    ) -> SynthesizedAnswer:
        """Fallback synthesis without LLM"""
        formatted = [
            f"{i}. **{m.user_name}** ({format_date(m.timestamp)}): {m.text[:500]}"
            for i, m in enumerate(messages[:10], 1)
        ]
        answer = FALLBACK_TEMPLATE.format(
            question=question,
            count=len(messages),
            formatted_messages="\n".join(formatted),
        )
        return SynthesizedAnswer(
            answer=answer,
            confidence="low",
            sources=len(messages),
            references=build_references(messages),
            warnings=["LLM not available - showing raw messages"],
        )
