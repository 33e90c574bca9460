"""
Query Analyzer

Classifies a question as specific or broad and extracts entities
(member names, dates, locations, item categories) with regex patterns.
No external calls: user names are validated against the current corpus.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Mapping, Optional, Sequence

from ..common.config import RetrievalConfig
from ..common.schemas import Message
from .corpus_index import resolve_user_name

logger = logging.getLogger("memberqa.retriever.query_analyzer")


class QueryType(str, Enum):
    """Question classification"""
    SPECIFIC = "specific"  # names a member, date, place or item
    BROAD = "broad"  # nothing concrete to anchor on


class Strategy(str, Enum):
    """Retrieval trade-off"""
    PRECISION = "precision"
    RECALL = "recall"


@dataclass
class QueryEntities:
    """Entities found in a question, deduplicated in discovery order"""
    user_names: List[str] = field(default_factory=list)
    dates: List[str] = field(default_factory=list)
    locations: List[str] = field(default_factory=list)
    items: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.user_names or self.dates or self.locations or self.items)


@dataclass
class QueryAnalysis:
    """Retrieval parameters chosen for one question"""
    type: QueryType
    top_k: int
    similarity_threshold: float
    strategy: Strategy
    entities: QueryEntities
    multi_user: bool = False

    @property
    def is_specific(self) -> bool:
        return self.type == QueryType.SPECIFIC


# Stop words dropped from keywords and from captured item nouns
STOP_WORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "can", "what", "when", "where", "who",
    "whom", "why", "how", "which", "to", "from", "in", "on", "at", "for",
    "with", "about", "of", "by", "into", "over", "after", "and", "or", "but",
    "if", "as", "i", "me", "my", "you", "your", "it", "its", "they", "them",
    "their", "this", "that", "these", "those", "any", "all", "there",
})

# Capitalized word or multi-word phrase ("Amira", "Layla Kawaguchi")
_NAME = r"[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"

# Known cities / countries
KNOWN_LOCATIONS = (
    "London", "Paris", "Tokyo", "New York", "Dubai", "Singapore", "Sydney",
    "Rome", "Barcelona", "Amsterdam", "Berlin", "Madrid", "Vienna",
    "Prague", "Istanbul", "Bangkok", "Hong Kong", "Seoul", "Mumbai",
    "Delhi", "Shanghai", "Beijing", "Los Angeles", "San Francisco",
    "Miami", "Chicago", "Boston", "Seattle", "Austin", "Las Vegas",
    "Mexico City", "Rio de Janeiro", "Buenos Aires", "Toronto",
    "Vancouver", "Montreal", "Cairo", "Johannesburg", "Cape Town",
    "Nairobi", "Marrakech", "Athens", "Lisbon", "Copenhagen",
    "Stockholm", "Oslo", "Helsinki", "Zurich", "Geneva", "Brussels",
    "Dublin", "Edinburgh", "Venice", "Florence", "Milan", "Naples",
    "Santorini", "Mykonos", "Bali", "Phuket", "Maldives", "Seychelles",
    "Mauritius", "Hawaii", "Cancun", "Cabo", "Aspen", "Vail",
    "Switzerland", "France", "Italy", "Spain", "Greece", "Portugal",
    "England", "UK", "USA", "Japan", "China", "India", "Thailand",
    "Australia", "Germany", "Austria", "Netherlands", "Belgium",
)

# Concierge-relevant categories: travel, dining, property, luxury goods
ITEM_CATEGORIES = (
    "car", "cars", "vehicle", "vehicles",
    "restaurant", "restaurants", "dining",
    "hotel", "hotels", "accommodation",
    "flight", "flights", "airline", "airlines",
    "wine", "wines", "champagne",
    "art", "artwork", "painting", "paintings",
    "property", "properties", "house", "houses",
    "yacht", "yachts", "boat", "boats",
    "watch", "watches", "jewelry",
    "fashion", "clothing", "designer",
)


def _dedupe(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(values))


def extract_keywords(question: str) -> List[str]:
    """Lowercased, punctuation-free, stop-word-free tokens longer than 2 chars"""
    words = re.sub(r"[^\w\s]", " ", question.lower()).split()
    keywords = [w for w in words if len(w) > 2 and w not in STOP_WORDS]
    return _dedupe(keywords)


class QueryAnalyzer:
    """
    Analyzes questions to choose a retrieval strategy.

    Responsibilities:
    1. Extract member names, dates, locations and item categories
    2. Classify the question as specific (any entity) or broad
    3. Pick top-k / similarity threshold for the class
    4. Flag questions about several members (diversity sampling)
    """

    USER_NAME_PATTERNS = [
        re.compile(rf"\b({_NAME})['\u2019]s\b"),  # "Layla's"
        re.compile(rf"(?i:\bwho\s+is)\s+({_NAME})"),  # "who is Amira"
        re.compile(rf"\b({_NAME})\s+(?:is|has|does|have)\b"),  # "Vikram has"
    ]

    DATE_PATTERNS = [
        re.compile(r"\b\d{1,2}[/-]\d{1,2}[/-]\d{2,4}\b"),  # 12/25/2023, 12-25-23
        re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),  # 2023-12-25
        re.compile(
            r"\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{1,2}(?:,?\s+\d{4})?\b",
            re.IGNORECASE,
        ),  # December 25, 2023
        re.compile(
            r"\b\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*(?:,?\s+\d{4})?\b",
            re.IGNORECASE,
        ),  # 25 December 2023
        re.compile(
            r"\b(?:last|next|this)\s+(?:week|month|year|monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b",
            re.IGNORECASE,
        ),
        re.compile(r"\b(?:yesterday|today|tomorrow)\b", re.IGNORECASE),
        re.compile(r"\b\d+\s+(?:days?|weeks?|months?|years?)\s+ago\b", re.IGNORECASE),
    ]

    LOCATION_PATTERNS = [
        re.compile(rf"(?i:\b(?:in|at|to|from|near))\s+({_NAME})\b"),
        re.compile(rf"\b({_NAME})\s+(?i:trip|travel|visit|journey|vacation)\b"),
    ]

    ITEM_PATTERNS = [
        re.compile(r"\bhow many\s+([a-z]+)\b", re.IGNORECASE),  # "how many cars"
        re.compile(r"\bwhich\s+([a-z]+)\b", re.IGNORECASE),  # "which restaurant"
        re.compile(r"\bwhat\s+([a-z]+)\b", re.IGNORECASE),  # "what hotel"
        re.compile(r"\bfavou?rite\s+([a-z]+)\b", re.IGNORECASE),  # "favorite restaurant"
        re.compile(r"\bpreferred\s+([a-z]+)\b", re.IGNORECASE),  # "preferred airline"
        re.compile(r"\b([a-z]+)\s+preferences?\b", re.IGNORECASE),  # "dining preferences"
    ]

    CATEGORY_PATTERNS = [
        (category, re.compile(rf"\b{category}\b")) for category in ITEM_CATEGORIES
    ]

    MULTI_USER_PATTERNS = [
        re.compile(r"\bmembers?\b", re.IGNORECASE),
        re.compile(r"\busers?\b", re.IGNORECASE),
        re.compile(r"\bpeople\b", re.IGNORECASE),
        re.compile(r"\beveryone\b", re.IGNORECASE),
        re.compile(r"\banyone\b", re.IGNORECASE),
        re.compile(r"\bwho all\b", re.IGNORECASE),
        re.compile(r"\ball of\b", re.IGNORECASE),
    ]

    _LOCATION_LOOKUP = {location.lower(): location for location in KNOWN_LOCATIONS}

    def __init__(self, config: Optional[RetrievalConfig] = None):
        """
        Initialize query analyzer.

        Args:
            config: Top-k / threshold per query class. Pass
                RetrievalConfig.unrestricted() for capacity testing.
        """
        self.config = config or RetrievalConfig()

    def analyze(
        self,
        question: str,
        by_user: Mapping[str, Sequence[Message]],
    ) -> QueryAnalysis:
        """
        Analyze a question against the known users.

        Args:
            question: Raw user question
            by_user: Current snapshot's per-user index

        Returns:
            QueryAnalysis with classification, parameters and entities
        """
        entities = self.extract_entities(question, by_user)
        multi_user = self.is_multi_user_query(question)

        if self.config.diagnostic:
            logger.warning("Unrestricted retrieval configuration active")

        if not entities.is_empty:
            return QueryAnalysis(
                type=QueryType.SPECIFIC,
                top_k=self.config.specific_top_k,
                similarity_threshold=self.config.specific_similarity_threshold,
                strategy=Strategy.PRECISION,
                entities=entities,
                multi_user=multi_user,
            )

        return QueryAnalysis(
            type=QueryType.BROAD,
            top_k=self.config.broad_top_k,
            similarity_threshold=self.config.broad_similarity_threshold,
            strategy=Strategy.RECALL,
            entities=entities,
            multi_user=multi_user,
        )

    def extract_entities(
        self,
        question: str,
        by_user: Mapping[str, Sequence[Message]],
    ) -> QueryEntities:
        return QueryEntities(
            user_names=self.extract_user_names(question, by_user),
            dates=self.extract_dates(question),
            locations=self.extract_locations(question),
            items=self.extract_items(question),
        )

    def extract_user_names(
        self,
        question: str,
        by_user: Mapping[str, Sequence[Message]],
    ) -> List[str]:
        """Names mentioned in the question that resolve to known users"""
        candidates: List[str] = []
        for pattern in self.USER_NAME_PATTERNS:
            candidates.extend(match.group(1) for match in pattern.finditer(question))

        # Fallback: every capitalized word is a potential first/last name
        candidates.extend(
            word for word in re.findall(r"\b[A-Z][a-z]+\b", question) if len(word) > 2
        )

        found: List[str] = []
        for candidate in candidates:
            user_name = resolve_user_name(candidate, by_user)
            if user_name and user_name not in found:
                found.append(user_name)
        return found

    def extract_dates(self, question: str) -> List[str]:
        """Absolute and relative date expressions, as written"""
        dates: List[str] = []
        for pattern in self.DATE_PATTERNS:
            dates.extend(match.group(0) for match in pattern.finditer(question))
        return _dedupe(dates)

    def extract_locations(self, question: str) -> List[str]:
        """Known cities/countries mentioned in the question"""
        locations: List[str] = []

        for pattern in self.LOCATION_PATTERNS:
            for match in pattern.finditer(question):
                location = self._match_gazetteer(match.group(1))
                if location:
                    locations.append(location)

        for word in re.findall(r"\b[A-Z][A-Za-z]*\b", question):
            location = self._LOCATION_LOOKUP.get(word.lower())
            if location:
                locations.append(location)

        return _dedupe(locations)

    def _match_gazetteer(self, phrase: str) -> Optional[str]:
        """Exact gazetteer hit, else the longest entry contained in the phrase"""
        normalized = phrase.lower().strip()
        if normalized in self._LOCATION_LOOKUP:
            return self._LOCATION_LOOKUP[normalized]

        contained = [
            location for key, location in self._LOCATION_LOOKUP.items()
            if re.search(rf"\b{re.escape(key)}\b", normalized)
        ]
        if not contained:
            return None
        return max(contained, key=len)

    def extract_items(self, question: str) -> List[str]:
        """Item nouns from phrase patterns plus known concierge categories"""
        items: List[str] = []

        for pattern in self.ITEM_PATTERNS:
            for match in pattern.finditer(question):
                noun = match.group(1).lower()
                if len(noun) > 2 and noun not in STOP_WORDS:
                    items.append(noun)

        question_lower = question.lower()
        for category, pattern in self.CATEGORY_PATTERNS:
            if pattern.search(question_lower):
                items.append(category)

        return _dedupe(items)

    def is_multi_user_query(self, question: str) -> bool:
        """Whether the question asks about several members"""
        return any(pattern.search(question) for pattern in self.MULTI_USER_PATTERNS)
