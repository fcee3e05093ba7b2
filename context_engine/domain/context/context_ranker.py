from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Set
import re

from context_engine.domain.models.context_package import ToolDescriptor, utcnow
from context_engine.infrastructure.config.settings import RankingWeights


# Internal project sources outrank unauthenticated external ones
SOURCE_PRIORITY: Dict[str, float] = {
    "project_docs": 1.0,
    "file_search": 0.9,
    "code_search": 0.8,
    "library_docs": 0.7,
    "web_search": 0.5,
}
DEFAULT_SOURCE_PRIORITY = 0.5

STOP_WORDS = {"a", "an", "the", "in", "on", "of", "to", "for", "and", "or", "is", "with", "my"}


def tokenize(text: str) -> Set[str]:
    words = set(re.findall(r'\w+', text.lower()))
    return words - STOP_WORDS


def lexical_overlap(query: str, content: str) -> float:
    """Share of query terms present in content, boosted on a substring match"""

    query_words = tokenize(query)
    if not query_words:
        return 0.0

    content_words = tokenize(content)
    score = len(query_words & content_words) / len(query_words)

    if query.strip() and query.lower().strip() in content.lower():
        score += 0.3

    return min(score, 1.0)


class RelevanceStrategy(ABC):
    """Scores a candidate item against a query"""

    @abstractmethod
    def score(
        self,
        query: str,
        text: str,
        source: str,
        produced_at: Optional[datetime] = None,
        provider_score: Optional[float] = None,
    ) -> float:
        """Return a relevance score in [0, 1]"""


class KeywordRelevanceStrategy(RelevanceStrategy):
    """Weighted blend of lexical overlap, source priority and recency"""

    def __init__(self, weights: Optional[RankingWeights] = None, half_life_days: float = 7.0):
        self.weights = weights or RankingWeights()
        self.half_life_days = half_life_days

    def score(
        self,
        query: str,
        text: str,
        source: str,
        produced_at: Optional[datetime] = None,
        provider_score: Optional[float] = None,
    ) -> float:
        match = lexical_overlap(query, text)
        if provider_score is not None:
            # Providers rank with their own engines; average it in
            match = (match + max(0.0, min(provider_score, 1.0))) / 2

        priority = SOURCE_PRIORITY.get(source, DEFAULT_SOURCE_PRIORITY)
        recency = self.recency(produced_at)

        total_weight = self.weights.relevance + self.weights.source_priority + self.weights.recency
        if total_weight <= 0:
            return 0.0

        blended = (
            self.weights.relevance * match
            + self.weights.source_priority * priority
            + self.weights.recency * recency
        ) / total_weight
        return round(max(0.0, min(blended, 1.0)), 4)

    def recency(self, produced_at: Optional[datetime]) -> float:
        """Exponential decay with the configured half-life; unknown age counts as fresh"""

        if produced_at is None:
            return 1.0
        if produced_at.tzinfo is None:
            produced_at = produced_at.replace(tzinfo=utcnow().tzinfo)
        age_days = max((utcnow() - produced_at).total_seconds() / 86400, 0.0)
        return 0.5 ** (age_days / self.half_life_days)


class ContextRanker:
    """Ranks context elements by relevance to query"""

    async def rank_tools(self, query: str, tools: List[ToolDescriptor]) -> Dict[str, float]:
        """Rank tools by relevance to query"""

        scores = {}
        query_words = tokenize(query)

        for tool in tools:
            desc_words = tokenize(" ".join([tool.description, *tool.capabilities]))
            name_words = tokenize(tool.name.replace("-", " "))

            desc_overlap = len(query_words & desc_words)
            name_overlap = len(query_words & name_words)

            # Weight name matches higher
            score = (name_overlap * 2 + desc_overlap) / len(query_words) if query_words else 0
            scores[tool.name] = min(score, 1.0)

        return scores

