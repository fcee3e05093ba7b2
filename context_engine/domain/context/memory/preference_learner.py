from abc import ABC, abstractmethod
from typing import List
import re

from context_engine.domain.models.context_package import (
    ActionRecord,
    MemoryEntry,
    Outcome,
    UserProfile,
)


TECHNOLOGIES = [
    "typescript", "javascript", "python", "react", "vue", "node.js", "express",
    "fastapi", "django", "rust", "go", "java",
]

# Mentions needed before a technology becomes a stated preference
TECH_PROMOTION_THRESHOLD = 2

DETAILED_INPUT_LENGTH = 200
BRIEF_INPUT_LENGTH = 50
BRIEF_STREAK = 3
FAST_ACTION_MS = 1000


def mentions(text: str, term: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(term)}(?!\w)", text, re.IGNORECASE) is not None


class PreferenceStrategy(ABC):
    """Infers user preference updates from recorded activity"""

    @abstractmethod
    def learn_from_interaction(
        self, profile: UserProfile, entry: MemoryEntry, recent: List[MemoryEntry]
    ) -> UserProfile:
        """Return an updated profile; `recent` holds earlier entries, most recent first"""

    @abstractmethod
    def learn_from_action(self, profile: UserProfile, action: ActionRecord) -> UserProfile:
        """Return an updated profile for a single recorded action"""


class KeywordPreferenceStrategy(PreferenceStrategy):
    """Deterministic keyword and length heuristics"""

    def learn_from_interaction(
        self, profile: UserProfile, entry: MemoryEntry, recent: List[MemoryEntry]
    ) -> UserProfile:
        profile = profile.model_copy(deep=True)
        text = entry.user_input
        technical = profile.technical_preferences

        for tech in TECHNOLOGIES:
            if not mentions(text, tech):
                continue
            technical.technology_mentions[tech] = technical.technology_mentions.get(tech, 0) + 1
            if (technical.technology_mentions[tech] >= TECH_PROMOTION_THRESHOLD
                    and tech not in technical.primary_languages):
                technical.primary_languages.append(tech)

        style = profile.communication_style
        if len(text) > DETAILED_INPUT_LENGTH or mentions(text, "explain") or mentions(text, "detailed"):
            style.response_length = "detailed"
            style.technical_detail = "high"
        elif mentions(text, "briefly") or self._consistently_short(entry, recent):
            style.response_length = "brief"

        if any(mentions(text, word) for word in ("step", "steps", "breakdown")):
            profile.workflow_preferences.task_breakdown_style = "fine-grained"

        if entry.outcome == Outcome.SUCCESS:
            successful = [action.action for action in entry.actions if action.success]
            if successful:
                pattern = f"workflow: {' -> '.join(successful)}"
                if pattern not in profile.learning_progress.success_patterns:
                    profile.learning_progress.success_patterns.append(pattern)

        return profile

    def learn_from_action(self, profile: UserProfile, action: ActionRecord) -> UserProfile:
        profile = profile.model_copy(deep=True)
        learning = profile.learning_progress

        if action.success:
            pattern = f"successful_{action.action}"
            if pattern not in learning.success_patterns:
                learning.success_patterns.append(pattern)
        else:
            mistake = f"failed_{action.action}: {action.error_message or 'unknown error'}"
            if mistake not in learning.common_mistakes:
                learning.common_mistakes.append(mistake)

        if action.duration_ms < FAST_ACTION_MS:
            profile.workflow_preferences.feedback_frequency = "immediate"

        return profile

    def _consistently_short(self, entry: MemoryEntry, recent: List[MemoryEntry]) -> bool:
        window = [entry, *recent[:BRIEF_STREAK - 1]]
        return len(window) == BRIEF_STREAK and all(len(e.user_input) < BRIEF_INPUT_LENGTH for e in window)
