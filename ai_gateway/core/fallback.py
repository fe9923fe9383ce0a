"""
Pre-written responses used when a live generation cannot be obtained.

The table is keyed by FallbackFeature; every feature carries a "default"
category and unknown features resolve through the GENERIC branch, so resolve()
always returns usable text.
"""

import random
from enum import Enum
from typing import Dict, Optional, Tuple

FALLBACK_TABLE_VERSION = "2024.1"

DEFAULT_CATEGORY = "default"


class FallbackFeature(Enum):
    """Features that have their own fallback templates."""
    LEVEL_FEEDBACK = "level_feedback"
    FORUM_REPLY = "forum_reply"
    BATTLE_TASK_GENERATION = "battle_task_generation"
    ONBOARDING_PERSONALIZATION = "onboarding_personalization"
    USER_SUMMARY = "user_summary"
    GENERIC = "generic"

    @classmethod
    def from_name(cls, feature: str) -> "FallbackFeature":
        """Map a feature name to its table entry, GENERIC when unknown."""
        try:
            return cls(feature)
        except ValueError:
            return cls.GENERIC


FallbackTable = Dict[FallbackFeature, Dict[str, Tuple[str, ...]]]

FALLBACK_TABLE: FallbackTable = {
    FallbackFeature.LEVEL_FEEDBACK: {
        DEFAULT_CATEGORY: (
            "Great job! Keep up the excellent work!",
            "You're making fantastic progress!",
            "Every step counts - you're doing amazing!",
            "Stay strong and keep pushing forward!",
            "Your dedication is inspiring!",
        ),
        "relapse": (
            "A setback is not the end. Tomorrow is a fresh start.",
            "You showed up today, and that matters. Keep going.",
            "Progress isn't always linear - every effort counts.",
        ),
    },
    FallbackFeature.FORUM_REPLY: {
        DEFAULT_CATEGORY: (
            "You're not alone in this journey. We've got your back!",
            "Every small step matters. Keep going!",
            "Your progress inspires others. Thank you for sharing!",
            "Stay strong! This community believes in you!",
            "You're doing better than you think. Keep pushing!",
        ),
    },
    FallbackFeature.BATTLE_TASK_GENERATION: {
        DEFAULT_CATEGORY: (
            "Complete a 10-minute mindfulness exercise",
            "Write down 3 things you're grateful for",
            "Take a 5-minute walk outside",
            "Practice deep breathing for 5 minutes",
            "Write a positive affirmation for yourself",
        ),
        "nofap": (
            "Do 20 pushups when craving hits",
            "Take a cold shower for 2 minutes",
            "Read 10 pages of a book",
            "Go for a 15-minute walk",
            "Practice deep breathing for 5 minutes",
        ),
        "sugar": (
            "Drink a full glass of water",
            "Eat a piece of fruit instead",
            "Take a 10-minute walk outside",
            "Brush your teeth",
            "Call a friend for support",
        ),
        "shopping": (
            "Wait 24 hours before buying",
            "Calculate the real cost (including interest)",
            "Find 3 free alternatives",
            "Delete shopping apps for the day",
            "Put the money in savings instead",
        ),
        "smoking_vaping": (
            "Chew gum for 5 minutes",
            "Do 10 jumping jacks",
            "Call your support person",
            "Practice the 4-7-8 breathing technique",
            "Go to a smoke-free environment",
        ),
        "social_media": (
            "Put phone in another room for 1 hour",
            "Read a book for 30 minutes",
            "Go for a walk without your phone",
            "Call a friend instead of texting",
            "Do a creative activity offline",
        ),
    },
    FallbackFeature.ONBOARDING_PERSONALIZATION: {
        DEFAULT_CATEGORY: (
            "Welcome to your journey! We're excited to support you every step of the way.",
            "Your commitment to change is the first and most important step.",
            "Remember, progress isn't always linear - every effort counts.",
            "You've got this! We believe in your ability to succeed.",
            "Welcome aboard! Let's make this journey together.",
        ),
    },
    FallbackFeature.USER_SUMMARY: {
        DEFAULT_CATEGORY: (
            "Recent progress shows strong commitment. Keep building on it.",
            "You're putting in the work. Stay consistent this week.",
        ),
    },
    FallbackFeature.GENERIC: {
        DEFAULT_CATEGORY: (
            "Keep going - every step forward counts.",
            "Stay strong. You're making progress.",
        ),
    },
}


def _validate_table(table: FallbackTable) -> None:
    for feature in FallbackFeature:
        categories = table.get(feature)
        if not categories or DEFAULT_CATEGORY not in categories:
            raise ValueError(f"Fallback table has no default category for {feature.value}")
        for category, candidates in categories.items():
            if not candidates or not all(text.strip() for text in candidates):
                raise ValueError(f"Empty fallback template in {feature.value}/{category}")


class FallbackResolver:
    """Uniform-random selection over the fallback table."""

    def __init__(self, table: Optional[FallbackTable] = None, rng: Optional[random.Random] = None):
        self.table = table or FALLBACK_TABLE
        _validate_table(self.table)
        self._rng = rng or random.Random()
        self.version = FALLBACK_TABLE_VERSION

    def candidates(self, feature: str, category: Optional[str] = None) -> Tuple[str, ...]:
        """The fixed set resolve() draws from for this feature and category."""
        categories = self.table[FallbackFeature.from_name(feature)]
        if category and category in categories:
            return categories[category]
        return categories[DEFAULT_CATEGORY]

    def resolve(self, feature: str, category: Optional[str] = None) -> str:
        return self._rng.choice(self.candidates(feature, category))
