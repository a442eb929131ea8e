"""
Heuristic life-event classifier.

Keyword and pattern based placeholder for a real NLP model. Anything with
the same method names can be handed to the event service instead.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

CATEGORIES = (
    "task",
    "memory",
    "health",
    "location",
    "relationship",
    "achievement",
    "reflection",
    "routine",
)

INPUT_KINDS = (
    "sensor_data",
    "note_text",
    "voice_transcript",
    "location_context",
    "calendar_event",
    "health_metric",
)

# Input kinds that decide the category on their own
_KIND_CATEGORIES = {
    "health_metric": "health",
    "location_context": "location",
    "calendar_event": "task",
}

# Checked in order, first match wins
_KEYWORD_CATEGORIES = (
    ("task", ("meeting", "task", "todo")),
    ("memory", ("remember", "memory", "recalled")),
    ("health", ("health", "exercise", "sleep")),
    ("achievement", ("achieved", "completed", "finished")),
)

_NON_NAMES = frozenset({
    "Monday", "Tuesday", "Wednesday", "Thursday", "Friday",
    "Saturday", "Sunday", "January", "February", "March",
    "April", "May", "June", "July", "August", "September",
    "October", "November", "December", "Today", "Tomorrow",
})

_NAME_PATTERN = re.compile(r"\b([A-Z][a-z]+)\b")

_POSITIVE_WORDS = ("happy", "great", "wonderful", "amazing", "good", "love", "excited")
_NEGATIVE_WORDS = ("sad", "bad", "terrible", "awful", "hate", "angry", "frustrated")

_ACTION_PATTERNS = (
    re.compile(r"need to\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"should\s+(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"todo:\s*(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"reminder:\s*(.+?)(?:\.|$)", re.IGNORECASE | re.MULTILINE),
)

_TIME_TAGS = ("morning", "evening", "weekend")

MAX_ENTITIES = 5
MAX_ACTION_ITEMS = 5
MAX_TAGS = 10
TITLE_LENGTH = 50
DESCRIPTION_LENGTH = 500


@dataclass(frozen=True)
class Entity:
    type: str
    name: str
    relevance: float


@dataclass(frozen=True)
class Sentiment:
    score: float
    magnitude: float
    label: str


@dataclass(frozen=True)
class ActionItem:
    text: str
    priority: str = "medium"
    due_date: Optional[str] = None


class HeuristicClassifier:
    """Rule-based stand-in for a language model."""

    def classify(self, text: str, input_kind: str) -> str:
        """Infer the life-event category of ``text``."""
        if input_kind in _KIND_CATEGORIES:
            return _KIND_CATEGORIES[input_kind]

        lowered = text.lower()
        for category, keywords in _KEYWORD_CATEGORIES:
            if any(word in lowered for word in keywords):
                return category
        if "with" in lowered and ("friend" in lowered or "family" in lowered):
            return "relationship"
        if any(word in lowered for word in ("morning", "routine", "daily")):
            return "routine"
        if any(word in lowered for word in ("thought", "reflect", "journal")):
            return "reflection"
        return "memory"

    def extract_entities(self, text: str) -> List[Entity]:
        """Capitalized words as person entities, most relevant first."""
        names = []
        for name in _NAME_PATTERN.findall(text):
            if name not in _NON_NAMES and name not in names:
                names.append(name)
        return [
            Entity(type="person", name=name, relevance=round(1 - index * 0.15, 2))
            for index, name in enumerate(names[:MAX_ENTITIES])
        ]

    def analyze_sentiment(self, text: str) -> Sentiment:
        lowered = text.lower()
        positive = sum(1 for word in _POSITIVE_WORDS if word in lowered)
        negative = sum(1 for word in _NEGATIVE_WORDS if word in lowered)
        total = positive + negative
        if total == 0:
            return Sentiment(score=0.0, magnitude=0.1, label="neutral")

        score = (positive - negative) / total
        magnitude = min(total / 5, 1.0)
        if positive > 0 and negative > 0:
            label = "mixed"
        elif score > 0.2:
            label = "positive"
        elif score < -0.2:
            label = "negative"
        else:
            label = "neutral"
        return Sentiment(score=score, magnitude=magnitude, label=label)

    def extract_action_items(self, text: str) -> List[ActionItem]:
        items = []
        for pattern in _ACTION_PATTERNS:
            for match in pattern.finditer(text):
                captured = match.group(1)
                if captured and len(captured) > 5:
                    items.append(ActionItem(text=captured.strip()))
        return items[:MAX_ACTION_ITEMS]

    def generate_tags(self, text: str, category: str, entities: List[Entity]) -> List[str]:
        tags = [category]
        tags.extend(entity.name.lower() for entity in entities if entity.relevance > 0.5)
        lowered = text.lower()
        tags.extend(tag for tag in _TIME_TAGS if tag in lowered)

        unique = []
        for tag in tags:
            if tag not in unique:
                unique.append(tag)
        return unique[:MAX_TAGS]

    def generate_title(self, text: str) -> str:
        """First sentence, cut to ``TITLE_LENGTH`` with an ellipsis if shortened."""
        first_sentence = re.split(r"[.!?]", text)[0] or text
        title = first_sentence[:TITLE_LENGTH].strip()
        if len(title) < len(text):
            return title if title.endswith("...") else title + "..."
        return title

    def generate_description(self, text: str) -> str:
        return text.strip()[:DESCRIPTION_LENGTH]
