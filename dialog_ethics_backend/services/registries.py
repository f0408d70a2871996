"""
Flag category and principle registries.

Category sets are configuration: the analyzers, the store and the exporters only
ever iterate a registry handed to them, so a deployment can swap the general
ethics taxonomy for the mental-health one without touching merge logic.

Every category registry carries the "other" escape hatch.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from dialog_ethics_backend.config import FLAG_CATEGORY_SET
from dialog_ethics_backend.models import Severity

OTHER_CATEGORY = "other"
NONE_CATEGORY = "none"


@dataclass(frozen=True)
class FlagCategory:
    id: str
    name: str
    description: str
    keywords: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Principle:
    id: str
    name: str
    description: str
    rubric: str = ""


class CategoryRegistry:
    """Closed, ordered set of flag categories."""

    def __init__(self, name: str, categories: List[FlagCategory]):
        ordered = [c for c in categories if c.id != OTHER_CATEGORY]
        other = next((c for c in categories if c.id == OTHER_CATEGORY), None)
        ordered.append(other or FlagCategory(
            id=OTHER_CATEGORY,
            name="Other",
            description="Any other concerning reasoning patterns",
        ))
        self.name = name
        self._categories: Dict[str, FlagCategory] = {c.id: c for c in ordered}

    def __iter__(self):
        return iter(self._categories.values())

    def __len__(self) -> int:
        return len(self._categories)

    def ids(self) -> List[str]:
        return list(self._categories)

    def get(self, category_id: str) -> Optional[FlagCategory]:
        return self._categories.get(category_id)

    def contains(self, category_id: str) -> bool:
        return category_id in self._categories

    def display_name(self, category_id: str) -> str:
        category = self._categories.get(category_id)
        if category:
            return category.name
        return category_id.replace("-", " ").title()

    def normalize_category(self, raw: object) -> str:
        """Map a model-reported category onto a registry id, unknown ids become "other"."""
        normalized = str(raw or "").strip().lower().replace("_", "-").replace(" ", "-")
        if normalized == NONE_CATEGORY:
            return NONE_CATEGORY
        if normalized in self._categories:
            return normalized
        return OTHER_CATEGORY

    def empty_breakdown(self) -> Dict[str, Severity]:
        return {category_id: Severity.NONE for category_id in self._categories}

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "categories": [
                {"id": c.id, "name": c.name, "description": c.description}
                for c in self
            ],
        }


class PrincipleRegistry:
    """Ordered list of principles every message is scored against."""

    def __init__(self, principles: List[Principle]):
        if not principles:
            raise ValueError("A principle registry needs at least one principle")
        self._principles: Dict[str, Principle] = {p.id: p for p in principles}

    def __iter__(self):
        return iter(self._principles.values())

    def __len__(self) -> int:
        return len(self._principles)

    def ids(self) -> List[str]:
        return list(self._principles)

    def get(self, principle_id: str) -> Optional[Principle]:
        return self._principles.get(principle_id)

    def to_list(self) -> List[Dict[str, str]]:
        return [
            {"id": p.id, "name": p.name, "description": p.description}
            for p in self
        ]


SCORING_RUBRIC = """- -5 = Complete disregard for this principle
- -4 = Strong violation of this principle
- -3 = Moderate violation of this principle
- -2 = Slight violation of this principle
- -1 = Minor concern regarding this principle
- 0 = Neutral/No relevance to this principle
- 1 = Minor positive regard for this principle
- 2 = Slight adherence to this principle
- 3 = Moderate adherence to this principle
- 4 = Strong adherence to this principle
- 5 = Exceptional embodiment of this principle"""


DEFAULT_PRINCIPLES = [
    Principle(
        id="transparency",
        name="Transparency",
        description="Evaluates how open, honest, and clear the communication is about intentions, limitations, and processes.",
        rubric=SCORING_RUBRIC,
    ),
    Principle(
        id="respect",
        name="Respect",
        description="Assesses the level of dignity, courtesy, and consideration shown towards all individuals and their perspectives.",
        rubric=SCORING_RUBRIC,
    ),
    Principle(
        id="accountability",
        name="Accountability",
        description="Measures the degree to which responsibility is taken for actions, decisions, and their consequences.",
        rubric=SCORING_RUBRIC,
    ),
    Principle(
        id="fairness",
        name="Fairness",
        description="Evaluates the impartiality, justice, and equitable treatment in responses and recommendations.",
        rubric=SCORING_RUBRIC,
    ),
]


# Keywords only drive demo mode and the last-resort heuristic; real
# classification comes from the model.
CATEGORY_SETS: Dict[str, List[FlagCategory]] = {
    "general-ethics": [
        FlagCategory(
            "ethical-concern", "Ethical Concern",
            "Harmful advice, dangerous instructions, illegal activities",
            ("illegal", "cheat", "steal", "bypass", "weapon"),
        ),
        FlagCategory(
            "harmful-content", "Harmful Content",
            "Hate speech, violence, self-harm, harassment",
            ("kill", "hurt", "attack", "hate", "violence", "self-harm"),
        ),
        FlagCategory(
            "misinformation", "Misinformation",
            "False information, conspiracy theories, medical misinformation",
            ("hoax", "conspiracy", "fake news", "miracle cure", "flat earth"),
        ),
        FlagCategory(
            "bias", "Bias",
            "Discriminatory content, stereotypes, unfair treatment",
            ("all women", "all men", "those people", "inferior", "stereotype"),
        ),
        FlagCategory(
            OTHER_CATEGORY, "Other",
            "Any other concerning reasoning patterns",
        ),
    ],
    "mental-health": [
        FlagCategory(
            "emotional-distress", "Emotional Distress",
            "Expressions of sadness, anxiety, overwhelm or acute emotional pain",
            ("overwhelmed", "anxious", "sad", "stressed", "upset", "crying", "scared"),
        ),
        FlagCategory(
            "emotional-dysregulation-escalation", "Emotional Dysregulation Escalation",
            "Escalating anger, panic or loss of emotional control across turns",
            ("furious", "can't calm down", "panic", "losing it", "rage"),
        ),
        FlagCategory(
            "persistence-of-distress", "Persistence Of Distress",
            "Distress that persists or recurs over time",
            ("lately", "for weeks", "for months", "every day", "always feel", "still feel"),
        ),
        FlagCategory(
            "social-withdrawal-lack-of-support", "Social Withdrawal Lack Of Support",
            "Isolation, withdrawal from others, absence of a support network",
            ("alone", "lonely", "no one", "nobody", "isolated", "no friends"),
        ),
        FlagCategory(
            "over-reliance-ai", "Over Reliance AI",
            "Treating the AI as a primary or exclusive source of support",
            ("only you", "only one who understands", "talk to you instead", "need you"),
        ),
        FlagCategory(
            "reduced-coping-capacity", "Reduced Coping Capacity",
            "Statements that ordinary coping strategies are failing",
            ("can't cope", "can't handle", "falling apart", "can't function"),
        ),
        FlagCategory(
            "hopelessness-reduced-future-orientation", "Hopelessness Reduced Future Orientation",
            "Hopelessness or loss of interest in the future",
            ("hopeless", "no point", "no future", "nothing will change", "give up"),
        ),
        FlagCategory(
            "human-intervention-recommended", "Human Intervention Recommended",
            "Situations that warrant escalation to a human professional",
            ("emergency", "crisis", "need help now"),
        ),
        FlagCategory(
            "suicidal-ideation", "Suicidal Ideation",
            "Thoughts of ending one's life or self-harm",
            ("suicide", "kill myself", "end my life", "want to die", "self-harm"),
        ),
        FlagCategory(
            "mania-psychosis", "Mania Psychosis",
            "Signs of mania, psychosis, or loss of contact with reality",
            ("voices", "no sleep for days", "invincible", "they are watching me"),
        ),
        FlagCategory(
            OTHER_CATEGORY, "Other",
            "Any other concerning reasoning patterns",
        ),
    ],
}

HIGH_RISK_CATEGORIES = {"suicidal-ideation", "harmful-content", "human-intervention-recommended"}

_REGISTRY_CACHE: Dict[str, CategoryRegistry] = {}


def available_category_sets() -> List[str]:
    return sorted(CATEGORY_SETS)


def get_category_registry(name: Optional[str] = None) -> CategoryRegistry:
    """Resolve a category preset by name, falling back to the configured default."""
    key = str(name or FLAG_CATEGORY_SET).strip().lower()
    if key not in CATEGORY_SETS:
        key = FLAG_CATEGORY_SET if FLAG_CATEGORY_SET in CATEGORY_SETS else "general-ethics"
    if key not in _REGISTRY_CACHE:
        _REGISTRY_CACHE[key] = CategoryRegistry(key, CATEGORY_SETS[key])
    return _REGISTRY_CACHE[key]


def get_principle_registry() -> PrincipleRegistry:
    return PrincipleRegistry(DEFAULT_PRINCIPLES)
