"""Emotional profile via a pluggable classifier with a neutral fallback."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from loguru import logger

from ..app.models import EmotionalMapping
from .exceptions import MalformedResponseError
from .lexicon import Lexicon, load_lexicon
from .prosody import words_in
from .types import EmotionReading, Section

NEUTRAL = "neutral"
MAX_SECONDARY = 3


class EmotionClassifier(Protocol):
    def classify(self, sections: Sequence[Section]) -> EmotionReading:
        ...

    def label_lines(self, lines: Sequence[str]) -> str:
        ...


def _clamp(value: float, low: float, high: float) -> float:
    return round(max(low, min(high, float(value))), 2)


class LexiconEmotionClassifier:
    """Keyword-count classifier backed by the bundled emotion lexicon."""

    def __init__(self, lexicon: Optional[Lexicon] = None) -> None:
        self._lexicon = lexicon or load_lexicon()
        self._order = list(self._lexicon.emotion_lexicon.keys())

    def _counts(self, words: Sequence[str]) -> Counter[str]:
        counts: Counter[str] = Counter()
        present = Counter(words)
        for emotion, keywords in self._lexicon.emotion_lexicon.items():
            hits = sum(present[keyword] for keyword in keywords)
            if hits:
                counts[emotion] = hits
        return counts

    def _ranked(self, counts: Counter[str]) -> List[str]:
        return sorted(counts, key=lambda emotion: (-counts[emotion], self._order.index(emotion)))

    def label_lines(self, lines: Sequence[str]) -> str:
        ranked = self._ranked(self._counts(words_in(lines)))
        return ranked[0] if ranked else NEUTRAL

    def classify(self, sections: Sequence[Section]) -> EmotionReading:
        lines = [line for section in sections for line in section.lines]
        words = words_in(lines)
        counts = self._counts(words)
        ranked = self._ranked(counts)

        word_total = max(1, len(words))
        line_total = max(1, len(lines))
        emotional_hits = sum(counts.values())
        intensifier_hits = sum(1 for word in words if word in self._lexicon.intensifiers)
        vulnerable_hits = sum(1 for word in words if word in self._lexicon.vulnerability_markers)
        sincere = sum(1 for word in words if word in self._lexicon.sincerity_markers)
        ironic = sum(1 for word in words if word in self._lexicon.irony_markers)

        if sincere + ironic:
            sincerity = (sincere - ironic) / (sincere + ironic) * 10.0
        else:
            sincerity = 0.0

        return EmotionReading(
            primary_emotion=ranked[0] if ranked else NEUTRAL,
            secondary_emotions=ranked[1 : 1 + MAX_SECONDARY],
            emotional_arc=[self.label_lines(section.lines) for section in sections],
            overall_intensity=_clamp((emotional_hits + intensifier_hits) / word_total * 50.0, 0, 10),
            vulnerability_level=_clamp(vulnerable_hits / line_total * 10.0, 0, 10),
            sincerity_vs_irony=_clamp(sincerity, -10, 10),
        )


def neutral_mapping() -> EmotionalMapping:
    """Defaults used when no classifier result is available."""
    return EmotionalMapping(
        primary_emotion=NEUTRAL,
        secondary_emotions=[],
        emotional_arc=[],
        overall_intensity=5.0,
        vulnerability_level=5.0,
        sincerity_vs_irony=0.0,
    )


@dataclass
class EmotionalProfile:
    mapping: EmotionalMapping
    notes: List[str] = field(default_factory=list)
    fallback: bool = False


class EmotionalProfiler:
    def __init__(self, classifier: Optional[EmotionClassifier]) -> None:
        self._classifier = classifier

    @property
    def classifier(self) -> Optional[EmotionClassifier]:
        return self._classifier

    def profile(self, sections: Sequence[Section]) -> EmotionalProfile:
        if self._classifier is None:
            return EmotionalProfile(
                mapping=neutral_mapping(),
                notes=["no emotion classifier configured; neutral emotional profile used"],
                fallback=True,
            )
        try:
            reading = self._classifier.classify(sections)
            if len(reading.emotional_arc) != len(sections):
                raise MalformedResponseError(
                    f"emotional arc has {len(reading.emotional_arc)} labels "
                    f"for {len(sections)} sections"
                )
            mapping = EmotionalMapping(
                primary_emotion=reading.primary_emotion or NEUTRAL,
                secondary_emotions=list(reading.secondary_emotions)[:MAX_SECONDARY],
                emotional_arc=list(reading.emotional_arc),
                overall_intensity=_clamp(reading.overall_intensity, 0, 10),
                vulnerability_level=_clamp(reading.vulnerability_level, 0, 10),
                sincerity_vs_irony=_clamp(reading.sincerity_vs_irony, -10, 10),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Emotion classifier failed, using neutral profile: {}", exc)
            return EmotionalProfile(
                mapping=neutral_mapping(),
                notes=[f"emotion classifier failed ({exc}); neutral emotional profile used"],
                fallback=True,
            )
        return EmotionalProfile(mapping=mapping)
