from __future__ import annotations

from typing import Sequence

from songdna_worker.services.emotion import (
    NEUTRAL,
    EmotionalProfiler,
    LexiconEmotionClassifier,
)
from songdna_worker.services.types import EmotionReading, Section

SECTIONS = [
    Section(
        label="Verse 1",
        section_type="Verse",
        lines=("i cry alone in the rain", "tears fall down"),
        index=0,
    ),
    Section(
        label="Chorus",
        section_type="Chorus",
        lines=("love you baby hold me", "heart on fire"),
        index=1,
    ),
]


class ShortArcClassifier:
    def classify(self, sections: Sequence[Section]) -> EmotionReading:
        return EmotionReading(
            primary_emotion="joy",
            secondary_emotions=[],
            emotional_arc=["joy"],
            overall_intensity=4.0,
            vulnerability_level=1.0,
            sincerity_vs_irony=0.0,
        )

    def label_lines(self, lines: Sequence[str]) -> str:
        return "joy"


class ExplodingClassifier:
    def classify(self, sections: Sequence[Section]) -> EmotionReading:
        raise TimeoutError("classifier timed out")

    def label_lines(self, lines: Sequence[str]) -> str:
        raise TimeoutError("classifier timed out")


class LoudClassifier(ShortArcClassifier):
    def classify(self, sections: Sequence[Section]) -> EmotionReading:
        return EmotionReading(
            primary_emotion="anger",
            secondary_emotions=["fear", "sadness", "defiance", "longing"],
            emotional_arc=["anger"] * len(sections),
            overall_intensity=25.0,
            vulnerability_level=-3.0,
            sincerity_vs_irony=-40.0,
        )


def test_lexicon_classifier_reads_primary_and_arc() -> None:
    reading = LexiconEmotionClassifier().classify(SECTIONS)
    assert reading.primary_emotion == "sadness"
    assert reading.secondary_emotions[:2] == ["love", "anger"]
    assert reading.emotional_arc == ["sadness", "love"]
    assert reading.overall_intensity == 10.0
    assert reading.vulnerability_level == 7.5
    assert reading.sincerity_vs_irony == 10.0


def test_label_lines_defaults_to_neutral() -> None:
    classifier = LexiconEmotionClassifier()
    assert classifier.label_lines(["walking to the shop"]) == NEUTRAL
    assert classifier.label_lines(["we dance in the sun"]) == "joy"


def test_profiler_without_classifier_is_neutral() -> None:
    profile = EmotionalProfiler(None).profile(SECTIONS)
    assert profile.fallback is True
    assert profile.mapping.primary_emotion == NEUTRAL
    assert profile.mapping.overall_intensity == 5.0
    assert profile.mapping.sincerity_vs_irony == 0.0
    assert profile.notes


def test_profiler_rejects_arc_of_wrong_length() -> None:
    profile = EmotionalProfiler(ShortArcClassifier()).profile(SECTIONS)
    assert profile.fallback is True
    assert profile.mapping.primary_emotion == NEUTRAL
    assert "emotional arc" in profile.notes[0]


def test_profiler_survives_classifier_failure() -> None:
    profile = EmotionalProfiler(ExplodingClassifier()).profile(SECTIONS)
    assert profile.fallback is True
    assert "timed out" in profile.notes[0]


def test_profiler_clamps_scores() -> None:
    profile = EmotionalProfiler(LoudClassifier()).profile(SECTIONS)
    mapping = profile.mapping
    assert profile.fallback is False
    assert mapping.overall_intensity == 10.0
    assert mapping.vulnerability_level == 0.0
    assert mapping.sincerity_vs_irony == -10.0
    assert mapping.secondary_emotions == ["fear", "sadness", "defiance"]
    assert mapping.emotional_arc == ["anger", "anger"]
