from __future__ import annotations

from typing import List, Sequence

from songdna_worker.app.models import VocabularyLevel
from songdna_worker.services.lexicon import load_lexicon
from songdna_worker.services.lyrical import (
    KeywordThemeClassifier,
    LyricalProfiler,
    alliteration_density,
    canonical_rhyme_schemes,
    internal_rhyme_density,
    metaphor_marker_density,
    repetition_patterns,
    signature_words,
    syllable_profile,
    vocabulary_level,
)
from songdna_worker.services.types import Section


def _sections(*blocks: tuple[str, str, List[str]]) -> List[Section]:
    return [
        Section(label=label, section_type=section_type, lines=tuple(lines), index=index)
        for index, (label, section_type, lines) in enumerate(blocks)
    ]


SONG = _sections(
    ("Verse 1", "Verse", ["walking in the rain again", "thinking of the way it was"]),
    ("Chorus", "Chorus", ["hold on to me tonight", "dont let go"]),
    ("Verse 2", "Verse", ["driving through the city", "nothing left to lose"]),
    ("Chorus", "Chorus", ["hold on to me tonight", "dont let go"]),
)


class ExplodingThemes:
    def classify(self, words: Sequence[str]) -> List[str]:
        raise RuntimeError("theme service down")


class FixedMetaphor:
    def score(self, lines: Sequence[str]) -> float:
        return 42.0


def test_syllable_profile_uses_population_variance() -> None:
    sections = _sections(("Verse", "Verse", ["one two", "one two three four"]))
    profile = syllable_profile(sections)
    assert profile.distribution == [2, 4]
    assert profile.average == 3.0
    assert profile.variance == 1.0


def test_syllable_profile_of_nothing() -> None:
    profile = syllable_profile([])
    assert profile.average == 0.0
    assert profile.distribution == []


def test_vocabulary_level_thresholds() -> None:
    common = frozenset({"a", "b", "c", "d", "e"})
    assert vocabulary_level(list("abcde"), common) == VocabularyLevel.SIMPLE
    assert vocabulary_level(list("abcxy"), common) == VocabularyLevel.MODERATE
    assert vocabulary_level(list("abxyz"), common) == VocabularyLevel.COMPLEX


def test_signature_words_rank_by_frequency_then_first_use() -> None:
    words = ["love", "love", "the", "night", "a", "love", "night", "fire", "ok"]
    assert signature_words(words, frozenset({"the", "a"}), 3) == ["love", "night", "fire"]


def test_alliteration_density_handles_digraphs() -> None:
    digraphs = load_lexicon().alliteration_digraphs
    assert alliteration_density(["big bad bear"], digraphs) == 10.0
    assert alliteration_density(["phone fast"], digraphs) == 10.0
    assert alliteration_density(["city sun"], digraphs) == 10.0
    assert alliteration_density(["apple and"], digraphs) == 0.0
    assert alliteration_density([], digraphs) == 0.0


def test_internal_rhyme_density() -> None:
    assert internal_rhyme_density(["the night light falls", "plain words here"]) == 5.0
    assert internal_rhyme_density([]) == 0.0


def test_metaphor_marker_density_counts_simile_markers() -> None:
    lines = ["you shine like the sun", "cold as ice", "nothing here", "as if"]
    assert metaphor_marker_density(lines) == 7.5


def test_repetition_patterns_find_shared_phrases() -> None:
    patterns = repetition_patterns(SONG)
    assert [pattern.phrase for pattern in patterns] == ["hold on to me tonight", "dont let go"]
    first = patterns[0]
    assert first.positions == [1, 3]
    assert first.section_types == ["Chorus", "Chorus"]
    assert first.occurrences == 2


def test_repetition_patterns_absorb_sub_phrases() -> None:
    sections = _sections(
        ("Chorus", "Chorus", ["we are young and free", "young and free"]),
        ("Chorus", "Chorus", ["we are young and free"]),
    )
    patterns = repetition_patterns(sections)
    assert [pattern.phrase for pattern in patterns] == ["we are young and free"]
    assert patterns[0].occurrences == 2


def test_canonical_rhyme_schemes_report_drift() -> None:
    sections = _sections(
        ("Verse 1", "Verse", ["one day", "another way", "what you say", "we play"]),
        ("Verse 2", "Verse", ["one day", "across the town", "another way", "we fall down"]),
    )
    schemes, notes = canonical_rhyme_schemes(sections)
    assert schemes == {"Verse": "AAAA"}
    assert len(notes) == 1
    assert "Verse 2" in notes[0]


def test_keyword_theme_classifier_ranks_hits() -> None:
    classifier = KeywordThemeClassifier()
    themes = classifier.classify(["love", "kiss", "heart", "goodbye"])
    assert themes[0] == "love"
    assert "heartbreak" in themes


def test_profiler_falls_back_when_theme_classifier_fails() -> None:
    profiler = LyricalProfiler(theme_classifier=ExplodingThemes(), metaphor_scorer=FixedMetaphor())
    profile = profiler.profile(SONG)
    assert any("theme classifier" in note for note in profile.notes)
    patterns = profile.patterns
    assert patterns.metaphor_density == 10.0
    assert patterns.rhyme_schemes.keys() == {"Verse", "Chorus"}
    assert patterns.syllables_per_line.distribution
    assert len(patterns.themes) <= 5
    assert patterns.repetition_patterns[0].phrase == "hold on to me tonight"
