"""Lyrical mechanics: cadence, rhyme, vocabulary, density and repetition."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Protocol, Sequence

import numpy as np
from loguru import logger

from ..app.models import LyricalPatterns, RepetitionPattern, SyllableProfile, VocabularyLevel
from .lexicon import Lexicon, load_lexicon
from .prosody import (
    keys_match,
    line_syllables,
    rhyme_key,
    rhyme_scheme,
    scheme_mismatches,
    tokenize,
    words_in,
)
from .types import Section

MIN_REPEAT_WORDS = 3
MAX_REPETITION_PATTERNS = 10
MAX_THEMES = 5
SIMPLE_VOCABULARY_THRESHOLD = 0.8
MODERATE_VOCABULARY_THRESHOLD = 0.5


class ThemeClassifier(Protocol):
    def classify(self, words: Sequence[str]) -> List[str]:
        ...


class MetaphorScorer(Protocol):
    def score(self, lines: Sequence[str]) -> float:
        ...


class KeywordThemeClassifier:
    """Rank taxonomy themes by keyword hits."""

    def __init__(self, lexicon: Optional[Lexicon] = None) -> None:
        self._lexicon = lexicon or load_lexicon()

    def classify(self, words: Sequence[str]) -> List[str]:
        counts = Counter(words)
        scored: List[tuple[int, int, str]] = []
        for order, (theme, keywords) in enumerate(self._lexicon.theme_taxonomy.items()):
            hits = sum(counts[keyword] for keyword in keywords)
            if hits > 0:
                scored.append((-hits, order, theme))
        scored.sort()
        return [theme for _, _, theme in scored[:MAX_THEMES]]


@dataclass
class LyricalProfile:
    patterns: LyricalPatterns
    notes: List[str] = field(default_factory=list)


def _density(ratio: float) -> float:
    return round(min(10.0, max(0.0, ratio * 10.0)), 2)


def syllable_profile(sections: Sequence[Section]) -> SyllableProfile:
    distribution = [line_syllables(line) for section in sections for line in section.lines]
    if not distribution:
        return SyllableProfile(average=0.0, variance=0.0, distribution=[])
    values = np.asarray(distribution, dtype=np.float64)
    return SyllableProfile(
        average=round(float(values.mean()), 3),
        variance=round(float(values.var()), 3),
        distribution=distribution,
    )


def vocabulary_level(words: Sequence[str], common_words: frozenset[str]) -> VocabularyLevel:
    if not words:
        return VocabularyLevel.MODERATE
    ratio = sum(1 for word in words if word in common_words) / len(words)
    if ratio > SIMPLE_VOCABULARY_THRESHOLD:
        return VocabularyLevel.SIMPLE
    if ratio >= MODERATE_VOCABULARY_THRESHOLD:
        return VocabularyLevel.MODERATE
    return VocabularyLevel.COMPLEX


def signature_words(words: Sequence[str], stopwords: frozenset[str], limit: int) -> List[str]:
    counts: Counter[str] = Counter()
    first_seen: Dict[str, int] = {}
    for position, word in enumerate(words):
        if len(word) < 3 or word in stopwords:
            continue
        counts[word] += 1
        first_seen.setdefault(word, position)
    ranked = sorted(counts, key=lambda word: (-counts[word], first_seen[word]))
    return ranked[:limit]


def _initial_sound(word: str, digraphs: Dict[str, str]) -> Optional[str]:
    if not word or word[0] in "aeiou":
        return None
    prefix = word[:2]
    if prefix in digraphs:
        return digraphs[prefix]
    if word[0] == "c" and len(word) > 1 and word[1] in "eiy":
        return "s"
    if word[0] == "c":
        return "k"
    return word[0]


def alliteration_density(lines: Sequence[str], digraphs: Dict[str, str]) -> float:
    pairs = 0
    hits = 0
    for line in lines:
        words = tokenize(line)
        for left, right in zip(words, words[1:]):
            pairs += 1
            sound = _initial_sound(left, digraphs)
            if sound is not None and sound == _initial_sound(right, digraphs):
                hits += 1
    if pairs == 0:
        return 0.0
    return _density(hits / pairs)


def internal_rhyme_density(lines: Sequence[str]) -> float:
    if not lines:
        return 0.0
    hits = 0
    for line in lines:
        inner = [word for word in tokenize(line)[:-1] if len(word) >= 3]
        keys = [rhyme_key(word) for word in inner]
        for i in range(len(inner)):
            for j in range(i + 1, len(inner)):
                if inner[i] != inner[j] and keys_match(keys[i], keys[j]):
                    hits += 1
    return _density(hits / len(lines))


def metaphor_marker_density(lines: Sequence[str]) -> float:
    if not lines:
        return 0.0
    # "as if" is one marker: only the "as" is counted.
    markers = sum(
        1 for line in lines for word in tokenize(line) if word in ("like", "as")
    )
    return _density(markers / len(lines))


def _phrase_spread(phrase: str, sections: Sequence[Section]) -> tuple[List[int], int]:
    needle = f" {phrase} "
    positions: List[int] = []
    occurrences = 0
    for section in sections:
        hits = sum(1 for line in section.lines if needle in f" {' '.join(tokenize(line))} ")
        if hits:
            positions.append(section.index)
            occurrences += hits
    return positions, occurrences


def repetition_patterns(sections: Sequence[Section]) -> List[RepetitionPattern]:
    """Maximal word runs (three words or more) shared by two or more sections."""
    tokenised = [[tokenize(line) for line in section.lines] for section in sections]
    candidates: Dict[str, int] = {}
    order = 0
    for left_index in range(len(sections)):
        for right_index in range(left_index + 1, len(sections)):
            for left_line in tokenised[left_index]:
                for right_line in tokenised[right_index]:
                    matcher = SequenceMatcher(None, left_line, right_line, autojunk=False)
                    for block in matcher.get_matching_blocks():
                        if block.size < MIN_REPEAT_WORDS:
                            continue
                        phrase = " ".join(left_line[block.a : block.a + block.size])
                        if phrase not in candidates:
                            candidates[phrase] = order
                            order += 1

    by_index = {section.index: section for section in sections}
    spreads: Dict[str, tuple[List[int], int]] = {}
    for phrase in candidates:
        positions, occurrences = _phrase_spread(phrase, sections)
        if len(positions) >= 2:
            spreads[phrase] = (positions, occurrences)

    kept: List[str] = []
    for phrase in sorted(spreads, key=lambda value: (-len(value.split()), candidates[value])):
        positions = set(spreads[phrase][0])
        absorbed = any(
            f" {phrase} " in f" {longer} " and positions <= set(spreads[longer][0])
            for longer in kept
        )
        if not absorbed:
            kept.append(phrase)

    kept.sort(key=lambda value: (-len(spreads[value][0]), -len(value.split()), candidates[value]))
    patterns: List[RepetitionPattern] = []
    for phrase in kept[:MAX_REPETITION_PATTERNS]:
        positions, occurrences = spreads[phrase]
        patterns.append(
            RepetitionPattern(
                phrase=phrase,
                occurrences=occurrences,
                sections=[by_index[position].label for position in positions],
                section_types=[by_index[position].section_type for position in positions],
                positions=positions,
            )
        )
    return patterns


def canonical_rhyme_schemes(sections: Sequence[Section]) -> tuple[Dict[str, str], List[str]]:
    """Scheme of each type's first occurrence, plus notes on drifting repeats."""
    schemes: Dict[str, str] = {}
    notes: List[str] = []
    for section in sections:
        scheme = rhyme_scheme(section.lines)
        canonical = schemes.get(section.section_type)
        if canonical is None:
            schemes[section.section_type] = scheme
            continue
        mismatches = scheme_mismatches(canonical, scheme)
        if mismatches > 1:
            notes.append(
                f"{section.label} rhymes {scheme} but the first {section.section_type} "
                f"rhymes {canonical} ({mismatches} pair mismatches)"
            )
    return schemes, notes


class LyricalProfiler:
    def __init__(
        self,
        *,
        lexicon: Optional[Lexicon] = None,
        theme_classifier: Optional[ThemeClassifier] = None,
        metaphor_scorer: Optional[MetaphorScorer] = None,
        signature_word_count: int = 8,
    ) -> None:
        self._lexicon = lexicon or load_lexicon()
        self._keyword_themes = KeywordThemeClassifier(self._lexicon)
        self._theme_classifier = theme_classifier
        self._metaphor_scorer = metaphor_scorer
        self._signature_word_count = signature_word_count

    def profile(self, sections: Sequence[Section]) -> LyricalProfile:
        lines = [line for section in sections for line in section.lines]
        words = words_in(lines)
        notes: List[str] = []

        schemes, scheme_notes = canonical_rhyme_schemes(sections)
        notes.extend(scheme_notes)

        themes = self._themes(words, notes)
        metaphor = self._metaphor(lines, notes)

        patterns = LyricalPatterns(
            rhyme_schemes=schemes,
            syllables_per_line=syllable_profile(sections),
            vocabulary_level=vocabulary_level(words, self._lexicon.common_words),
            signature_words=signature_words(
                words, self._lexicon.stopwords, self._signature_word_count
            ),
            themes=themes[:MAX_THEMES],
            metaphor_density=metaphor,
            alliteration_frequency=alliteration_density(
                lines, self._lexicon.alliteration_digraphs
            ),
            internal_rhyme_density=internal_rhyme_density(lines),
            repetition_patterns=repetition_patterns(sections),
        )
        return LyricalProfile(patterns=patterns, notes=notes)

    def _themes(self, words: Sequence[str], notes: List[str]) -> List[str]:
        if self._theme_classifier is not None:
            try:
                return [theme for theme in self._theme_classifier.classify(words) if theme]
            except Exception as exc:  # noqa: BLE001
                logger.warning("Theme classifier failed, using keyword themes: {}", exc)
                notes.append("theme classifier unavailable; keyword themes used")
        return self._keyword_themes.classify(words)

    def _metaphor(self, lines: Sequence[str], notes: List[str]) -> float:
        if self._metaphor_scorer is not None:
            try:
                return round(min(10.0, max(0.0, float(self._metaphor_scorer.score(lines)))), 2)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Metaphor scorer failed, using marker count: {}", exc)
                notes.append("metaphor scorer unavailable; simile markers counted")
        return metaphor_marker_density(lines)
