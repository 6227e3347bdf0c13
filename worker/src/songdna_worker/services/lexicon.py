"""Word lists shared by the profilers and the template generator."""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List

_LEXICON_PATH = Path(__file__).resolve().parents[1] / "data" / "lexicon.json"


@dataclass(frozen=True)
class GeneratorWordBank:
    rhyme_families: List[List[str]]
    fillers: List[str]
    two_syllable_fillers: List[str]
    emotion_colour: Dict[str, List[str]]


@dataclass(frozen=True)
class Lexicon:
    version: int
    section_types: frozenset[str]
    stopwords: frozenset[str]
    common_words: frozenset[str]
    theme_taxonomy: Dict[str, List[str]]
    emotion_lexicon: Dict[str, List[str]]
    intensifiers: frozenset[str]
    vulnerability_markers: frozenset[str]
    sincerity_markers: frozenset[str]
    irony_markers: frozenset[str]
    alliteration_digraphs: Dict[str, str]
    generator: GeneratorWordBank


def _lower_set(values: List[str]) -> frozenset[str]:
    return frozenset(value.strip().lower() for value in values if value.strip())


def _build_lexicon(raw: dict) -> Lexicon:
    generator_raw = raw["generator"]
    generator = GeneratorWordBank(
        rhyme_families=[[word.lower() for word in family] for family in generator_raw["rhyme_families"]],
        fillers=[word.lower() for word in generator_raw["fillers"]],
        two_syllable_fillers=[word.lower() for word in generator_raw.get("two_syllable_fillers", [])],
        emotion_colour={
            key.lower(): [word.lower() for word in words]
            for key, words in generator_raw.get("emotion_colour", {}).items()
        },
    )
    return Lexicon(
        version=int(raw["version"]),
        section_types=_lower_set(raw["section_types"]),
        stopwords=_lower_set(raw["stopwords"]),
        common_words=_lower_set(raw["common_words"]),
        theme_taxonomy={
            theme.lower(): [word.lower() for word in words]
            for theme, words in raw["theme_taxonomy"].items()
        },
        emotion_lexicon={
            emotion.lower(): [word.lower() for word in words]
            for emotion, words in raw["emotion_lexicon"].items()
        },
        intensifiers=_lower_set(raw.get("intensifiers", [])),
        vulnerability_markers=_lower_set(raw.get("vulnerability_markers", [])),
        sincerity_markers=_lower_set(raw.get("sincerity_markers", [])),
        irony_markers=_lower_set(raw.get("irony_markers", [])),
        alliteration_digraphs=dict(raw.get("alliteration_digraphs", {})),
        generator=generator,
    )


@lru_cache(maxsize=1)
def load_lexicon() -> Lexicon:
    try:
        raw = json.loads(_LEXICON_PATH.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:  # pragma: no cover - packaging error
        raise RuntimeError(f"lexicon file missing at {_LEXICON_PATH}") from exc
    return _build_lexicon(raw)
