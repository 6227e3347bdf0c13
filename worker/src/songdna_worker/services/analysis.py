"""Analysis pipeline: raw lyrics in, validated song DNA out."""

from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

import numpy as np
from loguru import logger

from ..app.models import (
    AnalysisRequest,
    AnalysisResult,
    ConfidenceScores,
    ReferenceSong,
    SongDNA,
    SongStructure,
)
from ..app.settings import Settings
from .emotion import EmotionClassifier, EmotionalProfiler, LexiconEmotionClassifier
from .lexicon import Lexicon, load_lexicon
from .lyrical import LyricalProfiler, MetaphorScorer, ThemeClassifier
from .prosody import line_syllables, rhyme_scheme
from .segmenter import segment_lyrics
from .structure import StructuralProfiler
from .types import Section
from .validator import validate

HOOK_TYPES = {"Chorus", "Hook", "Refrain"}


@dataclass(frozen=True)
class FlowSummary:
    flow_type: str
    consistency: float
    average: float


def flow_summary(distribution: Sequence[int]) -> FlowSummary:
    """Classify delivery from per-line syllable counts."""
    if not distribution:
        return FlowSummary(flow_type="varied", consistency=0.0, average=0.0)
    values = np.asarray(distribution, dtype=np.float64)
    average = float(values.mean())
    consistency = 1.0 - float(values.std()) / average if average > 0 else 0.0
    flow_type = "varied"
    if consistency > 0.8:
        flow_type = "consistent"
    if consistency < 0.5:
        flow_type = "complex"
    if average > 12:
        flow_type = "dense"
    if average < 6:
        flow_type = "minimal"
    return FlowSummary(flow_type=flow_type, consistency=max(0.0, consistency), average=average)


def estimate_tempo(average_syllables: float) -> int:
    if average_syllables < 6:
        return 60
    if average_syllables < 8:
        return 80
    if average_syllables < 10:
        return 100
    if average_syllables < 12:
        return 120
    return 140


def _most_common_scheme(sections: Sequence[Section]) -> str:
    schemes = [rhyme_scheme(section.lines) for section in sections]
    if not schemes:
        return "VARIED"
    return Counter(schemes).most_common(1)[0][0]


def _musical_defaults(sections: Sequence[Section], average: float) -> Dict[str, Any]:
    energy_curve: List[int] = []
    for section in sections:
        counts = [line_syllables(line) for line in section.lines]
        energy_curve.append(int(round(float(np.mean(counts)) / 2)) if counts else 0)
    return {
        "tempo_bpm": estimate_tempo(average),
        "time_signature": "4/4",
        "energy_curve": energy_curve,
        "hook_placement": [
            section.index for section in sections if section.section_type in HOOK_TYPES
        ],
    }


def new_dna_id() -> str:
    return f"dna_{int(time.time() * 1000)}_{uuid4().hex[:7]}"


class SongAnalyzer:
    """Runs segmentation and the three profilers over one song."""

    def __init__(
        self,
        settings: Settings,
        *,
        lexicon: Optional[Lexicon] = None,
        emotion_classifier: Optional[EmotionClassifier] = None,
        theme_classifier: Optional[ThemeClassifier] = None,
        metaphor_scorer: Optional[MetaphorScorer] = None,
        use_default_emotion: bool = True,
    ) -> None:
        self._settings = settings
        self._lexicon = lexicon or load_lexicon()
        if emotion_classifier is None and use_default_emotion:
            emotion_classifier = LexiconEmotionClassifier(self._lexicon)
        self._structure = StructuralProfiler(bars_per_line=settings.bars_per_line)
        self._lyrical = LyricalProfiler(
            lexicon=self._lexicon,
            theme_classifier=theme_classifier,
            metaphor_scorer=metaphor_scorer,
            signature_word_count=settings.signature_word_count,
        )
        self._emotional = EmotionalProfiler(emotion_classifier)

    @property
    def emotion_classifier(self) -> Optional[EmotionClassifier]:
        return self._emotional.classifier

    def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        segmentation = segment_lyrics(request.lyrics)
        sections = segmentation.sections
        structure = self._structure.profile(sections, bars_per_line=request.bars_per_line)
        lyrical = self._lyrical.profile(sections)
        emotional = self._emotional.profile(sections)

        syllables = lyrical.patterns.syllables_per_line
        flow = flow_summary(syllables.distribution)
        musical = _musical_defaults(sections, syllables.average)
        musical.update(request.musical)

        production_notes = request.production_notes or (
            f"Flow: {flow.flow_type}, Consistency: {flow.consistency * 100:.0f}%, "
            f"Avg Syllables: {flow.average:.1f}"
        )
        now = datetime.now(tz=UTC)
        dna = SongDNA(
            id=new_dna_id(),
            reference_song=ReferenceSong(
                title=request.title or "Untitled",
                artist=request.artist or "Unknown",
                lyrics=request.lyrics,
                year=request.year,
                genre=request.genre,
            ),
            structure=structure,
            lyrical=lyrical.patterns,
            musical=musical,
            emotional=emotional.mapping,
            genre_tags=list(request.genre_tags) or ([request.genre] if request.genre else []),
            artist_profile_id=request.artist_profile_id,
            production_notes=production_notes,
            created_at=now,
            updated_at=now,
            analysis_version=self._settings.analysis_version,
        )

        warnings: List[str] = [*segmentation.notes, *lyrical.notes, *emotional.notes]
        report = validate(dna)
        warnings.extend(report.warnings)

        confidence = self._confidence(
            heuristic=segmentation.heuristic,
            structure=structure,
            drift_notes=len(lyrical.notes),
            emotion_fallback=emotional.fallback,
            primary_emotion=emotional.mapping.primary_emotion,
            intensity=emotional.mapping.overall_intensity,
        )
        suggestions = [
            f"Flow type: {flow.flow_type} ({flow.average:.1f} syllables/line)",
            f"Rhyme consistency: {flow.consistency * 100:.0f}%",
            f"Most common pattern: {_most_common_scheme(sections)}",
        ]
        if request.artist_profile_id:
            suggestions.append(f'Artist profile "{request.artist_profile_id}" applied')
        else:
            suggestions.append("Select an artist for better generation")
        if emotional.fallback:
            suggestions.append("Emotion analysis unavailable; showing structural analysis only")

        logger.info(
            "Analysed '{title}': {sections} sections, pattern={pattern}",
            title=dna.reference_song.title,
            sections=len(sections),
            pattern=structure.pattern,
        )
        return AnalysisResult(
            song_dna=dna,
            confidence_scores=confidence,
            warnings=warnings,
            suggestions=suggestions,
        )

    @staticmethod
    def _confidence(
        *,
        heuristic: bool,
        structure: SongStructure,
        drift_notes: int,
        emotion_fallback: bool,
        primary_emotion: str,
        intensity: float,
    ) -> ConfidenceScores:
        section_total = max(1, len(structure.sections))
        structure_score = 0.6 if heuristic else 0.95
        if section_total == 1:
            structure_score = min(structure_score, 0.5)
        rhyme_score = max(0.3, 0.95 - 0.2 * drift_notes / section_total)
        if emotion_fallback:
            emotion_score = 0.3
        elif primary_emotion == "neutral":
            emotion_score = 0.4
        else:
            emotion_score = min(0.9, 0.5 + intensity / 20.0)
        overall = float(np.mean([structure_score, rhyme_score, emotion_score]))
        return ConfidenceScores(
            structure=round(structure_score, 2),
            rhyme=round(rhyme_score, 2),
            emotion=round(emotion_score, 2),
            overall=round(overall, 2),
        )


def quick_analyze(lyrics: str) -> Dict[str, Any]:
    """Cheap partial DNA for instant feedback: pattern and syllable cadence only."""
    sections = segment_lyrics(lyrics).sections
    distribution = [line_syllables(line) for section in sections for line in section.lines]
    average = float(np.mean(distribution)) if distribution else 0.0
    return {
        "structure": {
            "pattern": [section.section_type for section in sections],
            "total_bars": len(distribution),
        },
        "lyrical": {
            "syllables_per_line": {
                "average": round(average, 3),
                "variance": 0.0,
                "distribution": distribution,
            },
        },
    }
