from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ModelWrapValidatorHandler,
    PrivateAttr,
    field_validator,
    model_validator,
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class VocabularyLevel(str, Enum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ReferenceSong(_FrozenModel):
    title: str = Field(default="Unknown", max_length=256)
    artist: str = Field(default="Unknown", max_length=256)
    lyrics: str
    year: Optional[int] = Field(default=None, ge=0, le=3000)
    genre: Optional[str] = Field(default=None, max_length=64)


class SectionSummary(_FrozenModel):
    label: str = Field(..., min_length=1, max_length=64)
    section_type: str = Field(..., min_length=1, max_length=64)
    line_count: int = Field(..., ge=0)


class SongStructure(_FrozenModel):
    pattern: list[str] = Field(default_factory=list)
    verse_lines: int = Field(default=4, ge=0)
    chorus_lines: int = Field(default=4, ge=0)
    bridge_lines: Optional[int] = Field(default=None, ge=0)
    total_bars: int = Field(default=0, ge=0)
    sections: list[SectionSummary] = Field(default_factory=list)

    @property
    def total_lines(self) -> int:
        return sum(section.line_count for section in self.sections)


class SyllableProfile(_FrozenModel):
    average: float = 7.0
    variance: float = Field(default=1.0, ge=0.0)
    distribution: list[int] = Field(default_factory=list)


class RepetitionPattern(_FrozenModel):
    phrase: str = Field(..., min_length=1)
    occurrences: int = Field(default=0, ge=0)
    sections: list[str] = Field(default_factory=list)
    section_types: list[str] = Field(default_factory=list)
    positions: list[int] = Field(default_factory=list)


class LyricalPatterns(_FrozenModel):
    rhyme_schemes: dict[str, str] = Field(default_factory=dict)
    syllables_per_line: SyllableProfile = Field(default_factory=SyllableProfile)
    vocabulary_level: VocabularyLevel = VocabularyLevel.MODERATE
    signature_words: list[str] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list, max_length=5)
    metaphor_density: float = Field(default=5.0, ge=0.0, le=10.0)
    alliteration_frequency: float = Field(default=3.0, ge=0.0, le=10.0)
    internal_rhyme_density: float = Field(default=3.0, ge=0.0, le=10.0)
    repetition_patterns: list[RepetitionPattern] = Field(default_factory=list)

    @field_validator("repetition_patterns", mode="before")
    @classmethod
    def _accept_plain_phrases(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        coerced: list[Any] = []
        for entry in value:
            if isinstance(entry, str):
                coerced.append({"phrase": entry})
            else:
                coerced.append(entry)
        return coerced


class EmotionalMapping(_FrozenModel):
    primary_emotion: str = "neutral"
    secondary_emotions: list[str] = Field(default_factory=list, max_length=3)
    emotional_arc: list[str] = Field(default_factory=list)
    overall_intensity: float = Field(default=5.0, ge=0.0, le=10.0)
    vulnerability_level: float = Field(default=5.0, ge=0.0, le=10.0)
    sincerity_vs_irony: float = Field(default=0.0, ge=-10.0, le=10.0)


class SongDNA(_FrozenModel):
    id: str = Field(..., min_length=1, max_length=128)
    reference_song: ReferenceSong
    structure: SongStructure
    lyrical: LyricalPatterns
    musical: dict[str, Any] = Field(default_factory=dict)
    emotional: EmotionalMapping = Field(default_factory=EmotionalMapping)
    genre_tags: list[str] = Field(default_factory=list)
    artist_profile_id: Optional[str] = Field(default=None, max_length=128)
    production_notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)
    analysis_version: str = Field(default="2.0", max_length=32)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "SongDNA":
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not precede created_at")
        return self


class GenerationOptions(BaseModel):
    theme: Optional[str] = Field(default=None, max_length=256)
    creativity: float = Field(default=5.0, ge=0.0)
    custom_structure: Optional[list[str]] = Field(default=None, min_length=1, max_length=32)
    force_rhyme_scheme: Optional[str] = Field(default=None, pattern=r"^[A-Za-z]+$", max_length=32)
    emotional_override: Optional[str] = Field(default=None, max_length=64)
    title: Optional[str] = Field(default=None, max_length=128)
    seed: Optional[int] = Field(default=None, ge=0)

    _requested_creativity: Optional[float] = PrivateAttr(default=None)

    @field_validator("creativity", mode="before")
    @classmethod
    def _reject_negative(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and value < 0:
            raise ValueError("creativity cannot be negative")
        return value

    @field_validator("creativity")
    @classmethod
    def _clamp_creativity(cls, value: float) -> float:
        return min(value, 10.0)

    @model_validator(mode="wrap")
    @classmethod
    def _remember_requested_creativity(
        cls, data: Any, handler: ModelWrapValidatorHandler["GenerationOptions"]
    ) -> "GenerationOptions":
        options = handler(data)
        raw = data.get("creativity") if isinstance(data, dict) else None
        try:
            requested = float(raw) if raw is not None and not isinstance(raw, bool) else None
        except (TypeError, ValueError):
            requested = None
        if requested is not None and requested > options.creativity:
            options._requested_creativity = requested
        return options

    @property
    def requested_creativity(self) -> float:
        """Creativity as submitted, before capping at 10."""
        if self._requested_creativity is not None:
            return self._requested_creativity
        return self.creativity


class ConformanceScore(BaseModel):
    score: float = Field(..., ge=0.0, le=1.0)
    syllable: float = Field(..., ge=0.0, le=1.0)
    rhyme: float = Field(..., ge=0.0, le=1.0)
    emotional_arc: float = Field(..., ge=0.0, le=1.0)


class SectionNote(BaseModel):
    label: str
    section_type: str
    approximate: bool = False
    attempts: int = Field(default=1, ge=0)
    syllable_deviation: float = 0.0
    rhyme_pair_mismatches: int = 0
    target_scheme: str = ""
    actual_scheme: str = ""
    arc_target: Optional[str] = None
    arc_detected: Optional[str] = None
    reused_from: Optional[str] = None
    violations: list[str] = Field(default_factory=list)


class GeneratedSection(BaseModel):
    label: str
    section_type: str
    lines: list[str]
    approximate: bool = False
    attempts: int = 1
    reused_from: Optional[str] = None


class GeneratedSongMetadata(BaseModel):
    source_dna_id: str
    section_notes: list[SectionNote] = Field(default_factory=list)
    conformance: ConformanceScore
    timestamp: datetime = Field(default_factory=_utc_now)
    generator: str = "unknown"
    options: GenerationOptions = Field(default_factory=GenerationOptions)


class GeneratedSong(BaseModel):
    title: str
    lyrics: str
    sections: list[GeneratedSection] = Field(default_factory=list)
    genre: Optional[str] = None
    theme: Optional[str] = None
    emotional_tone: Optional[str] = None
    estimated_bpm: Optional[int] = None
    suggested_key: Optional[str] = None
    artist_attribution: Optional[str] = None
    metadata: GeneratedSongMetadata


class AnalysisRequest(BaseModel):
    lyrics: str = Field(..., max_length=100_000)
    title: Optional[str] = Field(default=None, max_length=256)
    artist: Optional[str] = Field(default=None, max_length=256)
    artist_profile_id: Optional[str] = Field(default=None, max_length=128)
    year: Optional[int] = Field(default=None, ge=0, le=3000)
    genre: Optional[str] = Field(default=None, max_length=64)
    genre_tags: list[str] = Field(default_factory=list)
    musical: dict[str, Any] = Field(default_factory=dict)
    production_notes: Optional[str] = None
    bars_per_line: Optional[int] = Field(default=None, ge=1, le=16)
    save: bool = False
    tags: list[str] = Field(default_factory=list)


class ConfidenceScores(BaseModel):
    structure: float = Field(..., ge=0.0, le=1.0)
    rhyme: float = Field(..., ge=0.0, le=1.0)
    emotion: float = Field(..., ge=0.0, le=1.0)
    overall: float = Field(..., ge=0.0, le=1.0)


class AnalysisResult(BaseModel):
    song_dna: SongDNA
    confidence_scores: ConfidenceScores
    warnings: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    saved_id: Optional[str] = None


class StoredMetadata(BaseModel):
    title: str = "Untitled"
    artist: str = "Unknown"
    saved_at: datetime = Field(default_factory=_utc_now)
    last_modified: datetime = Field(default_factory=_utc_now)
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = None
    version: str = "2.0"
    analysis_version: str = "2.0"


class StoredSongDNA(BaseModel):
    id: str
    dna: SongDNA
    metadata: StoredMetadata


class ValidationReport(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class CanGenerateResponse(BaseModel):
    can_generate: bool
    reason: Optional[str] = None


class DNAUpdateRequest(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)


class GenerationJobRequest(BaseModel):
    dna_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    dna: Optional[dict[str, Any]] = None
    options: GenerationOptions = Field(default_factory=GenerationOptions)

    @model_validator(mode="after")
    def _require_source(self) -> "GenerationJobRequest":
        if self.dna_id is None and self.dna is None:
            raise ValueError("provide either dna_id or dna")
        return self


class GenerationStatus(BaseModel):
    job_id: str
    state: JobState
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    message: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utc_now)
