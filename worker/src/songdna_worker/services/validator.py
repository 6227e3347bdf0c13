"""Integrity checks and defaulting for song DNA payloads."""

from __future__ import annotations

import math
import time
from datetime import UTC, datetime
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from loguru import logger

from ..app.models import GenerationOptions, SongDNA, VocabularyLevel
from .exceptions import DNAValidationError
from .segmenter import section_type_for
from .types import GenerateCheck, ValidationResult

DEFAULT_AVERAGE_SYLLABLES = 7.0
DEFAULT_VARIANCE = 1.0
DEFAULT_ANALYSIS_VERSION = "2.0"
PLACEHOLDER_LYRICS = "(lyrics unavailable)"
MAX_THEMES = 5
MAX_SECONDARY_EMOTIONS = 3
MAX_ID_LENGTH = 128
MAX_NAME_LENGTH = 256
MAX_LABEL_LENGTH = 64
MAX_VERSION_LENGTH = 32


def _as_mapping(dna: Any) -> Optional[Dict[str, Any]]:
    if dna is None:
        return None
    if isinstance(dna, SongDNA):
        return dna.model_dump(mode="python")
    if isinstance(dna, Mapping):
        return dict(dna)
    raise TypeError(f"cannot validate {type(dna).__name__} as song DNA")


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(float(value))
    )


def _number(value: Any, default: float, low: float, high: float) -> float:
    if not _is_number(value):
        return default
    return max(low, min(high, float(value)))


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _section_line_total(sections: Any) -> Optional[int]:
    if not isinstance(sections, list) or not sections:
        return None
    total = 0
    for entry in sections:
        if not isinstance(entry, Mapping) or not _is_number(entry.get("line_count")):
            return None
        total += int(entry["line_count"])
    return total


def validate(dna: Any) -> ValidationResult:
    """Report blocking errors and non-blocking warnings for a DNA payload."""
    payload = _as_mapping(dna)
    errors: List[str] = []
    warnings: List[str] = []
    if payload is None:
        return ValidationResult(valid=False, errors=["DNA object is missing"], warnings=[])

    if not payload.get("id"):
        warnings.append("DNA is missing an id")

    reference = payload.get("reference_song")
    if not isinstance(reference, Mapping):
        errors.append("DNA is missing reference_song data")
    else:
        if not reference.get("title"):
            warnings.append("Reference song missing title")
        if not reference.get("artist"):
            warnings.append("Reference song missing artist")
        if not reference.get("lyrics"):
            errors.append("Reference song missing lyrics")

    structure = payload.get("structure")
    pattern: List[str] = []
    if not isinstance(structure, Mapping):
        errors.append("DNA is missing structure data")
    else:
        raw_pattern = structure.get("pattern")
        if not isinstance(raw_pattern, list) or not raw_pattern:
            warnings.append("Structure pattern is empty")
        else:
            pattern = [str(value) for value in raw_pattern]
        if not _is_number(structure.get("total_bars")):
            warnings.append("Total bars is not a number")
        sections = structure.get("sections")
        if isinstance(sections, list) and sections and len(sections) != len(pattern):
            warnings.append(
                f"Structure pattern has {len(pattern)} entries for {len(sections)} sections"
            )

    lyrical = payload.get("lyrical")
    if not isinstance(lyrical, Mapping):
        errors.append("DNA is missing lyrical data")
    else:
        syllables = lyrical.get("syllables_per_line")
        if not isinstance(syllables, Mapping):
            errors.append("Missing syllables_per_line data; required for generation")
        else:
            average = syllables.get("average")
            if not _is_number(average) or float(average) <= 0:
                errors.append("Invalid average syllables per line")
            distribution = syllables.get("distribution")
            if not isinstance(distribution, list):
                warnings.append("Syllable distribution is not a list")
            elif not distribution:
                warnings.append("Syllable distribution is empty")
            elif isinstance(structure, Mapping):
                line_total = _section_line_total(structure.get("sections"))
                if line_total is not None and line_total != len(distribution):
                    warnings.append(
                        f"Syllable distribution has {len(distribution)} entries "
                        f"for {line_total} lines"
                    )
        schemes = lyrical.get("rhyme_schemes")
        if not isinstance(schemes, Mapping) or not schemes:
            warnings.append("Rhyme schemes data is missing or empty")
        elif pattern:
            foreign = sorted(key for key in schemes if key not in set(pattern))
            if foreign:
                warnings.append(
                    "Rhyme schemes reference types missing from the pattern: "
                    + ", ".join(foreign)
                )

    emotional = payload.get("emotional")
    if not isinstance(emotional, Mapping):
        warnings.append("DNA is missing emotional data")
    elif not emotional.get("primary_emotion"):
        warnings.append("Primary emotion is missing")

    created = _parse_timestamp(payload.get("created_at"))
    updated = _parse_timestamp(payload.get("updated_at"))
    if created is not None and updated is not None and updated < created:
        warnings.append("updated_at precedes created_at")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def validate_generation_options(options: Any) -> ValidationResult:
    errors: List[str] = []
    warnings: List[str] = []
    if options is None:
        return ValidationResult(
            valid=False, errors=["Generation options are missing"], warnings=[]
        )
    if isinstance(options, GenerationOptions):
        payload: Mapping[str, Any] = {
            **options.model_dump(),
            "creativity": options.requested_creativity,
        }
    elif isinstance(options, Mapping):
        payload = options
    else:
        raise TypeError(f"cannot validate {type(options).__name__} as generation options")

    creativity = payload.get("creativity")
    if _is_number(creativity):
        if float(creativity) < 0:
            errors.append("Creativity cannot be negative")
        if float(creativity) > 10:
            warnings.append("Creativity is above 10 and will be capped at 10")
    elif creativity is not None:
        errors.append("Creativity must be a number")

    theme = payload.get("theme")
    if not isinstance(theme, str) or not theme.strip():
        warnings.append("No theme specified; the reference themes will be used")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def can_generate(dna: Any) -> GenerateCheck:
    payload = _as_mapping(dna)
    if payload is None:
        return GenerateCheck(can_generate=False, reason="No DNA data available")
    lyrical = payload.get("lyrical")
    syllables = lyrical.get("syllables_per_line") if isinstance(lyrical, Mapping) else None
    average = syllables.get("average") if isinstance(syllables, Mapping) else None
    if not _is_number(average):
        return GenerateCheck(can_generate=False, reason="Missing syllable analysis data")
    if float(average) <= 0:
        return GenerateCheck(can_generate=False, reason="Invalid syllable count")
    return GenerateCheck(can_generate=True)


def require_valid(dna: Any) -> ValidationResult:
    """Validate and raise ``DNAValidationError`` on blocking problems."""
    result = validate(dna)
    for warning in result.warnings:
        logger.warning("Song DNA warning: {}", warning)
    if not result.valid:
        raise DNAValidationError(result.errors)
    return result


def fallback_dna_id() -> str:
    return f"dna_fallback_{int(time.time() * 1000)}_{uuid4().hex[:7]}"


def _text(value: Any, default: str, max_length: int) -> str:
    text = str(value).strip() if isinstance(value, (str, int, float)) else ""
    return (text or default)[:max_length]


def _optional_text(value: Any, max_length: int) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()[:max_length]


def _string_list(value: Any, limit: Optional[int] = None) -> List[str]:
    if not isinstance(value, list):
        return []
    items = [str(item) for item in value if isinstance(item, (str, int, float)) and str(item)]
    return items[:limit] if limit is not None else items


def _sections(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    sections: List[Dict[str, Any]] = []
    for entry in value:
        if not isinstance(entry, Mapping):
            continue
        label = str(entry.get("label") or entry.get("section_type") or "").strip()[
            :MAX_LABEL_LENGTH
        ]
        if not label:
            continue
        section_type = _text(entry.get("section_type"), section_type_for(label), MAX_LABEL_LENGTH)
        line_count = entry.get("line_count")
        sections.append(
            {
                "label": label,
                "section_type": section_type,
                "line_count": int(line_count) if _is_number(line_count) and line_count >= 0 else 0,
            }
        )
    return sections


def _repetition_patterns(value: Any) -> List[Any]:
    if not isinstance(value, list):
        return []
    patterns: List[Any] = []
    for entry in value:
        if isinstance(entry, str) and entry.strip():
            patterns.append(entry.strip())
        elif isinstance(entry, Mapping):
            phrase = entry.get("phrase")
            if not isinstance(phrase, str) or not phrase.strip():
                continue
            occurrences = entry.get("occurrences")
            positions = entry.get("positions")
            patterns.append(
                {
                    "phrase": phrase.strip(),
                    "occurrences": (
                        int(occurrences) if _is_number(occurrences) and occurrences >= 0 else 0
                    ),
                    "sections": _string_list(entry.get("sections")),
                    "section_types": _string_list(entry.get("section_types")),
                    "positions": [
                        int(value)
                        for value in (positions if isinstance(positions, list) else [])
                        if _is_number(value)
                    ],
                }
            )
    return patterns


def ensure_valid_dna(partial: Any) -> SongDNA:
    """Build a complete ``SongDNA`` from a partial payload.

    Missing fields get defaults, scores are clamped into range and the
    structural invariants are repaired, so the result always validates
    without errors.
    """
    payload = _as_mapping(partial) or {}
    now = datetime.now(tz=UTC)

    reference_raw = payload.get("reference_song")
    reference_raw = reference_raw if isinstance(reference_raw, Mapping) else {}
    year = reference_raw.get("year")
    reference = {
        "title": _text(reference_raw.get("title"), "Unknown", MAX_NAME_LENGTH),
        "artist": _text(reference_raw.get("artist"), "Unknown", MAX_NAME_LENGTH),
        "lyrics": str(reference_raw.get("lyrics") or PLACEHOLDER_LYRICS),
        "year": int(year) if _is_number(year) and 0 <= year <= 3000 else None,
        "genre": _optional_text(reference_raw.get("genre"), MAX_LABEL_LENGTH),
    }

    structure_raw = payload.get("structure")
    structure_raw = structure_raw if isinstance(structure_raw, Mapping) else {}
    sections = _sections(structure_raw.get("sections"))
    if sections:
        pattern = [section["section_type"] for section in sections]
    else:
        pattern = _string_list(structure_raw.get("pattern"))
    bridge = structure_raw.get("bridge_lines")
    structure = {
        "pattern": pattern,
        "verse_lines": int(_number(structure_raw.get("verse_lines"), 4, 0, 10_000)),
        "chorus_lines": int(_number(structure_raw.get("chorus_lines"), 4, 0, 10_000)),
        "bridge_lines": int(bridge) if _is_number(bridge) and bridge >= 0 else None,
        "total_bars": int(_number(structure_raw.get("total_bars"), 0, 0, 1_000_000)),
        "sections": sections,
    }

    lyrical_raw = payload.get("lyrical")
    lyrical_raw = lyrical_raw if isinstance(lyrical_raw, Mapping) else {}
    syllables_raw = lyrical_raw.get("syllables_per_line")
    syllables_raw = syllables_raw if isinstance(syllables_raw, Mapping) else {}
    average = syllables_raw.get("average")
    if not _is_number(average) or float(average) <= 0:
        average = DEFAULT_AVERAGE_SYLLABLES
    distribution_raw = syllables_raw.get("distribution")
    if not isinstance(distribution_raw, list):
        distribution_raw = []
    distribution = [
        int(value) for value in distribution_raw if _is_number(value) and value >= 0
    ]
    line_total = sum(section["line_count"] for section in sections)
    if sections and distribution and len(distribution) != line_total:
        logger.debug(
            "Dropping syllable distribution of {} entries for {} lines",
            len(distribution),
            line_total,
        )
        distribution = []

    schemes_raw = lyrical_raw.get("rhyme_schemes")
    pattern_types = set(pattern)
    rhyme_schemes = {
        str(key): str(value).upper()
        for key, value in (schemes_raw.items() if isinstance(schemes_raw, Mapping) else [])
        if str(key) in pattern_types and isinstance(value, str) and value.isalpha()
    }

    vocabulary = lyrical_raw.get("vocabulary_level")
    if vocabulary not in {level.value for level in VocabularyLevel}:
        vocabulary = VocabularyLevel.MODERATE.value

    lyrical = {
        "rhyme_schemes": rhyme_schemes,
        "syllables_per_line": {
            "average": float(average),
            "variance": _number(syllables_raw.get("variance"), DEFAULT_VARIANCE, 0.0, 1_000.0),
            "distribution": distribution,
        },
        "vocabulary_level": vocabulary,
        "signature_words": _string_list(lyrical_raw.get("signature_words")),
        "themes": _string_list(lyrical_raw.get("themes"), MAX_THEMES),
        "metaphor_density": _number(lyrical_raw.get("metaphor_density"), 5.0, 0.0, 10.0),
        "alliteration_frequency": _number(
            lyrical_raw.get("alliteration_frequency"), 3.0, 0.0, 10.0
        ),
        "internal_rhyme_density": _number(
            lyrical_raw.get("internal_rhyme_density"), 3.0, 0.0, 10.0
        ),
        "repetition_patterns": _repetition_patterns(lyrical_raw.get("repetition_patterns")),
    }

    emotional_raw = payload.get("emotional")
    emotional_raw = emotional_raw if isinstance(emotional_raw, Mapping) else {}
    emotional = {
        "primary_emotion": str(emotional_raw.get("primary_emotion") or "neutral"),
        "secondary_emotions": _string_list(
            emotional_raw.get("secondary_emotions"), MAX_SECONDARY_EMOTIONS
        ),
        "emotional_arc": _string_list(emotional_raw.get("emotional_arc")),
        "overall_intensity": _number(emotional_raw.get("overall_intensity"), 5.0, 0.0, 10.0),
        "vulnerability_level": _number(emotional_raw.get("vulnerability_level"), 5.0, 0.0, 10.0),
        "sincerity_vs_irony": _number(emotional_raw.get("sincerity_vs_irony"), 0.0, -10.0, 10.0),
    }

    created_at = _parse_timestamp(payload.get("created_at")) or now
    updated_at = _parse_timestamp(payload.get("updated_at")) or now
    if updated_at < created_at:
        updated_at = created_at

    musical = payload.get("musical")
    artist_profile_id = payload.get("artist_profile_id")
    production_notes = payload.get("production_notes")
    return SongDNA.model_validate(
        {
            "id": _text(payload.get("id"), fallback_dna_id(), MAX_ID_LENGTH),
            "reference_song": reference,
            "structure": structure,
            "lyrical": lyrical,
            "musical": dict(musical) if isinstance(musical, Mapping) else {},
            "emotional": emotional,
            "genre_tags": _string_list(payload.get("genre_tags")),
            "artist_profile_id": _optional_text(artist_profile_id, MAX_ID_LENGTH),
            "production_notes": production_notes if isinstance(production_notes, str) else None,
            "created_at": created_at,
            "updated_at": updated_at,
            "analysis_version": _text(
                payload.get("analysis_version"), DEFAULT_ANALYSIS_VERSION, MAX_VERSION_LENGTH
            ),
        }
    )
