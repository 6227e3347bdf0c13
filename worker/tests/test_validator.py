from __future__ import annotations

from typing import Any, Dict

import pytest

from songdna_worker.app.models import GenerationJobRequest, GenerationOptions
from songdna_worker.services.exceptions import DNAValidationError
from songdna_worker.services.validator import (
    PLACEHOLDER_LYRICS,
    can_generate,
    ensure_valid_dna,
    require_valid,
    validate,
    validate_generation_options,
)


def _complete() -> Dict[str, Any]:
    return {
        "id": "dna_1",
        "reference_song": {"title": "Song", "artist": "Artist", "lyrics": "a\nb"},
        "structure": {
            "pattern": ["Verse"],
            "verse_lines": 2,
            "chorus_lines": 0,
            "total_bars": 2,
            "sections": [{"label": "Verse", "section_type": "Verse", "line_count": 2}],
        },
        "lyrical": {
            "rhyme_schemes": {"Verse": "AA"},
            "syllables_per_line": {"average": 6.0, "variance": 1.0, "distribution": [6, 6]},
        },
        "emotional": {"primary_emotion": "joy"},
    }


def test_missing_dna_reports_single_error() -> None:
    result = validate(None)
    assert result.valid is False
    assert result.errors == ["DNA object is missing"]
    assert result.warnings == []


def test_complete_dna_is_valid_without_warnings() -> None:
    result = validate(_complete())
    assert result.valid is True
    assert result.errors == []
    assert result.warnings == []


def test_blocking_errors_and_warnings() -> None:
    payload = _complete()
    payload["reference_song"] = {"title": "", "artist": "Artist", "lyrics": ""}
    payload["lyrical"]["syllables_per_line"]["average"] = 0
    payload["lyrical"]["rhyme_schemes"] = {"Chorus": "AABB"}
    payload["structure"]["pattern"] = []
    result = validate(payload)
    assert result.valid is False
    assert "Reference song missing lyrics" in result.errors
    assert "Invalid average syllables per line" in result.errors
    assert "Reference song missing title" in result.warnings
    assert "Structure pattern is empty" in result.warnings


def test_structural_drift_is_a_warning() -> None:
    payload = _complete()
    payload["lyrical"]["syllables_per_line"]["distribution"] = [6, 6, 6]
    payload["lyrical"]["rhyme_schemes"] = {"Verse": "AA", "Bridge": "AB"}
    result = validate(payload)
    assert result.valid is True
    assert any("distribution has 3 entries for 2 lines" in warning for warning in result.warnings)
    assert any("Bridge" in warning for warning in result.warnings)


def test_require_valid_raises_with_errors() -> None:
    with pytest.raises(DNAValidationError) as excinfo:
        require_valid({"id": "x"})
    assert "DNA is missing lyrical data" in excinfo.value.errors


def test_ensure_valid_dna_fills_defaults() -> None:
    dna = ensure_valid_dna({})
    assert dna.id.startswith("dna_fallback_")
    assert dna.reference_song.lyrics == PLACEHOLDER_LYRICS
    assert dna.lyrical.syllables_per_line.average == 7.0
    assert dna.emotional.primary_emotion == "neutral"
    assert dna.analysis_version == "2.0"
    assert validate(dna).errors == []


def test_ensure_valid_dna_repairs_invariants() -> None:
    payload = _complete()
    payload["structure"]["pattern"] = ["Chorus", "Chorus"]
    payload["lyrical"]["rhyme_schemes"] = {"Verse": "aa", "Outro": "AB"}
    payload["lyrical"]["syllables_per_line"]["distribution"] = [6, 6, 6]
    payload["lyrical"]["metaphor_density"] = 55
    payload["lyrical"]["themes"] = ["a", "b", "c", "d", "e", "f"]
    payload["emotional"]["sincerity_vs_irony"] = -99
    payload["created_at"] = "2024-05-01T12:00:00Z"
    payload["updated_at"] = "2024-01-01T00:00:00"
    dna = ensure_valid_dna(payload)
    assert dna.structure.pattern == ["Verse"]
    assert dna.lyrical.rhyme_schemes == {"Verse": "AA"}
    assert dna.lyrical.syllables_per_line.distribution == []
    assert dna.lyrical.metaphor_density == 10.0
    assert len(dna.lyrical.themes) == 5
    assert dna.emotional.sincerity_vs_irony == -10.0
    assert dna.updated_at == dna.created_at
    assert dna.id == "dna_1"


def test_ensure_valid_dna_keeps_explicit_zeroes() -> None:
    payload = _complete()
    payload["emotional"]["overall_intensity"] = 0
    payload["lyrical"]["alliteration_frequency"] = 0
    dna = ensure_valid_dna(payload)
    assert dna.emotional.overall_intensity == 0.0
    assert dna.lyrical.alliteration_frequency == 0.0


@pytest.mark.parametrize(
    "payload",
    [
        {"id": "x" * 200},
        {"reference_song": {"title": "t" * 300, "artist": "a" * 300, "lyrics": "la"}},
        {"reference_song": {"lyrics": "la", "genre": "g" * 80}},
        {"structure": {"sections": [{"label": "L" * 80, "line_count": 4}]}},
        {"structure": {"sections": [{"label": "Verse", "section_type": "V" * 80, "line_count": 4}]}},
        {"analysis_version": "v" * 40},
        {"artist_profile_id": "p" * 200},
        {"lyrical": {"repetition_patterns": [{"phrase": "a b c", "occurrences": -1}]}},
        {
            "lyrical": {
                "repetition_patterns": [
                    {"phrase": "a b c", "sections": "Verse", "positions": ["x", 2]},
                    {"phrase": 7},
                    {"occurrences": 3},
                ]
            }
        },
    ],
)
def test_ensure_valid_dna_accepts_out_of_range_input(payload: Dict[str, Any]) -> None:
    dna = ensure_valid_dna(payload)
    assert validate(dna).errors == []
    assert len(dna.id) <= 128
    assert len(dna.reference_song.title) <= 256
    assert len(dna.analysis_version) <= 32
    assert all(len(section.label) <= 64 for section in dna.structure.sections)
    assert all(pattern.occurrences >= 0 for pattern in dna.lyrical.repetition_patterns)


def test_ensure_valid_dna_cleans_repetition_patterns() -> None:
    dna = ensure_valid_dna(
        {
            "lyrical": {
                "repetition_patterns": [
                    "hold on",
                    {"phrase": "a b c", "occurrences": -1, "sections": "Verse", "positions": ["x", 2]},
                    {"occurrences": 3},
                ]
            }
        }
    )
    patterns = dna.lyrical.repetition_patterns
    assert [pattern.phrase for pattern in patterns] == ["hold on", "a b c"]
    assert patterns[1].occurrences == 0
    assert patterns[1].sections == []
    assert patterns[1].positions == [2]


def test_can_generate_reasons() -> None:
    assert can_generate(None).reason == "No DNA data available"
    assert can_generate({"lyrical": {}}).reason == "Missing syllable analysis data"
    invalid = {"lyrical": {"syllables_per_line": {"average": 0}}}
    assert can_generate(invalid).reason == "Invalid syllable count"
    check = can_generate(_complete())
    assert check.can_generate is True
    assert check.reason is None


def test_generation_option_checks() -> None:
    assert validate_generation_options({"creativity": -1}).errors == ["Creativity cannot be negative"]
    result = validate_generation_options({"creativity": 12, "theme": "rain"})
    assert result.valid is True
    assert result.warnings == ["Creativity is above 10 and will be capped at 10"]
    assert validate_generation_options({"creativity": "high"}).valid is False
    missing_theme = validate_generation_options(GenerationOptions())
    assert missing_theme.warnings == ["No theme specified; the reference themes will be used"]


def test_capped_creativity_still_warns() -> None:
    options = GenerationOptions(creativity=12, theme="rain")
    assert options.creativity == 10.0
    assert options.requested_creativity == 12.0
    assert validate_generation_options(options).warnings == [
        "Creativity is above 10 and will be capped at 10"
    ]

    nested = GenerationJobRequest.model_validate(
        {"dna_id": "dna_1", "options": {"creativity": 15, "theme": "rain"}}
    )
    assert nested.options is not None
    assert validate_generation_options(nested.options).valid is True
    assert len(validate_generation_options(nested.options).warnings) == 1

    assert GenerationOptions(creativity=7).requested_creativity == 7.0
    assert validate_generation_options(GenerationOptions(creativity=7, theme="rain")).warnings == []
