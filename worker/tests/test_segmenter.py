import pytest

from songdna_worker.services.exceptions import MalformedLyricsError
from songdna_worker.services.segmenter import (
    LyricAnalyzer,
    parse_header,
    section_type_for,
    segment_lyrics,
)

HEADED = """[Verse 1]
I walked the line
Under a neon sign

[Chorus: Both]
Hold me close
Never let me go

[Verse 2]
Another night
Another fight
Another light

[Chorus]
Hold me close
Never let me go
"""


@pytest.mark.parametrize(
    ("label", "expected"),
    [
        ("Verse 2", "Verse"),
        ("pre chorus", "Pre-Chorus"),
        ("Pre-Chorus", "Pre-Chorus"),
        ("OUTRO", "Outro"),
        ("spoken word", "Spoken Word"),
        ("#3", "Section"),
    ],
)
def test_section_type_for(label: str, expected: str) -> None:
    assert section_type_for(label) == expected


def test_parse_header_variants() -> None:
    assert parse_header("[Chorus: Both]") == "Chorus"
    assert parse_header("[Verse 1]") == "Verse 1"
    assert parse_header("Bridge:") == "Bridge"
    assert parse_header("Hello:") is None
    assert parse_header("just a lyric line") is None


def test_headed_lyrics_keep_labels_and_order() -> None:
    segmentation = segment_lyrics(HEADED)
    assert segmentation.heuristic is False
    assert [section.label for section in segmentation.sections] == [
        "Verse 1",
        "Chorus",
        "Verse 2",
        "Chorus",
    ]
    assert [section.section_type for section in segmentation.sections] == [
        "Verse",
        "Chorus",
        "Verse",
        "Chorus",
    ]
    assert [section.line_count for section in segmentation.sections] == [2, 2, 3, 2]
    assert [section.index for section in segmentation.sections] == [0, 1, 2, 3]


def test_unheaded_lyrics_detect_repeated_chorus() -> None:
    text = "\n".join(
        [
            "Rolling down the highway",
            "Nothing left to say",
            "",
            "Sing it out loud",
            "Sing it to the crowd",
            "",
            "Morning comes too early",
            "Coffee in the grey",
            "",
            "Sing it out loud",
            "Sing it to the crowd",
        ]
    )
    segmentation = segment_lyrics(text)
    assert segmentation.heuristic is True
    assert segmentation.notes
    assert [section.label for section in segmentation.sections] == [
        "Verse 1",
        "Chorus",
        "Verse 2",
        "Chorus",
    ]


def test_long_unheaded_block_is_split() -> None:
    text = "\n".join(f"line number {index} goes here" for index in range(12))
    sections = LyricAnalyzer().segment(text)
    assert [section.line_count for section in sections] == [6, 6]
    assert all(section.line_count <= 8 for section in sections)


def test_single_line_is_one_section() -> None:
    sections = segment_lyrics("just one line").sections
    assert len(sections) == 1
    assert sections[0].label == "Verse 1"


@pytest.mark.parametrize("text", ["", "   \n\n  ", "[Verse]\n[Chorus]\n"])
def test_empty_or_header_only_lyrics_rejected(text: str) -> None:
    with pytest.raises(MalformedLyricsError):
        segment_lyrics(text)
