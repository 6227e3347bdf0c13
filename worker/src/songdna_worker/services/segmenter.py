"""Split raw lyric text into ordered, labelled sections."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from .exceptions import MalformedLyricsError
from .lexicon import load_lexicon
from .prosody import tokenize
from .types import Section

MAX_UNHEADED_LINES = 8
CHORUS_OVERLAP_RATIO = 0.6

_BRACKET_HEADER = re.compile(r"^\[(?P<label>[^\]]+)\]$")
_BARE_HEADER = re.compile(r"^(?P<label>[A-Za-z][A-Za-z\- ]*?\s*\d*)\s*:$")

_CANONICAL_TYPES = {
    "verse": "Verse",
    "chorus": "Chorus",
    "prechorus": "Pre-Chorus",
    "postchorus": "Post-Chorus",
    "bridge": "Bridge",
    "intro": "Intro",
    "outro": "Outro",
    "hook": "Hook",
    "refrain": "Refrain",
    "interlude": "Interlude",
    "breakdown": "Breakdown",
    "tag": "Tag",
}


def section_type_for(label: str) -> str:
    """Map a free-form label such as ``Verse 2`` or ``pre chorus`` to its type."""
    stripped = re.sub(r"[\d#]+", " ", label).strip().lower()
    folded = re.sub(r"[^a-z]", "", stripped)
    if folded in _CANONICAL_TYPES:
        return _CANONICAL_TYPES[folded]
    words = [word for word in re.split(r"\s+", stripped) if word]
    if not words:
        return "Section"
    return " ".join(word.capitalize() for word in words)


def parse_header(line: str) -> Optional[str]:
    match = _BRACKET_HEADER.match(line)
    if match:
        label = match.group("label").split(":", 1)[0].strip()
        return label or None
    match = _BARE_HEADER.match(line)
    if match:
        label = match.group("label").strip()
        folded = re.sub(r"[^a-z]", "", label.lower())
        known = {re.sub(r"[^a-z]", "", value) for value in load_lexicon().section_types}
        if folded in known:
            return label
    return None


def _normalise(line: str) -> str:
    return " ".join(tokenize(line))


@dataclass
class _Block:
    header: Optional[str]
    lines: List[str] = field(default_factory=list)


@dataclass
class _Chunk:
    header: Optional[str]
    lines: List[str]
    section_type: str = "Verse"


@dataclass
class Segmentation:
    sections: List[Section]
    heuristic: bool
    notes: List[str] = field(default_factory=list)


def _collect_blocks(text: str) -> List[_Block]:
    blocks: List[_Block] = []
    current: Optional[_Block] = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            if current is not None and current.lines:
                blocks.append(current)
                current = None
            continue
        header = parse_header(line)
        if header is not None:
            if current is not None and current.lines:
                blocks.append(current)
            current = _Block(header=header)
            continue
        if current is None:
            current = _Block(header=None)
        current.lines.append(line)
    if current is not None and current.lines:
        blocks.append(current)
    return blocks


def _split_block(lines: List[str]) -> List[List[str]]:
    if len(lines) <= MAX_UNHEADED_LINES:
        return [lines]
    pieces = math.ceil(len(lines) / MAX_UNHEADED_LINES)
    base, extra = divmod(len(lines), pieces)
    chunks: List[List[str]] = []
    start = 0
    for position in range(pieces):
        size = base + (1 if position < extra else 0)
        chunks.append(lines[start : start + size])
        start += size
    return chunks


def _overlap(chunk: List[str], earlier: List[str]) -> float:
    earlier_set = {_normalise(line) for line in earlier}
    earlier_set.discard("")
    if not chunk:
        return 0.0
    shared = sum(1 for line in chunk if _normalise(line) in earlier_set)
    return shared / len(chunk)


def segment_lyrics(text: str) -> Segmentation:
    if text is None or not text.strip():
        raise MalformedLyricsError("lyrics are empty")

    blocks = _collect_blocks(text)
    if not blocks:
        raise MalformedLyricsError("lyrics contain headers but no lyric lines")

    chunks: List[_Chunk] = []
    heuristic = False
    for block in blocks:
        if block.header is not None:
            chunks.append(
                _Chunk(
                    header=block.header,
                    lines=block.lines,
                    section_type=section_type_for(block.header),
                )
            )
            continue
        heuristic = True
        for piece in _split_block(block.lines):
            chunk = _Chunk(header=None, lines=piece)
            for earlier in chunks:
                if _overlap(piece, earlier.lines) >= CHORUS_OVERLAP_RATIO:
                    chunk.section_type = "Chorus"
                    if earlier.header is None:
                        earlier.section_type = "Chorus"
                    break
            chunks.append(chunk)

    sections: List[Section] = []
    verse_number = 0
    for index, chunk in enumerate(chunks):
        if chunk.header is not None:
            label = chunk.header
            if chunk.section_type == "Verse":
                verse_number += 1
        elif chunk.section_type == "Chorus":
            label = "Chorus"
        else:
            verse_number += 1
            label = f"Verse {verse_number}"
        sections.append(
            Section(
                label=label,
                section_type=chunk.section_type,
                lines=tuple(chunk.lines),
                index=index,
            )
        )

    notes: List[str] = []
    if heuristic:
        notes.append("section boundaries inferred from blank lines and repetition")
    logger.debug(
        "Segmented lyrics into {count} sections (heuristic={heuristic})",
        count=len(sections),
        heuristic=heuristic,
    )
    return Segmentation(sections=sections, heuristic=heuristic, notes=notes)


class LyricAnalyzer:
    """Thin object wrapper so the analysis pipeline can swap segmenters."""

    def segment(self, text: str) -> List[Section]:
        return segment_lyrics(text).sections

    def segment_with_notes(self, text: str) -> Segmentation:
        return segment_lyrics(text)
