"""Structural profile: section pattern, typical line counts and bar totals."""

from __future__ import annotations

from collections import Counter
from typing import Optional, Sequence

from ..app.models import SectionSummary, SongStructure
from .types import Section


def modal_line_count(sections: Sequence[Section], section_type: str) -> Optional[int]:
    """Most common line count for a type, ties broken by first occurrence."""
    counts = [section.line_count for section in sections if section.section_type == section_type]
    if not counts:
        return None
    frequency = Counter(counts)
    best = max(frequency.values())
    for count in counts:
        if frequency[count] == best:
            return count
    return None  # pragma: no cover


class StructuralProfiler:
    def __init__(self, bars_per_line: int = 1) -> None:
        self._bars_per_line = max(1, bars_per_line)

    def profile(
        self,
        sections: Sequence[Section],
        *,
        bars_per_line: Optional[int] = None,
    ) -> SongStructure:
        bars = max(1, bars_per_line) if bars_per_line is not None else self._bars_per_line
        verse = modal_line_count(sections, "Verse")
        chorus = modal_line_count(sections, "Chorus")
        bridge = modal_line_count(sections, "Bridge")
        return SongStructure(
            pattern=[section.section_type for section in sections],
            verse_lines=verse or 0,
            chorus_lines=chorus or 0,
            bridge_lines=bridge,
            total_bars=sum(section.line_count for section in sections) * bars,
            sections=[
                SectionSummary(
                    label=section.label,
                    section_type=section.section_type,
                    line_count=section.line_count,
                )
                for section in sections
            ],
        )
