"""Shared service data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Section:
    label: str
    section_type: str
    lines: tuple[str, ...]
    index: int

    @property
    def line_count(self) -> int:
        return len(self.lines)


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "warnings": list(self.warnings)}


@dataclass
class GenerateCheck:
    can_generate: bool
    reason: Optional[str] = None


@dataclass
class EmotionReading:
    primary_emotion: str
    secondary_emotions: List[str]
    emotional_arc: List[str]
    overall_intensity: float
    vulnerability_level: float
    sincerity_vs_irony: float


@dataclass
class SectionConstraints:
    """Everything the generator needs to write one planned section."""

    label: str
    section_type: str
    position: int
    line_count: int
    syllable_targets: List[int]
    tolerance: float
    rhyme_scheme: str
    vocabulary_level: str
    hints: List[str] = field(default_factory=list)
    arc_label: Optional[str] = None
    reuse_from: Optional[str] = None


@dataclass
class GenerationPrompt:
    constraints: SectionConstraints
    theme: Optional[str]
    creativity: float
    seed: int
    attempt: int = 1
    feedback: List[str] = field(default_factory=list)
    artist: Optional[str] = None

    def render_text(self) -> str:
        """Plain-text instruction for language-model backends."""
        constraints = self.constraints
        targets = ", ".join(str(value) for value in constraints.syllable_targets)
        parts = [
            f"Write the {constraints.label} of a song",
            f"about {self.theme}" if self.theme else "",
            f"in the style of {self.artist}." if self.artist else ".",
            f"Use exactly {constraints.line_count} lines",
            f"with about {targets} syllables per line",
            f"and the rhyme scheme {constraints.rhyme_scheme}.",
            f"Vocabulary: {constraints.vocabulary_level}.",
        ]
        if constraints.arc_label:
            parts.append(f"Mood: {constraints.arc_label}.")
        if constraints.hints:
            parts.append("Favour words like " + ", ".join(constraints.hints) + ".")
        for note in self.feedback:
            parts.append(f"Fix: {note}.")
        parts.append("Lyrics:\n")
        return " ".join(part for part in parts if part)


@dataclass
class GeneratedLines:
    lines: List[str]
    backend: str
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BackendStatus:
    name: str
    ready: bool
    device: Optional[str] = None
    model_id: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "name": self.name,
            "ready": self.ready,
            "updated_at": self.updated_at.isoformat(),
        }
        if self.device is not None:
            payload["device"] = self.device
        if self.model_id is not None:
            payload["model_id"] = self.model_id
        if self.error is not None:
            payload["error"] = self.error
        if self.details:
            payload["details"] = self.details
        return payload
