"""Constraint-driven generation of new lyrics from a song DNA."""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set

import numpy as np
from loguru import logger

from ..app.models import (
    ConformanceScore,
    GeneratedSection,
    GeneratedSong,
    GeneratedSongMetadata,
    GenerationOptions,
    SectionNote,
    SongDNA,
)
from ..app.settings import Settings
from .emotion import NEUTRAL, EmotionClassifier
from .exceptions import (
    CollaboratorError,
    GenerationCancelled,
    GenerationConstraintViolation,
    GenerationFailed,
)
from .generators import TextGenerator, derive_seed
from .prosody import fit_scheme, line_syllables, rhyme_scheme, scheme_mismatches, scheme_pair_count
from .resilience import RetryPolicy, call_with_retry
from .segmenter import CHORUS_OVERLAP_RATIO, section_type_for
from .types import GeneratedLines, GenerationPrompt, SectionConstraints
from .validator import require_valid, validate_generation_options

DEFAULT_PATTERN = ["Verse", "Chorus", "Verse", "Chorus"]
DEFAULT_LINE_COUNT = 4
DEFAULT_SCHEME = "AABB"
MAX_RHYME_MISMATCHES = 1
SYLLABLE_WEIGHT = 0.5
RHYME_WEIGHT = 0.35
ARC_WEIGHT = 0.15
REPEAT_COVERAGE_RATIO = CHORUS_OVERLAP_RATIO

ProgressCallback = Callable[[int, int, str], Awaitable[None]]


class EngineState(str, Enum):
    PLANNING = "planning"
    PER_SECTION_GENERATE = "per_section_generate"
    VALIDATE = "validate"
    ACCEPT = "accept"
    RETRY = "retry"
    FALLBACK = "fallback"
    ASSEMBLE = "assemble"
    DONE = "done"


@dataclass
class Evaluation:
    accepted: bool
    violations: List[str]
    syllable_deviation: float
    within_ratio: float
    rhyme_mismatches: int
    actual_scheme: str

    @property
    def penalty(self) -> float:
        return self.syllable_deviation + self.rhyme_mismatches + (1.0 - self.within_ratio)


@dataclass
class SectionOutcome:
    constraints: SectionConstraints
    lines: List[str]
    evaluation: Evaluation
    attempts: int
    approximate: bool = False
    backend: str = "unknown"


@dataclass
class _Occurrence:
    label: str
    index: int
    line_count: int
    offset: Optional[int]


@dataclass
class _DNAIndex:
    occurrences: Dict[str, List[_Occurrence]] = field(default_factory=dict)
    history: Dict[str, List[int]] = field(default_factory=dict)


def repeatable_types(dna: SongDNA) -> Set[str]:
    """Section types whose later occurrences should repeat the first verbatim.

    A pattern naming a type outright (``"Chorus"``) marks it repeatable. An
    analysed phrase only counts toward a type it appears in at least twice,
    and the type is repeatable once those phrases cover most of its lines.
    """
    pattern_types = {value.lower(): value for value in dna.structure.pattern}
    summaries = dna.structure.sections
    repeatable: Set[str] = set()
    covered: Dict[str, float] = {}
    for pattern in dna.lyrical.repetition_patterns:
        named = pattern_types.get(pattern.phrase.strip().lower())
        if named is not None and not pattern.positions:
            repeatable.add(named)
            continue
        types = list(pattern.section_types)
        if not types and pattern.positions:
            types = [
                summaries[position].section_type
                for position in pattern.positions
                if 0 <= position < len(summaries)
            ]
        if not types:
            continue
        lines_per_section = pattern.occurrences / len(types)
        for section_type, count in Counter(types).items():
            if count >= 2:
                covered[section_type] = covered.get(section_type, 0.0) + lines_per_section

    for section_type, lines in covered.items():
        counts = [
            summary.line_count for summary in summaries if summary.section_type == section_type
        ]
        typical = float(np.mean(counts)) if counts else float(DEFAULT_LINE_COUNT)
        if typical > 0 and min(1.0, lines / typical) >= REPEAT_COVERAGE_RATIO:
            repeatable.add(section_type)
    return repeatable


def evaluate_candidate(
    constraints: SectionConstraints,
    lines: Sequence[str],
    acceptance_ratio: float,
) -> Evaluation:
    violations: List[str] = []
    expected = constraints.line_count
    if len(lines) != expected:
        violations.append(f"expected {expected} lines but got {len(lines)}")

    counts = [line_syllables(line) for line in lines[:expected]]
    deviations = [
        abs(count - constraints.syllable_targets[position])
        for position, count in enumerate(counts)
    ]
    within = sum(1 for deviation in deviations if deviation <= constraints.tolerance)
    within_ratio = within / expected if expected else 1.0
    if within_ratio < acceptance_ratio:
        off_lines = [
            str(position + 1)
            for position, deviation in enumerate(deviations)
            if deviation > constraints.tolerance
        ]
        violations.append(
            f"lines {', '.join(off_lines) or 'missing'} miss their syllable targets "
            f"by more than {constraints.tolerance:.1f}"
        )

    actual = rhyme_scheme(lines[:expected])
    mismatches = scheme_mismatches(constraints.rhyme_scheme, actual)
    if mismatches > MAX_RHYME_MISMATCHES:
        violations.append(f"rhyme scheme should be {constraints.rhyme_scheme} but reads {actual}")

    deviation = float(np.mean(deviations)) if deviations else float(expected)
    return Evaluation(
        accepted=not violations,
        violations=violations,
        syllable_deviation=round(deviation, 3),
        within_ratio=within_ratio,
        rhyme_mismatches=mismatches,
        actual_scheme=actual,
    )


class GenerationConstraintEngine:
    """Plans a song from its DNA and drives the text generator section by section."""

    def __init__(
        self,
        settings: Settings,
        generator: TextGenerator,
        *,
        emotion_classifier: Optional[EmotionClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._generator = generator
        self._emotion = emotion_classifier
        self._policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep

    @property
    def generator(self) -> TextGenerator:
        return self._generator

    def plan(self, dna: SongDNA, options: GenerationOptions) -> List[SectionConstraints]:
        pattern = [section_type_for(value) for value in options.custom_structure or []]
        if not pattern:
            pattern = list(dna.structure.pattern) or list(DEFAULT_PATTERN)
        index = self._index(dna)
        repeatable = repeatable_types(dna)
        type_totals = Counter(pattern)
        seen: Counter[str] = Counter()
        first_labels: Dict[str, str] = {}
        syllables = dna.lyrical.syllables_per_line
        tolerance = max(1.0, syllables.variance * (1.0 + options.creativity / 10.0))
        default_target = max(1, int(round(syllables.average)))

        planned: List[SectionConstraints] = []
        for position, section_type in enumerate(pattern):
            occurrence = seen[section_type]
            seen[section_type] += 1
            known = index.occurrences.get(section_type, [])
            matching = known[occurrence] if occurrence < len(known) else None

            if section_type in repeatable or type_totals[section_type] == 1:
                label = section_type
            else:
                label = f"{section_type} {occurrence + 1}"

            line_count = self._line_count(dna, section_type, matching, known)
            history = index.history.get(section_type, [])
            if history:
                start = 0
                if matching is not None and matching.offset is not None:
                    start = matching.offset
                else:
                    start = sum(item.line_count for item in known[:occurrence])
                targets = [history[(start + step) % len(history)] for step in range(line_count)]
            else:
                targets = [default_target] * line_count

            scheme = (
                (options.force_rhyme_scheme or "").upper()
                or dna.lyrical.rhyme_schemes.get(section_type)
                or DEFAULT_SCHEME
            )
            arc_label = options.emotional_override
            if arc_label is None:
                arc = dna.emotional.emotional_arc
                if matching is not None and matching.index < len(arc):
                    arc_label = arc[matching.index]
                else:
                    arc_label = dna.emotional.primary_emotion

            reuse_from = None
            if section_type in repeatable and section_type in first_labels:
                reuse_from = first_labels[section_type]
            first_labels.setdefault(section_type, label)

            planned.append(
                SectionConstraints(
                    label=label,
                    section_type=section_type,
                    position=position,
                    line_count=line_count,
                    syllable_targets=[max(1, int(value)) for value in targets],
                    tolerance=round(tolerance, 3),
                    rhyme_scheme=fit_scheme(scheme, line_count),
                    vocabulary_level=dna.lyrical.vocabulary_level.value,
                    hints=list(dna.lyrical.signature_words[: self._settings.signature_word_count]),
                    arc_label=arc_label,
                    reuse_from=reuse_from,
                )
            )
        return planned

    async def generate(
        self,
        dna: SongDNA,
        options: Optional[GenerationOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        progress_cb: Optional[ProgressCallback] = None,
    ) -> GeneratedSong:
        if options is None:
            options = GenerationOptions(creativity=self._settings.default_creativity)
        require_valid(dna)
        for warning in validate_generation_options(options).warnings:
            logger.warning("Generation options warning: {}", warning)
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled("generation cancelled before planning")

        self._log_state(EngineState.PLANNING, "song", dna_id=dna.id)
        plan = self.plan(dna, options)
        seed = options.seed
        if seed is None:
            seed = derive_seed(dna.id, options.theme or "", options.creativity)

        work = asyncio.ensure_future(
            self._generate_unique(dna, options, plan, seed, progress_cb)
        )
        outcomes = await self._await_with_cancel(work, cancel_event)

        self._log_state(EngineState.ASSEMBLE, "song", dna_id=dna.id)
        song = self._assemble(dna, options, plan, outcomes)
        self._log_state(EngineState.DONE, "song", score=song.metadata.conformance.score)
        return song

    async def _await_with_cancel(
        self,
        work: "asyncio.Future[Dict[int, SectionOutcome]]",
        cancel_event: Optional[asyncio.Event],
    ) -> Dict[int, SectionOutcome]:
        if cancel_event is None:
            return await work
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            await asyncio.gather(work, waiter, return_exceptions=True)
            raise
        if work in done:
            waiter.cancel()
            await asyncio.gather(waiter, return_exceptions=True)
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        logger.info("Generation cancelled while sections were in flight")
        raise GenerationCancelled("generation cancelled")

    async def _generate_unique(
        self,
        dna: SongDNA,
        options: GenerationOptions,
        plan: Sequence[SectionConstraints],
        seed: int,
        progress_cb: Optional[ProgressCallback],
    ) -> Dict[int, SectionOutcome]:
        semaphore = asyncio.Semaphore(self._settings.max_concurrent_sections)
        unique = [constraints for constraints in plan if constraints.reuse_from is None]
        completed = 0
        progress_lock = asyncio.Lock()

        async def run(constraints: SectionConstraints) -> SectionOutcome:
            nonlocal completed
            async with semaphore:
                outcome = await self._generate_section(dna, options, constraints, seed)
            if progress_cb is not None:
                async with progress_lock:
                    completed += 1
                    await progress_cb(completed, len(unique), constraints.label)
            return outcome

        tasks = {
            constraints.position: asyncio.create_task(run(constraints)) for constraints in unique
        }
        if not tasks:
            return {}
        try:
            await asyncio.wait(tasks.values(), return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks.values() if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        for task in tasks.values():
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        return {position: task.result() for position, task in tasks.items()}

    async def _generate_section(
        self,
        dna: SongDNA,
        options: GenerationOptions,
        constraints: SectionConstraints,
        seed: int,
    ) -> SectionOutcome:
        attempts = self._settings.retry_budget + 1
        feedback: List[str] = []
        best: Optional[SectionOutcome] = None
        for attempt in range(1, attempts + 1):
            self._log_state(EngineState.PER_SECTION_GENERATE, constraints.label, attempt=attempt)
            prompt = GenerationPrompt(
                constraints=constraints,
                theme=options.theme,
                creativity=options.creativity,
                seed=seed,
                attempt=attempt,
                feedback=list(feedback),
                artist=dna.reference_song.artist,
            )
            generated = await self._call_generator(prompt)

            self._log_state(EngineState.VALIDATE, constraints.label, attempt=attempt)
            evaluation = evaluate_candidate(
                constraints, generated.lines, self._settings.syllable_acceptance_ratio
            )
            outcome = SectionOutcome(
                constraints=constraints,
                lines=list(generated.lines[: constraints.line_count]),
                evaluation=evaluation,
                attempts=attempt,
                backend=generated.backend,
            )
            if evaluation.accepted:
                self._log_state(EngineState.ACCEPT, constraints.label, attempt=attempt)
                return outcome
            if best is None or evaluation.penalty < best.evaluation.penalty:
                best = outcome
            violation = GenerationConstraintViolation(constraints.label, evaluation.violations)
            self._log_state(EngineState.RETRY, constraints.label, attempt=attempt, reason=violation)
            feedback = list(violation.reasons)

        assert best is not None
        best.attempts = attempts
        best.approximate = True
        self._log_state(
            EngineState.FALLBACK,
            constraints.label,
            deviation=best.evaluation.syllable_deviation,
            mismatches=best.evaluation.rhyme_mismatches,
        )
        return best

    async def _call_generator(self, prompt: GenerationPrompt) -> GeneratedLines:
        label = prompt.constraints.label
        try:
            return await call_with_retry(
                lambda: self._generator.generate_section(prompt),
                self._policy,
                description=f"{label} generation",
                sleep=self._sleep,
            )
        except CollaboratorError as exc:
            raise GenerationFailed(f"{label}: {exc}") from exc

    def _assemble(
        self,
        dna: SongDNA,
        options: GenerationOptions,
        plan: Sequence[SectionConstraints],
        outcomes: Dict[int, SectionOutcome],
    ) -> GeneratedSong:
        by_label = {outcome.constraints.label: outcome for outcome in outcomes.values()}
        sections: List[GeneratedSection] = []
        notes: List[SectionNote] = []
        syllable_scores: List[float] = []
        rhyme_scores: List[float] = []
        arc_scores: List[float] = []

        for constraints in plan:
            if constraints.reuse_from is not None:
                source = by_label[constraints.reuse_from]
                lines = list(source.lines)
                evaluation = source.evaluation
                approximate = source.approximate
                attempts = 0
            else:
                outcome = outcomes[constraints.position]
                lines = outcome.lines
                evaluation = outcome.evaluation
                approximate = outcome.approximate
                attempts = outcome.attempts

            arc_detected = self._detect_arc(lines)
            sections.append(
                GeneratedSection(
                    label=constraints.label,
                    section_type=constraints.section_type,
                    lines=lines,
                    approximate=approximate,
                    attempts=attempts,
                    reused_from=constraints.reuse_from,
                )
            )
            notes.append(
                SectionNote(
                    label=constraints.label,
                    section_type=constraints.section_type,
                    approximate=approximate,
                    attempts=attempts,
                    syllable_deviation=evaluation.syllable_deviation,
                    rhyme_pair_mismatches=evaluation.rhyme_mismatches,
                    target_scheme=constraints.rhyme_scheme,
                    actual_scheme=evaluation.actual_scheme,
                    arc_target=constraints.arc_label,
                    arc_detected=arc_detected,
                    reused_from=constraints.reuse_from,
                    violations=list(evaluation.violations) if approximate else [],
                )
            )
            syllable_scores.append(evaluation.within_ratio)
            pairs = scheme_pair_count(constraints.line_count)
            rhyme_scores.append(1.0 - evaluation.rhyme_mismatches / pairs if pairs else 1.0)
            arc_scores.append(self._arc_score(constraints.arc_label, arc_detected))

        syllable = float(np.mean(syllable_scores)) if syllable_scores else 0.0
        rhyme = float(np.mean(rhyme_scores)) if rhyme_scores else 0.0
        arc = float(np.mean(arc_scores)) if arc_scores else 0.0
        score = SYLLABLE_WEIGHT * syllable + RHYME_WEIGHT * rhyme + ARC_WEIGHT * arc

        lyrics = "\n\n".join(
            f"[{section.label}]\n" + "\n".join(section.lines) for section in sections
        )
        artist = dna.reference_song.artist
        theme = options.theme or (dna.lyrical.themes[0] if dna.lyrical.themes else None)
        title = options.title or f"{(theme or 'Untitled').title()} ({artist} Style)"
        tempo = dna.musical.get("tempo_bpm")
        key = dna.musical.get("suggested_key")
        return GeneratedSong(
            title=title,
            lyrics=lyrics,
            sections=sections,
            genre=dna.reference_song.genre or (dna.genre_tags[0] if dna.genre_tags else None),
            theme=theme,
            emotional_tone=options.emotional_override or dna.emotional.primary_emotion,
            estimated_bpm=int(tempo) if isinstance(tempo, (int, float)) else None,
            suggested_key=key if isinstance(key, str) else None,
            artist_attribution=artist,
            metadata=GeneratedSongMetadata(
                source_dna_id=dna.id,
                section_notes=notes,
                conformance=ConformanceScore(
                    score=round(min(1.0, max(0.0, score)), 4),
                    syllable=round(min(1.0, max(0.0, syllable)), 4),
                    rhyme=round(min(1.0, max(0.0, rhyme)), 4),
                    emotional_arc=round(min(1.0, max(0.0, arc)), 4),
                ),
                generator=getattr(self._generator, "name", type(self._generator).__name__),
                options=options,
            ),
        )

    def _detect_arc(self, lines: Sequence[str]) -> Optional[str]:
        if self._emotion is None or not lines:
            return None
        try:
            return self._emotion.label_lines(lines)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Emotion classifier failed while scoring arc: {}", exc)
            return None

    @staticmethod
    def _arc_score(target: Optional[str], detected: Optional[str]) -> float:
        if target is None or detected is None:
            return 0.5
        if target.lower() == detected.lower():
            return 1.0
        if detected == NEUTRAL:
            return 0.5
        return 0.0

    @staticmethod
    def _index(dna: SongDNA) -> _DNAIndex:
        index = _DNAIndex()
        distribution = dna.lyrical.syllables_per_line.distribution
        summaries = dna.structure.sections
        aligned = bool(distribution) and len(distribution) == sum(
            summary.line_count for summary in summaries
        )
        cursor = 0
        for position, summary in enumerate(summaries):
            history = index.history.setdefault(summary.section_type, [])
            offset = len(history) if aligned else None
            index.occurrences.setdefault(summary.section_type, []).append(
                _Occurrence(
                    label=summary.label,
                    index=position,
                    line_count=summary.line_count,
                    offset=offset,
                )
            )
            if aligned:
                history.extend(distribution[cursor : cursor + summary.line_count])
            cursor += summary.line_count
        index.history = {key: value for key, value in index.history.items() if value}
        return index

    def _line_count(
        self,
        dna: SongDNA,
        section_type: str,
        matching: Optional[_Occurrence],
        known: Sequence[_Occurrence],
    ) -> int:
        if matching is not None and matching.line_count > 0:
            return matching.line_count
        counts = [item.line_count for item in known if item.line_count > 0]
        if counts:
            frequency = Counter(counts)
            best = max(frequency.values())
            return next(count for count in counts if frequency[count] == best)
        fallback = {
            "Verse": dna.structure.verse_lines,
            "Chorus": dna.structure.chorus_lines,
            "Bridge": dna.structure.bridge_lines,
        }.get(section_type)
        if fallback:
            return int(fallback)
        return DEFAULT_LINE_COUNT

    @staticmethod
    def _log_state(state: EngineState, label: str, **details: object) -> None:
        logger.debug(
            "[{label}] {state} {details}",
            label=label,
            state=state.value.upper(),
            details=details,
        )
