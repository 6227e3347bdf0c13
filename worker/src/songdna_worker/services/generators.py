"""Text-generation collaborators that write one lyric section at a time."""

from __future__ import annotations

import asyncio
import hashlib
import random
from typing import Any, Dict, List, Optional, Protocol

from loguru import logger

from ..app.settings import Settings
from .exceptions import CollaboratorError, MalformedResponseError
from .lexicon import Lexicon, load_lexicon
from .prosody import NO_WORD, count_syllables, fit_scheme, keys_match, rhyme_key, tokenize
from .segmenter import parse_header
from .types import BackendStatus, GeneratedLines, GenerationPrompt

try:  # pragma: no cover - deferred dependency import
    import torch
except Exception as exc:  # noqa: BLE001
    torch = None  # type: ignore[assignment]
    TORCH_IMPORT_ERROR = exc
else:  # pragma: no cover
    TORCH_IMPORT_ERROR = None

try:  # pragma: no cover
    from transformers import pipeline, set_seed
except Exception as exc:  # noqa: BLE001
    pipeline = None  # type: ignore[assignment]
    set_seed = None  # type: ignore[assignment]
    TRANSFORMERS_IMPORT_ERROR = exc
else:  # pragma: no cover
    TRANSFORMERS_IMPORT_ERROR = None

MAX_CONTENT_WORDS_PER_LINE = 3


class TextGenerator(Protocol):
    name: str

    async def warmup(self) -> BackendStatus:
        ...

    async def generate_section(self, prompt: GenerationPrompt) -> GeneratedLines:
        ...


def derive_seed(*parts: object) -> int:
    payload = "|".join(str(part) for part in parts).encode("utf-8")
    digest = hashlib.sha256(payload).digest()
    return int.from_bytes(digest[:8], "little") & ((1 << 62) - 1)


class TemplateLyricGenerator:
    """Offline composer that assembles lines from the lexicon word bank.

    End words come from rhyme families so the requested scheme is met
    exactly; the rest of each line is topped up with theme words, hints
    and one-syllable fillers until the syllable target is reached.
    """

    name = "template"

    def __init__(self, lexicon: Optional[Lexicon] = None) -> None:
        self._lexicon = lexicon or load_lexicon()
        self._bank = self._lexicon.generator

    async def warmup(self) -> BackendStatus:
        return BackendStatus(
            name=self.name,
            ready=True,
            details={"rhyme_families": len(self._bank.rhyme_families)},
        )

    async def generate_section(self, prompt: GenerationPrompt) -> GeneratedLines:
        constraints = prompt.constraints
        rng = random.Random(
            derive_seed(prompt.seed, constraints.label, constraints.position, prompt.attempt)
        )
        content = self._content_words(prompt)
        targets = constraints.syllable_targets or [7]
        scheme = fit_scheme(constraints.rhyme_scheme, constraints.line_count)
        end_words = self._end_words(scheme, targets, rng)

        lines: List[str] = []
        for position in range(constraints.line_count):
            target = targets[position % len(targets)]
            lines.append(
                self._compose_line(
                    target=max(1, target),
                    end_word=end_words[position],
                    content=content,
                    rng=rng,
                    creativity=prompt.creativity,
                    complex_vocabulary=constraints.vocabulary_level == "complex",
                )
            )
        return GeneratedLines(
            lines=lines,
            backend=self.name,
            extras={"attempt": prompt.attempt},
        )

    def _content_words(self, prompt: GenerationPrompt) -> List[str]:
        words: List[str] = []
        stopwords = self._lexicon.stopwords
        sources = [tokenize(prompt.theme or "")]
        sources.append([word for hint in prompt.constraints.hints for word in tokenize(hint)])
        arc = (prompt.constraints.arc_label or "neutral").lower()
        sources.append(self._bank.emotion_colour.get(arc, self._bank.emotion_colour.get("neutral", [])))
        for source in sources:
            for word in source:
                if len(word) >= 3 and word not in stopwords and word not in words:
                    words.append(word)
        return words

    def _end_words(self, scheme: str, targets: List[int], rng: random.Random) -> List[str]:
        families = list(self._bank.rhyme_families)
        rng.shuffle(families)
        letter_family: Dict[str, List[str]] = {}
        used_counts: Dict[str, int] = {}
        used_keys: List[str] = []
        ends: List[str] = []
        filler_pool = [word for word in self._bank.fillers if len(word) >= 3]
        for position, letter in enumerate(scheme):
            target = targets[position % len(targets)] if targets else 1
            if letter == NO_WORD:
                word = self._unrhymed_end(filler_pool, used_keys, ends)
            else:
                if letter not in letter_family:
                    letter_family[letter] = families[len(letter_family) % len(families)]
                family = letter_family[letter]
                fitting = [candidate for candidate in family if count_syllables(candidate) <= target]
                pool = fitting or sorted(family, key=count_syllables)[:1]
                index = used_counts.get(letter, 0)
                word = pool[index % len(pool)]
                used_counts[letter] = index + 1
            used_keys.append(rhyme_key(word))
            ends.append(word)
        return ends

    @staticmethod
    def _unrhymed_end(pool: List[str], used_keys: List[str], ends: List[str]) -> str:
        for word in pool:
            key = rhyme_key(word)
            if word not in ends and not any(keys_match(key, used) for used in used_keys):
                return word
        return pool[0] if pool else "now"

    def _compose_line(
        self,
        *,
        target: int,
        end_word: str,
        content: List[str],
        rng: random.Random,
        creativity: float,
        complex_vocabulary: bool,
    ) -> str:
        remaining = target - count_syllables(end_word)
        body: List[str] = []
        budget = min(MAX_CONTENT_WORDS_PER_LINE, 1 + int(creativity // 4))
        if content and remaining > 0:
            candidates = list(content)
            rng.shuffle(candidates)
            for word in candidates:
                if budget <= 0:
                    break
                cost = count_syllables(word)
                if word != end_word and 0 < cost <= remaining:
                    body.append(word)
                    remaining -= cost
                    budget -= 1
        fillers = list(self._bank.fillers)
        rng.shuffle(fillers)
        doubles = list(self._bank.two_syllable_fillers)
        cursor = 0
        while remaining > 0:
            if complex_vocabulary and remaining >= 2 and doubles and rng.random() < 0.5:
                word = rng.choice(doubles)
                if count_syllables(word) <= remaining:
                    body.append(word)
                    remaining -= count_syllables(word)
                    continue
            body.append(fillers[cursor % len(fillers)])
            cursor += 1
            remaining -= 1
        rng.shuffle(body)
        words = body + [end_word]
        text = " ".join(words)
        return text[:1].upper() + text[1:]


def _clean_generated_lines(text: str) -> List[str]:
    lines: List[str] = []
    for raw in text.splitlines():
        line = raw.strip().strip('"').strip()
        if not line or parse_header(line) is not None:
            continue
        if not tokenize(line):
            continue
        lines.append(line)
    return lines


class TransformersLyricGenerator:
    """Hugging Face ``text-generation`` pipeline, loaded lazily on first use."""

    name = "transformers"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        model_id: Optional[str] = None,
    ) -> None:
        self._settings = settings
        if model_id is not None:
            self._model_id = model_id
        elif settings is not None:
            self._model_id = settings.generator_model_id
        else:
            self._model_id = "gpt2"
        self._max_new_tokens = settings.generator_max_new_tokens if settings is not None else 160
        self._pipeline: Any = None
        self._load_error: Optional[str] = None
        self._lock = asyncio.Lock()
        self._device = self._select_device()

    @property
    def model_id(self) -> str:
        return self._model_id

    async def warmup(self) -> BackendStatus:
        handle = await self._ensure_pipeline()
        return BackendStatus(
            name=self.name,
            ready=handle is not None,
            device=self._device,
            model_id=self._model_id,
            error=self._load_error,
        )

    async def generate_section(self, prompt: GenerationPrompt) -> GeneratedLines:
        handle = await self._ensure_pipeline()
        if handle is None:
            raise CollaboratorError(
                f"text generation unavailable: {self._load_error or 'unknown error'}"
            )
        temperature = max(0.05, prompt.creativity / 10.0 * 2.0)
        text = prompt.render_text()
        outputs = await asyncio.to_thread(
            self._run_pipeline, handle, text, temperature, prompt.seed
        )
        if not isinstance(outputs, list) or not outputs:
            raise MalformedResponseError("text generation returned no candidates")
        first = outputs[0]
        generated = first.get("generated_text") if isinstance(first, dict) else None
        if not isinstance(generated, str):
            raise MalformedResponseError("text generation candidate has no generated_text")
        lines = _clean_generated_lines(generated)
        if not lines:
            raise MalformedResponseError("text generation produced no lyric lines")
        return GeneratedLines(
            lines=lines[: prompt.constraints.line_count],
            backend=self.name,
            extras={"model_id": self._model_id, "temperature": temperature},
        )

    def _run_pipeline(self, handle: Any, text: str, temperature: float, seed: int) -> Any:
        if set_seed is not None:
            set_seed(seed % (2**32))
        return handle(
            text,
            max_new_tokens=self._max_new_tokens,
            do_sample=True,
            temperature=temperature,
            num_return_sequences=1,
            return_full_text=False,
        )

    async def _ensure_pipeline(self) -> Any:
        async with self._lock:
            if self._pipeline is not None or self._load_error is not None:
                return self._pipeline
            if pipeline is None:
                detail = TRANSFORMERS_IMPORT_ERROR or "transformers_not_installed"
                self._load_error = f"transformers unavailable: {detail}"
                logger.warning("Text generation unavailable: {}", self._load_error)
                return None
            try:
                self._pipeline = await asyncio.to_thread(
                    pipeline,
                    "text-generation",
                    model=self._model_id,
                    device=0 if self._device == "cuda" else -1,
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to load text generation model {}", self._model_id)
                self._load_error = f"load_error:{exc.__class__.__name__}"
                return None
            logger.info("Loaded text generation model {} on {}", self._model_id, self._device)
            return self._pipeline

    @staticmethod
    def _select_device() -> str:
        if torch is None:
            return "cpu"
        if torch.cuda.is_available():
            return "cuda"
        return "cpu"


def build_generator(settings: Settings) -> TextGenerator:
    if settings.generator_backend == "transformers":
        return TransformersLyricGenerator(settings)
    return TemplateLyricGenerator()
