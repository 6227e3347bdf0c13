"""
CLI entry point to analyse a reference song and write new lyrics from its DNA.

Example:
    python -m songdna_worker.generate --lyrics-file song.txt --theme "late trains"
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional

from .app.models import AnalysisRequest, GenerationOptions
from .app.settings import Settings
from .services.analysis import SongAnalyzer
from .services.constraints import GenerationConstraintEngine
from .services.generators import build_generator


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate lyrics via the SongDNA worker backend.")
    parser.add_argument(
        "--lyrics-file",
        type=Path,
        required=True,
        help="Reference lyrics to analyse (plain text, optional [Section] headers).",
    )
    parser.add_argument("--theme", default=None, help="Theme for the new song.")
    parser.add_argument(
        "--creativity",
        type=float,
        default=None,
        help="Creativity 0-10 (defaults to worker settings).",
    )
    parser.add_argument("--title", default=None, help="Reference song title.")
    parser.add_argument("--artist", default=None, help="Reference song artist.")
    parser.add_argument("--seed", type=int, default=None, help="Deterministic generation seed.")
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override config directory (defaults to worker settings).",
    )
    return parser.parse_args()


async def _run(
    lyrics_file: Path,
    *,
    theme: Optional[str],
    creativity: Optional[float],
    title: Optional[str],
    artist: Optional[str],
    seed: Optional[int],
    config_dir: Optional[Path],
) -> None:
    settings_kwargs: dict[str, object] = {}
    if config_dir is not None:
        settings_kwargs["config_dir"] = config_dir

    settings = Settings(**settings_kwargs)
    settings.ensure_directories()

    analyzer = SongAnalyzer(settings)
    generator = build_generator(settings)
    engine = GenerationConstraintEngine(
        settings,
        generator,
        emotion_classifier=analyzer.emotion_classifier,
    )
    await generator.warmup()

    analysis = analyzer.analyze(
        AnalysisRequest(
            lyrics=lyrics_file.read_text(encoding="utf-8"),
            title=title,
            artist=artist,
        )
    )
    dna = analysis.song_dna
    options = GenerationOptions(
        theme=theme,
        creativity=settings.default_creativity if creativity is None else creativity,
        seed=seed,
    )
    song = await engine.generate(dna, options)

    conformance = song.metadata.conformance
    approximate = [section.label for section in song.sections if section.approximate]

    print(f"dna_id        : {dna.id}")
    print(f"pattern       : {' / '.join(dna.structure.pattern)}")
    print(f"confidence    : {analysis.confidence_scores.overall:.2f}")
    print(f"title         : {song.title}")
    print(f"generator     : {song.metadata.generator}")
    print(f"conformance   : {conformance.score:.2f}")
    if approximate:
        print(f"approximate   : {', '.join(approximate)}")
    print()
    print(song.lyrics)


def main() -> None:
    args = _parse_args()
    asyncio.run(
        _run(
            args.lyrics_file,
            theme=args.theme,
            creativity=args.creativity,
            title=args.title,
            artist=args.artist,
            seed=args.seed,
            config_dir=args.config_dir,
        )
    )


if __name__ == "__main__":
    main()
