#!/usr/bin/env python3
"""
Quick smoke test for the transformers lyric backend.

Analyses a short reference song, generates one section through the
Hugging Face text-generation pipeline and prints the result along with
the conformance metadata so contributors can verify whether real
inference ran or the load failed.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib.util
import json
import sys
import time
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = REPO_ROOT / "worker" / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

DEFAULT_LYRICS = """[Verse 1]
Streetlights hum along the empty road
I carry every word you never said
The night is long and heavy like a load
I keep your voice still ringing in my head

[Chorus]
Hold on, hold on, the morning isn't far
Hold on, hold on, wherever you are
"""


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a standalone transformers lyric smoke test.")
    parser.add_argument(
        "--theme",
        default="leaving a small town",
        help="Theme to feed into the generation prompt.",
    )
    parser.add_argument(
        "--model-id",
        default="gpt2",
        help="Hugging Face model id for the text-generation pipeline.",
    )
    parser.add_argument(
        "--lyrics-file",
        type=Path,
        default=None,
        help="Reference lyrics (defaults to a built-in two-section song).",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=Path("~/.config/songdna").expanduser(),
        help="Configuration directory for the worker Settings object.",
    )
    return parser.parse_args()


def ensure_inference_dependencies() -> None:
    missing: list[str] = []
    for module_name in ("torch", "transformers"):
        if importlib.util.find_spec(module_name) is None:
            missing.append(f"{module_name} (module not found)")

    if missing:
        message = "\n".join(
            [
                "Missing inference dependencies:",
                *[f"  - {item}" for item in missing],
                "Install them with `pip install -e '.[model]'` before running the smoke test.",
            ]
        )
        print(message, file=sys.stderr)
        sys.exit(2)


async def run_smoke(args: argparse.Namespace) -> None:
    from songdna_worker.app.models import AnalysisRequest, GenerationOptions
    from songdna_worker.app.settings import Settings
    from songdna_worker.services.analysis import SongAnalyzer
    from songdna_worker.services.constraints import GenerationConstraintEngine
    from songdna_worker.services.generators import TransformersLyricGenerator

    ensure_inference_dependencies()

    settings = Settings(
        config_dir=args.config_dir,
        generator_backend="transformers",
        generator_model_id=args.model_id,
        retry_budget=0,
    )
    settings.ensure_directories()

    generator = TransformersLyricGenerator(settings)

    start = time.perf_counter()
    status = await generator.warmup()
    warmup_elapsed = time.perf_counter() - start
    if not status.ready:
        print(f"Model failed to load: {status.error}", file=sys.stderr)
        sys.exit(3)

    lyrics = args.lyrics_file.read_text(encoding="utf-8") if args.lyrics_file else DEFAULT_LYRICS
    analyzer = SongAnalyzer(settings)
    dna = analyzer.analyze(AnalysisRequest(lyrics=lyrics, title="Smoke", artist="Smoke")).song_dna
    engine = GenerationConstraintEngine(
        settings, generator, emotion_classifier=analyzer.emotion_classifier
    )

    start = time.perf_counter()
    song = await engine.generate(
        dna,
        GenerationOptions(theme=args.theme, custom_structure=["Verse"], seed=7),
    )
    generation_elapsed = time.perf_counter() - start

    payload = {
        "backend": status.as_dict(),
        "title": song.title,
        "lyrics": song.lyrics,
        "conformance": song.metadata.conformance.model_dump(),
        "warmup_seconds": round(warmup_elapsed, 3),
        "generation_seconds": round(generation_elapsed, 3),
    }
    print(json.dumps(payload, indent=2))

    if any(section.approximate for section in song.sections):
        print("Model output missed its constraints; best candidate kept.", file=sys.stderr)
    else:
        print("Transformers pipeline generated conforming lyrics.", file=sys.stderr)


def main() -> None:
    args = parse_args()
    try:
        asyncio.run(run_smoke(args))
    except KeyboardInterrupt:  # pragma: no cover - operator friendly exit
        print("Cancelled smoke test.", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
