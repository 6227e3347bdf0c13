from __future__ import annotations

from pathlib import Path

import pytest

from songdna_worker.generate import _run


@pytest.mark.asyncio
async def test_generate_cli_template_backend(
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    config_dir = tmp_path / "config"
    lyrics_file = tmp_path / "song.txt"
    lyrics_file.write_text(
        "[Verse]\nWe ran along the shore\nAnd knocked on every door\n\n"
        "[Chorus]\nSing it loud\nSing it proud\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("SONGDNA_GENERATOR_BACKEND", "template")

    await _run(
        lyrics_file,
        theme="summer",
        creativity=4.0,
        title="Shore",
        artist="Tester",
        seed=5,
        config_dir=config_dir,
    )

    captured = capsys.readouterr()
    assert "conformance" in captured.out
    assert "[Verse]" in captured.out
    assert "[Chorus]" in captured.out
    assert "Summer (Tester Style)" in captured.out
    assert config_dir.exists()
