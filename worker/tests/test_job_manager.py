from __future__ import annotations

import asyncio
from typing import Any, Optional

import pytest

from songdna_worker.app.jobs import JobManager
from songdna_worker.app.models import (
    ConformanceScore,
    GeneratedSection,
    GeneratedSong,
    GeneratedSongMetadata,
    GenerationJobRequest,
    GenerationOptions,
    GenerationStatus,
    JobState,
    SongDNA,
)
from songdna_worker.services.exceptions import (
    DNANotFoundError,
    GenerationCancelled,
    GenerationFailed,
)
from songdna_worker.services.repository import InMemoryDNARepository

DNA_PAYLOAD = {
    "id": "dna_job",
    "reference_song": {"title": "Ref", "artist": "Band", "lyrics": "la la"},
    "structure": {
        "pattern": ["Verse"],
        "sections": [{"label": "Verse", "section_type": "Verse", "line_count": 2}],
    },
    "lyrical": {
        "rhyme_schemes": {"Verse": "AA"},
        "syllables_per_line": {"average": 2.0, "variance": 0.0, "distribution": [2, 2]},
    },
}


class StubEngine:
    async def generate(
        self,
        dna: SongDNA,
        options: Optional[GenerationOptions] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
        progress_cb: Any = None,
    ) -> GeneratedSong:
        if progress_cb is not None:
            await progress_cb(1, 1, "Verse")
        return GeneratedSong(
            title="Stub",
            lyrics="[Verse]\nla la\nla la",
            sections=[GeneratedSection(label="Verse", section_type="Verse", lines=["la la", "la la"])],
            metadata=GeneratedSongMetadata(
                source_dna_id=dna.id,
                conformance=ConformanceScore(score=0.9, syllable=1.0, rhyme=1.0, emotional_arc=0.5),
                generator="stub",
            ),
        )


class FailingEngine(StubEngine):
    async def generate(self, dna: SongDNA, options=None, *, cancel_event=None, progress_cb=None):
        raise GenerationFailed("boom")


class CrashingEngine(StubEngine):
    async def generate(self, dna: SongDNA, options=None, *, cancel_event=None, progress_cb=None):
        raise KeyError("unexpected")


class WaitingEngine(StubEngine):
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def generate(self, dna: SongDNA, options=None, *, cancel_event=None, progress_cb=None):
        self.started.set()
        assert cancel_event is not None
        await cancel_event.wait()
        raise GenerationCancelled("generation cancelled")


async def _manager(engine: Any) -> JobManager:
    repository = InMemoryDNARepository()
    await repository.init()
    await repository.save(DNA_PAYLOAD)
    return JobManager(engine, repository)


@pytest.mark.asyncio
async def test_job_manager_success_flow() -> None:
    manager = await _manager(StubEngine())
    status = await manager.enqueue(GenerationJobRequest(dna_id="dna_job"))
    assert status.state == JobState.QUEUED

    result = await _wait_for_terminal_state(manager, status.job_id)
    assert result.state == JobState.SUCCEEDED
    assert result.progress == 1.0
    assert "conformance 0.90" in (result.message or "")
    song = await manager.get_song(status.job_id)
    assert song is not None
    assert song.metadata.source_dna_id == "dna_job"


@pytest.mark.asyncio
async def test_job_manager_accepts_inline_dna() -> None:
    manager = await _manager(StubEngine())
    status = await manager.enqueue(GenerationJobRequest(dna={"lyrical": {}}))
    result = await _wait_for_terminal_state(manager, status.job_id)
    assert result.state == JobState.SUCCEEDED
    song = await manager.get_song(status.job_id)
    assert song is not None
    assert song.metadata.source_dna_id.startswith("dna_fallback_")


@pytest.mark.asyncio
async def test_job_manager_unknown_dna() -> None:
    manager = await _manager(StubEngine())
    with pytest.raises(DNANotFoundError):
        await manager.enqueue(GenerationJobRequest(dna_id="nope"))


@pytest.mark.asyncio
async def test_job_manager_failure_flow() -> None:
    manager = await _manager(FailingEngine())
    status = await manager.enqueue(GenerationJobRequest(dna_id="dna_job"))
    result = await _wait_for_terminal_state(manager, status.job_id)
    assert result.state == JobState.FAILED
    assert result.message == "boom"
    assert await manager.get_song(status.job_id) is None


@pytest.mark.asyncio
async def test_job_manager_unexpected_error() -> None:
    manager = await _manager(CrashingEngine())
    status = await manager.enqueue(GenerationJobRequest(dna_id="dna_job"))
    result = await _wait_for_terminal_state(manager, status.job_id)
    assert result.state == JobState.FAILED
    assert result.message == "unexpected error during generation"


@pytest.mark.asyncio
async def test_job_manager_cancel() -> None:
    engine = WaitingEngine()
    manager = await _manager(engine)
    status = await manager.enqueue(GenerationJobRequest(dna_id="dna_job"))
    await engine.started.wait()

    await manager.cancel(status.job_id)
    await manager.wait(status.job_id)
    result = await manager.get_status(status.job_id)
    assert result is not None
    assert result.state == JobState.CANCELLED
    assert await manager.cancel("unknown") is None


async def _wait_for_terminal_state(manager: JobManager, job_id: str) -> GenerationStatus:
    for _ in range(60):
        status = await manager.get_status(job_id)
        if status is None:
            await asyncio.sleep(0.05)
            continue
        if status.state in {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}:
            return status
        await asyncio.sleep(0.05)
    raise AssertionError("job did not complete within timeout")
