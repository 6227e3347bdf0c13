from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Dict, Optional
from uuid import uuid4

from loguru import logger

from ..services.constraints import GenerationConstraintEngine
from ..services.exceptions import DNANotFoundError, GenerationCancelled, SongDNAError
from ..services.repository import DNARepository
from ..services.validator import ensure_valid_dna
from .models import (
    GeneratedSong,
    GenerationJobRequest,
    GenerationOptions,
    GenerationStatus,
    JobState,
    SongDNA,
)


class JobManager:
    """Coordinates asynchronous lyric generation jobs and exposes their songs."""

    def __init__(
        self,
        engine: GenerationConstraintEngine,
        repository: DNARepository,
    ):
        self._engine = engine
        self._repository = repository
        self._statuses: Dict[str, GenerationStatus] = {}
        self._songs: Dict[str, GeneratedSong] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task[None]] = {}

    async def enqueue(self, request: GenerationJobRequest) -> GenerationStatus:
        dna = await self._resolve_dna(request)
        job_id = str(uuid4())
        status = GenerationStatus(job_id=job_id, state=JobState.QUEUED, message="queued")
        cancel_event = asyncio.Event()

        async with self._lock:
            self._statuses[job_id] = status
            self._cancel_events[job_id] = cancel_event
        task = asyncio.create_task(
            self._execute_job(job_id, dna, request.options, cancel_event)
        )
        async with self._lock:
            self._tasks[job_id] = task
        return status.model_copy(deep=True)

    async def _resolve_dna(self, request: GenerationJobRequest) -> SongDNA:
        if request.dna_id is not None:
            dna = await self._repository.get(request.dna_id)
            if dna is None:
                raise DNANotFoundError(request.dna_id)
            return dna
        return ensure_valid_dna(request.dna)

    async def cancel(self, job_id: str) -> Optional[GenerationStatus]:
        async with self._lock:
            event = self._cancel_events.get(job_id)
            status = self._statuses.get(job_id)
        if status is None:
            return None
        if event is not None and status.state in (JobState.QUEUED, JobState.RUNNING):
            event.set()
            logger.info("Cancellation requested for job {}", job_id)
        return await self.get_status(job_id)

    async def get_status(self, job_id: str) -> Optional[GenerationStatus]:
        async with self._lock:
            status = self._statuses.get(job_id)
            if status is None:
                return None
            return status.model_copy(deep=True)

    async def get_song(self, job_id: str) -> Optional[GeneratedSong]:
        async with self._lock:
            return self._songs.get(job_id)

    async def wait(self, job_id: str) -> None:
        async with self._lock:
            task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _execute_job(
        self,
        job_id: str,
        dna: SongDNA,
        options: GenerationOptions,
        cancel_event: asyncio.Event,
    ) -> None:
        await self._set_status(
            job_id,
            state=JobState.RUNNING,
            progress=0.05,
            message="planning sections",
        )
        try:
            async def progress_cb(position: int, total: int, label: str) -> None:
                ratio = position / max(total, 1)
                await self._set_status(
                    job_id,
                    state=JobState.RUNNING,
                    progress=0.1 + 0.8 * ratio,
                    message=f"generated {position}/{total}: {label}",
                )

            song = await self._engine.generate(
                dna,
                options,
                cancel_event=cancel_event,
                progress_cb=progress_cb,
            )
        except GenerationCancelled as exc:
            await self._set_status(
                job_id,
                state=JobState.CANCELLED,
                progress=1.0,
                message=str(exc),
            )
            logger.info("job {job_id} cancelled", job_id=job_id)
            return
        except SongDNAError as exc:
            await self._set_status(
                job_id,
                state=JobState.FAILED,
                progress=1.0,
                message=str(exc),
            )
            logger.error("job {job_id} failed: {exc}", job_id=job_id, exc=exc)
            return
        except Exception:  # noqa: BLE001
            await self._set_status(
                job_id,
                state=JobState.FAILED,
                progress=1.0,
                message="unexpected error during generation",
            )
            logger.exception("unexpected error during job {}", job_id)
            return
        finally:
            async with self._lock:
                self._tasks.pop(job_id, None)
                self._cancel_events.pop(job_id, None)

        async with self._lock:
            self._songs[job_id] = song
        approximate = sum(1 for section in song.sections if section.approximate)
        await self._set_status(
            job_id,
            state=JobState.SUCCEEDED,
            progress=1.0,
            message=(
                f"generation complete (conformance {song.metadata.conformance.score:.2f}, "
                f"{approximate} approximate sections)"
            ),
        )

    async def _set_status(
        self,
        job_id: str,
        *,
        state: JobState,
        progress: Optional[float] = None,
        message: Optional[str] = None,
    ) -> None:
        async with self._lock:
            status = self._statuses[job_id]
            status.state = state
            if progress is not None:
                status.progress = max(0.0, min(progress, 1.0))
            status.message = message
            status.updated_at = datetime.now(tz=UTC)
