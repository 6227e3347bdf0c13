from __future__ import annotations

from typing import Any, Optional, cast

from fastapi import APIRouter, HTTPException, Query, Request, Response

from ..services.analysis import SongAnalyzer
from ..services.exceptions import (
    DNANotFoundError,
    ImportFormatError,
    InvalidRecordError,
    MalformedLyricsError,
    RepositoryError,
)
from ..services.repository import DNARepository
from ..services.validator import can_generate, validate
from .jobs import JobManager
from .models import (
    AnalysisRequest,
    AnalysisResult,
    CanGenerateResponse,
    DNAUpdateRequest,
    GeneratedSong,
    GenerationJobRequest,
    GenerationStatus,
    JobState,
    SongDNA,
    StoredSongDNA,
    ValidationReport,
)
from .settings import Settings

router = APIRouter()

_JSON = "application/json"


def get_job_manager(request: Request) -> JobManager:
    return cast(JobManager, request.app.state.job_manager)


def get_repository(request: Request) -> DNARepository:
    return cast(DNARepository, request.app.state.repository)


def get_analyzer(request: Request) -> SongAnalyzer:
    return cast(SongAnalyzer, request.app.state.analyzer)


@router.get("/health")
async def health(request: Request) -> dict[str, object]:
    settings = cast(Settings, request.app.state.settings)
    status_map = getattr(request.app.state, "backend_status", {})
    backend_status: dict[str, object] = {}
    if isinstance(status_map, dict):
        for name, status in status_map.items():
            if hasattr(status, "as_dict"):
                backend_status[name] = status.as_dict()  # type: ignore[attr-defined]
            else:
                backend_status[name] = status
    warmup_complete = bool(backend_status) and all(
        isinstance(value, dict) and value.get("ready") for value in backend_status.values()
    )
    records = await get_repository(request).get_all()
    return {
        "status": "ok",
        "analysis_version": settings.analysis_version,
        "repository_backend": settings.repository_backend,
        "generator_backend": settings.generator_backend,
        "available_backends": sorted(backend_status.keys()),
        "backend_status": backend_status,
        "warmup_complete": warmup_complete,
        "dna_count": len(records),
    }


@router.post("/analyze", response_model=AnalysisResult)
async def analyze(payload: AnalysisRequest, request: Request) -> AnalysisResult:
    analyzer = get_analyzer(request)
    try:
        result = analyzer.analyze(payload)
    except MalformedLyricsError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    if payload.save:
        repository = get_repository(request)
        saved_id = await repository.save(
            result.song_dna,
            {"tags": list(payload.tags)} if payload.tags else None,
        )
        result.saved_id = saved_id
    return result


@router.get("/dna", response_model=list[StoredSongDNA])
async def list_dna(request: Request) -> list[StoredSongDNA]:
    return await get_repository(request).get_all()


@router.get("/dna/search", response_model=list[StoredSongDNA])
async def search_dna(
    request: Request,
    artist: Optional[str] = Query(default=None, max_length=256),
    tag: Optional[str] = Query(default=None, max_length=64),
) -> list[StoredSongDNA]:
    repository = get_repository(request)
    if artist is None and tag is None:
        raise HTTPException(status_code=400, detail="provide artist or tag")
    if artist is not None:
        records = await repository.search_by_artist(artist)
        if tag is not None:
            wanted = tag.strip().lower()
            records = [
                record
                for record in records
                if wanted in {value.lower() for value in record.metadata.tags}
            ]
        return records
    return await repository.search_by_tag(cast(str, tag))


@router.get("/dna/export")
async def export_all(request: Request) -> Response:
    content = await get_repository(request).export_all()
    return Response(content=content, media_type=_JSON)


@router.post("/dna/import")
async def import_dna(payload: dict[str, Any], request: Request) -> dict[str, str]:
    try:
        dna_id = await get_repository(request).import_dna(payload)
    except ImportFormatError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"id": dna_id}


@router.post("/dna/validate", response_model=ValidationReport)
async def validate_dna(payload: Optional[dict[str, Any]] = None) -> ValidationReport:
    result = validate(payload)
    return ValidationReport(valid=result.valid, errors=result.errors, warnings=result.warnings)


@router.get("/dna/{dna_id}", response_model=StoredSongDNA)
async def fetch_dna(dna_id: str, request: Request) -> StoredSongDNA:
    record = await get_repository(request).get_record(dna_id)
    if record is None:
        raise HTTPException(status_code=404, detail="song DNA not found")
    return record


@router.patch("/dna/{dna_id}", response_model=SongDNA)
async def update_dna(dna_id: str, payload: DNAUpdateRequest, request: Request) -> SongDNA:
    try:
        return await get_repository(request).update(dna_id, payload.changes)
    except DNANotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"song DNA {exc.dna_id} not found") from exc
    except InvalidRecordError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.delete("/dna/{dna_id}", status_code=204)
async def delete_dna(dna_id: str, request: Request) -> Response:
    await get_repository(request).delete(dna_id)
    return Response(status_code=204)


@router.get("/dna/{dna_id}/export")
async def export_dna(dna_id: str, request: Request) -> Response:
    try:
        content = await get_repository(request).export_dna(dna_id)
    except DNANotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"song DNA {exc.dna_id} not found") from exc
    return Response(content=content, media_type=_JSON)


@router.get("/dna/{dna_id}/can-generate", response_model=CanGenerateResponse)
async def can_generate_from(dna_id: str, request: Request) -> CanGenerateResponse:
    dna = await get_repository(request).get(dna_id)
    check = can_generate(dna)
    return CanGenerateResponse(can_generate=check.can_generate, reason=check.reason)


@router.post("/generate", response_model=GenerationStatus)
async def generate(payload: GenerationJobRequest, request: Request) -> GenerationStatus:
    manager = get_job_manager(request)
    try:
        status = await manager.enqueue(payload)
    except DNANotFoundError as exc:
        raise HTTPException(
            status_code=404, detail=f"song DNA {exc.dna_id} not found"
        ) from exc
    except RepositoryError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return status


@router.get("/status/{job_id}", response_model=GenerationStatus)
async def status(job_id: str, request: Request) -> GenerationStatus:
    manager = get_job_manager(request)
    status = await manager.get_status(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="job not found")
    return status


@router.post("/status/{job_id}/cancel", response_model=GenerationStatus)
async def cancel(job_id: str, request: Request) -> GenerationStatus:
    manager = get_job_manager(request)
    status = await manager.cancel(job_id)
    if status is None:
        raise HTTPException(status_code=404, detail="job not found")
    return status


@router.get("/song/{job_id}", response_model=GeneratedSong)
async def song(job_id: str, request: Request) -> GeneratedSong:
    manager = get_job_manager(request)
    status = await manager.get_status(job_id)
    if status is None or status.state != JobState.SUCCEEDED:
        raise HTTPException(status_code=404, detail="song not available")
    generated = await manager.get_song(job_id)
    if generated is None:
        raise HTTPException(status_code=404, detail="song not available")
    return generated
