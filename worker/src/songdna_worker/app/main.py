from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from loguru import logger

from ..services.analysis import SongAnalyzer
from ..services.constraints import GenerationConstraintEngine
from ..services.generators import build_generator
from ..services.repository import build_repository
from .jobs import JobManager
from .routes import router
from .settings import Settings, get_settings


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI instance."""
    settings = settings or get_settings()
    repository = build_repository(settings)
    analyzer = SongAnalyzer(settings)
    generator = build_generator(settings)
    engine = GenerationConstraintEngine(
        settings,
        generator,
        emotion_classifier=analyzer.emotion_classifier,
    )
    manager = JobManager(engine, repository)

    async def _warmup_background(app: FastAPI) -> None:
        try:
            status = await generator.warmup()
            app.state.backend_status = {status.name: status}
            logger.info("Worker warmup complete: {}", {status.name: status.ready})
        except Exception:  # noqa: BLE001
            logger.exception("Worker warmup failed")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await repository.init()
        await _warmup_background(app)
        try:
            yield
        finally:
            await repository.close()

    app = FastAPI(title="SongDNA Worker", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository
    app.state.analyzer = analyzer
    app.state.engine = engine
    app.state.job_manager = manager
    app.state.backend_status = {}
    app.include_router(router)
    return app


app = create_app()
