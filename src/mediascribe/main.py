from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from mediascribe.api import ApiRoutes
from mediascribe.config import Settings, load_settings
from mediascribe.db.database import Database
from mediascribe.db.transcripts import TranscriptsRepository
from mediascribe.jobs import JobRegistry
from mediascribe.orchestrator import JobOrchestrator
from mediascribe.services.gemini import GeminiClient, GeminiSummarizer, GeminiTranscriber
from mediascribe.services.prober import MediaProber
from mediascribe.services.processes import ProcessRegistry
from mediascribe.services.providers import ProviderTable
from mediascribe.services.segmenter import MediaSegmenter
from mediascribe.services.transcriber import DeepgramTranscriber

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
logger = logging.getLogger(__name__)


class AppRuntime:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        settings.upload_dir.mkdir(parents=True, exist_ok=True)
        self.database = Database(settings.database_path)
        self.transcripts = TranscriptsRepository(self.database)

        self.processes = ProcessRegistry()
        self.jobs = JobRegistry(progress_queue_size=settings.progress_queue_size)
        self.prober = MediaProber(self.processes, settings.ffprobe_path, settings.probe_timeout_seconds)
        self.segmenter = MediaSegmenter(
            self.processes,
            settings.upload_dir,
            settings.ffmpeg_path,
            settings.segment_timeout_seconds,
        )

        gemini = GeminiClient(api_key=settings.gemini_api_key)
        self.providers = ProviderTable(
            batch=DeepgramTranscriber(
                api_key=settings.deepgram_api_key,
                timeout_seconds=settings.provider_timeout_seconds,
                timeout_per_mb_seconds=settings.provider_timeout_per_mb_seconds,
            ),
            inline=GeminiTranscriber(
                gemini,
                timeout_seconds=settings.provider_timeout_seconds,
                timeout_per_mb_seconds=settings.provider_timeout_per_mb_seconds,
            ),
        )
        self.summarizer = GeminiSummarizer(gemini, settings.summary_model, settings.provider_timeout_seconds)

        self.orchestrator = JobOrchestrator(
            jobs=self.jobs,
            processes=self.processes,
            prober=self.prober,
            segmenter=self.segmenter,
            providers=self.providers,
            summarizer=self.summarizer,
            archive=self.transcripts,
            direct_threshold_seconds=settings.direct_threshold_seconds,
            close_grace_seconds=settings.close_grace_seconds,
            abort_on_disconnect=settings.abort_on_disconnect,
        )

    async def aclose(self) -> None:
        await self.orchestrator.shutdown()
        self.database.close()


def create_app(runtime: AppRuntime) -> Starlette:
    routes = ApiRoutes(runtime.orchestrator, runtime.settings, runtime.transcripts).routes()

    async def health(_: Request) -> JSONResponse:
        return JSONResponse(
            {
                "ok": True,
                "active_jobs": len(runtime.jobs.active()),
                "upload_dir": str(runtime.settings.upload_dir),
                "deepgram_configured": bool(runtime.settings.deepgram_api_key),
                "gemini_configured": bool(runtime.settings.gemini_api_key),
            }
        )

    @asynccontextmanager
    async def lifespan(_: Starlette) -> AsyncIterator[None]:
        yield
        await runtime.aclose()

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=list(runtime.settings.cors_origins),
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
        lifespan=lifespan,
    )
    app.add_route("/healthz", health, methods=["GET"])
    return app


def cli() -> None:
    settings = load_settings()
    runtime = AppRuntime(settings)
    app = create_app(runtime)
    logger.info("Starting transcription server on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level="info")


if __name__ == "__main__":
    cli()
