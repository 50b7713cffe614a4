from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from starlette.datastructures import FormData, UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from mediascribe.config import Settings
from mediascribe.db.transcripts import TranscriptsRepository
from mediascribe.errors import ChannelBusy
from mediascribe.orchestrator import JobOrchestrator
from mediascribe.services.segmenter import safe_job_prefix
from mediascribe.types import JobOptions

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 4 * 1024 * 1024
OWNER_HEADER = "x-user-id"


class UploadTooLarge(Exception):
    pass


def _form_flag(form: FormData, *names: str) -> bool:
    return any(str(form.get(name) or "").strip().lower() == "true" for name in names)


def _as_int(value: object) -> int | None:
    try:
        return int(str(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _safe_suffix(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    return suffix if re.fullmatch(r"\.[a-z0-9]{1,8}", suffix) else ""


class ApiRoutes:
    def __init__(
        self,
        orchestrator: JobOrchestrator,
        settings: Settings,
        transcripts: TranscriptsRepository | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.settings = settings
        self.transcripts = transcripts

    def routes(self) -> list[Route]:
        return [
            Route("/transcribe", self.transcribe, methods=["POST"]),
            Route("/progress/{job_id}", self.progress, methods=["GET"]),
            Route("/cancel/{job_id}", self.cancel, methods=["POST"]),
            Route("/summarize", self.summarize, methods=["POST"]),
            Route("/transcripts", self.list_transcripts, methods=["GET"]),
        ]

    async def transcribe(self, request: Request) -> JSONResponse:
        form = await request.form()
        try:
            upload = form.get("audio")
            if not isinstance(upload, UploadFile):
                return JSONResponse({"error": "No file uploaded."}, status_code=400)

            original_name = upload.filename or "upload"
            job_id = self.orchestrator.new_job_id()
            try:
                source_path = await self._save_upload(upload, job_id)
            except UploadTooLarge:
                return JSONResponse(
                    {"error": f"File exceeds the {self.settings.max_upload_mb}MB upload limit."},
                    status_code=413,
                )

            options = JobOptions.normalized(
                model=str(form.get("model") or ""),
                diarize=_form_flag(form, "diarize", "enableDiarization"),
                summarize=_form_flag(form, "summarize", "enableSummarization"),
                segment_size_mb=_as_int(form.get("chunkSizeMB")),
                default_model=self.settings.default_model,
                default_segment_size_mb=self.settings.default_segment_size_mb,
            )
        finally:
            await form.close()

        self.orchestrator.submit(
            source_path,
            original_name,
            options,
            owner=request.headers.get(OWNER_HEADER) or None,
            job_id=job_id,
        )
        return JSONResponse({"clientId": job_id})

    async def progress(self, request: Request) -> StreamingResponse | JSONResponse:
        job_id = request.path_params["job_id"]
        try:
            events = self.orchestrator.subscribe(job_id)
        except KeyError:
            return JSONResponse({"error": "job_not_found", "job_id": job_id}, status_code=404)
        except ChannelBusy:
            return JSONResponse({"error": "already_subscribed", "job_id": job_id}, status_code=409)

        logger.info("Job %s: progress subscriber connected", job_id)

        async def event_stream() -> AsyncIterator[str]:
            yield f"event: connected\ndata: {json.dumps({'message': 'Connected'})}\n\n"
            try:
                async for event in events:
                    yield event.to_sse()
            finally:
                await events.aclose()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def cancel(self, request: Request) -> JSONResponse:
        job_id = request.path_params["job_id"]
        logger.info("Job %s: cancellation requested", job_id)
        self.orchestrator.cancel(job_id)
        return JSONResponse({"success": True, "message": "Cancellation request received"})

    async def summarize(self, request: Request) -> JSONResponse:
        text = await self._read_transcription(request)
        if not text.strip():
            return JSONResponse({"error": "No transcription provided for summarization."}, status_code=400)
        job_id = self.orchestrator.submit_summary(text, owner=request.headers.get(OWNER_HEADER) or None)
        return JSONResponse({"clientId": job_id})

    async def list_transcripts(self, request: Request) -> JSONResponse:
        owner = request.headers.get(OWNER_HEADER)
        if not owner:
            return JSONResponse({"error": "missing_owner"}, status_code=401)
        if self.transcripts is None:
            return JSONResponse({"items": []})
        limit = _as_int(request.query_params.get("limit")) or 20
        items = await asyncio.to_thread(self.transcripts.list_for_owner, owner, limit)
        return JSONResponse({"items": items})

    async def _read_transcription(self, request: Request) -> str:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            try:
                payload: Any = await request.json()
            except ValueError:
                return ""
            value = payload.get("existingTranscription") if isinstance(payload, dict) else None
            return str(value or "")

        form = await request.form()
        try:
            value = form.get("existingTranscription")
            return value if isinstance(value, str) else ""
        finally:
            await form.close()

    async def _save_upload(self, upload: UploadFile, job_id: str) -> Path:
        self.settings.upload_dir.mkdir(parents=True, exist_ok=True)
        suffix = _safe_suffix(upload.filename or "")
        dest = self.settings.upload_dir / f"{safe_job_prefix(job_id)}_source{suffix}"
        size = 0
        try:
            with dest.open("wb") as out_file:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.settings.max_upload_bytes:
                        raise UploadTooLarge()
                    out_file.write(chunk)
        except BaseException:
            dest.unlink(missing_ok=True)
            raise
        logger.info("Saved upload %s to %s (%d bytes)", upload.filename, dest, size)
        return dest
