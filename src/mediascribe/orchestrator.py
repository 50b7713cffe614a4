from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

from mediascribe.errors import (
    JobCancelled,
    ProbeFailed,
    ProviderNotConfigured,
    ProviderUnitFailed,
    TranscriptionError,
    ZeroSegmentsProduced,
)
from mediascribe.jobs import JobHandle, JobRegistry
from mediascribe.services.prober import MediaProber
from mediascribe.services.processes import ProcessRegistry
from mediascribe.services.providers import ProviderTable, Summarizer, TranscriptionProvider
from mediascribe.services.segmenter import MediaSegmenter, compute_segment_duration
from mediascribe.types import (
    AudioUnit,
    EventType,
    Job,
    JobOptions,
    JobState,
    ProbeResult,
    ProgressEvent,
    UnitTranscript,
)

logger = logging.getLogger(__name__)

QUIET_EVENTS = ("partial_transcript", "summary_result")


class TranscriptArchive(Protocol):
    def save(self, job: Job) -> None: ...


class JobOrchestrator:
    """Drives each transcription job from upload to a terminal event.

    Every job runs as one asyncio task. Segments are transcribed one at a
    time in index order so the accumulated transcript never needs
    reordering; a bounded worker pool with a reassembly buffer keyed by
    segment index could replace the loop in ``_transcribe_segmented``
    without changing what subscribers observe.
    """

    def __init__(
        self,
        *,
        jobs: JobRegistry,
        processes: ProcessRegistry,
        prober: MediaProber,
        segmenter: MediaSegmenter,
        providers: ProviderTable,
        summarizer: Summarizer | None = None,
        archive: TranscriptArchive | None = None,
        direct_threshold_seconds: float = 30.0,
        close_grace_seconds: float = 1.5,
        abort_on_disconnect: bool = False,
    ) -> None:
        self.jobs = jobs
        self.processes = processes
        self.prober = prober
        self.segmenter = segmenter
        self.providers = providers
        self.summarizer = summarizer
        self.archive = archive
        self.direct_threshold_seconds = direct_threshold_seconds
        self.close_grace_seconds = close_grace_seconds
        self.abort_on_disconnect = abort_on_disconnect

    # -- inbound operations -------------------------------------------------

    def submit(
        self,
        source_path: Path,
        original_name: str,
        options: JobOptions,
        *,
        owner: str | None = None,
        job_id: str | None = None,
    ) -> str:
        handle = self.jobs.create(
            options, source_path=source_path, original_name=original_name, owner=owner, job_id=job_id
        )
        job = handle.job
        logger.info(
            "Job %s: received %s (diarize=%s, summarize=%s, model=%s, segment_mb=%s)",
            job.id,
            original_name,
            options.diarize,
            options.summarize,
            options.model,
            options.segment_size_mb,
        )
        handle.task = asyncio.create_task(
            self._run(handle, self._process_transcription, failure_prefix="Processing failed"),
            name=f"transcribe-{job.id}",
        )
        return job.id

    def new_job_id(self) -> str:
        return self.jobs.new_id()

    def submit_summary(self, text: str, *, owner: str | None = None) -> str:
        handle = self.jobs.create(JobOptions(summarize=True), owner=owner)
        handle.job.append(UnitTranscript(text=text, formatted=text))
        logger.info("Job %s: received summarization request (%d chars)", handle.job.id, len(text))
        handle.task = asyncio.create_task(
            self._run(handle, self._process_summary, failure_prefix="Summarization failed"),
            name=f"summarize-{handle.job.id}",
        )
        return handle.job.id

    def subscribe(self, job_id: str) -> AsyncGenerator[ProgressEvent, None]:
        handle = self.jobs.get(job_id)
        if handle is None:
            raise KeyError(job_id)
        return handle.channel.subscribe()

    def cancel(self, job_id: str, reason: str = "cancelled by request") -> bool:
        handle = self.jobs.get(job_id)
        if handle is None or handle.job.is_terminal:
            logger.info("Job %s: cancellation ignored, job is not active", job_id)
            return False

        job = handle.job
        handle.token.cancel(reason)
        job.state = "cancelled"
        killed = self.processes.cancel(job_id)
        removed = self.segmenter.remove_segments(job_id)
        logger.info("Job %s: cancelled (%s); killed %d processes, removed %d segments", job_id, reason, killed, removed)

        self._emit(handle, "status", message="Transcription cancelled.")
        self._emit(handle, "done", message="Cancelled", cancelled=True)
        return True

    async def join(self, job_id: str) -> None:
        handle = self.jobs.get(job_id)
        if handle is not None and handle.task is not None:
            await handle.task

    async def shutdown(self, timeout_seconds: float = 10.0) -> None:
        for handle in self.jobs.active():
            self.cancel(handle.job.id, reason="server shutting down")
        tasks = [handle.task for handle in self.jobs.handles() if handle.task is not None and not handle.task.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # -- job task -----------------------------------------------------------

    async def _run(
        self,
        handle: JobHandle,
        body: Callable[[JobHandle], Awaitable[None]],
        *,
        failure_prefix: str,
    ) -> None:
        job = handle.job
        try:
            await body(handle)
        except JobCancelled as exc:
            logger.info("Job %s: stopped (%s)", job.id, exc)
        except Exception as exc:  # pylint: disable=broad-except
            if handle.token.cancelled:
                logger.info("Job %s: stopped after cancellation: %s", job.id, exc)
            else:
                message = str(exc).strip() or "Unknown error"
                logger.exception("Job %s failed: %s", job.id, message)
                job.error = message
                job.state = "error"
                self._emit(handle, "error", message=f"{failure_prefix}: {message}")
        finally:
            await self._finalize(handle)

    async def _process_transcription(self, handle: JobHandle) -> None:
        job = handle.job
        options = job.options
        self._emit(
            handle,
            "status",
            message=(
                f"Processing: {job.original_name} (Diarize: {options.diarize}, "
                f"Summarize: {options.summarize}, Model: {options.model})"
            ),
        )

        provider = self.providers.resolve(options.model)
        if not provider.configured:
            raise ProviderNotConfigured(f"{provider.name} API key not configured; cannot use model '{options.model}'.")

        self._transition(handle, "duration_check")
        probe = await self._check_duration(handle)
        self._checkpoint(handle)

        if not provider.accepts_segments:
            await self._transcribe_direct(handle, provider)
        elif probe is not None and probe.duration_seconds <= self.direct_threshold_seconds:
            await self._transcribe_direct(handle, provider)
        else:
            await self._transcribe_segmented(handle, provider, probe)

        await self._summarize(handle, provider)
        self._transition(handle, "done")
        await self._hand_off(handle)
        self._emit(handle, "done", message="Transcription process finished.")

    async def _process_summary(self, handle: JobHandle) -> None:
        job = handle.job
        self._emit(handle, "status", message="Generating summary...")
        if self.summarizer is None or not self.summarizer.configured:
            raise ProviderNotConfigured("Gemini API key not configured.")

        self._transition(handle, "summarizing")
        summary = await self.summarizer.summarize(job.transcript)
        self._checkpoint(handle)
        if not summary.strip():
            raise ProviderUnitFailed("Empty response from the summarization backend.")

        job.summary = summary
        self._emit(handle, "summary_result", summary=summary, text=summary)
        self._emit(handle, "status", message="Summary generated successfully.", progress=100)
        self._transition(handle, "done")
        await self._hand_off(handle)
        self._emit(handle, "done", message="Summarization process finished.")

    async def _check_duration(self, handle: JobHandle) -> ProbeResult | None:
        job = handle.job
        try:
            probe = await self.prober.probe(job.id, _source_of(job))
        except ProbeFailed as exc:
            logger.warning("Job %s: could not determine duration: %s", job.id, exc)
            self._emit(handle, "warning", message="Could not determine duration, assuming large file.")
            return None

        logger.info("Job %s: duration %.1fs, size %d bytes", job.id, probe.duration_seconds, probe.size_bytes)
        self._emit(handle, "status", message=f"File duration: {round(probe.duration_seconds)}s")
        return probe

    async def _transcribe_direct(self, handle: JobHandle, provider: TranscriptionProvider) -> None:
        job = handle.job
        source = _source_of(job)
        self._transition(handle, "direct_transcribe")
        self._emit(handle, "status", message="Transcribing file directly...", model=job.options.model)

        unit = AudioUnit(path=source, display_name=job.original_name or source.name)
        try:
            result = await provider.transcribe(unit, job.options)
        except TranscriptionError:
            raise
        except Exception as exc:
            raise ProviderUnitFailed(f"{provider.name} failed on {unit.display_name}: {exc}") from exc

        self._checkpoint(handle)
        self._accept(handle, result, index=None)
        self._emit(handle, "status", message="Processing complete.")

    async def _transcribe_segmented(
        self,
        handle: JobHandle,
        provider: TranscriptionProvider,
        probe: ProbeResult | None,
    ) -> None:
        job = handle.job
        options = job.options
        source = _source_of(job)
        self._transition(handle, "segmenting")
        self._emit(handle, "status", message="Analyzing file for chunking...")

        seconds = compute_segment_duration(probe, options.segment_size_bytes)
        self._emit(handle, "status", message=f"Splitting into ~{seconds}s chunks...")
        try:
            segments = await self.segmenter.split(
                job.id, source, options.segment_size_bytes, probe, segment_seconds=seconds
            )
        except ZeroSegmentsProduced:
            self._checkpoint(handle)
            logger.warning("Job %s: no segments produced, falling back to direct transcription", job.id)
            self._emit(handle, "warning", message="No audio chunks were produced; transcribing the file directly.")
            await self._transcribe_direct(handle, provider)
            return

        job.temp_files.update(segment.path for segment in segments)
        self._checkpoint(handle)
        total = len(segments)
        self._emit(handle, "status", message=f"Found {total} audio chunks.")
        self._transition(handle, "segment_transcribing")

        for segment in segments:
            self._checkpoint(handle)
            position = segment.index + 1
            self._emit(handle, "status", message=f"Transcribing chunk {position}/{total}...", model=options.model)
            unit = AudioUnit(path=segment.path, display_name=segment.path.name, index=segment.index)
            try:
                result = await provider.transcribe(unit, options)
            except Exception as exc:  # pylint: disable=broad-except
                self._checkpoint(handle)
                logger.warning("Job %s: chunk %d/%d failed: %s", job.id, position, total, exc)
                self._emit(
                    handle,
                    "warning",
                    message=f"Error processing chunk {position}/{total} ({segment.path.name}): {exc}. Skipping.",
                )
            else:
                self._checkpoint(handle)
                self._accept(handle, result, index=segment.index)
            finally:
                _remove_file(segment.path)
                job.temp_files.discard(segment.path)

        self._emit(handle, "status", message="All chunks processed.")

    async def _summarize(self, handle: JobHandle, provider: TranscriptionProvider) -> None:
        job = handle.job
        if not job.options.summarize or provider.summarizes_inline:
            return
        if not job.transcript:
            self._emit(handle, "warning", message="Summarization skipped: No transcript generated.")
            return
        if self.summarizer is None or not self.summarizer.configured:
            self._emit(handle, "warning", message="Summarization skipped: Gemini API key not configured.")
            return

        self._transition(handle, "summarizing")
        self._emit(handle, "status", message="Generating summary...")
        try:
            summary = await self.summarizer.summarize(job.transcript)
        except Exception as exc:  # pylint: disable=broad-except
            self._checkpoint(handle)
            logger.exception("Job %s: summarization failed", job.id)
            self._emit(handle, "warning", message=f"Failed to generate summary: {exc}")
            return

        self._checkpoint(handle)
        if not summary:
            self._emit(handle, "warning", message="Failed to generate summary: empty response.")
            return
        job.summary = summary
        self._emit(handle, "summary_result", summary=summary, text=summary)

    async def _hand_off(self, handle: JobHandle) -> None:
        job = handle.job
        if self.archive is None or not job.owner:
            return
        try:
            await asyncio.to_thread(self.archive.save, job)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Job %s: could not save transcript for %s", job.id, job.owner)
            self._emit(handle, "warning", message=f"Transcript could not be saved: {exc}")
        else:
            logger.info("Job %s: saved transcript for %s", job.id, job.owner)

    async def _finalize(self, handle: JobHandle) -> None:
        job = handle.job
        if not job.is_terminal:
            job.state = "cancelled"
        self.processes.cancel(job.id)
        self.processes.release(job.id)
        self.segmenter.remove_segments(job.id)
        for path in list(job.temp_files):
            _remove_file(path)
        job.temp_files.clear()
        logger.info("Job %s: final cleanup complete (%s)", job.id, job.state)

        if self.close_grace_seconds > 0:
            await asyncio.sleep(self.close_grace_seconds)
        handle.channel.close()
        self.jobs.discard(job.id)

    # -- helpers ------------------------------------------------------------

    def _accept(self, handle: JobHandle, result: UnitTranscript, *, index: int | None) -> None:
        job = handle.job
        for warning in result.warnings:
            self._emit(handle, "warning", message=warning)
        job.append(result)
        if result.summary:
            job.summary = result.summary
            self._emit(handle, "summary_result", summary=result.summary, text=result.summary)
        if result.formatted.strip():
            self._emit(handle, "partial_transcript", transcript=result.formatted, index=index)

    def _checkpoint(self, handle: JobHandle) -> None:
        if self.abort_on_disconnect and handle.channel.disconnected and not handle.token.cancelled:
            self.cancel(handle.job.id, reason="progress subscriber disconnected")
        handle.token.raise_if_cancelled()

    def _transition(self, handle: JobHandle, state: JobState) -> None:
        self._checkpoint(handle)
        logger.debug("Job %s: %s -> %s", handle.job.id, handle.job.state, state)
        handle.job.state = state

    def _emit(self, handle: JobHandle, event_type: EventType, **payload: Any) -> None:
        event = ProgressEvent(job_id=handle.job.id, type=event_type, payload=payload)
        if event_type not in QUIET_EVENTS:
            logger.info("Job %s: [%s] %s", handle.job.id, event_type, payload.get("message", ""))
        handle.channel.publish(event)


def _source_of(job: Job) -> Path:
    if job.source_path is None:
        raise RuntimeError(f"Job {job.id} has no source file")
    return job.source_path


def _remove_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
