import asyncio
from pathlib import Path

import pytest

from fakes import (
    FakeArchive,
    FakeProcesses,
    FakeProvider,
    FakeSummarizer,
    build_orchestrator,
    of_type,
    run_to_end,
)
from mediascribe.errors import ProviderUnitFailed
from mediascribe.jobs import JobRegistry
from mediascribe.services.processes import ProcessRegistry
from mediascribe.types import JobOptions, ProbeResult

MB = 1024 * 1024
JOB_ID = "0f3c2a9d1b7e4c55a6d8e9f01234abcd"


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def source(work_dir: Path) -> Path:
    path = work_dir / f"{JOB_ID}_source.mp3"
    path.write_bytes(b"fake-audio")
    return path


def leftovers(work_dir: Path, job_id: str) -> list[Path]:
    return list(work_dir.glob(f"{job_id}*"))


@pytest.mark.asyncio
async def test_short_file_goes_direct(work_dir: Path, source: Path) -> None:
    provider = FakeProvider()
    processes = FakeProcesses()
    orchestrator = build_orchestrator(
        work_dir, provider=provider, probe=ProbeResult(20.0, 1 * MB), processes=processes
    )

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert [unit.index for unit in provider.calls] == [None]
    assert processes.commands == []
    partials = of_type(events, "partial_transcript")
    assert [event.payload["transcript"] for event in partials] == ["direct text "]
    assert events[-1].type == "done"
    assert events[-1].payload["message"] == "Transcription process finished."
    assert of_type(events, "error") == []
    assert not source.exists()


@pytest.mark.asyncio
async def test_long_file_is_segmented_in_order(work_dir: Path, source: Path) -> None:
    provider = FakeProvider()
    processes = FakeProcesses(segment_count=4)
    archive = FakeArchive()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(1200.0, 40 * MB),
        processes=processes,
        archive=archive,
    )

    job_id = orchestrator.submit(source, "lecture.mp3", JobOptions(segment_size_mb=10), owner="user-1", job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    cmd = processes.commands[0]
    assert cmd[cmd.index("-segment_time") + 1] == "300"
    assert [unit.index for unit in provider.calls] == [0, 1, 2, 3]
    partials = of_type(events, "partial_transcript")
    assert [event.payload["index"] for event in partials] == [0, 1, 2, 3]
    assert events[-1].type == "done"
    assert sum(1 for event in events if event.is_terminal) == 1

    assert len(archive.saved) == 1
    saved = archive.saved[0]
    assert saved.transcript == "text-0 text-1 text-2 text-3"
    assert saved.owner == "user-1"
    assert leftovers(work_dir, job_id) == []
    assert not source.exists()


@pytest.mark.asyncio
async def test_ordering_survives_variable_latency(work_dir: Path, source: Path) -> None:
    provider = FakeProvider(delays={0: 0.05, 1: 0.0, 2: 0.02})
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(900.0, 30 * MB),
        processes=FakeProcesses(segment_count=3),
    )

    job_id = orchestrator.submit(source, "talk.mp3", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    partials = of_type(events, "partial_transcript")
    assert [event.payload["transcript"] for event in partials] == ["text-0 ", "text-1 ", "text-2 "]


@pytest.mark.asyncio
async def test_failed_segment_is_skipped_with_warning(work_dir: Path, source: Path) -> None:
    provider = FakeProvider(fail_on=[1])
    archive = FakeArchive()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(900.0, 30 * MB),
        processes=FakeProcesses(segment_count=3),
        archive=archive,
    )

    job_id = orchestrator.submit(source, "talk.mp3", JobOptions(), owner="user-1", job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    warnings = [event.payload["message"] for event in of_type(events, "warning")]
    assert len(warnings) == 1
    assert "chunk 2/3" in warnings[0]
    assert "_chunk_001.mp3" in warnings[0]
    assert [event.payload["index"] for event in of_type(events, "partial_transcript")] == [0, 2]
    assert events[-1].type == "done"
    assert archive.saved[0].transcript == "text-0 text-2"
    assert leftovers(work_dir, job_id) == []


@pytest.mark.asyncio
async def test_cancel_mid_segment_stops_further_work(work_dir: Path, source: Path) -> None:
    orchestrator = None

    def cancel_on_second(unit) -> None:
        if unit.index == 1:
            assert orchestrator is not None
            assert orchestrator.cancel(job_id) is True

    provider = FakeProvider(on_call=cancel_on_second)
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(1500.0, 50 * MB),
        processes=FakeProcesses(segment_count=5),
    )

    job_id = orchestrator.submit(source, "long.mp3", JobOptions(), job_id=JOB_ID)
    handle = orchestrator.jobs.get(job_id)
    assert handle is not None
    events = await run_to_end(orchestrator, job_id)

    assert [unit.index for unit in provider.calls] == [0, 1]
    assert [event.payload["index"] for event in of_type(events, "partial_transcript")] == [0]
    assert of_type(events, "error") == []
    assert events[-1].type == "done"
    assert events[-1].payload == {"message": "Cancelled", "cancelled": True}
    assert handle.job.state == "cancelled"
    assert leftovers(work_dir, job_id) == []
    assert not source.exists()


@pytest.mark.asyncio
async def test_cancel_is_idempotent(work_dir: Path, source: Path) -> None:
    orchestrator = build_orchestrator(work_dir, provider=FakeProvider(), probe=ProbeResult(10.0, MB))

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    assert orchestrator.cancel(job_id) is True
    assert orchestrator.cancel(job_id) is False
    events = await run_to_end(orchestrator, job_id)

    assert orchestrator.cancel(job_id) is False
    assert orchestrator.cancel("no-such-job") is False
    assert job_id not in orchestrator.jobs
    assert events == []


@pytest.mark.asyncio
async def test_empty_transcript_skips_summary(work_dir: Path, source: Path) -> None:
    provider = FakeProvider(texts={0: "", 1: "", 2: ""})
    summarizer = FakeSummarizer()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(900.0, 30 * MB),
        processes=FakeProcesses(segment_count=3),
        summarizer=summarizer,
    )

    job_id = orchestrator.submit(source, "silence.mp3", JobOptions(summarize=True), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert summarizer.calls == []
    messages = [event.payload["message"] for event in of_type(events, "warning")]
    assert "Summarization skipped: No transcript generated." in messages
    assert of_type(events, "summary_result") == []
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_summary_follows_transcript(work_dir: Path, source: Path) -> None:
    summarizer = FakeSummarizer(response="Short summary")
    orchestrator = build_orchestrator(
        work_dir,
        provider=FakeProvider(),
        probe=ProbeResult(900.0, 30 * MB),
        processes=FakeProcesses(segment_count=2),
        summarizer=summarizer,
    )

    job_id = orchestrator.submit(source, "talk.mp3", JobOptions(summarize=True), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert summarizer.calls == ["text-0 text-1"]
    types = [event.type for event in events]
    assert types.index("summary_result") > max(i for i, t in enumerate(types) if t == "partial_transcript")
    assert of_type(events, "summary_result")[0].payload["summary"] == "Short summary"
    assert types[-1] == "done"


@pytest.mark.asyncio
async def test_summary_failure_is_a_warning(work_dir: Path, source: Path) -> None:
    summarizer = FakeSummarizer(error=ProviderUnitFailed("quota exceeded"))
    orchestrator = build_orchestrator(
        work_dir, provider=FakeProvider(), probe=ProbeResult(10.0, MB), summarizer=summarizer
    )

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(summarize=True), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    messages = [event.payload["message"] for event in of_type(events, "warning")]
    assert messages == ["Failed to generate summary: quota exceeded"]
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_missing_summarizer_is_a_warning(work_dir: Path, source: Path) -> None:
    orchestrator = build_orchestrator(
        work_dir,
        provider=FakeProvider(),
        probe=ProbeResult(10.0, MB),
        summarizer=FakeSummarizer(configured=False),
    )

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(summarize=True), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    messages = [event.payload["message"] for event in of_type(events, "warning")]
    assert messages == ["Summarization skipped: Gemini API key not configured."]
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_inline_provider_summarizes_without_segmenting(work_dir: Path, source: Path) -> None:
    provider = FakeProvider(accepts_segments=False, summarizes_inline=True, summary="Inline summary")
    processes = FakeProcesses()
    summarizer = FakeSummarizer()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(3600.0, 12 * MB),
        processes=processes,
        summarizer=summarizer,
    )

    job_id = orchestrator.submit(source, "meeting.m4a", JobOptions(model="gemini-2.5-flash", summarize=True), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert processes.commands == []
    assert [unit.index for unit in provider.calls] == [None]
    assert summarizer.calls == []
    assert of_type(events, "summary_result")[0].payload["summary"] == "Inline summary"
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_probe_failure_assumes_large_file(work_dir: Path, source: Path) -> None:
    processes = FakeProcesses(segment_count=2)
    orchestrator = build_orchestrator(work_dir, provider=FakeProvider(), probe=None, processes=processes)

    job_id = orchestrator.submit(source, "odd.bin", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    messages = [event.payload["message"] for event in of_type(events, "warning")]
    assert messages == ["Could not determine duration, assuming large file."]
    cmd = processes.commands[0]
    assert cmd[cmd.index("-segment_time") + 1] == "600"
    assert len(of_type(events, "partial_transcript")) == 2
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_zero_segments_falls_back_to_direct(work_dir: Path, source: Path) -> None:
    provider = FakeProvider()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(900.0, 30 * MB),
        processes=FakeProcesses(segment_count=0),
    )

    job_id = orchestrator.submit(source, "odd.mp3", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert [unit.index for unit in provider.calls] == [None]
    assert len(of_type(events, "warning")) == 1
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_segmentation_failure_ends_with_single_error(work_dir: Path, source: Path) -> None:
    provider = FakeProvider()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(900.0, 30 * MB),
        processes=FakeProcesses(returncode=1, stderr="Invalid data found when processing input"),
    )

    job_id = orchestrator.submit(source, "broken.mp3", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert provider.calls == []
    errors = of_type(events, "error")
    assert len(errors) == 1
    assert errors[0].payload["message"].startswith("Processing failed: Error splitting file")
    assert "Invalid data" in errors[0].payload["message"]
    assert events[-1].type == "error"
    assert of_type(events, "done") == []
    assert not source.exists()


@pytest.mark.asyncio
async def test_direct_failure_ends_with_single_error(work_dir: Path, source: Path) -> None:
    archive = FakeArchive()
    orchestrator = build_orchestrator(
        work_dir,
        provider=FakeProvider(fail_on=[None]),
        probe=ProbeResult(12.0, MB),
        archive=archive,
    )

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), owner="user-1", job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert [event.type for event in events if event.is_terminal] == ["error"]
    assert events[-1].payload["message"] == "Processing failed: backend rejected unit memo.mp3"
    assert archive.saved == []


@pytest.mark.asyncio
async def test_unconfigured_provider_is_an_error(work_dir: Path, source: Path) -> None:
    orchestrator = build_orchestrator(work_dir, provider=FakeProvider(configured=False), probe=ProbeResult(10.0, MB))

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert events[-1].type == "error"
    assert "API key not configured" in events[-1].payload["message"]
    assert not source.exists()


@pytest.mark.asyncio
async def test_jobs_without_owner_are_not_archived(work_dir: Path, source: Path) -> None:
    archive = FakeArchive()
    orchestrator = build_orchestrator(
        work_dir, provider=FakeProvider(), probe=ProbeResult(10.0, MB), archive=archive
    )

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    await run_to_end(orchestrator, job_id)

    assert archive.saved == []


@pytest.mark.asyncio
async def test_subscriber_disconnect_aborts_when_enabled(work_dir: Path, source: Path) -> None:
    provider = FakeProvider()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(10.0, MB),
        abort_on_disconnect=True,
    )

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    handle = orchestrator.jobs.get(job_id)
    assert handle is not None and handle.task is not None
    events = orchestrator.subscribe(job_id)
    first = await events.__anext__()
    await events.aclose()
    await handle.task

    assert first.type == "status"
    assert provider.calls == []
    assert handle.job.state == "cancelled"
    assert not source.exists()


@pytest.mark.asyncio
async def test_summary_only_job(work_dir: Path) -> None:
    summarizer = FakeSummarizer(response="The gist")
    archive = FakeArchive()
    orchestrator = build_orchestrator(
        work_dir, provider=FakeProvider(), probe=None, summarizer=summarizer, archive=archive
    )

    job_id = orchestrator.submit_summary("a long transcript", owner="user-1")
    events = await run_to_end(orchestrator, job_id)

    assert summarizer.calls == ["a long transcript"]
    assert [event.type for event in events] == ["status", "summary_result", "status", "done"]
    assert events[1].payload == {"summary": "The gist", "text": "The gist"}
    assert archive.saved[0].summary == "The gist"


@pytest.mark.asyncio
async def test_summary_only_job_without_summarizer(work_dir: Path) -> None:
    orchestrator = build_orchestrator(work_dir, provider=FakeProvider(), probe=None)

    job_id = orchestrator.submit_summary("a long transcript")
    events = await run_to_end(orchestrator, job_id)

    assert [event.type for event in events] == ["status", "error"]
    assert events[-1].payload["message"] == "Summarization failed: Gemini API key not configured."


@pytest.mark.asyncio
async def test_shutdown_cancels_running_jobs(work_dir: Path, source: Path) -> None:
    provider = FakeProvider(delays={None: 5.0})
    orchestrator = build_orchestrator(work_dir, provider=provider, probe=ProbeResult(10.0, MB))

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    handle = orchestrator.jobs.get(job_id)
    assert handle is not None
    await asyncio.sleep(0.05)
    assert len(provider.calls) == 1
    await orchestrator.shutdown(timeout_seconds=0.5)

    assert handle.job.state == "cancelled"
    assert handle.task is not None and handle.task.done()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("duration", "expected_units", "expected_commands"),
    [(30.0, [None], 0), (30.001, [0, 1], 1)],
)
async def test_direct_threshold_is_inclusive(
    work_dir: Path, source: Path, duration: float, expected_units: list[int | None], expected_commands: int
) -> None:
    provider = FakeProvider()
    processes = FakeProcesses(segment_count=2)
    orchestrator = build_orchestrator(
        work_dir, provider=provider, probe=ProbeResult(duration, 30 * MB), processes=processes
    )

    job_id = orchestrator.submit(source, "edge.mp3", JobOptions(), job_id=JOB_ID)
    events = await run_to_end(orchestrator, job_id)

    assert [unit.index for unit in provider.calls] == expected_units
    assert len(processes.commands) == expected_commands
    assert events[-1].type == "done"


@pytest.mark.asyncio
async def test_cancel_while_splitting_stops_ffmpeg(tmp_path: Path, work_dir: Path, source: Path) -> None:
    slow_ffmpeg = tmp_path / "ffmpeg"
    slow_ffmpeg.write_text("#!/bin/sh\nexec sleep 30\n")
    slow_ffmpeg.chmod(0o755)
    processes = ProcessRegistry()
    provider = FakeProvider()
    orchestrator = build_orchestrator(
        work_dir,
        provider=provider,
        probe=ProbeResult(900.0, 30 * MB),
        processes=processes,
        ffmpeg_path=str(slow_ffmpeg),
    )

    job_id = orchestrator.submit(source, "long.mp3", JobOptions(), job_id=JOB_ID)
    handle = orchestrator.jobs.get(job_id)
    assert handle is not None and handle.task is not None
    for _ in range(500):
        if handle.job.state == "segmenting":
            break
        await asyncio.sleep(0.01)
    assert handle.job.state == "segmenting"
    await asyncio.sleep(0)

    assert orchestrator.cancel(job_id) is True
    await asyncio.wait_for(handle.task, timeout=5)

    assert provider.calls == []
    assert handle.job.state == "cancelled"
    assert processes.active(job_id) == 0
    assert not processes.is_cancelled(job_id)
    assert leftovers(work_dir, job_id) == []


@pytest.mark.asyncio
async def test_job_without_source_fails_cleanly(work_dir: Path, source: Path) -> None:
    provider = FakeProvider()
    orchestrator = build_orchestrator(work_dir, provider=provider, probe=ProbeResult(10.0, MB))

    job_id = orchestrator.submit(source, "memo.mp3", JobOptions(), job_id=JOB_ID)
    handle = orchestrator.jobs.get(job_id)
    assert handle is not None
    handle.job.source_path = None
    events = await run_to_end(orchestrator, job_id)

    assert provider.calls == []
    assert [event.type for event in events if event.is_terminal] == ["error"]
    assert events[-1].payload["message"] == f"Processing failed: Job {job_id} has no source file"


def test_registry_keeps_caller_chosen_ids(source: Path) -> None:
    jobs = JobRegistry()

    handle = jobs.create(JobOptions(), source_path=source, job_id=JOB_ID)

    assert handle.job.id == JOB_ID
    assert handle.job.temp_files == {source}
    with pytest.raises(ValueError):
        jobs.create(JobOptions(), job_id=JOB_ID)
    assert jobs.create(JobOptions()).job.id != JOB_ID
