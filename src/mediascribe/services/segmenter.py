from __future__ import annotations

import logging
import math
import re
from pathlib import Path

from mediascribe.errors import ProcessTimeout, SegmentationFailed, ZeroSegmentsProduced
from mediascribe.services.processes import ProcessRegistry
from mediascribe.types import ProbeResult, Segment

logger = logging.getLogger(__name__)

MIN_SEGMENT_SECONDS = 10
MAX_SEGMENT_SECONDS = 900
DEFAULT_SEGMENT_SECONDS = 600
SEGMENT_SAMPLE_RATE = 16000
SEGMENT_CHANNELS = 1

_CHUNK_NUMBER = re.compile(r"_chunk_(\d+)\.mp3$")


def safe_job_prefix(job_id: str) -> str:
    clean = re.sub(r"[^A-Za-z0-9_-]+", "_", job_id.strip())
    return clean or "job"


def compute_segment_duration(probe: ProbeResult | None, target_bytes: int) -> int:
    """Pick a segment length so each segment lands near ``target_bytes``.

    Falls back to ``DEFAULT_SEGMENT_SECONDS`` when the input could not be
    probed or its average bitrate is not positive. The result is always
    within ``[MIN_SEGMENT_SECONDS, MAX_SEGMENT_SECONDS]``.
    """
    if probe is None or target_bytes <= 0 or probe.bytes_per_second <= 0:
        return DEFAULT_SEGMENT_SECONDS
    if not math.isfinite(probe.duration_seconds):
        return DEFAULT_SEGMENT_SECONDS

    expected_segments = max(1, math.ceil(probe.size_bytes / target_bytes))
    seconds = math.ceil(probe.duration_seconds / expected_segments)
    return max(MIN_SEGMENT_SECONDS, min(seconds, MAX_SEGMENT_SECONDS))


def _chunk_number(path: Path) -> int:
    match = _CHUNK_NUMBER.search(path.name)
    return int(match.group(1)) if match else -1


class MediaSegmenter:
    def __init__(
        self,
        processes: ProcessRegistry,
        work_dir: Path,
        ffmpeg_path: str = "ffmpeg",
        timeout_seconds: float = 1800.0,
    ) -> None:
        self.processes = processes
        self.work_dir = work_dir
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.ffmpeg_path = ffmpeg_path
        self.timeout_seconds = timeout_seconds

    def segment_pattern(self, job_id: str) -> str:
        return f"{safe_job_prefix(job_id)}_chunk_*.mp3"

    def build_command(self, source: Path, output_pattern: Path, segment_seconds: int) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i",
            str(source),
            "-f",
            "segment",
            "-segment_time",
            str(segment_seconds),
            "-vn",
            "-acodec",
            "libmp3lame",
            "-ar",
            str(SEGMENT_SAMPLE_RATE),
            "-ac",
            str(SEGMENT_CHANNELS),
            "-reset_timestamps",
            "1",
            str(output_pattern),
        ]

    async def split(
        self,
        job_id: str,
        source: Path,
        target_bytes: int,
        probe: ProbeResult | None,
        segment_seconds: int | None = None,
    ) -> list[Segment]:
        if segment_seconds is None:
            segment_seconds = compute_segment_duration(probe, target_bytes)
        output_pattern = self.work_dir / f"{safe_job_prefix(job_id)}_chunk_%03d.mp3"
        cmd = self.build_command(source, output_pattern, segment_seconds)
        logger.info("Job %s: splitting %s into ~%ss segments", job_id, source.name, segment_seconds)

        try:
            completed = await self.processes.run(job_id, cmd, timeout=self.timeout_seconds)
        except (OSError, ProcessTimeout) as exc:
            raise SegmentationFailed(f"Error executing ffmpeg: {exc}") from exc

        if completed.returncode != 0:
            logger.warning("Job %s: ffmpeg stderr output:\n%s", job_id, completed.stderr)
            detail = completed.stderr.strip()[-400:] or "no diagnostic output"
            raise SegmentationFailed(f"Error splitting file (ffmpeg code {completed.returncode}): {detail}")

        segments = self.collect(job_id)
        if not segments:
            raise ZeroSegmentsProduced("No audio chunks created.")
        logger.info("Job %s: found %d segments", job_id, len(segments))
        return segments

    def collect(self, job_id: str) -> list[Segment]:
        paths = sorted(self.work_dir.glob(self.segment_pattern(job_id)), key=_chunk_number)
        return [Segment(index=index, job_id=job_id, path=path) for index, path in enumerate(paths)]

    def remove_segments(self, job_id: str) -> int:
        removed = 0
        for path in self.work_dir.glob(self.segment_pattern(job_id)):
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        if removed:
            logger.info("Job %s: removed %d segment files", job_id, removed)
        return removed
