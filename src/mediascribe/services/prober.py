from __future__ import annotations

import json
import math
from pathlib import Path

from mediascribe.errors import ProbeFailed, ProcessTimeout
from mediascribe.services.processes import ProcessRegistry
from mediascribe.types import ProbeResult


class MediaProber:
    def __init__(self, processes: ProcessRegistry, ffprobe_path: str = "ffprobe", timeout_seconds: float = 60.0) -> None:
        self.processes = processes
        self.ffprobe_path = ffprobe_path
        self.timeout_seconds = timeout_seconds

    async def probe(self, job_id: str, path: Path) -> ProbeResult:
        cmd = [
            self.ffprobe_path,
            "-v",
            "error",
            "-show_format",
            "-show_streams",
            "-of",
            "json",
            str(path),
        ]
        try:
            completed = await self.processes.run(job_id, cmd, timeout=self.timeout_seconds)
        except (OSError, ProcessTimeout) as exc:
            raise ProbeFailed(f"ffprobe could not run: {exc}") from exc

        if completed.returncode != 0:
            stderr = completed.stderr.strip() or f"ffprobe exited with code {completed.returncode}"
            raise ProbeFailed(stderr)

        return self._parse(completed.stdout, path)

    @staticmethod
    def _parse(stdout: str, path: Path) -> ProbeResult:
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise ProbeFailed("ffprobe returned invalid JSON") from exc

        fmt = payload.get("format") if isinstance(payload, dict) else None
        if not isinstance(fmt, dict):
            raise ProbeFailed("ffprobe output has no format section")

        duration = _as_float(fmt.get("duration"))
        if duration is None or not math.isfinite(duration) or duration <= 0:
            raise ProbeFailed("ffprobe did not report a duration")

        size = _as_int(fmt.get("size"))
        if size is None:
            try:
                size = path.stat().st_size
            except OSError as exc:
                raise ProbeFailed(f"Could not stat {path.name}: {exc}") from exc

        return ProbeResult(duration_seconds=duration, size_bytes=size)


def _as_float(value: object) -> float | None:
    try:
        return float(str(value)) if value is not None else None
    except (TypeError, ValueError):
        return None


def _as_int(value: object) -> int | None:
    try:
        return int(str(value)) if value is not None else None
    except (TypeError, ValueError):
        return None
