from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from mediascribe.errors import ProcessCancelled, ProcessTimeout
from mediascribe.types import ProcessOutput

logger = logging.getLogger(__name__)


class ProcessRegistry:
    """Tracks live ffmpeg/ffprobe processes per job so a cancel can kill them.

    A cancelled job id stays fenced until ``release`` is called, so a process
    that finishes spawning after the cancel is terminated on registration.
    """

    def __init__(self) -> None:
        self._processes: dict[str, set[asyncio.subprocess.Process]] = {}
        self._cancelled: set[str] = set()

    def is_cancelled(self, job_id: str) -> bool:
        return job_id in self._cancelled

    def register(self, job_id: str, process: asyncio.subprocess.Process) -> None:
        if job_id in self._cancelled:
            self._terminate(job_id, process)
            return
        self._processes.setdefault(job_id, set()).add(process)

    def unregister(self, job_id: str, process: asyncio.subprocess.Process) -> None:
        handles = self._processes.get(job_id)
        if handles is None:
            return
        handles.discard(process)
        if not handles:
            del self._processes[job_id]

    def active(self, job_id: str) -> int:
        return len(self._processes.get(job_id, ()))

    def cancel(self, job_id: str) -> int:
        self._cancelled.add(job_id)
        handles = self._processes.pop(job_id, set())
        return sum(1 for process in handles if self._terminate(job_id, process))

    def release(self, job_id: str) -> None:
        self._cancelled.discard(job_id)
        self._processes.pop(job_id, None)

    async def run(self, job_id: str, cmd: Sequence[str], *, timeout: float) -> ProcessOutput:
        if job_id in self._cancelled:
            raise ProcessCancelled(f"{cmd[0]} not started: job {job_id} was cancelled")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self.register(job_id, process)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            if process.returncode is None:
                process.kill()
            await process.wait()
            raise ProcessTimeout(f"{cmd[0]} timed out after {timeout:.0f}s") from exc
        finally:
            self.unregister(job_id, process)

        if job_id in self._cancelled:
            raise ProcessCancelled(f"{cmd[0]} stopped: job {job_id} was cancelled")

        return ProcessOutput(
            returncode=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    @staticmethod
    def _terminate(job_id: str, process: asyncio.subprocess.Process) -> bool:
        if process.returncode is not None:
            return False
        try:
            process.terminate()
        except ProcessLookupError:
            return False
        logger.info("Job %s: terminated process %s", job_id, process.pid)
        return True
