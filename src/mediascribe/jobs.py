from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from mediascribe.errors import JobCancelled
from mediascribe.services.progress import ProgressChannel
from mediascribe.types import Job, JobOptions


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(slots=True)
class JobHandle:
    job: Job
    channel: ProgressChannel
    token: CancelToken = field(default_factory=CancelToken)
    task: asyncio.Task[None] | None = None


class JobRegistry:
    """In-process index of live jobs, owned by whoever accepts requests."""

    def __init__(self, progress_queue_size: int = 256) -> None:
        self.progress_queue_size = progress_queue_size
        self._jobs: dict[str, JobHandle] = {}

    def create(
        self,
        options: JobOptions,
        *,
        source_path: Path | None = None,
        original_name: str = "",
        owner: str | None = None,
        job_id: str | None = None,
    ) -> JobHandle:
        job_id = job_id or self.new_id()
        if job_id in self._jobs:
            raise ValueError(f"Job {job_id} already exists")
        job = Job(id=job_id, options=options, source_path=source_path, original_name=original_name, owner=owner)
        if source_path is not None:
            job.temp_files.add(source_path)
        handle = JobHandle(job=job, channel=ProgressChannel(job_id, maxsize=self.progress_queue_size))
        self._jobs[job_id] = handle
        return handle

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    def get(self, job_id: str) -> JobHandle | None:
        return self._jobs.get(job_id)

    def handles(self) -> list[JobHandle]:
        return list(self._jobs.values())

    def discard(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def active(self) -> list[JobHandle]:
        return [handle for handle in self._jobs.values() if not handle.job.is_terminal]

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs
