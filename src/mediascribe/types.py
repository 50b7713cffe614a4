from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

JobState = Literal[
    "created",
    "duration_check",
    "direct_transcribe",
    "segmenting",
    "segment_transcribing",
    "summarizing",
    "done",
    "cancelled",
    "error",
]
EventType = Literal["status", "warning", "partial_transcript", "summary_result", "error", "done"]

TERMINAL_STATES: frozenset[str] = frozenset({"done", "cancelled", "error"})
TERMINAL_EVENTS: frozenset[str] = frozenset({"done", "error"})

DEFAULT_MODEL = "nova-2"
DEFAULT_SEGMENT_SIZE_MB = 10


@dataclass(slots=True)
class JobOptions:
    model: str = DEFAULT_MODEL
    diarize: bool = False
    summarize: bool = False
    segment_size_mb: int = DEFAULT_SEGMENT_SIZE_MB

    @property
    def segment_size_bytes(self) -> int:
        return self.segment_size_mb * 1024 * 1024

    @classmethod
    def normalized(
        cls,
        *,
        model: str | None = None,
        diarize: bool = False,
        summarize: bool = False,
        segment_size_mb: int | None = None,
        default_model: str = DEFAULT_MODEL,
        default_segment_size_mb: int = DEFAULT_SEGMENT_SIZE_MB,
    ) -> JobOptions:
        chosen_model = (model or "").strip() or default_model
        size = segment_size_mb if segment_size_mb is not None and segment_size_mb > 0 else default_segment_size_mb
        return cls(model=chosen_model, diarize=diarize, summarize=summarize, segment_size_mb=size)


@dataclass(slots=True)
class ProbeResult:
    duration_seconds: float
    size_bytes: int

    @property
    def bytes_per_second(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.size_bytes / self.duration_seconds


@dataclass(slots=True)
class Segment:
    index: int
    job_id: str
    path: Path


@dataclass(slots=True)
class AudioUnit:
    """One file handed to a provider: a whole upload or a single segment."""

    path: Path
    display_name: str
    index: int | None = None


@dataclass(slots=True)
class UnitTranscript:
    text: str
    formatted: str
    summary: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProcessOutput:
    returncode: int | None
    stdout: str
    stderr: str


@dataclass(slots=True)
class ProgressEvent:
    job_id: str
    type: EventType
    payload: dict[str, Any]

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.payload)}\n\n"


@dataclass(slots=True)
class Job:
    id: str
    options: JobOptions
    source_path: Path | None = None
    original_name: str = ""
    owner: str | None = None
    state: JobState = "created"
    transcript_parts: list[str] = field(default_factory=list)
    formatted_parts: list[str] = field(default_factory=list)
    summary: str | None = None
    error: str | None = None
    temp_files: set[Path] = field(default_factory=set)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def transcript(self) -> str:
        return " ".join(part.strip() for part in self.transcript_parts if part.strip())

    @property
    def formatted_transcript(self) -> str:
        return "".join(self.formatted_parts)

    def append(self, result: UnitTranscript) -> None:
        self.transcript_parts.append(result.text)
        self.formatted_parts.append(result.formatted)
