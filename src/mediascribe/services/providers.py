"""Provider contract and model-to-provider selection."""

from __future__ import annotations

from typing import Literal, Protocol

from mediascribe.types import AudioUnit, JobOptions, UnitTranscript

ProviderKind = Literal["batch", "inline"]

# First matching prefix wins; anything unmatched goes to the batch provider.
MODEL_PREFIXES: tuple[tuple[str, ProviderKind], ...] = (("gemini-", "inline"),)


class TranscriptionProvider(Protocol):
    """One speech-to-text backend."""

    name: str
    accepts_segments: bool
    summarizes_inline: bool

    @property
    def configured(self) -> bool:
        """Whether the backend has the credentials it needs."""
        ...

    async def transcribe(self, unit: AudioUnit, options: JobOptions) -> UnitTranscript:
        """Transcribe one audio unit."""
        ...


class Summarizer(Protocol):
    """Text summarization backend."""

    @property
    def configured(self) -> bool:
        """Whether the backend has the credentials it needs."""
        ...

    async def summarize(self, transcript: str) -> str:
        """Return a summary of ``transcript``."""
        ...


def provider_kind(model: str) -> ProviderKind:
    normalized = model.strip().lower().removeprefix("models/")
    for prefix, kind in MODEL_PREFIXES:
        if normalized.startswith(prefix):
            return kind
    return "batch"


def request_timeout(size_bytes: int, base_seconds: float, per_mb_seconds: float) -> float:
    return base_seconds + (size_bytes / (1024 * 1024)) * per_mb_seconds


class ProviderTable:
    def __init__(self, *, batch: TranscriptionProvider, inline: TranscriptionProvider) -> None:
        self._providers: dict[ProviderKind, TranscriptionProvider] = {"batch": batch, "inline": inline}

    def resolve(self, model: str) -> TranscriptionProvider:
        return self._providers[provider_kind(model)]
