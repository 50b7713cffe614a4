"""Domain error types."""

from __future__ import annotations


class TranscriptionError(RuntimeError):
    """Base class for failures raised while processing a transcription job."""


class ProbeFailed(TranscriptionError):
    """ffprobe could not report a usable duration for the input."""


class SegmentationFailed(TranscriptionError):
    """ffmpeg exited with an error or timed out while splitting the input."""


class ZeroSegmentsProduced(TranscriptionError):
    """ffmpeg exited cleanly but wrote no segment files."""


class ProviderUnitFailed(TranscriptionError):
    """A provider could not transcribe one audio unit."""


class PayloadTooLarge(TranscriptionError):
    """The file exceeds the provider's inline payload ceiling."""


class SummaryExtractionFailed(TranscriptionError):
    """The summary marker was missing from a combined transcript/summary response."""


class ProviderNotConfigured(TranscriptionError):
    """The provider selected for a job has no API key configured."""


class ProcessTimeout(TranscriptionError):
    """An external process exceeded its wall-clock budget."""


class ProcessCancelled(TranscriptionError):
    """The job owning an external process was cancelled before it finished."""


class ChannelBusy(RuntimeError):
    """A progress channel already has a subscriber."""


class JobCancelled(Exception):
    """Raised inside a job task once its cancellation token is set."""
