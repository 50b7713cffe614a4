"""Gemini ``generateContent`` client, inline-audio transcriber and summarizer."""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any

import httpx

from mediascribe.errors import (
    PayloadTooLarge,
    ProviderNotConfigured,
    ProviderUnitFailed,
    SummaryExtractionFailed,
)
from mediascribe.services.providers import request_timeout
from mediascribe.types import AudioUnit, JobOptions, UnitTranscript

logger = logging.getLogger(__name__)

MAX_INLINE_BYTES = 15 * 1024 * 1024
SUMMARY_MARKER = "\nSummary:"

SAFETY_SETTINGS = [
    {"category": category, "threshold": "BLOCK_NONE"}
    for category in (
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    )
]

KNOWN_MIME_TYPES = {
    ".mp3": "audio/mp3",
    ".wav": "audio/wav",
    ".m4a": "audio/m4a",
    ".aac": "audio/aac",
    ".ogg": "audio/ogg",
    ".flac": "audio/flac",
    ".mp4": "video/mp4",
}

SUMMARY_PROMPT = """Analyze the following transcript and create a structured summary with these specific sections:

1. Key discussion points (bullet points)
2. Key decisions taken (bullet points)
3. Key actions to be completed (bullet points)

Format your response exactly with these three headings and bullet points under each. If any section has no relevant content, include the heading but note "None identified".

Transcript:
---
{transcript}
---"""


def resolve_mime_type(filename: str) -> str:
    suffix = Path(filename).suffix.lower()
    if suffix in KNOWN_MIME_TYPES:
        return KNOWN_MIME_TYPES[suffix]
    guessed = mimetypes.guess_type(filename)[0]
    return guessed or "application/octet-stream"


def build_transcription_prompt(*, diarize: bool, summarize: bool) -> str:
    prompt = "Transcribe the following audio accurately."
    if diarize:
        prompt += " Identify different speakers and label their utterances clearly (e.g., 'Speaker 0:', 'Speaker 1:')."
    if summarize:
        prompt += " After the transcription, provide a concise summary starting with the exact text 'Summary:'."
    return prompt


def split_summary(text: str) -> tuple[str, str]:
    """Split a combined response at the last summary marker.

    Raises :class:`SummaryExtractionFailed` when the marker is absent.
    """
    index = text.rfind(SUMMARY_MARKER)
    if index == -1:
        raise SummaryExtractionFailed("Could not extract summary from the Gemini response; kept it as transcript.")
    return text[:index].strip(), text[index + len(SUMMARY_MARKER) :].strip()


class GeminiClient:
    def __init__(
        self,
        api_key: str | None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = "https://generativelanguage.googleapis.com/v1beta"
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate(self, model: str, parts: list[dict[str, Any]], *, timeout: float) -> str:
        if not self.api_key:
            raise ProviderNotConfigured("Gemini API key not configured.")

        model_name = model.removeprefix("models/")
        url = f"{self.base_url}/models/{model_name}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "safetySettings": SAFETY_SETTINGS,
        }
        headers = {"x-goog-api-key": self.api_key}

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise ProviderUnitFailed(f"Gemini request failed: {exc}") from exc

        if response.status_code == 404:
            raise ProviderUnitFailed(f"Model '{model_name}' not found or unavailable via API.")
        if response.status_code == 429 or "RESOURCE_EXHAUSTED" in response.text[:2000]:
            raise ProviderUnitFailed("Gemini API quota exceeded. Please check your usage limits.")
        if response.status_code >= 400:
            raise ProviderUnitFailed(f"Gemini processing failed ({response.status_code}): {response.text[:400]}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnitFailed("Gemini returned invalid JSON") from exc
        return self._extract_text(payload)

    @staticmethod
    def _extract_text(payload: object) -> str:
        if not isinstance(payload, dict):
            return ""
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            return ""
        content = candidates[0].get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
            return ""
        return str(parts[0].get("text") or "")


class GeminiTranscriber:
    name = "gemini"
    accepts_segments = False
    summarizes_inline = True

    def __init__(
        self,
        client: GeminiClient,
        timeout_seconds: float = 120.0,
        timeout_per_mb_seconds: float = 20.0,
        max_inline_bytes: int = MAX_INLINE_BYTES,
    ) -> None:
        self.client = client
        self.timeout_seconds = timeout_seconds
        self.timeout_per_mb_seconds = timeout_per_mb_seconds
        self.max_inline_bytes = max_inline_bytes

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def transcribe(self, unit: AudioUnit, options: JobOptions) -> UnitTranscript:
        if not self.client.configured:
            raise ProviderNotConfigured("Gemini API key not configured.")

        mime_type = resolve_mime_type(unit.display_name)
        if mime_type == "application/octet-stream":
            raise ProviderUnitFailed(f"Gemini processing failed: Unsupported file type ({unit.display_name}).")
        if not mime_type.startswith(("audio/", "video/")):
            logger.warning("MIME type %s might not be suitable for Gemini audio tasks", mime_type)

        size = unit.path.stat().st_size
        if size > self.max_inline_bytes:
            raise PayloadTooLarge(
                f"File size ({size / 1024 / 1024:.1f}MB) exceeds limit for direct Gemini processing. "
                "Use a Deepgram model for larger files."
            )

        audio = await asyncio.to_thread(unit.path.read_bytes)
        parts = [
            {"text": build_transcription_prompt(diarize=options.diarize, summarize=options.summarize)},
            {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(audio).decode("ascii")}},
        ]
        timeout = request_timeout(size, self.timeout_seconds, self.timeout_per_mb_seconds)
        logger.info("Sending %s to Gemini model %s", unit.display_name, options.model)
        response_text = await self.client.generate(options.model, parts, timeout=timeout)
        logger.info("Gemini response received for %s (%d chars)", unit.display_name, len(response_text))

        return self._to_unit_transcript(response_text, options)

    @staticmethod
    def _to_unit_transcript(response_text: str, options: JobOptions) -> UnitTranscript:
        transcript = response_text
        summary: str | None = None
        warnings: list[str] = []
        if options.summarize:
            try:
                transcript, summary = split_summary(response_text)
            except SummaryExtractionFailed as exc:
                logger.warning("Summary marker missing from Gemini response")
                warnings.append(str(exc))

        if not transcript.strip() and not summary:
            raise ProviderUnitFailed("Gemini response did not contain valid transcript text.")
        return UnitTranscript(text=transcript, formatted=transcript, summary=summary, warnings=warnings)


class GeminiSummarizer:
    def __init__(self, client: GeminiClient, model: str, timeout_seconds: float = 120.0) -> None:
        self.client = client
        self.model = model
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return self.client.configured

    async def summarize(self, transcript: str) -> str:
        prompt = SUMMARY_PROMPT.format(transcript=transcript.strip())
        logger.info("Requesting summary from %s (%d chars)", self.model, len(transcript))
        text = await self.client.generate(self.model, [{"text": prompt}], timeout=self.timeout_seconds)
        return text.strip()
