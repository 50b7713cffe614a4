from __future__ import annotations

import asyncio
import logging
import mimetypes
from typing import Any

import httpx

from mediascribe.errors import ProviderNotConfigured, ProviderUnitFailed
from mediascribe.services.providers import request_timeout
from mediascribe.types import AudioUnit, JobOptions, UnitTranscript

logger = logging.getLogger(__name__)


class DeepgramTranscriber:
    name = "deepgram"
    accepts_segments = True
    summarizes_inline = False

    def __init__(
        self,
        api_key: str | None,
        timeout_seconds: float = 120.0,
        timeout_per_mb_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.timeout_per_mb_seconds = timeout_per_mb_seconds
        self.base_url = "https://api.deepgram.com/v1"
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def transcribe(self, unit: AudioUnit, options: JobOptions) -> UnitTranscript:
        if not self.api_key:
            raise ProviderNotConfigured("Deepgram API key not configured.")
        if not unit.path.exists():
            raise ProviderUnitFailed(f"Audio file not found: {unit.display_name}")

        logger.info(
            "Transcribing %s with Deepgram (diarize=%s, model=%s)", unit.display_name, options.diarize, options.model
        )
        audio = await asyncio.to_thread(unit.path.read_bytes)
        payload = await self._listen(audio, unit, options)
        return self._to_unit_transcript(payload, unit, options)

    async def _listen(self, audio: bytes, unit: AudioUnit, options: JobOptions) -> dict[str, Any]:
        params = {
            "model": options.model,
            "punctuate": "true",
            "smart_format": "true",
        }
        if options.diarize:
            params["diarize"] = "true"
        content_type = mimetypes.guess_type(unit.display_name)[0] or "application/octet-stream"
        headers = {"authorization": f"Token {self.api_key}", "content-type": content_type}
        timeout = request_timeout(len(audio), self.timeout_seconds, self.timeout_per_mb_seconds)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/listen", params=params, headers=headers, content=audio)
        except httpx.HTTPError as exc:
            raise ProviderUnitFailed(f"Deepgram request failed for {unit.display_name}: {exc}") from exc

        if response.status_code >= 400:
            raise ProviderUnitFailed(
                f"Deepgram failed on {unit.display_name} ({response.status_code}): {response.text[:400]}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderUnitFailed(f"Deepgram returned invalid JSON for {unit.display_name}") from exc
        if not isinstance(payload, dict):
            raise ProviderUnitFailed(f"Deepgram returned an unexpected payload for {unit.display_name}")
        return payload

    def _to_unit_transcript(self, payload: dict[str, Any], unit: AudioUnit, options: JobOptions) -> UnitTranscript:
        alternative = self._first_alternative(payload)
        plain = str(alternative.get("transcript") or "")
        warnings: list[str] = []

        formatted = ""
        paragraphs = self._paragraphs(alternative) if options.diarize else []
        if paragraphs:
            formatted = format_paragraphs(paragraphs)
        else:
            if options.diarize:
                logger.warning("Diarization enabled but no paragraphs found for %s", unit.display_name)
                warnings.append(
                    f"Speaker labels unavailable for {unit.display_name}; using plain transcript."
                )
            formatted = plain + " "

        return UnitTranscript(text=plain, formatted=formatted, warnings=warnings)

    @staticmethod
    def _first_alternative(payload: dict[str, Any]) -> dict[str, Any]:
        results = payload.get("results")
        channels = results.get("channels") if isinstance(results, dict) else None
        if not isinstance(channels, list) or not channels or not isinstance(channels[0], dict):
            return {}
        alternatives = channels[0].get("alternatives")
        if not isinstance(alternatives, list) or not alternatives or not isinstance(alternatives[0], dict):
            return {}
        return alternatives[0]

    @staticmethod
    def _paragraphs(alternative: dict[str, Any]) -> list[dict[str, Any]]:
        container = alternative.get("paragraphs")
        items = container.get("paragraphs") if isinstance(container, dict) else None
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]


def format_paragraphs(paragraphs: list[dict[str, Any]]) -> str:
    """Render diarized paragraphs as ``Speaker <n>: <text>`` blocks."""
    lines: list[str] = []
    for paragraph in paragraphs:
        speaker = paragraph.get("speaker")
        label = f"Speaker {speaker}: " if speaker is not None else ""
        sentences = paragraph.get("sentences")
        if isinstance(sentences, list):
            text = " ".join(str(s.get("text") or "") for s in sentences if isinstance(s, dict))
        else:
            text = ""
        lines.append(f"{label}{text}\n\n")
    return "".join(lines)
