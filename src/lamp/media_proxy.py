"""Thin proxy for celebration images and voice transcription.

Both calls go to an OpenAI-compatible API. The web layer rate-limits them
before they get here.
"""

from __future__ import annotations

import base64
import binascii
import logging

import httpx

from lamp.errors import UpstreamError, ValidationError
from lamp.utils import OPENAI_API_KEY, OPENAI_BASE_URL

log = logging.getLogger(__name__)

IMAGE_MODEL = "dall-e-3"
TRANSCRIBE_MODEL = "whisper-1"


class MediaProxy:
    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        base_url: str = OPENAI_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )

    async def generate_image(self, task_title: str) -> str:
        """Return the URL of a celebratory image for a finished task."""
        if not self.configured:
            raise UpstreamError("OpenAI API key not configured")
        if not isinstance(task_title, str) or not task_title.strip():
            raise ValidationError("taskTitle is required")

        prompt = (
            f'A cute, celebratory cartoon for: "{task_title.strip()}". '
            "Style: minimal, friendly, warm colors. No text."
        )
        try:
            async with self._client() as client:
                resp = await client.post("/images/generations", json={
                    "model": IMAGE_MODEL,
                    "prompt": prompt,
                    "n": 1,
                    "size": "1024x1024",
                    "quality": "standard",
                })
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.exception("Image generation failed")
            raise UpstreamError("image generation failed") from e

        try:
            return data["data"][0]["url"]
        except (KeyError, IndexError, TypeError):
            raise UpstreamError("No image generated") from None

    async def transcribe(self, audio_b64: str) -> str:
        """Transcribe base64-encoded webm audio; returns the text (may be empty)."""
        if not self.configured:
            raise UpstreamError("OpenAI API key not configured")
        if not isinstance(audio_b64, str) or not audio_b64:
            raise ValidationError("audio is required")
        try:
            audio = base64.b64decode(audio_b64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("audio must be base64 encoded") from None

        try:
            async with self._client() as client:
                resp = await client.post(
                    "/audio/transcriptions",
                    data={"model": TRANSCRIBE_MODEL},
                    files={"file": ("audio.webm", audio, "audio/webm")},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.exception("Transcription failed")
            raise UpstreamError("transcription failed") from e
        return data.get("text") or ""
