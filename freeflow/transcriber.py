"""Remote speech-to-text client."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Tuple

import httpx

from .errors import TranscriptionInvalidResponse, TranscriptionSubmissionFailed
from .models import Config

_AUDIO_CONTENT_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
}


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    async def transcribe(self, audio_path: Path) -> str:
        """Return the transcript text for ``audio_path``."""


def audio_content_type(filename: str) -> str:
    return _AUDIO_CONTENT_TYPES.get(Path(filename).suffix.lower(), "audio/mp4")


def parse_transcript(body: bytes) -> str:
    """Extract transcript text from a transcription response body.

    JSON bodies must carry a ``text`` field. Anything else is treated as a
    plain text transcript with newlines collapsed into spaces.
    """

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("text"), str):
        return payload["text"]

    plain = body.decode("utf-8", errors="replace")
    text = " ".join(plain.splitlines()).strip()
    if not text:
        raise TranscriptionInvalidResponse("Invalid response")
    return text


class TranscriptionClient:
    """Upload audio to an OpenAI-compatible ``/audio/transcriptions`` endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.groq.com/openai/v1",
        model: str = "whisper-large-v3",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise RuntimeError("An API key is required for transcription. Run `freeflow login`.")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config: Config, client: Optional[httpx.AsyncClient] = None) -> "TranscriptionClient":
        return cls(
            api_key=config.api_key or "",
            base_url=config.api_base_url,
            model=config.transcription_model,
            timeout=config.api_timeout,
            client=client,
        )

    async def transcribe(self, audio_path: Path) -> str:
        try:
            audio = audio_path.read_bytes()
        except OSError as exc:
            raise TranscriptionSubmissionFailed(f"Cannot read audio file: {exc}") from exc

        files = {"file": (audio_path.name, audio, audio_content_type(audio_path.name))}
        data = {"model": self._model}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        url = f"{self._base_url}/audio/transcriptions"

        try:
            if self._client is not None:
                response = await self._client.post(url, data=data, files=files, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, data=data, files=files, headers=headers)
        except httpx.HTTPError as exc:
            raise TranscriptionSubmissionFailed(str(exc) or type(exc).__name__) from exc

        if response.status_code != 200:
            raise TranscriptionSubmissionFailed(f"Status {response.status_code}: {response.text}")

        text = parse_transcript(response.content)
        logging.debug("Transcribed %s (%d chars)", audio_path.name, len(text))
        return text


class ValidationCache:
    """Remember API key validation results for ``ttl`` seconds."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, bool]] = {}

    def get(self, base_url: str, key: str) -> Optional[bool]:
        hit = self._entries.get((base_url, key))
        if hit is None:
            return None
        stored_at, valid = hit
        if self._clock() - stored_at > self.ttl:
            del self._entries[(base_url, key)]
            return None
        return valid

    def put(self, base_url: str, key: str, valid: bool) -> None:
        self._entries[(base_url, key)] = (self._clock(), valid)


async def validate_api_key(
    key: str,
    base_url: str = "https://api.groq.com/openai/v1",
    cache: Optional[ValidationCache] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Return True when ``key`` is accepted by the ``/models`` endpoint."""

    key = key.strip()
    if not key:
        return False
    base_url = base_url.rstrip("/")
    if cache is not None:
        cached = cache.get(base_url, key)
        if cached is not None:
            return cached

    headers = {"Authorization": f"Bearer {key}"}
    try:
        if client is not None:
            response = await client.get(f"{base_url}/models", headers=headers)
        else:
            async with httpx.AsyncClient(timeout=10.0) as own_client:
                response = await own_client.get(f"{base_url}/models", headers=headers)
    except httpx.HTTPError as exc:
        # Network failures are not cached.
        logging.debug("API key validation request failed: %s", exc)
        return False

    valid = response.status_code == 200
    if cache is not None:
        cache.put(base_url, key, valid)
    return valid
