"""Clean up raw transcripts with a remote language model."""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Protocol

import httpx

from .errors import PostProcessingError, PostProcessingInvalidResponse, PostProcessingRequestFailed
from .models import Config, PostProcessingResult

EMPTY_SENTINEL = "[EMPTY]"

SYSTEM_PROMPT = """You are a dictation post-processor. You receive raw speech-to-text output and return clean text ready to be typed into an application.

Your job:
- Remove filler words (um, uh, you know, like) unless they carry meaning.
- Fix spelling, grammar, and punctuation errors.
- When the transcript already contains a word that is a close misspelling of a name or term from the context or custom vocabulary, correct the spelling. Never insert names or terms from context that the speaker did not say.
- Preserve the speaker's intent, tone, and meaning exactly.

Output rules:
- Return ONLY the cleaned transcript text, nothing else.
- If the transcription is empty or contains no meaningful speech, return exactly: [EMPTY]
- Do not add words, names, or content that are not in the transcription. The context is only for correcting spelling of words already spoken.
- Do not change the meaning of what was said."""

_VOCABULARY_SPLIT = re.compile(r"[\n,;]")


class PostProcessor(Protocol):
    async def post_process(
        self, raw_transcript: str, context_summary: str, vocabulary: str
    ) -> PostProcessingResult:
        """Return a cleaned transcript and the prompt that produced it."""


def merge_vocabulary(raw: str) -> List[str]:
    """Split a vocabulary string into unique terms, keeping first spellings."""

    seen = set()
    terms = []
    for part in _VOCABULARY_SPLIT.split(raw):
        term = part.strip()
        if not term or term.lower() in seen:
            continue
        seen.add(term.lower())
        terms.append(term)
    return terms


def sanitize_transcript(value: str) -> str:
    result = value.strip()
    if not result:
        return ""
    if len(result) > 1 and result.startswith('"') and result.endswith('"'):
        result = result[1:-1].strip()
    if result == EMPTY_SENTINEL:
        return ""
    return result


def build_system_prompt(terms: List[str]) -> str:
    if not terms:
        return SYSTEM_PROMPT
    return (
        f"{SYSTEM_PROMPT}\n\n"
        "The following vocabulary must be treated as high-priority terms while rewriting.\n"
        "Use these spellings exactly in the output when relevant:\n"
        f"{', '.join(terms)}"
    )


def build_user_message(raw_transcript: str, context_summary: str) -> str:
    return (
        "Clean up this transcription. Only use context to fix spelling of words already present.\n\n"
        f"Transcription:\n{raw_transcript}\n\n"
        f"Context (for spelling reference only):\n{context_summary}"
    )


class PostProcessingClient:
    """Chat-completions client that rewrites dictated text."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.groq.com/openai/v1",
        model: str = "meta-llama/llama-4-scout-17b-16e-instruct",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_config(cls, config: Config, client: Optional[httpx.AsyncClient] = None) -> "PostProcessingClient":
        return cls(
            api_key=config.api_key or "",
            base_url=config.api_base_url,
            model=config.post_processing_model,
            timeout=config.api_timeout,
            client=client,
        )

    async def post_process(
        self, raw_transcript: str, context_summary: str, vocabulary: str
    ) -> PostProcessingResult:
        system_prompt = build_system_prompt(merge_vocabulary(vocabulary))
        user_message = build_user_message(raw_transcript, context_summary)
        prompt_for_display = (
            f"Model: {self._model}\n\n[System]\n{system_prompt}\n\n[User]\n{user_message}"
        )
        payload = {
            "model": self._model,
            "temperature": 0.0,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        url = f"{self._base_url}/chat/completions"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise PostProcessingError(f"Post-processing request failed: {exc}") from exc

        if response.status_code != 200:
            raise PostProcessingRequestFailed(response.status_code, response.text)

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise PostProcessingInvalidResponse("Missing choices[0].message.content") from exc
        if not isinstance(content, str):
            raise PostProcessingInvalidResponse("Missing choices[0].message.content")

        transcript = sanitize_transcript(content)
        logging.debug("Post-processed %d chars into %d chars", len(raw_transcript), len(transcript))
        return PostProcessingResult(transcript=transcript, prompt=prompt_for_display)
