"""Collect a short description of what the user is doing while dictating."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from .models import AppContext, Config, Screenshot, ScreenshotError, ScreenshotErrorKind

UNRECOGNIZED_ACTIVITY = "You are dictating in an unrecognized context."
MAX_SCREENSHOT_DATA_URL_LENGTH = 500_000
SCREENSHOT_MAX_DIMENSION = 1024
SCREENSHOT_QUALITY = 0.5

# (max_dimension, quality) -> JPEG bytes, or None when that attempt failed.
ScreenshotEncoder = Callable[[int, float], Optional[bytes]]

CONTEXT_SYSTEM_PROMPT = """You are a context synthesis assistant for a speech-to-text pipeline.
Given app/window metadata and an optional screenshot, output exactly two sentences that describe what the user is doing right now and the likely writing intent in the current window.
Prioritize concrete details only from the context: for email, identify recipients, subject or thread cues, and whether the user is replying or composing; for terminal/code/text work, identify the active command, file, document title, or topic.
If details are missing, state uncertainty instead of inventing facts.
Return only two sentences, no labels, no markdown, no extra commentary."""

_SENTENCE_SPLIT = re.compile(r"[.。!?]")


@dataclass(frozen=True, slots=True)
class WindowSnapshot:
    app_name: Optional[str] = None
    bundle_id: Optional[str] = None
    window_title: Optional[str] = None
    selected_text: Optional[str] = None


class WindowInspector(Protocol):
    """Platform access to the frontmost window. All methods are blocking."""

    def frontmost_app_name(self) -> Optional[str]:
        """Cheap lookup used when a full snapshot is not available."""

    def snapshot(self) -> Optional[WindowSnapshot]:
        """Return None when there is no frontmost application."""

    def screenshot(self, snapshot: WindowSnapshot) -> Tuple[Optional[Screenshot], Optional[ScreenshotError]]:
        """Capture the active window as a data URL, or explain why not."""


class ContextCollector(Protocol):
    async def collect(self) -> AppContext:
        """Return a context snapshot. Must not raise."""


def fit_screenshot(
    encode: ScreenshotEncoder,
    max_dimension: int = SCREENSHOT_MAX_DIMENSION,
    quality: float = SCREENSHOT_QUALITY,
    limit: int = MAX_SCREENSHOT_DATA_URL_LENGTH,
) -> Optional[Screenshot]:
    """Shrink a screenshot until its JPEG data URL fits within ``limit``.

    Each of three sizes (x1, x0.75, x0.5) is tried with three qualities
    (x1, x0.5, x0.25) before moving on to the next size. Returns None when no
    combination fits.
    """

    for dimension in (max_dimension, int(max_dimension * 0.75), int(max_dimension * 0.5)):
        for level in (quality, quality * 0.5, quality * 0.25):
            data = encode(dimension, level)
            if not data:
                continue
            data_url = "data:image/jpeg;base64," + base64.b64encode(data).decode("ascii")
            if len(data_url) <= limit:
                return Screenshot(data_url=data_url, mime_type="image/jpeg")
            logging.debug("Screenshot at %spx q=%.3f is %d chars, shrinking", dimension, level, len(data_url))
    return None


def fallback_activity(app_name: Optional[str], screenshot_available: bool = False) -> str:
    active_app = app_name or "the active application"
    if screenshot_available:
        return (
            f"Could not reliably infer a two-sentence summary for {active_app} "
            "from the screenshot and metadata."
        )
    return f"Could not reliably infer a two-sentence summary for {active_app} from the visible metadata."


def fallback_context(
    app_name: Optional[str] = None,
    screenshot_error: Optional[ScreenshotError] = None,
) -> AppContext:
    """Build a context from synchronously available data only."""

    summary = fallback_activity(app_name) if app_name else UNRECOGNIZED_ACTIVITY
    return AppContext(
        activity_summary=summary,
        app_name=app_name,
        screenshot_error=screenshot_error,
    )


def normalize_activity_summary(value: str) -> str:
    """Limit a model answer to its first two sentences."""

    sentences = [part.strip() for part in _SENTENCE_SPLIT.split(value) if part.strip()]
    if len(sentences) <= 2:
        return value
    return ". ".join(sentences[:2]) + "."


def trimmed_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip().replace("\n", " ")
    return text or None


def _metadata_block(snapshot: WindowSnapshot) -> str:
    return (
        f"App: {snapshot.app_name or 'Unknown'}\n"
        f"Bundle ID: {snapshot.bundle_id or 'Unknown'}\n"
        f"Window: {snapshot.window_title or 'Unknown'}\n"
        f"Selected text: {snapshot.selected_text or 'None'}"
    )


class ContextService:
    """Gather window metadata, an optional screenshot and an LLM activity summary.

    :meth:`collect` is bounded by ``config.context_timeout`` and never raises:
    every failure degrades into a fallback summary or a ``screenshot_error``.
    """

    def __init__(
        self,
        config: Config,
        inspector: WindowInspector,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = (config.api_key or "").strip()
        self._base_url = config.api_base_url.rstrip("/")
        self._text_model = config.context_model
        self._vision_model = config.vision_model
        self._capture_screenshot = config.capture_screenshot
        self._timeout = config.context_timeout
        self._request_timeout = config.api_timeout
        self._inspector = inspector
        self._client = client

    async def collect(self) -> AppContext:
        partial: Dict[str, Any] = {}
        try:
            return await asyncio.wait_for(self._collect(partial), timeout=self._timeout)
        except asyncio.TimeoutError:
            logging.info("Context collection timed out after %.1fs", self._timeout)
        except asyncio.CancelledError:
            raise
        except Exception:
            logging.exception("Context collection failed")
        return self._degraded(partial)

    def _degraded(self, partial: Dict[str, Any]) -> AppContext:
        snapshot: Optional[WindowSnapshot] = partial.get("snapshot")
        screenshot: Optional[Screenshot] = partial.get("screenshot")
        app_name = snapshot.app_name if snapshot else None
        return AppContext(
            activity_summary=fallback_activity(app_name, screenshot is not None)
            if snapshot
            else UNRECOGNIZED_ACTIVITY,
            app_name=app_name,
            bundle_id=snapshot.bundle_id if snapshot else None,
            window_title=snapshot.window_title if snapshot else None,
            selected_text=snapshot.selected_text if snapshot else None,
            screenshot=screenshot,
            screenshot_error=partial.get("screenshot_error"),
        )

    async def _collect(self, partial: Dict[str, Any]) -> AppContext:
        snapshot = await asyncio.to_thread(self._inspector.snapshot)
        if snapshot is None:
            return AppContext(
                activity_summary=UNRECOGNIZED_ACTIVITY,
                screenshot_error=ScreenshotError(ScreenshotErrorKind.TRANSIENT, "No frontmost application"),
            )
        if snapshot.window_title is None and snapshot.app_name:
            snapshot = WindowSnapshot(
                app_name=snapshot.app_name,
                bundle_id=snapshot.bundle_id,
                window_title=snapshot.app_name,
                selected_text=snapshot.selected_text,
            )
        partial["snapshot"] = snapshot

        screenshot: Optional[Screenshot] = None
        screenshot_error: Optional[ScreenshotError] = None
        if self._capture_screenshot:
            screenshot, screenshot_error = await asyncio.to_thread(self._inspector.screenshot, snapshot)
            if screenshot is not None and len(screenshot.data_url) > MAX_SCREENSHOT_DATA_URL_LENGTH:
                screenshot = None
                screenshot_error = ScreenshotError(
                    ScreenshotErrorKind.TRANSIENT, "Screenshot too large to attach"
                )
        partial["screenshot"] = screenshot
        partial["screenshot_error"] = screenshot_error

        inferred = await self._infer_activity(snapshot, screenshot) if self._api_key else None
        if inferred is not None:
            activity, prompt = inferred
        else:
            activity, prompt = fallback_activity(snapshot.app_name, screenshot is not None), None

        return AppContext(
            activity_summary=activity,
            app_name=snapshot.app_name,
            bundle_id=snapshot.bundle_id,
            window_title=snapshot.window_title,
            selected_text=snapshot.selected_text,
            screenshot=screenshot,
            screenshot_error=screenshot_error,
            prompt_used=prompt,
        )

    async def _infer_activity(
        self, snapshot: WindowSnapshot, screenshot: Optional[Screenshot]
    ) -> Optional[Tuple[str, str]]:
        attempts: List[Tuple[str, Optional[Screenshot]]] = []
        if screenshot is not None:
            attempts.append((self._vision_model, screenshot))
        attempts.append((self._text_model, None))
        for model, image in attempts:
            inferred = await self._infer_with_model(snapshot, image, model)
            if inferred is not None:
                return inferred
        return None

    async def _infer_with_model(
        self, snapshot: WindowSnapshot, screenshot: Optional[Screenshot], model: str
    ) -> Optional[Tuple[str, str]]:
        metadata = _metadata_block(snapshot)
        user_content: Any
        if screenshot is not None:
            description = (
                "[screenshot attached]\nAnalyze the screenshot plus metadata to infer current activity.\n"
                f"{metadata}"
            )
            user_content = [
                {"type": "text", "text": "Analyze the screenshot plus metadata to infer current activity."},
                {"type": "text", "text": metadata},
                {"type": "image_url", "image_url": {"url": screenshot.data_url}},
            ]
        else:
            description = (
                "Analyze the context and infer the user's current activity in exactly two sentences.\n\n"
                f"{metadata}"
            )
            user_content = description
        payload = {
            "model": model,
            "temperature": 0.2,
            "messages": [
                {"role": "system", "content": CONTEXT_SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
        }
        headers = {"Authorization": f"Bearer {self._api_key}"}
        url = f"{self._base_url}/chat/completions"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._request_timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logging.debug("Context summary request with %s failed: %s", model, exc)
            return None
        if response.status_code != 200:
            logging.debug("Context summary with %s returned status %s", model, response.status_code)
            return None
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return None
        if not isinstance(content, str) or not content.strip():
            return None

        prompt = f"Model: {model}\n\n[System]\n{CONTEXT_SYSTEM_PROMPT}\n[User]\n{description}"
        return normalize_activity_summary(content.strip()), prompt
