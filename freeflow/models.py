"""Dataclasses describing sessions, context snapshots and history entries."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    POST_PROCESSING = "post_processing"
    DELIVERING = "delivering"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_busy(self) -> bool:
        return self not in (SessionState.IDLE, SessionState.DONE, SessionState.FAILED)


class ScreenshotErrorKind(str, Enum):
    PERMISSION = "permission"
    TRANSIENT = "transient"


@dataclass(frozen=True, slots=True)
class ScreenshotError:
    kind: ScreenshotErrorKind
    message: str


@dataclass(frozen=True, slots=True)
class Screenshot:
    data_url: str
    mime_type: str


@dataclass(frozen=True, slots=True)
class AppContext:
    """Snapshot of what the user was looking at while dictating."""

    activity_summary: str
    app_name: Optional[str] = None
    bundle_id: Optional[str] = None
    window_title: Optional[str] = None
    selected_text: Optional[str] = None
    screenshot: Optional[Screenshot] = None
    screenshot_error: Optional[ScreenshotError] = None
    prompt_used: Optional[str] = None

    @property
    def screenshot_status(self) -> str:
        if self.screenshot is not None:
            return f"available ({self.screenshot.mime_type})"
        if self.screenshot_error is not None:
            return f"unavailable: {self.screenshot_error.message}"
        return "not captured"


@dataclass(slots=True)
class Session:
    """One recording attempt, owned by the orchestrator until it is terminal."""

    custom_vocabulary: str
    trigger: str = "hotkey"
    id: str = field(default_factory=new_id)
    started_at: datetime = field(default_factory=utcnow)
    state: SessionState = SessionState.IDLE
    audio_asset: Optional[Path] = None
    captured_context: Optional[AppContext] = None
    raw_transcript: str = ""
    final_transcript: str = ""
    post_processing_prompt: Optional[str] = None
    processing_status: str = ""
    ready: bool = False


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    """Durable, immutable record of one finished session."""

    id: str
    timestamp: datetime
    raw_transcript: str
    final_transcript: str
    post_processing_prompt: Optional[str]
    context_summary: str
    context_prompt: Optional[str]
    screenshot_ref: Optional[str]
    screenshot_status: str
    processing_status: str
    debug_status: str
    custom_vocabulary: str
    audio_file_ref: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.processing_status.startswith("Error: ")


@dataclass(frozen=True, slots=True)
class PostProcessingResult:
    transcript: str
    prompt: str


@dataclass(slots=True)
class Config:
    """User configuration stored on disk."""

    api_key: Optional[str] = None
    api_base_url: str = "https://api.groq.com/openai/v1"
    transcription_model: str = "whisper-large-v3"
    post_processing_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    context_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    vision_model: str = "meta-llama/llama-4-scout-17b-16e-instruct"
    transcription_timeout: float = 20.0
    transcribing_indicator_delay: float = 1.0
    paste_settle_delay: float = 0.1
    context_timeout: float = 8.0
    api_timeout: float = 30.0
    max_history_count: int = 20
    custom_vocabulary: str = ""
    insert_destination: str = "paste"
    microphone_device: Optional[str] = None
    capture_screenshot: bool = True
    abort_on_screen_permission: bool = True
    log_level: str = "WARNING"
