"""State-machine based orchestration of one dictation session at a time.

A session moves ``idle -> recording -> transcribing -> post_processing ->
delivering -> done`` and drops back to idle. Capture, transcription and
permission problems end it in ``failed`` instead. Every terminal outcome,
including an empty transcript, writes exactly one history entry.

The orchestrator runs on a single asyncio event loop. State only changes in
synchronous sections between awaits, so transitions are serialised even
though capture, context collection and network calls run concurrently.
Platform side effects are emitted as intents (see :mod:`freeflow.effects`).
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .context import ContextCollector, fallback_context
from .effects import (
    CUE_RECORDING_STARTED,
    CUE_RECORDING_STOPPED,
    AudioLevel,
    CopyToClipboard,
    EffectSink,
    HideIndicator,
    PasteAtCursor,
    PlayCue,
    PromptPermission,
    ShowError,
    ShowIndicator,
    ShowWarning,
    StateChanged,
    StatusChanged,
)
from .errors import (
    CaptureError,
    CaptureErrorKind,
    PermissionDeniedError,
    PersistenceError,
    ScreenRecordingPermissionError,
    SessionCancelled,
    TranscriptionError,
    TranscriptionSubmissionFailed,
    TranscriptionTimedOut,
    error_status,
    format_error,
)
from .models import AppContext, Config, HistoryEntry, ScreenshotErrorKind, Session, SessionState, utcnow
from .permissions import REQUIRED_PERMISSIONS, SCREEN_RECORDING, PermissionChecker, first_missing
from .postprocessor import PostProcessor
from .recorder import CaptureProvider
from .storage import HistoryStore
from .transcriber import TranscriptionBackend

POST_PROCESSING_SUCCEEDED = "Post-processing succeeded"
POST_PROCESSING_FAILED = "Post-processing failed, using raw transcript"
POST_PROCESSING_SKIPPED = "Post-processing skipped (empty transcript)"
NOTHING_TO_TRANSCRIBE = "Nothing to transcribe"

STATUS_READY = "Ready"
STATUS_STARTING = "Starting microphone…"
STATUS_RECORDING = "Recording…"
STATUS_TRANSCRIBING = "Transcribing…"
STATUS_DELIVERED = "Copied to clipboard!"


class SessionOrchestrator:
    """Drive recording, transcription, post-processing and delivery."""

    def __init__(
        self,
        config: Config,
        capture: CaptureProvider,
        collector: ContextCollector,
        transcriber: TranscriptionBackend,
        post_processor: PostProcessor,
        history: HistoryStore,
        permissions: PermissionChecker,
        effects: EffectSink,
        frontmost_app: Optional[Callable[[], Optional[str]]] = None,
        required_permissions: Iterable[str] = REQUIRED_PERMISSIONS,
    ) -> None:
        self._config = config
        self._capture = capture
        self._collector = collector
        self._transcriber = transcriber
        self._post_processor = post_processor
        self._history = history
        self._permissions = permissions
        self._effects = effects
        self._frontmost_app = frontmost_app
        self._required_permissions = tuple(required_permissions)

        self._state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._context_task: Optional[asyncio.Task] = None
        self._capture_start: Optional[asyncio.Future] = None
        self._indicator_session: Optional[str] = None

        self.status_text = STATUS_READY
        self.last_error: Optional[str] = None
        self.last_transcript = ""
        self.last_entry: Optional[HistoryEntry] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    def history(self) -> List[HistoryEntry]:
        return self._history.load_all()

    # ------------------------------------------------------------------
    # Public triggers
    # ------------------------------------------------------------------

    async def start(self, trigger: str = "hotkey") -> Optional[Session]:
        """Begin a recording session.

        Returns the new session, or None when a session is already running.
        Raises :class:`PermissionDeniedError` without creating a session when a
        required permission is missing.
        """

        if self._state.is_busy:
            logging.debug("Ignoring start (%s) while %s", trigger, self._state.value)
            return None

        missing = first_missing(self._permissions, self._required_permissions)
        if missing is not None:
            error = PermissionDeniedError(missing)
            self._report_error(error)
            self._emit(PromptPermission(missing))
            raise error

        session = Session(custom_vocabulary=self._config.custom_vocabulary, trigger=trigger)
        self._session = session
        self.last_error = None

        self._cancel_context_task()
        self._context_task = asyncio.ensure_future(self._collector.collect())
        self._transition(session, SessionState.RECORDING)
        self._set_status(STATUS_STARTING)

        starting = asyncio.ensure_future(
            self._capture.start(
                self._config.microphone_device,
                partial(self._on_capture_ready, session.id),
                partial(self._on_audio_level, session.id),
            )
        )
        self._capture_start = starting
        error: Optional[CaptureError] = None
        try:
            await starting
        except CaptureError as exc:
            error = exc
        except Exception as exc:
            logging.exception("Capture provider failed to start")
            error = CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE, format_error(exc))
        if error is not None and self._session is session and session.state == SessionState.RECORDING:
            self._cancel_context_task()
            self._fail(session, error, fallback_context(self._frontmost_app_name()))
        return session

    async def stop(self) -> Optional[HistoryEntry]:
        """Finish recording and run the rest of the pipeline.

        Returns the history entry written for the session, or None when no
        session was recording or the entry could not be persisted.
        """

        session = self._session
        if session is None or self._state != SessionState.RECORDING:
            logging.debug("Ignoring stop while %s", self._state.value)
            return None

        starting = self._capture_start
        if starting is not None and not starting.done():
            await asyncio.wait({starting})
            if starting.cancelled() or starting.exception() is not None:
                # start() reports the capture failure.
                return None
        if self._session is not session or session.state != SessionState.RECORDING:
            return None

        self._transition(session, SessionState.TRANSCRIBING)
        self._emit(PlayCue(CUE_RECORDING_STOPPED))
        self._emit(HideIndicator())
        self._set_status(STATUS_TRANSCRIBING)

        try:
            audio = await self._capture.stop()
        except CaptureError as exc:
            return self._fail(session, exc, await self._resolve_context())
        except Exception as exc:
            logging.exception("Capture provider failed to stop")
            error = CaptureError(CaptureErrorKind.NO_AUDIO, format_error(exc))
            return self._fail(session, error, await self._resolve_context())
        if audio is None:
            return self._fail(session, CaptureError(CaptureErrorKind.NO_AUDIO), await self._resolve_context())
        session.audio_asset = audio

        loop = asyncio.get_running_loop()
        indicator = loop.call_later(
            self._config.transcribing_indicator_delay,
            self._show_transcribing_indicator,
            session.id,
        )
        transcription = asyncio.ensure_future(self._transcribe(audio))
        try:
            context = await self._resolve_context()
            session.captured_context = context
            self._check_screenshot(context)
            raw = await transcription
        except (TranscriptionError, ScreenRecordingPermissionError) as exc:
            return self._fail(session, exc, session.captured_context)
        finally:
            indicator.cancel()
            _discard(transcription)
            self._hide_transcribing_indicator(session.id)

        session.raw_transcript = raw
        self._transition(session, SessionState.POST_PROCESSING)
        await self._post_process(session, context)

        self._transition(session, SessionState.DELIVERING)
        text = session.final_transcript.strip()
        if not text:
            session.processing_status = NOTHING_TO_TRANSCRIBE
            self._set_status(NOTHING_TO_TRANSCRIBE)
        else:
            self._emit(CopyToClipboard(text))
            if self._config.insert_destination == "paste":
                await asyncio.sleep(self._config.paste_settle_delay)
                self._emit(PasteAtCursor())
            self._set_status(STATUS_DELIVERED)
        self.last_transcript = text

        entry = self._record(session, context, session.processing_status)
        self._transition(session, SessionState.DONE)
        self._finish()
        return entry

    async def toggle(self, trigger: str = "manual") -> Optional[HistoryEntry]:
        """Start when idle, stop when recording, ignore otherwise."""

        if self._state == SessionState.RECORDING:
            return await self.stop()
        if self._state.is_busy:
            logging.debug("Ignoring toggle while %s", self._state.value)
            return None
        await self.start(trigger)
        return None

    async def handle_key_down(self) -> None:
        """Push-to-talk press."""

        if self._state == SessionState.IDLE:
            await self.start("hotkey")

    async def handle_key_up(self) -> Optional[HistoryEntry]:
        """Push-to-talk release."""

        if self._state == SessionState.RECORDING:
            return await self.stop()
        return None

    async def shutdown(self) -> None:
        """Abandon an active recording, recording it as cancelled."""

        session = self._session
        if session is None or self._state != SessionState.RECORDING:
            self._cancel_context_task()
            return
        starting = self._capture_start
        if starting is not None and not starting.done():
            await asyncio.wait({starting})
        if self._session is not session or session.state != SessionState.RECORDING:
            return
        self._cancel_context_task()
        try:
            session.audio_asset = await self._capture.stop()
        except CaptureError as exc:
            logging.debug("Capture stop failed during shutdown: %s", exc)
        except Exception:
            logging.exception("Capture provider failed to stop during shutdown")
        self._fail(session, SessionCancelled(), fallback_context(self._frontmost_app_name()))

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    async def _transcribe(self, audio: Path) -> str:
        timeout = self._config.transcription_timeout
        try:
            return await asyncio.wait_for(self._transcriber.transcribe(audio), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TranscriptionTimedOut(timeout) from exc
        except TranscriptionError:
            raise
        except Exception as exc:
            raise TranscriptionSubmissionFailed(format_error(exc)) from exc

    async def _resolve_context(self) -> AppContext:
        """Return the finished context, await the in-flight one, or synthesize one."""

        task = self._context_task
        if task is not None and not task.done():
            await asyncio.wait({task})
        if task is not None and task.done() and not task.cancelled():
            exc = task.exception()
            if exc is not None:
                logging.warning("Context collection raised: %s", exc)
            else:
                context = task.result()
                if isinstance(context, AppContext) and context.activity_summary.strip():
                    return context
                logging.warning("Context collector returned an unusable context: %r", context)
        return fallback_context(self._frontmost_app_name())

    def _check_screenshot(self, context: AppContext) -> None:
        error = context.screenshot_error
        if error is None or not self._config.capture_screenshot:
            return
        if error.kind == ScreenshotErrorKind.PERMISSION and self._config.abort_on_screen_permission:
            self._emit(PromptPermission(SCREEN_RECORDING))
            raise ScreenRecordingPermissionError()
        logging.info("Continuing without screenshot: %s", error.message)
        self._emit(ShowWarning(f"Continuing without screenshot: {error.message}"))

    async def _post_process(self, session: Session, context: AppContext) -> None:
        raw = session.raw_transcript
        if not raw.strip():
            session.final_transcript = ""
            session.processing_status = POST_PROCESSING_SKIPPED
            return
        try:
            result = await self._post_processor.post_process(
                raw, context.activity_summary, session.custom_vocabulary
            )
        except Exception as exc:  # noqa: BLE001 - any failure degrades to the raw transcript
            logging.warning("Post-processing failed for session %s: %s", session.id, format_error(exc))
            session.final_transcript = raw
            session.processing_status = POST_PROCESSING_FAILED
            return
        session.final_transcript = result.transcript
        session.post_processing_prompt = result.prompt
        session.processing_status = POST_PROCESSING_SUCCEEDED

    def _fail(
        self,
        session: Session,
        exc: BaseException,
        context: Optional[AppContext] = None,
    ) -> Optional[HistoryEntry]:
        logging.error("Session %s failed: %s", session.id, format_error(exc))
        self._transition(session, SessionState.FAILED)
        self._report_error(exc)
        self._hide_transcribing_indicator(session.id)
        if context is None:
            context = fallback_context(self._frontmost_app_name())
        session.processing_status = error_status(exc)
        entry = self._record(session, context, session.processing_status)
        self._finish()
        return entry

    def _record(self, session: Session, context: AppContext, processing_status: str) -> Optional[HistoryEntry]:
        """Persist the session's single history entry and release its temporary audio."""

        audio_ref: Optional[str] = None
        try:
            if session.audio_asset is not None and session.audio_asset.exists():
                audio_ref = self._history.import_audio(session.audio_asset)
            entry = HistoryEntry(
                id=session.id,
                timestamp=utcnow(),
                raw_transcript=session.raw_transcript,
                final_transcript=session.final_transcript,
                post_processing_prompt=session.post_processing_prompt,
                context_summary=context.activity_summary,
                context_prompt=context.prompt_used,
                screenshot_ref=context.screenshot.data_url if context.screenshot else None,
                screenshot_status=context.screenshot_status,
                processing_status=processing_status,
                debug_status=self._debug_status(session, context),
                custom_vocabulary=session.custom_vocabulary,
                audio_file_ref=audio_ref,
            )
            evicted = self._history.append(entry, self._config.max_history_count)
        except PersistenceError as exc:
            logging.error("Failed to record history for session %s: %s", session.id, exc)
            self._emit(ShowError(f"Failed to save history: {format_error(exc)}"))
            if audio_ref is not None:
                self._history.discard_audio([audio_ref])
            return None
        finally:
            if session.audio_asset is not None:
                try:
                    session.audio_asset.unlink(missing_ok=True)
                except OSError as exc:
                    logging.warning("Failed to delete temporary audio %s: %s", session.audio_asset, exc)
        self._history.discard_audio(evicted)
        self.last_entry = entry
        return entry

    @staticmethod
    def _debug_status(session: Session, context: AppContext) -> str:
        parts = [
            f"trigger={session.trigger}",
            f"state={session.state.value}",
            "context=model" if context.prompt_used else "context=fallback",
            f"screenshot={context.screenshot_status}",
        ]
        if session.processing_status:
            parts.append(f"processing={session.processing_status}")
        return "; ".join(parts)

    def _finish(self) -> None:
        self._cancel_context_task()
        self._session = None
        self._capture_start = None
        self._transition(None, SessionState.IDLE)

    # ------------------------------------------------------------------
    # Callbacks from the capture provider
    # ------------------------------------------------------------------

    def _on_capture_ready(self, session_id: str) -> None:
        session = self._session
        if session is None or session.id != session_id or session.state != SessionState.RECORDING:
            logging.debug("Discarding late capture-ready signal for session %s", session_id)
            return
        if session.ready:
            return
        session.ready = True
        self._emit(PlayCue(CUE_RECORDING_STARTED))
        self._emit(ShowIndicator("recording"))
        self._set_status(STATUS_RECORDING)

    def _on_audio_level(self, session_id: str, level: float) -> None:
        session = self._session
        if session is None or session.id != session_id or session.state != SessionState.RECORDING:
            return
        self._emit(AudioLevel(session_id, level))

    def _show_transcribing_indicator(self, session_id: str) -> None:
        session = self._session
        if session is None or session.id != session_id or session.state != SessionState.TRANSCRIBING:
            return
        self._indicator_session = session_id
        self._emit(ShowIndicator("transcribing"))

    def _hide_transcribing_indicator(self, session_id: str) -> None:
        if self._indicator_session == session_id:
            self._indicator_session = None
            self._emit(HideIndicator())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, session: Optional[Session], to_state: SessionState) -> None:
        from_state = self._state
        if session is not None:
            session.state = to_state
        if from_state == to_state:
            return
        self._state = to_state
        logging.debug("Session state %s -> %s", from_state.value, to_state.value)
        self._emit(StateChanged(session.id if session else None, from_state, to_state))
        if to_state == SessionState.IDLE and not self.last_error and self.status_text == STATUS_STARTING:
            self._set_status(STATUS_READY)

    def _set_status(self, text: str) -> None:
        self.status_text = text
        self._emit(StatusChanged(text))

    def _report_error(self, exc: BaseException) -> None:
        message = format_error(exc)
        self.last_error = message
        self._set_status(f"Error: {message}")
        self._emit(ShowError(message))

    def _emit(self, effect: object) -> None:
        try:
            self._effects.apply(effect)
        except Exception:
            logging.exception("Effect %r failed", effect)

    def _cancel_context_task(self) -> None:
        task = self._context_task
        self._context_task = None
        if task is not None and not task.done():
            task.cancel()

    def _frontmost_app_name(self) -> Optional[str]:
        if self._frontmost_app is None:
            return None
        try:
            return self._frontmost_app()
        except Exception as exc:
            logging.debug("Frontmost application lookup failed: %s", exc)
            return None


def _discard(task: asyncio.Future) -> None:
    """Cancel ``task`` if pending, otherwise mark its outcome as retrieved."""

    if not task.done():
        task.cancel()
    elif not task.cancelled():
        task.exception()
