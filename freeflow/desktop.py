"""Desktop integration: effect interpreter and frontmost-window inspection."""

from __future__ import annotations

import logging
import os
import platform
import subprocess
import tempfile
from functools import partial
from pathlib import Path
from typing import Optional, Tuple

from rich.console import Console

from .context import WindowSnapshot, fit_screenshot
from .effects import (
    AudioLevel,
    CopyToClipboard,
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
from .errors import PermissionDeniedError
from .models import Screenshot, ScreenshotError, ScreenshotErrorKind


def _is_macos() -> bool:
    return platform.system() == "Darwin"


def _copy_to_pasteboard(text: str) -> None:
    try:
        from AppKit import NSPasteboard, NSPasteboardTypeString  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "The `pyobjc` packages are required to access the clipboard. Install freeflow[mac]."
        ) from exc

    pasteboard = NSPasteboard.generalPasteboard()
    pasteboard.clearContents()
    pasteboard.setString_forType_(text, NSPasteboardTypeString)


def _paste_from_clipboard() -> None:
    try:
        subprocess.run(
            [
                "/usr/bin/osascript",
                "-e",
                'tell application "System Events" to keystroke "v" using {command down}',
            ],
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:  # pragma: no cover - best effort
        logging.debug("Failed to trigger paste: %s", exc)


def _play_sound(name: str) -> None:
    try:
        from AppKit import NSSound  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        logging.debug("Sound playback unavailable: %s", exc)
        return
    sound = NSSound.soundNamed_(name)
    if sound is not None:
        sound.play()


def _temp_path(suffix: str) -> Path:
    fd, filename = tempfile.mkstemp(suffix=suffix, prefix="freeflow-shot-")
    os.close(fd)
    return Path(filename)


def _encode_jpeg(source: Path, max_dimension: int, quality: float) -> Optional[bytes]:  # pragma: no cover - macOS sips
    target = _temp_path(".jpg")
    try:
        subprocess.run(
            [
                "/usr/bin/sips",
                "-Z",
                str(max_dimension),
                "-s",
                "format",
                "jpeg",
                "-s",
                "formatOptions",
                str(max(1, round(quality * 100))),
                str(source),
                "--out",
                str(target),
            ],
            check=True,
            capture_output=True,
            timeout=5,
        )
        return target.read_bytes()
    except (OSError, subprocess.SubprocessError) as exc:
        logging.debug("Screenshot encoding at %spx failed: %s", max_dimension, exc)
        return None
    finally:
        target.unlink(missing_ok=True)


class DesktopEffects:
    """Turn orchestrator effects into console output and macOS actions.

    Off macOS the clipboard and paste effects are reported on the console
    only, so ``freeflow dictate`` still shows the transcript.
    """

    def __init__(self, console: Optional[Console] = None, macos: Optional[bool] = None) -> None:
        self._console = console or Console()
        self._macos = _is_macos() if macos is None else macos
        self._status = None

    def apply(self, effect: object) -> None:
        if isinstance(effect, StatusChanged):
            self._console.print(f"[dim]{effect.text}[/dim]")
        elif isinstance(effect, StateChanged):
            logging.debug("State %s -> %s", effect.previous.value, effect.current.value)
        elif isinstance(effect, PlayCue):
            if self._macos:
                _play_sound(effect.name)
        elif isinstance(effect, ShowIndicator):
            self._show_indicator(effect.kind)
        elif isinstance(effect, HideIndicator):
            self._hide_indicator()
        elif isinstance(effect, AudioLevel):
            pass
        elif isinstance(effect, CopyToClipboard):
            self._hide_indicator()
            if self._macos:
                _copy_to_pasteboard(effect.text)
            self._console.print(effect.text, highlight=False)
        elif isinstance(effect, PasteAtCursor):
            if self._macos:
                _paste_from_clipboard()
        elif isinstance(effect, ShowError):
            self._hide_indicator()
            self._console.print(f"[red]{effect.message}[/red]")
        elif isinstance(effect, ShowWarning):
            self._console.print(f"[yellow]{effect.message}[/yellow]")
        elif isinstance(effect, PromptPermission):
            message = PermissionDeniedError.MESSAGES.get(effect.permission, effect.permission)
            self._console.print(f"[yellow]Permission needed:[/yellow] {message}")
        else:
            logging.debug("Unhandled effect %r", effect)

    def _show_indicator(self, kind: str) -> None:
        self._hide_indicator()
        label = "Recording… press Enter to stop" if kind == "recording" else "Transcribing…"
        self._status = self._console.status(label, spinner="dots")
        self._status.start()

    def _hide_indicator(self) -> None:
        if self._status is not None:
            self._status.stop()
            self._status = None


class NullWindowInspector:
    """Inspector for platforms without window introspection."""

    def frontmost_app_name(self) -> Optional[str]:
        return None

    def snapshot(self) -> Optional[WindowSnapshot]:
        return None

    def screenshot(self, snapshot: WindowSnapshot) -> Tuple[Optional[Screenshot], Optional[ScreenshotError]]:
        return None, ScreenshotError(ScreenshotErrorKind.TRANSIENT, "Screenshots are not supported on this platform")


class MacWindowInspector:  # pragma: no cover - platform APIs
    """Read the frontmost window through AppKit, Quartz and the accessibility API."""

    def __init__(self) -> None:
        if not _is_macos():
            raise RuntimeError("Window inspection is only supported on macOS.")
        try:
            import AppKit  # type: ignore  # noqa: F401
            import Quartz  # type: ignore  # noqa: F401
        except Exception as exc:
            raise RuntimeError(
                "The `pyobjc` packages are required for window inspection. Install freeflow[mac]."
            ) from exc

    def _frontmost_app(self):
        from AppKit import NSWorkspace  # type: ignore

        return NSWorkspace.sharedWorkspace().frontmostApplication()

    def frontmost_app_name(self) -> Optional[str]:
        app = self._frontmost_app()
        return str(app.localizedName()) if app is not None and app.localizedName() else None

    def snapshot(self) -> Optional[WindowSnapshot]:
        app = self._frontmost_app()
        if app is None:
            return None
        pid = int(app.processIdentifier())
        return WindowSnapshot(
            app_name=str(app.localizedName()) if app.localizedName() else None,
            bundle_id=str(app.bundleIdentifier()) if app.bundleIdentifier() else None,
            window_title=self._window_title(pid),
            selected_text=self._selected_text(pid),
        )

    def screenshot(self, snapshot: WindowSnapshot) -> Tuple[Optional[Screenshot], Optional[ScreenshotError]]:
        from Quartz import CGPreflightScreenCaptureAccess  # type: ignore

        if not CGPreflightScreenCaptureAccess():
            return None, ScreenshotError(ScreenshotErrorKind.PERMISSION, "Screen recording permission not granted")

        app = self._frontmost_app()
        window_id = self._window_id(int(app.processIdentifier())) if app is not None else None
        source = _temp_path(".png")
        command = ["/usr/sbin/screencapture", "-x", "-t", "png"]
        if window_id is not None:
            command += ["-l", str(window_id)]
        try:
            subprocess.run(command + [str(source)], check=True, capture_output=True, timeout=5)
            if not source.exists() or source.stat().st_size == 0:
                return None, ScreenshotError(ScreenshotErrorKind.TRANSIENT, "Screenshot was empty")
            screenshot = fit_screenshot(partial(_encode_jpeg, source))
        except (OSError, subprocess.SubprocessError) as exc:
            return None, ScreenshotError(ScreenshotErrorKind.TRANSIENT, f"Screenshot failed: {exc}")
        finally:
            source.unlink(missing_ok=True)
        if screenshot is None:
            return None, ScreenshotError(
                ScreenshotErrorKind.TRANSIENT, "Could not capture screenshot within size limits"
            )
        return screenshot, None

    @staticmethod
    def _windows_for(pid: int):
        from Quartz import (  # type: ignore
            CGWindowListCopyWindowInfo,
            kCGNullWindowID,
            kCGWindowListExcludeDesktopElements,
            kCGWindowListOptionOnScreenOnly,
        )

        options = kCGWindowListOptionOnScreenOnly | kCGWindowListExcludeDesktopElements
        windows = CGWindowListCopyWindowInfo(options, kCGNullWindowID) or []
        return [window for window in windows if int(window.get("kCGWindowOwnerPID", -1)) == pid]

    def _window_id(self, pid: int) -> Optional[int]:
        for window in self._windows_for(pid):
            if int(window.get("kCGWindowLayer", 0)) == 0:
                return int(window["kCGWindowNumber"])
        return None

    def _window_title(self, pid: int) -> Optional[str]:
        for window in self._windows_for(pid):
            title = window.get("kCGWindowName")
            if title:
                return str(title)
        return None

    @staticmethod
    def _selected_text(pid: int) -> Optional[str]:
        try:
            from ApplicationServices import (  # type: ignore
                AXUIElementCopyAttributeValue,
                AXUIElementCreateApplication,
                kAXFocusedUIElementAttribute,
                kAXSelectedTextAttribute,
            )
        except Exception as exc:
            logging.debug("Accessibility API unavailable: %s", exc)
            return None

        app = AXUIElementCreateApplication(pid)
        error, focused = AXUIElementCopyAttributeValue(app, kAXFocusedUIElementAttribute, None)
        if error or focused is None:
            return None
        error, selected = AXUIElementCopyAttributeValue(focused, kAXSelectedTextAttribute, None)
        if error or not selected:
            return None
        text = str(selected).strip()
        return text or None


def default_inspector():
    if _is_macos():
        return MacWindowInspector()
    return NullWindowInspector()
