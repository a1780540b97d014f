"""Microphone capture provider built on ``sounddevice``."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

import numpy as np

from .errors import CaptureError, CaptureErrorKind
from .permissions import MICROPHONE, PermissionChecker

ReadyCallback = Callable[[], None]
LevelCallback = Callable[[float], None]


class CaptureProvider(Protocol):
    async def start(
        self,
        device_id: Optional[str],
        on_ready: ReadyCallback,
        on_level: LevelCallback,
    ) -> None:
        """Begin capturing. Raises :class:`CaptureError` when the device cannot start."""

    async def stop(self) -> Optional[Path]:
        """Stop capturing and return the finalised audio file, or None if nothing was captured."""


def resolve_device(device_id: Optional[str]) -> Union[int, str, None]:
    """Map a configured device to what sounddevice expects: an index, a name, or the default."""

    if device_id is None or not device_id.strip():
        return None
    device_id = device_id.strip()
    return int(device_id) if device_id.isdigit() else device_id


def smooth_level(previous: float, rms: float) -> float:
    """Scale speech RMS (~0.01-0.1) to 0-1 with fast attack and slower release."""

    scaled = min(rms * 10.0, 1.0)
    if scaled > previous:
        return previous * 0.3 + scaled * 0.7
    return previous * 0.6 + scaled * 0.4


class SoundDeviceCapture:
    """Stream audio from a microphone into a temporary WAV file.

    ``on_ready`` fires once, on the event loop, when the first non-empty
    buffer arrives. ``on_level`` receives a smoothed 0-1 amplitude for every
    buffer.
    """

    def __init__(
        self,
        samplerate: int = 16000,
        channels: int = 1,
        permissions: Optional[PermissionChecker] = None,
    ) -> None:
        try:
            import sounddevice as sd  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError(
                "The `sounddevice` package is required for recording. Install PortAudio and freeflow."
            ) from exc

        self._sd = sd
        self._samplerate = samplerate
        self._channels = channels
        self._permissions = permissions
        self._stream = None
        self._frames: list[np.ndarray] = []
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_ready: Optional[ReadyCallback] = None
        self._on_level: Optional[LevelCallback] = None
        self._ready_sent = False
        self._level = 0.0

    async def start(
        self,
        device_id: Optional[str],
        on_ready: ReadyCallback,
        on_level: LevelCallback,
    ) -> None:
        if self._stream is not None:
            return

        sd = self._sd
        device = resolve_device(device_id)
        try:
            sd.query_devices(device, kind="input")
        except (ValueError, sd.PortAudioError) as exc:
            raise CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE, str(exc)) from exc
        try:
            sd.check_input_settings(
                device=device,
                samplerate=self._samplerate,
                channels=self._channels,
                dtype="float32",
            )
        except (ValueError, sd.PortAudioError) as exc:
            raise CaptureError(CaptureErrorKind.FORMAT_NEGOTIATION, str(exc)) from exc

        with self._lock:
            self._frames = []
            self._ready_sent = False
            self._level = 0.0
            self._loop = asyncio.get_running_loop()
            self._on_ready = on_ready
            self._on_level = on_level

        def open_stream():
            stream = sd.InputStream(
                device=device,
                samplerate=self._samplerate,
                channels=self._channels,
                dtype="float32",
                callback=self._callback,
            )
            stream.start()
            return stream

        try:
            self._stream = await asyncio.to_thread(open_stream)
        except sd.PortAudioError as exc:
            # PortAudio reports a revoked microphone grant as a generic open failure.
            if self._permissions is not None and not self._permissions.is_granted(MICROPHONE):
                raise CaptureError(CaptureErrorKind.PERMISSION_DENIED, str(exc)) from exc
            raise CaptureError(CaptureErrorKind.DEVICE_UNAVAILABLE, str(exc)) from exc

    async def stop(self) -> Optional[Path]:
        stream = self._stream
        if stream is None:
            return None
        self._stream = None
        try:
            await asyncio.to_thread(self._close, stream)
        except self._sd.PortAudioError as exc:
            logging.warning("Failed to close input stream cleanly: %s", exc)

        with self._lock:
            frames = self._frames
            self._frames = []
            self._on_ready = None
            self._on_level = None

        if not frames:
            return None
        audio = np.concatenate(frames, axis=0)
        if audio.size == 0:
            return None
        try:
            return await asyncio.to_thread(self._write_wav, audio)
        except (OSError, RuntimeError) as exc:
            raise CaptureError(CaptureErrorKind.NO_AUDIO, f"could not write audio file: {exc}") from exc

    @staticmethod
    def _close(stream) -> None:
        stream.stop()
        stream.close()

    def _write_wav(self, audio: np.ndarray) -> Path:
        try:
            import soundfile as sf  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("The `soundfile` package is required to write audio files.") from exc

        fd, filename = tempfile.mkstemp(suffix=".wav", prefix="freeflow-")
        os.close(fd)
        path = Path(filename)
        sf.write(path, audio, self._samplerate)
        return path

    def _callback(self, indata, frames, time, status) -> None:  # type: ignore[override]
        if status:
            logging.debug("Recorder status: %s", status)
        chunk = np.array(indata, dtype=np.float32, copy=True)
        with self._lock:
            loop = self._loop
            on_ready = self._on_ready
            on_level = self._on_level
            if on_ready is None and on_level is None:
                return
            self._frames.append(chunk)
            first = not self._ready_sent and chunk.size > 0
            if first:
                self._ready_sent = True
            if chunk.size:
                rms = float(np.sqrt(np.mean(np.square(chunk))))
                self._level = smooth_level(self._level, rms)
            level = self._level

        if loop is None:
            return
        try:
            if first and on_ready is not None:
                loop.call_soon_threadsafe(on_ready)
            if on_level is not None:
                loop.call_soon_threadsafe(on_level, level)
        except RuntimeError as exc:
            logging.debug("Event loop closed before audio callback delivery: %s", exc)
